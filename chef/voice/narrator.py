import asyncio
from typing import Optional

from loguru import logger

from core.events import EventBus, EventType
from voice.channels import SpeechOutputChannel


class Narrator:
    """Sole owner of the speech output channel.

    Every utterance goes through ``speak_and_wait``, which holds a lock for
    the whole utterance, so narration, answers and timer alerts queue up
    instead of talking over each other. Platform TTS engines do not always
    report completion, so each utterance is bounded by a budget of
    ``ms_per_char`` per character plus ``buffer_s``; when it runs out the
    channel is stopped and the queue moves on.
    """

    def __init__(
        self,
        channel: SpeechOutputChannel,
        bus: EventBus,
        ms_per_char: int = 80,
        buffer_s: float = 3.0,
    ):
        self.channel = channel
        self.bus = bus
        self.ms_per_char = ms_per_char
        self.buffer_s = buffer_s
        self._lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._speaking = False
        self.last_spoken: Optional[str] = None

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    def timeout_for(self, text: str) -> float:
        return len(text) * self.ms_per_char / 1000 + self.buffer_s

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def speak_and_wait(self, text: str, interrupt: bool = False) -> bool:
        """Speak ``text`` and return once it has finished.

        Args:
            text: What to say.
            interrupt: Cut off whatever is playing instead of queueing behind it.

        Returns:
            True if playback completed, False on error, timeout or empty text.
        """
        if not text or not text.strip():
            return False

        if interrupt:
            await self.stop()

        async with self._lock:
            self._set_speaking(True, text)
            try:
                await asyncio.wait_for(self.channel.speak(text), timeout=self.timeout_for(text))
                return True
            except asyncio.TimeoutError:
                logger.warning("Speech did not finish within {:.1f}s, stopping output", self.timeout_for(text))
                await self._stop_channel()
                return False
            except Exception as e:
                logger.error("Error speaking: {}", e)
                return False
            finally:
                self._set_speaking(False, text)

    async def stop(self) -> None:
        if self._speaking:
            logger.info("Stopping speech output")
        await self._stop_channel()

    async def pause(self) -> None:
        try:
            await self.channel.pause()
        except Exception as e:
            logger.error("Error pausing speech: {}", e)

    async def _stop_channel(self) -> None:
        try:
            await self.channel.stop()
        except Exception as e:
            logger.error("Error stopping speech: {}", e)

    def _set_speaking(self, speaking: bool, text: str) -> None:
        self._speaking = speaking
        if speaking:
            self._idle.clear()
            self.last_spoken = text
            logger.info("Speaking: '{}'", text[:60])
            self.bus.publish(EventType.SPEAKING_STARTED, text=text)
        else:
            # Another utterance may be queued on the lock; idle flips back
            # when it starts speaking.
            self._idle.set()
            self.bus.publish(EventType.SPEAKING_FINISHED, text=text)
