import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from loguru import logger

from core.config import ListeningConfig
from core.errors import InvalidTransitionError, SpeechPermissionError, TransientRecognitionError
from core.events import Event, EventBus, EventType
from core.state import LISTENING_TRANSITIONS, ListeningState, check_transition
from voice.channels import SpeechEvent, SpeechEventKind, SpeechInputChannel
from voice.commands import CommandDebouncer, VoiceCommand, interpret
from voice.narrator import Narrator

# Words ignored when comparing a transcript against our own last utterance
_ECHO_STOPWORDS = {
    "the", "a", "an", "is", "it", "to", "and", "of", "in", "i", "you",
    "that", "this", "for", "your", "we", "let's",
}


@dataclass
class Utterance:
    text: str
    command: VoiceCommand
    # Set by whoever handles the utterance once its reply has been spoken
    handled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_question(self) -> bool:
        return self.command == VoiceCommand.UNKNOWN

    def finish(self) -> None:
        self.handled.set()


async def _next_event(events: AsyncIterator[SpeechEvent]) -> Optional[SpeechEvent]:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


class HandsFreeListeningLoop:
    """Continuous listen -> silence -> finalize -> restart cycle.

    The loop never calls back into the session controller. Finalized text is
    interpreted, debounced and put on ``utterances``; the controller reads
    that queue and calls ``Utterance.finish()`` once it has acted on it.
    The loop does not listen again until then, and never while the narrator
    is talking: narration that starts mid-session (a timer alert) closes
    the input session and drops what it heard.

        idle -> listening -> finalizing -> idle
                    \\-------------------------> disabled (permission lost)
    """

    def __init__(
        self,
        channel: SpeechInputChannel,
        narrator: Narrator,
        bus: EventBus,
        config: Optional[ListeningConfig] = None,
        debouncer: Optional[CommandDebouncer] = None,
    ):
        self.channel = channel
        self.narrator = narrator
        self.bus = bus
        self.config = config or ListeningConfig()
        self.debouncer = debouncer or CommandDebouncer(self.config.command_debounce_ms)
        self.utterances: asyncio.Queue[Utterance] = asyncio.Queue()

        self._state = ListeningState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._enabled = False
        self._segments: list[str] = []
        self._partial = ""
        self._narration_started = asyncio.Event()

        self.bus.subscribe(EventType.SPEAKING_STARTED, self._on_speaking_started)

    @property
    def state(self) -> ListeningState:
        return self._state

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def is_listening(self) -> bool:
        return self._state == ListeningState.LISTENING

    @property
    def transcript(self) -> str:
        return " ".join([*self._segments, self._partial]).strip()

    def start(self) -> bool:
        """Enable hands-free mode. No-op if the loop is already running."""
        if self._task is not None and not self._task.done():
            return True
        if self._state == ListeningState.DISABLED:
            self._set_state(ListeningState.IDLE)
        self._enabled = True
        self._task = asyncio.create_task(self._run(), name="hands-free-loop")
        return True

    async def stop(self) -> None:
        """Disable hands-free mode and drop anything half-heard. Idempotent."""
        self._enabled = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self._stop_channel()
        self._clear()
        if self._state not in (ListeningState.IDLE, ListeningState.DISABLED):
            self._set_state(ListeningState.IDLE)

    def drain(self) -> int:
        """Discard queued utterances that nobody has handled yet."""
        dropped = 0
        while not self.utterances.empty():
            self.utterances.get_nowait().finish()
            dropped += 1
        return dropped

    async def _run(self) -> None:
        logger.info("Hands-free listening started")
        retry_delay = self.config.error_retry_delay_ms / 1000
        try:
            while self._enabled:
                await self._wait_for_quiet()
                if not self._enabled:
                    break

                try:
                    text = await self._listen_once()
                except SpeechPermissionError as e:
                    self._disable(str(e))
                    break
                except TransientRecognitionError as e:
                    logger.warning("Recognition error: {}. Retrying.", e)
                    self._set_state(ListeningState.IDLE)
                    await asyncio.sleep(retry_delay)
                    continue
                except Exception as e:
                    logger.error("Listening session failed: {}. Retrying.", e)
                    self._set_state(ListeningState.IDLE)
                    await asyncio.sleep(retry_delay)
                    continue

                utterance = self._dispatch(text) if text else None
                self._set_state(ListeningState.IDLE)

                if utterance is not None:
                    await self._wait_until_handled(utterance)
                else:
                    await asyncio.sleep(self.config.restart_delay_ms / 1000)
        finally:
            logger.info("Hands-free listening stopped")

    async def _wait_until_handled(self, utterance: Utterance) -> None:
        """Block until the controller has answered ``utterance``.

        Answers go through the LLM before anything is spoken, so the
        narrator alone cannot tell us a reply is still coming.
        """
        try:
            await asyncio.wait_for(utterance.handled.wait(), timeout=self.config.response_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("No response to '{}' after {:.0f}s, listening again",
                           utterance.text[:40], self.config.response_timeout_s)

    async def _wait_for_quiet(self) -> None:
        while self.narrator.is_speaking:
            await self.narrator.wait_idle()
            await asyncio.sleep(self.config.post_speech_delay_ms / 1000)

    async def _listen_once(self) -> str:
        """Run one recognizer session and return the committed text."""
        self._clear()
        self._set_state(ListeningState.LISTENING)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.listen_window_s
        silence = self.config.silence_timeout_ms / 1000
        has_final = False
        last_speech = loop.time()
        events = self.channel.listen().__aiter__()
        pending: Optional[asyncio.Future] = None

        self._narration_started.clear()
        if self.narrator.is_speaking:
            self._narration_started.set()
        narration = asyncio.ensure_future(self._narration_started.wait())

        try:
            while True:
                now = loop.time()
                window_left = deadline - now
                if window_left <= 0:
                    logger.debug("Listen window elapsed")
                    break

                # Sound-level samples keep arriving during silence, so the
                # silence timer runs from the last transcript event only.
                timeout = window_left
                if has_final:
                    silence_left = last_speech + silence - now
                    if silence_left <= 0:
                        logger.debug("Silence detected after '{}'", self.transcript[:40])
                        break
                    timeout = min(silence_left, window_left)

                if pending is None:
                    pending = asyncio.ensure_future(_next_event(events))
                done, _ = await asyncio.wait(
                    {pending, narration}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
                )
                if narration in done:
                    logger.debug("Narration started, dropping '{}'", self.transcript[:40])
                    self._clear()
                    break
                if not done:
                    continue
                event, pending = pending.result(), None
                if event is None:
                    break

                if event.kind == SpeechEventKind.PARTIAL:
                    self._partial = event.text
                    last_speech = loop.time()
                    self.bus.publish(EventType.TRANSCRIPT, text=self.transcript, final=False)
                elif event.kind == SpeechEventKind.FINAL:
                    if event.text.strip():
                        self._segments.append(event.text.strip())
                        has_final = True
                    self._partial = ""
                    last_speech = loop.time()
                    self.bus.publish(EventType.TRANSCRIPT, text=self.transcript, final=True)
                elif event.kind == SpeechEventKind.SOUND_LEVEL:
                    self.bus.publish(EventType.AUDIO_LEVEL, level=min(max(event.level, 0.0), 1.0))
                elif event.kind == SpeechEventKind.ERROR:
                    if event.permanent:
                        raise SpeechPermissionError(event.error)
                    raise TransientRecognitionError(event.error)
                elif event.kind == SpeechEventKind.DONE:
                    break
        finally:
            self._set_state(ListeningState.FINALIZING)
            await self._stop_channel()
            narration.cancel()
            if pending is not None and not pending.done():
                pending.cancel()
                with suppress(BaseException):
                    await pending
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                with suppress(Exception):
                    await aclose()

        return self.transcript

    def _dispatch(self, text: str) -> Optional[Utterance]:
        if len(text.strip()) < 2:
            return None
        if self._is_echo(text):
            logger.info("Ignoring echo of our own speech: '{}'", text[:60])
            return None

        command = interpret(text)
        logger.info("Heard: '{}' -> {}", text, command.value)
        if command != VoiceCommand.UNKNOWN and not self.debouncer.should_process(command.value):
            return None
        utterance = Utterance(text=text, command=command)
        self.utterances.put_nowait(utterance)
        return utterance

    def _on_speaking_started(self, event: Event) -> None:
        self._narration_started.set()

    def _is_echo(self, transcript: str) -> bool:
        """Check whether the mic picked up the tail of our own last utterance.

        Short utterances are never treated as echo: a one-word "next" always
        overlaps with a welcome message that lists the commands.
        """
        last = self.narrator.last_spoken
        if not last:
            return False

        t_words = set(transcript.lower().split()) - _ECHO_STOPWORDS
        if len(t_words) < 4:
            return False
        r_words = set(last.lower().split()) - _ECHO_STOPWORDS

        ratio = len(t_words & r_words) / len(t_words)
        return ratio > self.config.echo_overlap_ratio

    def _disable(self, reason: str) -> None:
        logger.error("Speech input unavailable ({}). Hands-free mode disabled.", reason)
        self._enabled = False
        self._set_state(ListeningState.DISABLED)
        self.bus.publish(EventType.HANDS_FREE_DISABLED, reason=reason)

    async def _stop_channel(self) -> None:
        try:
            await self.channel.stop()
        except Exception as e:
            logger.debug("Error stopping speech input: {}", e)

    def _clear(self) -> None:
        self._segments = []
        self._partial = ""

    def _set_state(self, target: ListeningState) -> None:
        try:
            check_transition(LISTENING_TRANSITIONS, self._state, target)
        except InvalidTransitionError as e:
            logger.warning("Listening loop: {}", e)
            return
        if target == self._state:
            return
        self._state = target
        self.bus.publish(EventType.LISTENING_CHANGED, state=target.value, listening=self.is_listening)
