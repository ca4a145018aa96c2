import asyncio
import subprocess
import tempfile
from typing import Optional

from loguru import logger


class AudioPlayer:
    """Plays WAV audio through PipeWire/PulseAudio (paplay).

    One clip at a time; ``stop()`` kills the running paplay so the awaiting
    ``play()`` returns straight away.
    """

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout
        self._current_process: Optional[subprocess.Popen] = None

    @property
    def is_playing(self) -> bool:
        return self._current_process is not None

    async def play(self, wav_bytes: bytes) -> None:
        if not wav_bytes:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._play_sync, wav_bytes)

    def _play_sync(self, wav_bytes: bytes) -> None:
        try:
            with tempfile.NamedTemporaryFile(suffix=".wav", delete=True) as tmp:
                tmp.write(wav_bytes)
                tmp.flush()
                proc = subprocess.Popen(
                    ["paplay", tmp.name],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
                self._current_process = proc
                proc.wait(timeout=self.timeout)
                self._current_process = None
                # -9: killed by stop()
                if proc.returncode not in (0, -9):
                    logger.error("paplay error: {}", proc.stderr.read().decode().strip())
        except subprocess.TimeoutExpired:
            self._kill()
            logger.error("Audio playback timed out ({}s)", self.timeout)
        except FileNotFoundError:
            logger.error("paplay not found. Install pulseaudio-utils.")
        finally:
            self._current_process = None

    async def stop(self) -> None:
        if self._kill():
            logger.debug("Audio playback stopped (killed paplay).")

    def _kill(self) -> bool:
        proc, self._current_process = self._current_process, None
        if proc is None:
            return False
        try:
            proc.kill()
        except OSError as e:
            logger.debug("Error killing paplay: {}", e)
        return True
