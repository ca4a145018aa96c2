from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

from core.config import VoiceSettings


class SpeechEventKind(str, Enum):
    PARTIAL = "partial"          # Interim transcript, may still change
    FINAL = "final"              # Recognizer committed this chunk
    SOUND_LEVEL = "sound_level"  # Normalized 0.0 - 1.0 input level
    ERROR = "error"
    DONE = "done"                # Recognizer closed the session on its own


@dataclass
class SpeechEvent:
    kind: SpeechEventKind
    text: str = ""
    level: float = 0.0
    error: str = ""
    permanent: bool = False  # For ERROR: permission denied / recognizer unavailable

    @classmethod
    def partial(cls, text: str) -> "SpeechEvent":
        return cls(SpeechEventKind.PARTIAL, text=text)

    @classmethod
    def final(cls, text: str) -> "SpeechEvent":
        return cls(SpeechEventKind.FINAL, text=text)

    @classmethod
    def sound_level(cls, level: float) -> "SpeechEvent":
        return cls(SpeechEventKind.SOUND_LEVEL, level=level)

    @classmethod
    def failure(cls, error: str, permanent: bool = False) -> "SpeechEvent":
        return cls(SpeechEventKind.ERROR, error=error, permanent=permanent)

    @classmethod
    def done(cls) -> "SpeechEvent":
        return cls(SpeechEventKind.DONE)


class SpeechInputChannel(ABC):
    """Platform speech-to-text.

    One call to ``listen()`` is one recognizer session. The iterator ends
    when the session ends (``stop()`` was called or the recognizer gave up).
    """

    @abstractmethod
    async def initialize(self) -> bool:
        """Acquire the microphone and load the recognizer.

        Returns:
            False if permission was denied or speech recognition is unavailable.
        """
        ...

    @abstractmethod
    def listen(self) -> AsyncIterator[SpeechEvent]:
        ...

    @abstractmethod
    async def stop(self) -> None:
        """End the current recognizer session, if any. Must be idempotent."""
        ...


class SpeechOutputChannel(ABC):
    """Platform text-to-speech."""

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Speak ``text`` and return once playback has finished or was stopped."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    async def pause(self) -> None:
        await self.stop()

    def configure(self, settings: VoiceSettings) -> None:
        """Apply voice, rate, pitch and volume."""
        pass
