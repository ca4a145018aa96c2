import time
from enum import Enum
from typing import Callable, Optional

from loguru import logger


class VoiceCommand(str, Enum):
    NEXT = "next"
    REPEAT = "repeat"
    BACK = "back"
    PAUSE = "pause"
    RESUME = "resume"
    HELP = "help"
    STOP_LISTENING = "stopListening"
    START = "start"
    COMPLETE = "complete"
    EXIT = "exit"
    UNKNOWN = "unknown"


# Checked top to bottom, first hit wins. "complete" goes first so that
# "all done" / "finish" never fall through to navigation; "start" is
# matched exactly on its own so it isn't found inside other words.
COMMAND_KEYWORDS: list[tuple[VoiceCommand, tuple[str, ...]]] = [
    (VoiceCommand.COMPLETE, ("complete", "finish", "done cooking", "all done")),
    (VoiceCommand.START, ("let's start", "begin", "start cooking")),
    (VoiceCommand.NEXT, ("next", "go on")),
    (VoiceCommand.REPEAT, ("repeat", "again", "say that again")),
    (VoiceCommand.BACK, ("back", "previous", "go back")),
    (VoiceCommand.PAUSE, ("pause", "wait")),
    (VoiceCommand.RESUME, ("resume", "continue")),
    (VoiceCommand.HELP, ("help", "hey chef", "question")),
    (VoiceCommand.STOP_LISTENING, ("stop listening", "cancel")),
    (VoiceCommand.EXIT, ("exit", "leave", "goodbye", "bye")),
]


def normalize(text: object) -> str:
    if not isinstance(text, str):
        return ""
    # Recognizers emit curly apostrophes ("let’s start")
    return " ".join(text.replace("’", "'").lower().split())


def interpret(text: str) -> VoiceCommand:
    """Map a transcript to a voice command. Pure and total."""
    lower = normalize(text)
    if not lower:
        return VoiceCommand.UNKNOWN

    for command, keywords in COMMAND_KEYWORDS:
        if command == VoiceCommand.START and lower.strip(".!? ") == "start":
            return command
        if any(keyword in lower for keyword in keywords):
            return command
    return VoiceCommand.UNKNOWN


class CommandDebouncer:
    """Suppresses the same command repeated within ``window_ms``.

    Recognizers often deliver one utterance twice (final result + session
    end), and users repeat themselves while the assistant is talking.
    """

    def __init__(self, window_ms: int = 2000, clock: Callable[[], float] = time.monotonic):
        self.window_ms = window_ms
        self._clock = clock
        self._last_command: Optional[str] = None
        self._last_time: Optional[float] = None

    def should_process(self, command: str) -> bool:
        now = self._clock()
        if self._last_command == command and self._last_time is not None:
            elapsed_ms = (now - self._last_time) * 1000
            if elapsed_ms < self.window_ms:
                logger.debug("Command debounced: {} ({:.0f}ms ago)", command, elapsed_ms)
                return False

        self._last_command = command
        self._last_time = now
        return True

    def reset(self) -> None:
        self._last_command = None
        self._last_time = None
