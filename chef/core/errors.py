class CookAlongError(Exception):
    """Base class for all cook-along errors."""


class SpeechPermissionError(CookAlongError):
    """Microphone or speech recognition access was denied or is unavailable.

    There is no automatic recovery from this: hands-free mode is switched off
    and the session carries on in manual mode.
    """


class TransientRecognitionError(CookAlongError):
    """No-match, timeout or a dropped recognizer session. Safe to retry."""


class InvalidTransitionError(CookAlongError):
    def __init__(self, current, target):
        super().__init__(f"Cannot move from {current.value} to {target.value}")
        self.current = current
        self.target = target
