from enum import Enum

from core.errors import InvalidTransitionError


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    WELCOME_PLAYING = "welcome_playing"    # Welcome message being spoken
    AWAITING_START = "awaiting_start"      # Waiting for "start"
    STEP_IN_PROGRESS = "step_in_progress"  # Narrating / cooking a step
    PAUSED = "paused"
    COMPLETED = "completed"
    EXITING = "exiting"                    # Goodbye playing, teardown pending


class ListeningState(str, Enum):
    IDLE = "idle"              # Between sessions, waiting to (re)start
    LISTENING = "listening"    # Input session open, collecting transcript
    FINALIZING = "finalizing"  # Silence detected, committing text
    DISABLED = "disabled"      # Permanent failure, hands-free off


class CookAlongMode(str, Enum):
    VOICE = "voice"    # Hands-free voice commands with the AI assistant
    MANUAL = "manual"  # Button-driven navigation, no listening loop


_ACTIVE = (
    SessionState.WELCOME_PLAYING,
    SessionState.AWAITING_START,
    SessionState.STEP_IN_PROGRESS,
    SessionState.PAUSED,
    SessionState.COMPLETED,
)

SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.NOT_STARTED: frozenset({SessionState.WELCOME_PLAYING}),
    SessionState.WELCOME_PLAYING: frozenset({
        SessionState.AWAITING_START, SessionState.EXITING, SessionState.NOT_STARTED,
    }),
    SessionState.AWAITING_START: frozenset({
        SessionState.STEP_IN_PROGRESS, SessionState.COMPLETED,
        SessionState.EXITING, SessionState.NOT_STARTED,
    }),
    SessionState.STEP_IN_PROGRESS: frozenset({
        SessionState.PAUSED, SessionState.COMPLETED,
        SessionState.EXITING, SessionState.NOT_STARTED,
    }),
    SessionState.PAUSED: frozenset({
        SessionState.STEP_IN_PROGRESS, SessionState.COMPLETED,
        SessionState.EXITING, SessionState.NOT_STARTED,
    }),
    SessionState.COMPLETED: frozenset({SessionState.EXITING, SessionState.NOT_STARTED}),
    SessionState.EXITING: frozenset({SessionState.NOT_STARTED}),
}

LISTENING_TRANSITIONS: dict[ListeningState, frozenset[ListeningState]] = {
    ListeningState.IDLE: frozenset({ListeningState.LISTENING, ListeningState.DISABLED}),
    ListeningState.LISTENING: frozenset({
        ListeningState.FINALIZING, ListeningState.IDLE, ListeningState.DISABLED,
    }),
    ListeningState.FINALIZING: frozenset({ListeningState.IDLE, ListeningState.DISABLED}),
    ListeningState.DISABLED: frozenset({ListeningState.IDLE}),
}


def is_active(state: SessionState) -> bool:
    return state in _ACTIVE


def check_transition(table: dict, current, target) -> None:
    """Raise InvalidTransitionError unless current -> target is in the table."""
    if current == target:
        return
    if target not in table.get(current, ()):
        raise InvalidTransitionError(current, target)
