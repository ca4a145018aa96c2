import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from core.recipe import InstructionStep, Recipe

Clock = Callable[[], float]


class TimerStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChatMessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatMessageType(str, Enum):
    TEXT = "text"
    STEP_NAVIGATION = "stepNavigation"
    TIMER_ALERT = "timerAlert"
    SYSTEM_NOTIFICATION = "systemNotification"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class StepTimer:
    """Countdown for one recipe step.

    Times are read from ``clock`` (monotonic seconds by default) so that
    remaining time never jumps with wall-clock changes. Remaining time is
    derived, never stored:

        remaining = duration - (now - started_at - paused_duration)

    with ``now`` pinned to ``paused_at`` while paused.
    """

    step_number: int
    duration: float
    description: str
    id: str = field(default_factory=new_id)
    clock: Clock = field(default=time.monotonic, repr=False, compare=False)
    started_at: float = -1.0
    paused_at: Optional[float] = None
    paused_duration: float = 0.0
    status: TimerStatus = TimerStatus.RUNNING

    def __post_init__(self):
        if self.started_at < 0:
            self.started_at = self.clock()

    @property
    def elapsed(self) -> float:
        now = self.paused_at if self.status == TimerStatus.PAUSED and self.paused_at is not None else self.clock()
        return now - self.started_at - self.paused_duration

    @property
    def remaining(self) -> float:
        if self.status in (TimerStatus.COMPLETED, TimerStatus.CANCELLED):
            return 0.0
        return max(self.duration - self.elapsed, 0.0)

    @property
    def is_finished(self) -> bool:
        return self.remaining == 0.0

    @property
    def progress(self) -> float:
        if self.duration <= 0:
            return 1.0
        return min(max((self.duration - self.remaining) / self.duration, 0.0), 1.0)

    def pause(self) -> None:
        if self.status == TimerStatus.RUNNING:
            self.status = TimerStatus.PAUSED
            self.paused_at = self.clock()

    def resume(self) -> None:
        if self.status == TimerStatus.PAUSED and self.paused_at is not None:
            self.paused_duration += self.clock() - self.paused_at
            self.paused_at = None
            self.status = TimerStatus.RUNNING

    def complete(self) -> None:
        self.status = TimerStatus.COMPLETED

    def cancel(self) -> None:
        self.status = TimerStatus.CANCELLED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "step_number": self.step_number,
            "duration": self.duration,
            "remaining": round(self.remaining, 1),
            "progress": round(self.progress, 3),
            "status": self.status.value,
            "description": self.description,
        }


@dataclass
class ChatMessage:
    content: str
    role: ChatMessageRole
    type: ChatMessageType = ChatMessageType.TEXT
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "role": self.role.value,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        try:
            msg_type = ChatMessageType(data.get("type", "text"))
        except ValueError:
            msg_type = ChatMessageType.TEXT
        return cls(
            id=data["id"],
            content=data["content"],
            role=ChatMessageRole(data["role"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            type=msg_type,
        )


@dataclass
class CookAlongSession:
    """Everything that belongs to one cooking run. Mutated only by the controller."""

    recipe: Recipe
    current_step_index: int = 0
    is_paused: bool = False
    is_completed: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    active_timers: list[StepTimer] = field(default_factory=list)
    conversation_history: list[ChatMessage] = field(default_factory=list)
    checked_ingredients: set[str] = field(default_factory=set)

    @property
    def total_steps(self) -> int:
        return len(self.recipe.instructions)

    @property
    def current_step(self) -> Optional[InstructionStep]:
        if 0 <= self.current_step_index < self.total_steps:
            return self.recipe.instructions[self.current_step_index]
        return None

    @property
    def has_next_step(self) -> bool:
        return self.current_step_index < self.total_steps - 1

    @property
    def has_previous_step(self) -> bool:
        return self.current_step_index > 0

    @property
    def progress(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return (self.current_step_index + 1) / self.total_steps

    @property
    def running_timers(self) -> list[StepTimer]:
        return [t for t in self.active_timers if t.status == TimerStatus.RUNNING]

    @property
    def paused_timers(self) -> list[StepTimer]:
        return [t for t in self.active_timers if t.status == TimerStatus.PAUSED]

    def find_timer(self, timer_id: str) -> Optional[StepTimer]:
        return next((t for t in self.active_timers if t.id == timer_id), None)

    def add_message(
        self,
        content: str,
        role: ChatMessageRole,
        type: ChatMessageType = ChatMessageType.TEXT,
    ) -> ChatMessage:
        message = ChatMessage(content=content, role=role, type=type)
        self.conversation_history.append(message)
        return message
