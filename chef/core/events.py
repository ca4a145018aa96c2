import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from loguru import logger


class EventType(str, Enum):
    STATE_CHANGED = "state_changed"
    TRANSCRIPT = "transcript"                # Partial or final recognized text
    AUDIO_LEVEL = "audio_level"
    SPEAKING_STARTED = "speaking_started"
    SPEAKING_FINISHED = "speaking_finished"
    LISTENING_CHANGED = "listening_changed"
    HANDS_FREE_DISABLED = "hands_free_disabled"
    TIMER_STARTED = "timer_started"
    TIMER_TICK = "timer_tick"
    TIMER_FINISHED = "timer_finished"
    MESSAGE_ADDED = "message_added"
    EXIT_REQUESTED = "exit_requested"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> dict:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """In-process publish/subscribe for session events.

    Handlers are registered explicitly and may be plain functions or
    coroutine functions. Coroutine handlers are scheduled as tasks on the
    running loop so a slow subscriber never blocks the publisher. A failing
    handler is logged and does not affect the others.
    """

    def __init__(self):
        self._handlers: dict[EventType, list[Handler]] = {}
        self._wildcard: list[Handler] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType | None, handler: Handler) -> Callable[[], None]:
        """Register a handler. Pass None to receive every event.

        Returns:
            A callable that removes the subscription.
        """
        bucket = self._wildcard if event_type is None else self._handlers.setdefault(event_type, [])
        bucket.append(handler)

        def unsubscribe():
            if handler in bucket:
                bucket.remove(handler)

        return unsubscribe

    def publish(self, event_type: EventType, **data) -> Event:
        event = Event(type=event_type, data=data)
        for handler in [*self._handlers.get(event_type, ()), *self._wildcard]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as e:
                logger.error("Event handler for {} failed: {}", event_type.value, e)
        return event

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event handler failed: {}", task.exception())

    async def drain(self) -> None:
        """Wait for all scheduled async handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
