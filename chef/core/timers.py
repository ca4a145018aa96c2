import asyncio
import re
from typing import Optional

from loguru import logger

from core.events import EventBus, EventType
from core.session import StepTimer, TimerStatus

# "10 minutes", "1 hr", "20 to 25 mins", "30sec"
DURATION_PATTERN = re.compile(
    r"(\d+)\s*(?:to\s*\d+\s*)?(hours?|hrs?|minutes?|mins?|seconds?|secs?)\b",
    re.IGNORECASE,
)

_UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}

# Verb that best names what is being timed, checked in order
_TIMED_ACTIONS = ["simmer", "bake", "cook", "boil", "rest", "chill", "marinate"]


def detect_timer_duration(text: str) -> Optional[int]:
    """Find the first duration mentioned in a step.

    Ranges ("20 to 25 minutes") use the lower bound.

    Returns:
        Duration in seconds, or None if the step mentions no time.
    """
    if not text:
        return None
    match = DURATION_PATTERN.search(text)
    if match is None:
        return None
    value = int(match.group(1))
    unit = match.group(2).lower()[0]
    return value * _UNIT_SECONDS.get(unit, 60)


def format_duration(seconds: float) -> str:
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours} hour{'s' if hours > 1 else ''}")
    if minutes:
        parts.append(f"{minutes} minute{'s' if minutes > 1 else ''}")
    if secs or not parts:
        parts.append(f"{secs} second{'s' if secs != 1 else ''}")
    return " ".join(parts)


def describe_timer(text: str, seconds: float) -> str:
    time_str = format_duration(seconds)
    lower = text.lower()
    for action in _TIMED_ACTIONS:
        if action in lower:
            return f"{action.capitalize()} for {time_str}"
    return f"Timer: {time_str}"


class StepTimerRegistry:
    """Runs any number of step timers side by side.

    Each timer gets its own asyncio task that wakes every ``tick_interval``
    seconds. A wake-up on a running timer publishes TIMER_TICK with the
    remaining time; when that reaches zero the timer is completed and
    TIMER_FINISHED is published. Paused timers are skipped, so the elapsed
    time bookkeeping stays in StepTimer itself.
    """

    def __init__(self, bus: EventBus, tick_interval: float = 1.0):
        self.bus = bus
        self.tick_interval = tick_interval
        self._timers: dict[str, StepTimer] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active_ids(self) -> list[str]:
        return list(self._tasks)

    def get(self, timer_id: str) -> Optional[StepTimer]:
        return self._timers.get(timer_id)

    def start(self, timer: StepTimer) -> None:
        if timer.id in self._tasks:
            return
        self._timers[timer.id] = timer
        self._tasks[timer.id] = asyncio.create_task(self._run(timer), name=f"timer-{timer.id[:8]}")
        logger.info("Timer started: {} ({})", timer.description, format_duration(timer.duration))
        self.bus.publish(EventType.TIMER_STARTED, timer=timer.to_dict())

    async def _run(self, timer: StepTimer) -> None:
        try:
            while True:
                await asyncio.sleep(self.tick_interval)
                if timer.status in (TimerStatus.COMPLETED, TimerStatus.CANCELLED):
                    break
                if timer.status != TimerStatus.RUNNING:
                    continue

                remaining = timer.remaining
                self.bus.publish(EventType.TIMER_TICK, timer_id=timer.id, remaining=remaining)
                if remaining <= 0:
                    timer.complete()
                    logger.info("Timer completed: {}", timer.description)
                    self.bus.publish(EventType.TIMER_FINISHED, timer=timer.to_dict())
                    break
        finally:
            self._tasks.pop(timer.id, None)

    def cancel(self, timer_id: str) -> bool:
        timer = self._timers.pop(timer_id, None)
        task = self._tasks.pop(timer_id, None)
        if timer is not None and timer.status in (TimerStatus.RUNNING, TimerStatus.PAUSED):
            timer.cancel()
        if task is not None:
            task.cancel()
            logger.info("Timer cancelled: {}", timer_id)
        return timer is not None

    def cancel_all(self) -> None:
        ids = list(self._timers)
        for timer_id in ids:
            self.cancel(timer_id)
        if ids:
            logger.info("All timers cancelled ({})", len(ids))
