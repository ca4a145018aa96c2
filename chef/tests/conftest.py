import pytest

from core.events import EventBus


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded(bus):
    """Every event published on ``bus``, in order."""
    events = []
    bus.subscribe(None, events.append)
    return events
