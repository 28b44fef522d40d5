"""Event bus contract and in-process implementations."""

from pydurable.bus.base import EVENTS_CHANNEL, EventBus, EventHandler, execution_channel
from pydurable.bus.memory import InMemoryEventBus, NoopEventBus

__all__ = [
    "EVENTS_CHANNEL",
    "EventBus",
    "EventHandler",
    "InMemoryEventBus",
    "NoopEventBus",
    "execution_channel",
]
