"""
EventBus - best-effort publish/subscribe.

Used to shorten ``wait()`` latency and to publish workflow ``emit`` events.
Nothing in the engine depends on a bus message arriving.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from pydurable.models import BusEvent

EventHandler = Callable[[BusEvent], Awaitable[None] | None]

EVENTS_CHANNEL = "durable:events"
"""Channel receiving events published by ``DurableContext.emit``."""


def execution_channel(execution_id: str) -> str:
    """Channel on which ``finished`` is published for an execution."""
    return f"execution:{execution_id}"


class EventBus(ABC):
    async def init(self) -> None:
        """Open connections."""

    async def close(self) -> None:
        """Release resources."""

    @abstractmethod
    async def publish(self, channel: str, event: BusEvent) -> None: ...

    @abstractmethod
    async def subscribe(self, channel: str, handler: EventHandler) -> None: ...

    @abstractmethod
    async def unsubscribe(self, channel: str, handler: EventHandler | None = None) -> None:
        """Remove ``handler``, or every handler of the channel when None."""
        ...
