"""In-process event buses."""

from __future__ import annotations

import inspect
import logging

from pydurable.bus.base import EventBus, EventHandler
from pydurable.models import BusEvent

logger = logging.getLogger(__name__)


class InMemoryEventBus(EventBus):
    """Delivers events to handlers subscribed in this process.

    A handler that raises is logged and skipped; other handlers still run.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = {}

    def __repr__(self) -> str:
        return f"InMemoryEventBus(channels={len(self._handlers)})"

    async def publish(self, channel: str, event: BusEvent) -> None:
        for handler in list(self._handlers.get(channel, ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event handler on {channel} failed: {e}")

    async def subscribe(self, channel: str, handler: EventHandler) -> None:
        self._handlers.setdefault(channel, []).append(handler)

    async def unsubscribe(self, channel: str, handler: EventHandler | None = None) -> None:
        if handler is None:
            self._handlers.pop(channel, None)
            return
        handlers = self._handlers.get(channel)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass
        if not handlers:
            del self._handlers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._handlers.get(channel, ()))


class NoopEventBus(EventBus):
    """Drops everything; ``wait()`` falls back to polling."""

    def __repr__(self) -> str:
        return "NoopEventBus"

    async def publish(self, channel: str, event: BusEvent) -> None:
        pass

    async def subscribe(self, channel: str, handler: EventHandler) -> None:
        pass

    async def unsubscribe(self, channel: str, handler: EventHandler | None = None) -> None:
        pass
