"""
DurableQueue - at-least-once distribution of execute/resume hints.

The queue is an optimization, not the source of truth. A message may be
delivered twice or lost; the store's memoization and status checks keep
execution correct, and the timer poller and ``recover()`` pick up anything a
lost message left behind.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from pydurable.models import MessageType, QueueMessage

MessageHandler = Callable[[QueueMessage], Awaitable[None]]
"""Consumer callback. It must ack or nack the message it receives."""


class QueueError(Exception):
    """Queue backend failure."""


class DurableQueue(ABC):
    async def init(self) -> None:
        """Open connections and declare queues."""

    async def close(self) -> None:
        """Stop consuming and release resources."""

    @abstractmethod
    async def enqueue(
        self, type: MessageType, payload: dict[str, Any], *, max_attempts: int = 3
    ) -> str:
        """Publish a message. Returns its id."""
        ...

    @abstractmethod
    async def consume(self, handler: MessageHandler) -> None:
        """Start delivering messages to ``handler``. Returns once registered."""
        ...

    @abstractmethod
    async def ack(self, message_id: str) -> None: ...

    @abstractmethod
    async def nack(self, message_id: str, *, requeue: bool = True) -> None:
        """Reject a delivery; requeue it or move it to the dead-letter store."""
        ...
