"""In-memory queue with bounded prefetch and a dead-letter list."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from uuid_extensions import uuid7

from pydurable.models import MessageType, QueueMessage
from pydurable.queue.base import DurableQueue, MessageHandler, QueueError

logger = logging.getLogger(__name__)


class InMemoryQueue(DurableQueue):
    """Single-process queue for tests and embedded use.

    Each delivery runs the handler in its own task; at most ``prefetch``
    deliveries are unacknowledged at once. A message nacked with
    ``requeue=True`` is redelivered until its ``attempts`` reach
    ``max_attempts``, after which it is dead-lettered like a message nacked
    with ``requeue=False``.

    Usage:
        queue = InMemoryQueue(prefetch=4)
        await queue.consume(handler)
        await queue.enqueue(MessageType.EXECUTE, {"execution_id": "..."})
    """

    def __init__(self, prefetch: int = 1):
        if prefetch < 1:
            raise ValueError("prefetch must be >= 1")
        self._pending: asyncio.Queue[QueueMessage] = asyncio.Queue()
        self._in_flight: dict[str, QueueMessage] = {}
        self._slots = asyncio.Semaphore(prefetch)
        self._handler: MessageHandler | None = None
        self._dispatcher: asyncio.Task | None = None
        self._deliveries: set[asyncio.Task] = set()
        self.dead_letters: list[QueueMessage] = []

    def __repr__(self) -> str:
        return f"InMemoryQueue(pending={self._pending.qsize()}, in_flight={len(self._in_flight)})"

    async def enqueue(
        self, type: MessageType, payload: dict[str, Any], *, max_attempts: int = 3
    ) -> str:
        message = QueueMessage(
            id=str(uuid7()), type=type, payload=dict(payload), max_attempts=max_attempts
        )
        await self._pending.put(message)
        return message.id

    async def consume(self, handler: MessageHandler) -> None:
        if self._handler is not None:
            raise QueueError("A consumer is already registered")
        self._handler = handler
        self._dispatcher = asyncio.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        while True:
            await self._slots.acquire()
            message = await self._pending.get()
            self._in_flight[message.id] = message
            task = asyncio.create_task(self._deliver(message))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, message: QueueMessage) -> None:
        try:
            await self._handler(message)
        except Exception:
            logger.exception(f"Handler raised for message {message.id}; requeueing")
        else:
            if message.id in self._in_flight:
                logger.warning(f"Handler returned without settling message {message.id}; requeueing")
        finally:
            self._slots.release()
        # An unsettled message counts as a failed delivery
        if message.id in self._in_flight:
            await self.nack(message.id, requeue=True)

    async def ack(self, message_id: str) -> None:
        self._settle(message_id)

    async def nack(self, message_id: str, *, requeue: bool = True) -> None:
        message = self._settle(message_id)
        if message is None:
            return
        message.attempts += 1
        if requeue and message.attempts < message.max_attempts:
            await self._pending.put(message)
        else:
            logger.warning(
                f"Dead-lettering message {message.id} ({message.type}) "
                f"after {message.attempts} attempt(s)"
            )
            self.dead_letters.append(message)

    def _settle(self, message_id: str) -> QueueMessage | None:
        return self._in_flight.pop(message_id, None)

    async def join(self) -> None:
        """Wait until the queue is drained and no delivery is running."""
        while self._pending.qsize() or self._deliveries:
            await asyncio.sleep(0.005)

    async def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        for task in list(self._deliveries):
            task.cancel()
        await asyncio.gather(*self._deliveries, return_exceptions=True)
        self._handler = None
