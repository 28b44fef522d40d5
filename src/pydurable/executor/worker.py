"""
Queue worker: turns execute/resume hints into execution attempts.

The worker is a thin consumer. Every message names an execution; the
worker asks the ExecutionManager to advance it and acknowledges the
message afterwards. A handler failure nacks the message so the queue can
redeliver it, up to its attempt bound, before dead-lettering it.

Design Pattern: Composition
A WorkerHandle HAS-A worker and the task running it, so callers control
the lifecycle without touching the worker's internals.
"""

from __future__ import annotations

import asyncio
import logging

from uuid_extensions import uuid7

from pydurable.executor.execution import ExecutionManager
from pydurable.executor.timer import TimerPoller
from pydurable.models import MessageType, QueueMessage
from pydurable.queue.base import DurableQueue

logger = logging.getLogger(__name__)


class QueueWorker:
    """
    Consumes a DurableQueue and processes the executions it names.

    Usage:
        worker = QueueWorker(queue, manager).with_timers(poller)
        handle = await worker.start()
        ...
        await handle.shutdown()
    """

    def __init__(
        self,
        queue: DurableQueue,
        manager: ExecutionManager,
        *,
        worker_id: str | None = None,
    ):
        self.queue = queue
        self.manager = manager
        self._worker_id = worker_id or f"worker-{uuid7()}"
        self._poller: TimerPoller | None = None
        self._shutdown_event = asyncio.Event()
        self._running = False

    def with_timers(self, poller: TimerPoller) -> QueueWorker:
        """Also run the given timer poller for as long as the worker runs."""
        self._poller = poller
        return self

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def handle_message(self, message: QueueMessage) -> None:
        """
        Process one delivery and settle it.

        Unknown message types and payloads without an execution id can never
        succeed, so they are acknowledged (dropped) with a warning.
        """
        execution_id = message.execution_id()
        if message.type not in (MessageType.EXECUTE, MessageType.RESUME) or not execution_id:
            logger.warning(f"Dropping unprocessable message {message!r}")
            await self.queue.ack(message.id)
            return

        try:
            await self.manager.process_execution(execution_id)
        except Exception as e:
            logger.error(
                f"Worker {self._worker_id}: processing {execution_id} failed "
                f"(delivery {message.attempts + 1}/{message.max_attempts}): {e}"
            )
            await self.queue.nack(message.id, requeue=True)
            return

        await self.queue.ack(message.id)

    async def start(self) -> WorkerHandle:
        if self._running:
            raise WorkerError(f"Worker {self._worker_id} is already running")
        self._running = True
        self._shutdown_event.clear()
        await self.queue.consume(self.handle_message)
        if self._poller is not None:
            self._poller.start()
        logger.info(f"Worker {self._worker_id} started")
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def _run(self) -> None:
        try:
            await self._shutdown_event.wait()
        finally:
            if self._poller is not None:
                await self._poller.stop()
            await self.queue.close()
            self._running = False
            logger.info(f"Worker {self._worker_id} stopped")

    async def shutdown(self) -> None:
        self._shutdown_event.set()


class WorkerHandle:
    """Handle for controlling a running worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: QueueWorker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self) -> None:
        """Stop consuming, stop the timer poller, and wait for both."""
        await self._worker.shutdown()
        await self._task
        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Cancel the worker task without waiting.

        Deliveries in flight are cancelled; their executions are picked up
        again by redelivery, the timer poller or ``recover()``.
        """
        self._task.cancel()


class WorkerError(Exception):
    """Worker operation failed."""
