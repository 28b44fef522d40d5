"""
DurableService - the single entry point a host application talks to.

Design Pattern: Facade
The service wires the store, optional queue and bus, task registry, timer
poller, scheduler, signal handler and wait manager together and exposes
the operations applications use. Every collaborator stays reachable as an
attribute for hosts that need finer control.

Example:
    ```python
    store = InMemoryStore()
    async with DurableService(store, tasks=[checkout]) as service:
        execution_id = await service.start(checkout, {"order_id": 42})
        result = await service.wait(execution_id, timeout_ms=5_000)
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydurable.bus.base import EventBus
from pydurable.config import DurableConfig
from pydurable.core.audit import AuditEmitter, AuditLogger
from pydurable.core.ids import SignalId
from pydurable.executor.execution import ExecutionManager
from pydurable.executor.registry import (
    DurableTask,
    TaskExecutor,
    TaskRegistry,
    TaskResolver,
)
from pydurable.executor.scheduler import ScheduleManager
from pydurable.executor.signal import SignalHandler
from pydurable.executor.timer import TimerPoller
from pydurable.executor.wait import WaitManager
from pydurable.executor.worker import QueueWorker, WorkerHandle
from pydurable.models import Schedule
from pydurable.queue.base import DurableQueue
from pydurable.storage.base import DurableStore

logger = logging.getLogger(__name__)


class DurableService:
    """
    Orchestrates durable executions on top of a store.

    Without a queue every start, resume and signal runs the next attempt
    inline in the caller's task; with a queue they enqueue a hint and a
    worker (``start_worker``) does the work.
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        queue: DurableQueue | None = None,
        bus: EventBus | None = None,
        task_executor: TaskExecutor | None = None,
        config: DurableConfig | None = None,
        tasks: Iterable[DurableTask] = (),
        task_resolver: TaskResolver | None = None,
        audit_emitter: AuditEmitter | None = None,
    ):
        self.store = store
        self.queue = queue
        self.bus = bus
        self.config = config or DurableConfig()
        self.registry = TaskRegistry(task_resolver)
        for task in tasks:
            self.registry.register(task)

        self.audit = AuditLogger(store, enabled=self.config.audit_enabled, emitter=audit_emitter)
        self.manager = ExecutionManager(
            store,
            self.registry,
            queue=queue,
            bus=bus,
            task_executor=task_executor,
            audit=self.audit,
            config=self.config,
        )
        self.schedules = ScheduleManager(store, self.registry)
        self.signals = SignalHandler(store, self.manager, self.audit)
        self.waiter = WaitManager(store, bus, poll_interval_ms=self.config.wait_poll_interval_ms)
        self.poller = TimerPoller(store, self.manager, self.schedules, self.audit, self.config)
        self._worker_handle: WorkerHandle | None = None

    def __repr__(self) -> str:
        return (
            f"DurableService(store={type(self.store).__name__}, "
            f"queue={type(self.queue).__name__ if self.queue else None}, "
            f"tasks={self.registry.task_ids()})"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> DurableService:
        await self.store.init()
        if self.config.polling.enabled:
            self.start_polling()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def start_polling(self) -> None:
        self.poller.start()

    async def start_worker(self, worker_id: str | None = None) -> WorkerHandle:
        """Consume the queue in this process. Requires a queue."""
        if self.queue is None:
            raise ValueError("start_worker requires a queue")
        worker = QueueWorker(self.queue, self.manager, worker_id=worker_id or self.config.worker_id)
        self._worker_handle = await worker.start()
        return self._worker_handle

    async def stop(self) -> None:
        """Stop the worker and the poller. The store is left open."""
        if self._worker_handle is not None:
            await self._worker_handle.shutdown()
            self._worker_handle = None
        await self.poller.stop()
        logger.info("Durable service stopped")

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def register_task(self, task: DurableTask) -> DurableTask:
        return self.registry.register(task)

    async def start(
        self,
        task: DurableTask | str,
        input: Any = None,
        *,
        idempotency_key: str | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        return await self.manager.start(
            task, input, idempotency_key=idempotency_key, timeout_ms=timeout_ms
        )

    async def start_and_wait(
        self,
        task: DurableTask | str,
        input: Any = None,
        *,
        idempotency_key: str | None = None,
        timeout_ms: int | None = None,
        wait_timeout_ms: int | None = None,
    ) -> Any:
        execution_id = await self.start(
            task, input, idempotency_key=idempotency_key, timeout_ms=timeout_ms
        )
        return await self.wait(execution_id, timeout_ms=wait_timeout_ms)

    async def wait(
        self,
        execution_id: str,
        *,
        timeout_ms: int | None = None,
        poll_interval_ms: int | None = None,
    ) -> Any:
        return await self.waiter.wait(
            execution_id, timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms
        )

    async def signal(self, execution_id: str, signal: str | SignalId, payload: Any = None) -> str:
        return await self.signals.signal(execution_id, signal, payload)

    async def cancel_execution(self, execution_id: str, reason: str | None = None) -> bool:
        return await self.manager.cancel_execution(execution_id, reason)

    async def recover(self) -> list[str]:
        return await self.manager.recover()

    async def process_execution(self, execution_id: str) -> None:
        await self.manager.process_execution(execution_id)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def schedule(
        self,
        task: DurableTask,
        input: Any = None,
        *,
        id: str | None = None,
        at: datetime | None = None,
        delay_ms: int | None = None,
        cron: str | None = None,
        interval_ms: int | None = None,
    ) -> str:
        return await self.schedules.schedule(
            task, input, id=id, at=at, delay_ms=delay_ms, cron=cron, interval_ms=interval_ms
        )

    async def ensure_schedule(
        self,
        task: DurableTask,
        input: Any = None,
        *,
        id: str,
        cron: str | None = None,
        interval_ms: int | None = None,
    ) -> Schedule:
        return await self.schedules.ensure_schedule(
            task, input, id=id, cron=cron, interval_ms=interval_ms
        )

    async def pause_schedule(self, schedule_id: str) -> Schedule | None:
        return await self.schedules.pause(schedule_id)

    async def resume_schedule(self, schedule_id: str) -> Schedule | None:
        return await self.schedules.resume(schedule_id)

    async def update_schedule(
        self,
        schedule_id: str,
        *,
        cron: str | None = None,
        interval_ms: int | None = None,
        input: Any = ...,
    ) -> Schedule:
        return await self.schedules.update(
            schedule_id, cron=cron, interval_ms=interval_ms, input=input
        )

    async def remove_schedule(self, schedule_id: str) -> None:
        await self.schedules.remove(schedule_id)

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        return await self.schedules.get(schedule_id)

    async def list_schedules(self) -> list[Schedule]:
        return await self.schedules.list()
