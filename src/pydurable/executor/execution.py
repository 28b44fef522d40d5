"""
Execution lifecycle: start, kickoff, attempts, retries, cancellation, recovery.

Design Pattern: Template Method
Every attempt follows the same sequence: load, lock, mark running, run the
task under a fresh DurableContext, then translate the outcome (result,
suspension, compensation failure, cancellation, error) into a status write.
Only the last step varies with the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from uuid_extensions import uuid7

from pydurable.bus.base import EventBus, execution_channel
from pydurable.config import DurableConfig
from pydurable.core.audit import AuditLogger
from pydurable.core.context import EXECUTION_CONTEXT, DurableContext
from pydurable.core.errors import (
    CompensationFailedError,
    DurableError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    LockAcquisitionError,
)
from pydurable.core.locking import hold_lock
from pydurable.core.outcome import SuspendReason, _SuspendExecution
from pydurable.executor.registry import DirectTaskExecutor, DurableTask, TaskExecutor, TaskRegistry
from pydurable.models import (
    AuditEntryKind,
    BusEvent,
    ErrorInfo,
    Execution,
    ExecutionStatus,
    MessageType,
    Timer,
    TimerType,
)
from pydurable.queue.base import DurableQueue, QueueError
from pydurable.storage.base import DurableStore, IdempotencyStore, LockProvider, StorageError

logger = logging.getLogger(__name__)


def kickoff_timer_id(execution_id: str) -> str:
    return f"kickoff:{execution_id}"


def timeout_timer_id(execution_id: str) -> str:
    return f"timeout:{execution_id}"


class ExecutionManager:
    """
    Owns the lifecycle of executions.

    Without a queue, ``start`` and ``resume`` run the attempt inline in the
    caller's task. With a queue they enqueue a hint and return; a
    QueueWorker calls ``process_execution`` later.
    """

    def __init__(
        self,
        store: DurableStore,
        registry: TaskRegistry,
        *,
        queue: DurableQueue | None = None,
        bus: EventBus | None = None,
        task_executor: TaskExecutor | None = None,
        audit: AuditLogger | None = None,
        config: DurableConfig | None = None,
    ):
        self.store = store
        self.registry = registry
        self.queue = queue
        self.bus = bus
        self.task_executor = task_executor or DirectTaskExecutor()
        self.config = config or DurableConfig()
        self.audit = audit or AuditLogger(store, enabled=self.config.audit_enabled)

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def _resolve_task(self, task: DurableTask | str) -> DurableTask:
        if isinstance(task, str):
            resolved = self.registry.get(task)
            if resolved is None:
                raise DurableError(f"Task not registered: {task}")
            return resolved
        return self.registry.register(task)

    async def start(
        self,
        task: DurableTask | str,
        input: Any = None,
        *,
        idempotency_key: str | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        """
        Create a pending execution and kick it off.

        With ``idempotency_key``, concurrent starts of the same task with the
        same key collapse to one execution and all return its id.

        Returns:
            The execution id.
        """
        task = self._resolve_task(task)

        if idempotency_key is None:
            execution = await self._create_execution(task.id, input, timeout_ms)
            await self._kickoff_with_failsafe(execution.id)
            return execution.id

        if not isinstance(self.store, IdempotencyStore):
            raise DurableError(
                f"{type(self.store).__name__} does not support idempotency keys; implement "
                "get_execution_id_by_idempotency_key/set_execution_id_by_idempotency_key"
            )

        async with hold_lock(self.store, f"idempotency:{task.id}:{idempotency_key}", 10_000):
            existing = await self.store.get_execution_id_by_idempotency_key(
                task.id, idempotency_key
            )
            if existing is not None:
                logger.debug(f"Idempotency key {idempotency_key!r} maps to execution {existing}")
                return existing

            execution_id = str(uuid7())
            reserved = await self.store.set_execution_id_by_idempotency_key(
                task.id, idempotency_key, execution_id
            )
            if not reserved:
                raced = await self.store.get_execution_id_by_idempotency_key(
                    task.id, idempotency_key
                )
                if raced is None:
                    raise DurableError(
                        "Failed to reserve idempotency key but no existing mapping found"
                    )
                return raced

            await self._create_execution(
                task.id, input, timeout_ms, execution_id=execution_id, idempotency_key=idempotency_key
            )

        await self._kickoff_with_failsafe(execution_id)
        return execution_id

    async def _create_execution(
        self,
        task_id: str,
        input: Any,
        timeout_ms: int | None,
        *,
        execution_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> Execution:
        execution = Execution(
            id=execution_id or str(uuid7()),
            task_id=task_id,
            input=input,
            max_attempts=self.config.execution.max_attempts,
            timeout_ms=timeout_ms if timeout_ms is not None else self.config.execution.timeout_ms,
            idempotency_key=idempotency_key,
        )
        await self.store.save_execution(execution)
        await self.audit.record(
            execution.id,
            AuditEntryKind.EXECUTION_STATUS_CHANGED,
            {"from": None, "to": ExecutionStatus.PENDING.value, "reason": "created"},
            task_id=task_id,
            attempt=execution.attempt,
        )

        deadline = execution.deadline()
        if deadline is not None:
            await self.store.create_timer(
                Timer(
                    id=timeout_timer_id(execution.id),
                    type=TimerType.TIMEOUT,
                    fire_at=deadline,
                    execution_id=execution.id,
                )
            )
        logger.info(f"Created execution {execution.id} of task {task_id}")
        return execution

    async def _kickoff_with_failsafe(self, execution_id: str) -> None:
        """Kick off, guarded by a retry timer that survives a failed enqueue."""
        delay_ms = self.config.execution.kickoff_failsafe_delay_ms
        if self.queue is None or delay_ms <= 0:
            await self.kickoff(execution_id)
            return

        timer_id = kickoff_timer_id(execution_id)
        await self.store.create_timer(
            Timer(
                id=timer_id,
                type=TimerType.RETRY,
                fire_at=datetime.now(UTC) + timedelta(milliseconds=delay_ms),
                execution_id=execution_id,
            )
        )
        # An enqueue failure propagates and leaves the timer for the poller
        await self.kickoff(execution_id)
        try:
            await self.store.delete_timer(timer_id)
        except Exception as e:
            logger.warning(f"Failed to delete kickoff timer {timer_id}: {e}")

    async def kickoff(self, execution_id: str) -> None:
        await self._submit(MessageType.EXECUTE, execution_id)

    async def resume(self, execution_id: str) -> None:
        await self._submit(MessageType.RESUME, execution_id)

    async def _submit(self, message_type: MessageType, execution_id: str) -> None:
        if self.queue is not None:
            await self.queue.enqueue(
                message_type,
                {"execution_id": execution_id},
                max_attempts=self.config.execution.max_attempts,
            )
            return
        await self.process_execution(execution_id)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def process_execution(self, execution_id: str) -> None:
        """
        Advance an execution by one attempt if it is not terminal.

        Safe to call repeatedly and concurrently: terminal executions are
        skipped, and the per-execution lock (when the store has locks) lets
        only one caller run an attempt at a time.
        """
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            logger.warning(f"process_execution: execution {execution_id} not found")
            return
        if execution.is_terminal:
            logger.debug(f"Execution {execution_id} already {execution.status}; skipping")
            return

        task = self.registry.get(execution.task_id)
        if task is None:
            logger.error(f"Execution {execution_id}: task not registered: {execution.task_id}")
            failed = await self.store.update_execution(
                execution_id,
                {
                    "status": ExecutionStatus.FAILED,
                    "error": ErrorInfo(message=f"Task not registered: {execution.task_id}"),
                    "completed_at": datetime.now(UTC),
                },
            )
            if failed is not None:
                await self.notify_finished(failed)
            return

        if not isinstance(self.store, LockProvider):
            reason = await self._run_attempt(execution, task)
        else:
            resource = f"execution:{execution_id}"
            lock_id = await self.store.acquire_lock(resource, self.config.execution.lock_ttl_ms)
            if lock_id is None:
                logger.debug(f"Execution {execution_id} is locked by another worker; skipping")
                return
            try:
                # Re-read under the lock; another worker may have advanced it
                execution = await self.store.get_execution(execution_id)
                if execution is None or execution.is_terminal:
                    return
                reason = await self._run_attempt(execution, task)
            finally:
                await self.store.release_lock(resource, lock_id)

        # Resumes arriving while the lock was held were skipped
        if reason is not None and await self._is_resolved(reason):
            logger.debug(f"Execution {execution_id}: {reason.step_id} resolved while suspending")
            await self.process_execution(execution_id)

    async def _is_resolved(self, reason: SuspendReason) -> bool:
        step = await self.store.get_step_result(reason.execution_id, reason.step_id)
        return step is not None and step.state() in ("completed", "timed_out")

    async def _is_cancelled(self, execution_id: str) -> bool:
        current = await self.store.get_execution(execution_id)
        return current is not None and current.status is ExecutionStatus.CANCELLED

    async def _transition(
        self,
        execution: Execution,
        status: ExecutionStatus,
        reason: str,
        **changes: Any,
    ) -> Execution | None:
        updated = await self.store.update_execution(execution.id, {"status": status, **changes})
        if updated is None:
            return None
        await self.audit.record(
            execution.id,
            AuditEntryKind.EXECUTION_STATUS_CHANGED,
            {"from": execution.status.value, "to": status.value, "reason": reason},
            task_id=execution.task_id,
            attempt=updated.attempt,
        )
        return updated

    async def _run_attempt(self, execution: Execution, task: DurableTask) -> SuspendReason | None:
        """Run one attempt. Returns the suspension reason if the attempt suspended."""
        if await self._is_cancelled(execution.id):
            return

        running = await self._transition(execution, ExecutionStatus.RUNNING, "start_attempt")
        if running is None:
            return
        logger.info(
            f"Execution {execution.id}: attempt {running.attempt}/{running.max_attempts} "
            f"of task {task.id}"
        )

        ctx = DurableContext(
            self.store,
            execution.id,
            task_id=execution.task_id,
            attempt=running.attempt,
            bus=self.bus,
            audit=self.audit,
            implicit_step_ids=self.config.implicit_step_ids,
        )
        token = EXECUTION_CONTEXT.set(ctx)
        try:
            result = await self._invoke(running, task)
        except _SuspendExecution as suspension:
            if await self._is_cancelled(execution.id):
                return
            sleeping = await self._transition(running, ExecutionStatus.SLEEPING, "suspended")
            if sleeping is None:
                return None
            logger.info(f"Execution {execution.id} suspended: {suspension.reason}")
            return suspension.reason
        except CompensationFailedError as e:
            logger.error(f"Execution {execution.id}: {e}")
            current = await self.store.get_execution(execution.id)
            if current is not None:
                await self.notify_finished(current)
            return
        except ExecutionCancelledError:
            logger.info(f"Execution {execution.id} observed cancellation at a checkpoint")
            return
        except (StorageError, LockAcquisitionError, QueueError) as e:
            # Infrastructure failures leave the status alone; the caller redelivers
            logger.warning(
                f"Execution {execution.id}: attempt {running.attempt} interrupted by "
                f"{type(e).__name__}: {e}"
            )
            raise
        except Exception as e:
            await self._handle_failure(running, e)
            return
        finally:
            EXECUTION_CONTEXT.reset(token)

        completed = await self._transition(
            running,
            ExecutionStatus.COMPLETED,
            "completed",
            result=result,
            error=None,
            completed_at=datetime.now(UTC),
        )
        if completed is None:
            logger.info(f"Execution {execution.id} finished but was cancelled meanwhile")
            return
        logger.info(f"Execution {execution.id} completed")
        await self._finish(completed)

    async def _invoke(self, execution: Execution, task: DurableTask) -> Any:
        deadline = execution.deadline()
        if deadline is None:
            return await self.task_executor.run(task, execution.input)

        remaining = (deadline - datetime.now(UTC)).total_seconds()
        if remaining <= 0:
            raise ExecutionTimeoutError(f"Execution {execution.id} timed out")
        try:
            return await asyncio.wait_for(
                self.task_executor.run(task, execution.input), timeout=remaining
            )
        except TimeoutError as e:
            if datetime.now(UTC) >= deadline:
                raise ExecutionTimeoutError(f"Execution {execution.id} timed out") from e
            raise

    async def _handle_failure(self, execution: Execution, error: Exception) -> None:
        if await self._is_cancelled(execution.id):
            return

        error_info = ErrorInfo.from_exception(error)
        final = (
            isinstance(error, ExecutionTimeoutError)
            or execution.attempt >= execution.max_attempts
        )
        if final:
            failed = await self._transition(
                execution,
                ExecutionStatus.FAILED,
                "failed",
                error=error_info,
                completed_at=datetime.now(UTC),
            )
            logger.error(
                f"Execution {execution.id} failed after {execution.attempt} attempt(s): "
                f"{error_info.message}"
            )
            if failed is not None:
                await self._finish(failed)
            return

        delay_ms = self.config.execution.retry_base_delay_ms * 2**execution.attempt
        await self.store.create_timer(
            Timer(
                id=f"retry:{execution.id}:{execution.attempt}",
                type=TimerType.RETRY,
                fire_at=datetime.now(UTC) + timedelta(milliseconds=delay_ms),
                execution_id=execution.id,
            )
        )
        await self._transition(
            execution,
            ExecutionStatus.RETRYING,
            "retry_scheduled",
            attempt=execution.attempt + 1,
            error=error_info,
        )
        logger.warning(
            f"Execution {execution.id} attempt {execution.attempt} failed, "
            f"retrying in {delay_ms}ms: {error_info.message}"
        )

    async def _finish(self, execution: Execution) -> None:
        if execution.timeout_ms is not None:
            try:
                await self.store.delete_timer(timeout_timer_id(execution.id))
            except Exception as e:
                logger.warning(f"Failed to delete timeout timer of {execution.id}: {e}")
        await self.notify_finished(execution)

    async def notify_finished(self, execution: Execution) -> None:
        """Publish ``finished`` on the execution's channel. Best-effort."""
        if self.bus is None:
            return
        try:
            await self.bus.publish(
                execution_channel(execution.id),
                BusEvent(
                    type="finished",
                    payload={"execution_id": execution.id, "status": execution.status.value},
                ),
            )
        except Exception as e:
            logger.warning(f"Failed to publish completion of {execution.id}: {e}")

    # ------------------------------------------------------------------
    # Cancellation and recovery
    # ------------------------------------------------------------------

    async def cancel_execution(self, execution_id: str, reason: str | None = None) -> bool:
        """
        Cooperatively cancel an execution.

        Code running between checkpoints is not interrupted; it observes the
        cancellation at its next checkpoint.

        Returns:
            True if this call cancelled the execution.
        """
        execution = await self.store.get_execution(execution_id)
        if execution is None or execution.is_terminal:
            return False

        now = datetime.now(UTC)
        cancelled = await self._transition(
            execution,
            ExecutionStatus.CANCELLED,
            "cancelled",
            cancelled_at=now,
            completed_at=now,
            error=ErrorInfo(message=reason or "Execution cancelled"),
        )
        if cancelled is None:
            return False
        logger.info(f"Execution {execution_id} cancelled: {reason or 'no reason given'}")
        await self._finish(cancelled)
        return True

    async def recover(self) -> list[str]:
        """
        Resubmit every non-terminal execution.

        Meant to run at process start; replay skips completed steps.

        Returns:
            Ids of the resubmitted executions.
        """
        executions = await self.store.list_incomplete_executions()
        recovered = []
        for execution in executions:
            try:
                await self.resume(execution.id)
            except Exception as e:
                logger.error(f"Failed to recover execution {execution.id}: {e}")
                continue
            recovered.append(execution.id)
        if recovered:
            logger.info(f"Recovered {len(recovered)} execution(s)")
        return recovered
