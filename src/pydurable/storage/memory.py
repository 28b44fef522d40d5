"""In-memory store.

Design Pattern: Adapter Pattern
InMemoryStore adapts plain dictionaries to the DurableStore interface and
implements every optional capability, so it is the reference backend for
tests and single-process deployments.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import time
from copy import deepcopy
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from uuid_extensions import uuid7

from pydurable.models import (
    AuditEntry,
    ErrorInfo,
    Execution,
    ExecutionStatus,
    Schedule,
    StepResult,
    Timer,
    TimerStatus,
)
from pydurable.storage.base import DurableStore, StorageError, merge_execution_changes


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class InMemoryStore(DurableStore):
    """In-memory storage for tests and single-process use.

    Can be substituted for SqliteStore without changing client code. Every
    check-then-write runs without an intervening await under ``self._lock``,
    which makes it atomic with respect to other coroutines.

    Records are copied on the way in and out, so callers never share state
    with the store.

    Usage:
        store = InMemoryStore()
        service = DurableService(store)
    """

    def __init__(self):
        self._executions: dict[str, Execution] = {}
        # {execution_id: {step_id: StepResult}}; dicts keep insertion order
        self._steps: dict[str, dict[str, StepResult]] = {}
        self._timers: dict[str, Timer] = {}
        self._schedules: dict[str, Schedule] = {}
        self._idempotency: dict[tuple[str, str], str] = {}
        # {resource: (lock_id, expires_at_monotonic_ms)}
        self._locks: dict[str, tuple[str, int]] = {}
        self._audit: dict[str, list[AuditEntry]] = {}

        self._lock = asyncio.Lock()
        self._timer_notify = asyncio.Event()

    def __repr__(self) -> str:
        return "InMemoryStore"

    def timer_notify(self) -> asyncio.Event:
        return self._timer_notify

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def save_execution(self, execution: Execution) -> None:
        async with self._lock:
            self._executions[execution.id] = deepcopy(execution)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return deepcopy(execution) if execution is not None else None

    async def update_execution(
        self,
        execution_id: str,
        changes: dict[str, Any],
        *,
        allow_terminal_revert: bool = False,
    ) -> Execution | None:
        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                return None
            merged = merge_execution_changes(
                current, changes, allow_terminal_revert=allow_terminal_revert
            )
            if merged is None:
                return None
            self._executions[execution_id] = deepcopy(merged)
            return merged

    async def list_incomplete_executions(self) -> list[Execution]:
        return [deepcopy(e) for e in self._executions.values() if not e.status.is_terminal]

    async def list_executions(
        self,
        *,
        status: ExecutionStatus | None = None,
        task_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Execution]:
        matches = [
            e
            for e in self._executions.values()
            if (status is None or e.status is ExecutionStatus(status))
            and (task_id is None or e.task_id == task_id)
        ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return [deepcopy(e) for e in matches[offset : offset + limit]]

    # ------------------------------------------------------------------
    # Step results
    # ------------------------------------------------------------------

    async def get_step_result(self, execution_id: str, step_id: str) -> StepResult | None:
        return deepcopy(self._steps.get(execution_id, {}).get(step_id))

    async def save_step_result(self, result: StepResult) -> None:
        async with self._lock:
            self._steps.setdefault(result.execution_id, {})[result.step_id] = deepcopy(result)

    async def save_step_result_if_absent(self, result: StepResult) -> bool:
        async with self._lock:
            steps = self._steps.setdefault(result.execution_id, {})
            if result.step_id in steps:
                return False
            steps[result.step_id] = deepcopy(result)
            return True

    async def list_step_results(self, execution_id: str) -> list[StepResult]:
        return deepcopy(list(self._steps.get(execution_id, {}).values()))

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def create_timer(self, timer: Timer) -> None:
        async with self._lock:
            self._timers[timer.id] = deepcopy(timer)
        self._timer_notify.set()

    async def get_timer(self, timer_id: str) -> Timer | None:
        return deepcopy(self._timers.get(timer_id))

    async def get_ready_timers(self, now: datetime | None = None) -> list[Timer]:
        now = now or datetime.now(UTC)
        ready = [t for t in self._timers.values() if t.is_ready(now)]
        ready.sort(key=lambda t: t.fire_at)
        return deepcopy(ready)

    async def mark_timer_fired(self, timer_id: str) -> None:
        async with self._lock:
            timer = self._timers.get(timer_id)
            if timer is not None:
                self._timers[timer_id] = replace(timer, status=TimerStatus.FIRED)

    async def delete_timer(self, timer_id: str) -> None:
        async with self._lock:
            self._timers.pop(timer_id, None)
            self._locks.pop(f"timer:claim:{timer_id}", None)

    async def claim_timer(self, timer_id: str, worker_id: str, ttl_ms: int) -> bool:
        async with self._lock:
            timer = self._timers.get(timer_id)
            if timer is None or timer.status is not TimerStatus.PENDING:
                return False
            return self._try_lock(f"timer:claim:{timer_id}", worker_id, ttl_ms)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def create_schedule(self, schedule: Schedule) -> bool:
        async with self._lock:
            if schedule.id in self._schedules:
                return False
            self._schedules[schedule.id] = deepcopy(schedule)
            return True

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        return deepcopy(self._schedules.get(schedule_id))

    async def update_schedule(self, schedule_id: str, changes: dict[str, Any]) -> Schedule | None:
        async with self._lock:
            current = self._schedules.get(schedule_id)
            if current is None:
                return None
            try:
                updated = replace(current, **changes, updated_at=datetime.now(UTC))
            except TypeError as e:
                raise StorageError(f"Invalid schedule update for {schedule_id}: {e}") from e
            self._schedules[schedule_id] = deepcopy(updated)
            return updated

    async def delete_schedule(self, schedule_id: str) -> None:
        async with self._lock:
            self._schedules.pop(schedule_id, None)

    async def list_schedules(self) -> list[Schedule]:
        return deepcopy(sorted(self._schedules.values(), key=lambda s: s.created_at))

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    async def get_execution_id_by_idempotency_key(self, task_id: str, key: str) -> str | None:
        return self._idempotency.get((task_id, key))

    async def set_execution_id_by_idempotency_key(
        self, task_id: str, key: str, execution_id: str
    ) -> bool:
        async with self._lock:
            if (task_id, key) in self._idempotency:
                return False
            self._idempotency[(task_id, key)] = execution_id
            return True

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def _try_lock(self, resource: str, lock_id: str, ttl_ms: int) -> bool:
        now = _monotonic_ms()
        held = self._locks.get(resource)
        if held is not None and held[1] > now and held[0] != lock_id:
            return False
        self._locks[resource] = (lock_id, now + ttl_ms)
        return True

    async def acquire_lock(self, resource: str, ttl_ms: int) -> str | None:
        lock_id = str(uuid7())
        async with self._lock:
            return lock_id if self._try_lock(resource, lock_id, ttl_ms) else None

    async def renew_lock(self, resource: str, lock_id: str, ttl_ms: int) -> bool:
        async with self._lock:
            held = self._locks.get(resource)
            if held is None or held[0] != lock_id:
                return False
            self._locks[resource] = (lock_id, _monotonic_ms() + ttl_ms)
            return True

    async def release_lock(self, resource: str, lock_id: str) -> None:
        async with self._lock:
            held = self._locks.get(resource)
            if held is not None and held[0] == lock_id:
                del self._locks[resource]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        async with self._lock:
            self._audit.setdefault(entry.execution_id, []).append(entry)

    async def list_audit_entries(
        self, execution_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[AuditEntry]:
        entries = self._audit.get(execution_id, [])
        end = None if limit is None else offset + limit
        return list(entries[offset:end])

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def retry_rollback(self, execution_id: str) -> Execution | None:
        return await self.update_execution(
            execution_id,
            {"status": ExecutionStatus.PENDING, "error": None, "completed_at": None},
            allow_terminal_revert=True,
        )

    async def skip_step(self, execution_id: str, step_id: str) -> None:
        await self.save_step_result(
            StepResult(execution_id, step_id, {"skipped": True, "manual": True})
        )

    async def force_fail(self, execution_id: str, message: str) -> Execution | None:
        return await self.update_execution(
            execution_id,
            {
                "status": ExecutionStatus.FAILED,
                "error": ErrorInfo(message=message),
                "completed_at": datetime.now(UTC),
            },
            allow_terminal_revert=True,
        )

    async def edit_step_result(self, execution_id: str, step_id: str, result: Any) -> None:
        await self.save_step_result(StepResult(execution_id, step_id, result))

    # ------------------------------------------------------------------
    # Testing helpers
    # ------------------------------------------------------------------

    async def reset(self) -> None:
        """Drop all state."""
        async with self._lock:
            self._executions.clear()
            self._steps.clear()
            self._timers.clear()
            self._schedules.clear()
            self._idempotency.clear()
            self._locks.clear()
            self._audit.clear()
