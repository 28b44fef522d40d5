"""
DurableStore - abstract interface for storage backends.

Design Pattern: Adapter Pattern
DurableStore defines the target interface every backend adapts to. The
orchestrator, the context and the operator layer depend on this abstraction
only, so the in-memory store used by tests and a production backend are
interchangeable.

Design Principle: Interface Segregation
The ABC holds what every backend must provide (CRUD for executions, step
results, timers and schedules). Capabilities a production backend should add
(atomic timer claims, idempotency reservations, locks, dashboard queries,
audit and operator actions) are separate ``@runtime_checkable`` protocols the
engine checks with ``isinstance``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import fields, replace
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from pydurable.models import (
    AuditEntry,
    Execution,
    ExecutionStatus,
    Schedule,
    StepResult,
    Timer,
)

__all__ = [
    "AuditStore",
    "DurableStore",
    "ExecutionQueryStore",
    "IdempotencyStore",
    "LockProvider",
    "OperatorStore",
    "StorageError",
    "TimerClaimer",
    "TimerNotificationSource",
    "merge_execution_changes",
]


_EXECUTION_FIELDS = frozenset(f.name for f in fields(Execution)) - {"id", "updated_at"}


class StorageError(Exception):
    """
    Backend failure (connection, serialization, integrity).

    Raised for transport-level problems. The engine never marks an execution
    terminal because of a StorageError alone; the worker nacks and the message
    is redelivered.
    """


class DurableStore(ABC):
    """
    Abstract persistence for executions, step results, timers and schedules.

    The store is the single source of truth. Implementations must make
    ``update_execution``, ``save_step_result_if_absent`` and
    ``create_schedule`` atomic with respect to concurrent callers.
    """

    async def init(self) -> None:
        """Prepare the backend (open connections, create schema)."""

    async def close(self) -> None:
        """Release backend resources."""

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_execution(self, execution: Execution) -> None:
        """Insert or replace an execution record."""
        ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None: ...

    @abstractmethod
    async def update_execution(
        self,
        execution_id: str,
        changes: dict[str, Any],
        *,
        allow_terminal_revert: bool = False,
    ) -> Execution | None:
        """
        Atomically merge ``changes`` into an execution.

        ``updated_at`` is refreshed on every successful write. A status change
        that would move a terminal execution to a different status is refused
        (returns None and writes nothing) unless ``allow_terminal_revert`` is
        set, which only the operator layer does.

        Returns:
            The updated execution, or None when it does not exist or the
            write was refused.
        """
        ...

    @abstractmethod
    async def list_incomplete_executions(self) -> list[Execution]:
        """Executions whose status is not terminal."""
        ...

    # ------------------------------------------------------------------
    # Step results
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_step_result(self, execution_id: str, step_id: str) -> StepResult | None: ...

    @abstractmethod
    async def save_step_result(self, result: StepResult) -> None:
        """Insert or overwrite a step result (internal state machines, operator edits)."""
        ...

    @abstractmethod
    async def save_step_result_if_absent(self, result: StepResult) -> bool:
        """
        Write a step result only if none exists for its key.

        Returns:
            True if this call wrote the value, False if another writer won.
        """
        ...

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_timer(self, timer: Timer) -> None:
        """Insert or replace a timer by id."""
        ...

    @abstractmethod
    async def get_timer(self, timer_id: str) -> Timer | None: ...

    @abstractmethod
    async def get_ready_timers(self, now: datetime | None = None) -> list[Timer]:
        """Pending timers with ``fire_at <= now``, oldest first."""
        ...

    @abstractmethod
    async def mark_timer_fired(self, timer_id: str) -> None: ...

    @abstractmethod
    async def delete_timer(self, timer_id: str) -> None: ...

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_schedule(self, schedule: Schedule) -> bool:
        """
        Create a schedule if its id is free.

        Returns:
            True if created, False if a schedule with that id already existed.
        """
        ...

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> Schedule | None: ...

    @abstractmethod
    async def update_schedule(self, schedule_id: str, changes: dict[str, Any]) -> Schedule | None: ...

    @abstractmethod
    async def delete_schedule(self, schedule_id: str) -> None: ...

    @abstractmethod
    async def list_schedules(self) -> list[Schedule]: ...

    async def list_active_schedules(self) -> list[Schedule]:
        return [s for s in await self.list_schedules() if s.is_active]


# =============================================================================
# Optional capabilities
# =============================================================================


@runtime_checkable
class TimerClaimer(Protocol):
    """
    Atomic, TTL-bounded timer claims.

    Required when more than one poller runs against the same store, so that
    exactly one poller acts on each ready timer. A claim expires after
    ``ttl_ms`` so a crashed poller does not strand the timer.
    """

    async def claim_timer(self, timer_id: str, worker_id: str, ttl_ms: int) -> bool: ...


@runtime_checkable
class IdempotencyStore(Protocol):
    """Atomic (task_id, key) → execution_id reservations."""

    async def get_execution_id_by_idempotency_key(self, task_id: str, key: str) -> str | None: ...

    async def set_execution_id_by_idempotency_key(
        self, task_id: str, key: str, execution_id: str
    ) -> bool:
        """Reserve the key. Returns False if it was already taken."""
        ...


@runtime_checkable
class LockProvider(Protocol):
    """Named, TTL-bounded locks."""

    async def acquire_lock(self, resource: str, ttl_ms: int) -> str | None:
        """Returns a lock id on success, None if the resource is held."""
        ...

    async def renew_lock(self, resource: str, lock_id: str, ttl_ms: int) -> bool: ...

    async def release_lock(self, resource: str, lock_id: str) -> None: ...


@runtime_checkable
class ExecutionQueryStore(Protocol):
    """Dashboard-facing reads."""

    async def list_executions(
        self,
        *,
        status: ExecutionStatus | None = None,
        task_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Execution]:
        """Filtered executions, newest ``created_at`` first."""
        ...

    async def list_step_results(self, execution_id: str) -> list[StepResult]:
        """Step results of an execution in insertion order."""
        ...


@runtime_checkable
class AuditStore(Protocol):
    """Append-only audit trail."""

    async def append_audit_entry(self, entry: AuditEntry) -> None: ...

    async def list_audit_entries(
        self, execution_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[AuditEntry]: ...


@runtime_checkable
class OperatorStore(Protocol):
    """Administrative writes that bypass normal determinism guarantees."""

    async def retry_rollback(self, execution_id: str) -> Execution | None: ...

    async def skip_step(self, execution_id: str, step_id: str) -> None: ...

    async def force_fail(self, execution_id: str, message: str) -> Execution | None: ...

    async def edit_step_result(self, execution_id: str, step_id: str, result: Any) -> None: ...


@runtime_checkable
class TimerNotificationSource(Protocol):
    """
    Stores that can wake the poller when a timer is created.

    The poller waits on the event with the poll interval as timeout, so
    backends without notifications simply fall back to polling.
    """

    def timer_notify(self) -> asyncio.Event: ...


def merge_execution_changes(
    current: Execution,
    changes: dict[str, Any],
    *,
    allow_terminal_revert: bool = False,
    now: datetime | None = None,
) -> Execution | None:
    """
    Read-merge step shared by backends implementing ``update_execution``.

    Returns the merged execution, or None when the change would move a
    terminal execution to another status without ``allow_terminal_revert``.
    """
    new_status = changes.get("status")
    if new_status is not None:
        new_status = ExecutionStatus(new_status)
        changes = {**changes, "status": new_status}
        if (
            current.status.is_terminal
            and new_status is not current.status
            and not allow_terminal_revert
        ):
            return None
    unknown = set(changes) - _EXECUTION_FIELDS
    if unknown:
        raise StorageError(f"Unknown execution fields: {sorted(unknown)}")
    return replace(current, **changes, updated_at=now or datetime.now(UTC))
