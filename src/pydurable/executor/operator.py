"""
Operator surface: inspection and manual intervention.

Reads go through ExecutionQueryStore and AuditStore; writes go through
OperatorStore and bypass the normal determinism guarantees, which is why
every write is recorded in the audit trail as an ``operator_action``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydurable.core.audit import AuditLogger
from pydurable.core.errors import DurableError
from pydurable.executor.execution import ExecutionManager
from pydurable.models import AuditEntry, AuditEntryKind, Execution, ExecutionStatus, StepResult
from pydurable.storage.base import AuditStore, DurableStore, ExecutionQueryStore, OperatorStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionDetail:
    execution: Execution
    steps: list[StepResult] = field(default_factory=list)
    audit: list[AuditEntry] = field(default_factory=list)


class DurableOperator:
    """
    Inspect executions and repair stuck or failed ones.

    Usage:
        operator = DurableOperator(store, manager=service.manager)
        detail = await operator.get_execution_detail(execution_id)
        await operator.skip_step(execution_id, "send-email", actor="alice")
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        audit: AuditLogger | None = None,
        manager: ExecutionManager | None = None,
    ):
        self.store = store
        self.audit = audit or AuditLogger(store)
        self.manager = manager

    def _require(self, capability: type, method: str) -> Any:
        if not isinstance(self.store, capability):
            raise DurableError(
                f"{type(self.store).__name__} does not implement {method}() "
                f"({capability.__name__})"
            )
        return self.store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_executions(
        self,
        *,
        status: ExecutionStatus | None = None,
        task_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Execution]:
        store = self._require(ExecutionQueryStore, "list_executions")
        return await store.list_executions(
            status=status, task_id=task_id, limit=limit, offset=offset
        )

    async def get_execution_detail(self, execution_id: str) -> ExecutionDetail | None:
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            return None
        store = self._require(ExecutionQueryStore, "list_step_results")
        detail = ExecutionDetail(execution, await store.list_step_results(execution_id))
        if isinstance(self.store, AuditStore):
            detail.audit = await self.store.list_audit_entries(execution_id)
        return detail

    async def list_stuck_executions(self, limit: int = 100) -> list[Execution]:
        """Executions whose rollback failed and need an operator."""
        store = self._require(ExecutionQueryStore, "list_executions")
        return await store.list_executions(
            status=ExecutionStatus.COMPENSATION_FAILED, limit=limit
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _record(
        self,
        execution_id: str,
        action: str,
        actor: str | None,
        step_id: str | None = None,
        **data: Any,
    ) -> None:
        logger.warning(
            f"Operator action {action} on {execution_id}"
            + (f" step {step_id}" if step_id else "")
            + (f" by {actor}" if actor else "")
        )
        await self.audit.record(
            execution_id,
            AuditEntryKind.OPERATOR_ACTION,
            {"action": action, "actor": actor, **data},
            step_id=step_id,
        )

    async def retry_rollback(self, execution_id: str, *, actor: str | None = None) -> Execution:
        """
        Move a ``compensation_failed`` execution back to pending and re-run it.

        Compensations that already succeeded are memoized and not repeated.
        """
        store = self._require(OperatorStore, "retry_rollback")
        current = await self.store.get_execution(execution_id)
        if current is None:
            raise DurableError(f"Execution {execution_id} not found")
        if current.status is not ExecutionStatus.COMPENSATION_FAILED:
            raise DurableError(
                f"Execution {execution_id} is {current.status}, not compensation_failed"
            )
        updated = await store.retry_rollback(execution_id)
        await self._record(execution_id, "retry_rollback", actor)
        if self.manager is not None:
            await self.manager.kickoff(execution_id)
        return updated

    async def skip_step(self, execution_id: str, step_id: str, *, actor: str | None = None) -> None:
        """Record ``step_id`` as done so replay no longer runs it."""
        store = self._require(OperatorStore, "skip_step")
        await store.skip_step(execution_id, step_id)
        await self._record(execution_id, "skip_step", actor, step_id=step_id)

    async def force_fail(
        self, execution_id: str, message: str, *, actor: str | None = None
    ) -> Execution:
        store = self._require(OperatorStore, "force_fail")
        updated = await store.force_fail(execution_id, message)
        if updated is None:
            raise DurableError(f"Execution {execution_id} not found")
        await self._record(execution_id, "force_fail", actor, message=message)
        if self.manager is not None:
            await self.manager.notify_finished(updated)
        return updated

    async def edit_step_result(
        self, execution_id: str, step_id: str, result: Any, *, actor: str | None = None
    ) -> None:
        store = self._require(OperatorStore, "edit_step_result")
        previous = await self.store.get_step_result(execution_id, step_id)
        await store.edit_step_result(execution_id, step_id, result)
        await self._record(
            execution_id,
            "edit_step_result",
            actor,
            step_id=step_id,
            had_previous=previous is not None,
        )
