"""Audit trail writer shared by the context, orchestrator and operator."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydurable.models import AuditEntry, AuditEntryKind
from pydurable.storage.base import AuditStore

logger = logging.getLogger(__name__)

AuditEmitter = Callable[[AuditEntry], Awaitable[None] | None]
"""Host hook receiving every entry, e.g. for cold-storage mirroring."""


class AuditLogger:
    """
    Appends audit entries to the store and forwards them to an emitter.

    Persistence happens only when the store implements ``AuditStore``.
    Emitter failures are logged and never affect the execution.
    """

    def __init__(
        self,
        store: object,
        *,
        enabled: bool = True,
        emitter: AuditEmitter | None = None,
    ):
        self._store = store if isinstance(store, AuditStore) else None
        self.enabled = enabled
        self._emitter = emitter

    async def record(
        self,
        execution_id: str,
        kind: AuditEntryKind,
        data: dict[str, Any] | None = None,
        *,
        task_id: str | None = None,
        step_id: str | None = None,
        attempt: int | None = None,
    ) -> AuditEntry | None:
        if not self.enabled:
            return None
        entry = AuditEntry(
            execution_id=execution_id,
            kind=kind,
            data=data or {},
            task_id=task_id,
            step_id=step_id,
            attempt=attempt,
        )
        if self._store is not None:
            await self._store.append_audit_entry(entry)
        if self._emitter is not None:
            try:
                result = self._emitter(entry)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Audit emitter failed for {execution_id} ({kind}): {e}")
        return entry
