"""Append-only audit trail entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from uuid_extensions import uuid7

__all__ = ["AuditEntry", "AuditEntryKind"]


class AuditEntryKind(str, Enum):
    EXECUTION_STATUS_CHANGED = "execution_status_changed"
    STEP_COMPLETED = "step_completed"
    SLEEP_SCHEDULED = "sleep_scheduled"
    SLEEP_COMPLETED = "sleep_completed"
    SIGNAL_WAITING = "signal_waiting"
    SIGNAL_DELIVERED = "signal_delivered"
    SIGNAL_TIMED_OUT = "signal_timed_out"
    EMIT_PUBLISHED = "emit_published"
    SWITCH_EVALUATED = "switch_evaluated"
    NOTE = "note"
    OPERATOR_ACTION = "operator_action"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AuditEntry:
    """One checkpoint-level fact about an execution.

    Ordered by ``id`` (UUIDv7 is time-ordered) within an execution.
    """

    execution_id: str
    kind: AuditEntryKind
    data: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    step_id: str | None = None
    attempt: int | None = None
    id: str = field(default_factory=lambda: str(uuid7()))
    at: datetime = field(default_factory=lambda: datetime.now(UTC))
