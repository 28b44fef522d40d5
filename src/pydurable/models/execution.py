"""Execution record and its serialized error."""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pydurable.models.status import ExecutionStatus

__all__ = ["ErrorInfo", "Execution"]


@dataclass(frozen=True)
class ErrorInfo:
    """Serialized form of the exception that failed an execution."""

    message: str
    stack: str | None = None
    error_type: str | None = None

    @classmethod
    def from_exception(cls, error: BaseException) -> ErrorInfo:
        return cls(
            message=str(error) or type(error).__name__,
            stack="".join(traceback.format_exception(error)),
            error_type=type(error).__name__,
        )


@dataclass
class Execution:
    """One run (including retries) of a durable workflow.

    Owned by the store; the orchestrator mutates it only through
    ``DurableStore.update_execution`` so concurrent writers merge safely.
    """

    id: str
    """Execution identifier (UUIDv7)."""

    task_id: str
    """Identifier of the task this execution runs."""

    input: Any = None
    """Input passed to the task on every attempt."""

    status: ExecutionStatus = ExecutionStatus.PENDING

    result: Any = None
    """Task return value once completed."""

    error: ErrorInfo | None = None
    """Last failure, kept while retrying and once failed."""

    attempt: int = 1
    max_attempts: int = 3

    timeout_ms: int | None = None
    """Execution-level timeout measured from ``created_at``."""

    idempotency_key: str | None = None

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def deadline(self) -> datetime | None:
        """Absolute time after which the execution counts as timed out."""
        if self.timeout_ms is None:
            return None
        return self.created_at + timedelta(milliseconds=self.timeout_ms)

    def __repr__(self) -> str:
        return (
            f"Execution(id={self.id!r}, task_id={self.task_id!r}, "
            f"status={self.status.value}, attempt={self.attempt}/{self.max_attempts})"
        )
