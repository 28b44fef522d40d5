"""Recurring and one-shot schedule definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydurable.models.status import ScheduleStatus, ScheduleType

__all__ = ["Schedule"]


@dataclass(frozen=True)
class Schedule:
    """A definition that periodically starts new executions of a task.

    The id is a caller-supplied natural key, so repeated boot-time
    ``ensure_schedule`` calls converge on a single record.
    """

    id: str
    task_id: str
    type: ScheduleType

    pattern: str | None = None
    """Cron expression for CRON schedules."""

    interval_ms: int | None = None
    """Fixed interval for INTERVAL schedules, measured from kickoff."""

    input: Any = None
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    last_run: datetime | None = None
    next_run: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status is ScheduleStatus.ACTIVE

    def __repr__(self) -> str:
        timing = self.pattern if self.type is ScheduleType.CRON else f"{self.interval_ms}ms"
        return (
            f"Schedule(id={self.id!r}, task_id={self.task_id!r}, "
            f"type={self.type.value}, timing={timing!r}, status={self.status.value})"
        )
