"""Persisted future wake-up events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydurable.models.status import TimerStatus, TimerType

__all__ = ["Timer"]


@dataclass(frozen=True)
class Timer:
    """A wake-up owned by an execution step or by a schedule.

    Immutable: status changes go through the store, which replaces the record.
    """

    id: str
    """Deterministic identifier, e.g. ``sleep:<exec>:<step>`` or ``sched:<schedule>``."""

    type: TimerType
    fire_at: datetime

    execution_id: str | None = None
    step_id: str | None = None
    schedule_id: str | None = None

    status: TimerStatus = TimerStatus.PENDING
    data: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_ready(self, now: datetime) -> bool:
        return self.status is TimerStatus.PENDING and self.fire_at <= now

    def __repr__(self) -> str:
        owner = self.schedule_id or f"{self.execution_id}/{self.step_id}"
        return (
            f"Timer(id={self.id!r}, type={self.type.value}, owner={owner}, "
            f"fire_at={self.fire_at.isoformat()}, status={self.status.value})"
        )
