"""Ephemeral queue and bus payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydurable.models.status import MessageType

__all__ = ["BusEvent", "QueueMessage"]


@dataclass
class QueueMessage:
    """A hint telling some worker to advance an execution.

    Losing one never loses correctness: the timer poller and ``recover()``
    resubmit anything left behind.
    """

    id: str
    type: MessageType | str
    payload: dict[str, Any]
    attempts: int = 0
    """Deliveries that ended in a nack so far."""

    max_attempts: int = 3

    def execution_id(self) -> str | None:
        value = self.payload.get("execution_id") if isinstance(self.payload, dict) else None
        return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class BusEvent:
    """Best-effort notification published on the event bus."""

    type: str
    payload: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
