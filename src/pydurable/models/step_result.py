"""Memoized step outcome."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = ["StepResult"]


@dataclass(frozen=True)
class StepResult:
    """Record that a step already happened, keyed by (execution_id, step_id).

    User steps are written once (first writer wins). Internal steps such as
    ``__sleep:*`` and ``__signal:*`` carry a small state dict that moves
    forward (``sleeping`` → ``completed``, ``waiting`` → ``completed``).
    """

    execution_id: str
    step_id: str
    result: Any = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def state(self) -> str | None:
        """State marker of an internal step result, if it carries one."""
        if isinstance(self.result, dict):
            value = self.result.get("state")
            return value if isinstance(value, str) else None
        return None
