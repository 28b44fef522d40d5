"""Typed identifiers for signals and steps.

A plain string works everywhere an id is accepted. The typed wrappers only
carry a payload type for type checkers; both resolve to the same runtime key.

Example:
    ```python
    Shipped: SignalId[ShipmentInfo] = SignalId("shipped")

    info = await ctx.wait_for_signal(Shipped)      # typed as ShipmentInfo
    await service.signal(execution_id, "shipped", info)  # same slot
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

__all__ = ["SignalId", "StepId", "resolve_id"]

T = TypeVar("T")


@dataclass(frozen=True)
class SignalId(Generic[T]):
    id: str

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class StepId(Generic[T]):
    id: str

    def __str__(self) -> str:
        return self.id


def resolve_id(value: str | SignalId | StepId) -> str:
    """Runtime key for a plain or typed identifier."""
    if isinstance(value, SignalId | StepId):
        key = value.id
    else:
        key = value
    if not isinstance(key, str) or not key:
        raise ValueError(f"identifier must be a non-empty string, got {value!r}")
    return key
