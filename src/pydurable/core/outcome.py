"""
Suspension control flow and signal wait outcomes.

Suspension is modeled as an explicit state machine: the persisted execution
status is the continuation marker and resuming re-invokes the workflow from
the top. Inside one attempt, a checkpoint that must wait raises
``_SuspendExecution``; the orchestrator catches it and marks the execution
``sleeping``.

Example:
    ```python
    outcome = await ctx.wait_for_signal("approved", timeout_ms=60_000)

    match outcome:
        case SignalReceived(payload):
            approve(payload)
        case SignalTimedOut():
            escalate()
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Generic, Literal, TypeVar

__all__ = [
    "SignalOutcome",
    "SignalReceived",
    "SignalTimedOut",
    "SuspendReason",
    "_SuspendExecution",
]

T = TypeVar("T")


class _FlowControl(BaseException):
    """
    Base class for control flow signals.

    Like StopIteration and GeneratorExit these are not errors. Deriving from
    BaseException keeps ``except Exception:`` blocks in workflow code from
    swallowing them.
    """


class _SuspendExecution(_FlowControl):  # noqa: N818
    """
    Raised by a checkpoint that cannot make progress in this attempt.

    Never visible to callers: the orchestrator converts it into the
    ``sleeping`` status and returns.
    """

    def __init__(self, reason: SuspendReason):
        super().__init__(str(reason))
        self.reason = reason


@dataclass(frozen=True)
class SuspendReason:
    """Why an attempt suspended."""

    execution_id: str
    step_id: str
    kind: Literal["sleep", "signal"]
    signal: str | None = None

    def __str__(self) -> str:
        if self.kind == "signal":
            return f"Signal(execution_id={self.execution_id}, step={self.step_id}, signal={self.signal!r})"
        return f"Sleep(execution_id={self.execution_id}, step={self.step_id})"


@dataclass(frozen=True)
class SignalReceived(Generic[T]):
    """The signal arrived before the timeout."""

    payload: T
    kind: ClassVar[str] = "signal"


@dataclass(frozen=True)
class SignalTimedOut:
    """The companion timeout fired first."""

    kind: ClassVar[str] = "timeout"


SignalOutcome = SignalReceived[T] | SignalTimedOut
"""Result of ``wait_for_signal`` when a timeout is configured."""
