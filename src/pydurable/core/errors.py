"""Exception hierarchy for the durable execution engine.

Every exception raised by the engine itself derives from ``DurableError``.
Suspension is not an error and lives in ``pydurable.core.outcome``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pydurable.models import ErrorInfo, ExecutionStatus

__all__ = [
    "CompensationFailedError",
    "DurableError",
    "DurableExecutionError",
    "DurableInvariantError",
    "ExecutionCancelledError",
    "ExecutionTimeoutError",
    "LockAcquisitionError",
    "ScheduleError",
    "SignalTimeoutError",
    "StepTimeoutError",
    "WaitTimeoutError",
]


class DurableError(Exception):
    """Base class for engine errors."""


class DurableInvariantError(DurableError):
    """Workflow code broke a replay rule (reserved or duplicate step id, unmatched switch)."""


class DurableExecutionError(DurableError):
    """An execution ended in a state that ``wait()`` reports as a rejection.

    Carries the stored error so callers see what the workflow raised.
    """

    def __init__(
        self,
        message: str,
        *,
        execution_id: str,
        task_id: str | None = None,
        attempt: int | None = None,
        status: ExecutionStatus | None = None,
        error: ErrorInfo | None = None,
    ):
        super().__init__(message)
        self.execution_id = execution_id
        self.task_id = task_id
        self.attempt = attempt
        self.status = status
        self.error = error


class ExecutionCancelledError(DurableExecutionError):
    """The execution was cancelled; raised at the next checkpoint and by ``wait()``."""


class WaitTimeoutError(DurableExecutionError):
    """``wait()`` gave up; the execution itself keeps going."""


class CompensationFailedError(DurableError):
    """A rollback compensation raised; the execution is now ``compensation_failed``."""

    def __init__(self, step_id: str, cause: BaseException):
        super().__init__(f"Compensation for step '{step_id}' failed: {cause}")
        self.step_id = step_id
        self.cause = cause


class SignalTimeoutError(DurableError):
    """A signal wait was resolved by a timeout it never asked for."""


class StepTimeoutError(DurableError):
    """A step function exceeded its ``timeout_ms``."""


class ScheduleError(DurableError):
    """Invalid schedule definition or conflicting schedule id."""


class LockAcquisitionError(DurableError):
    """A store lock could not be acquired within the allowed attempts."""


class ExecutionTimeoutError(DurableError):
    """An attempt ran past the execution deadline; the execution fails without retry."""
