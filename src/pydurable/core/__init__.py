"""Checkpoint/replay primitives: context, identifiers, errors and outcomes."""

from pydurable.core.audit import AuditEmitter, AuditLogger
from pydurable.core.context import (
    EXECUTION_CONTEXT,
    DurableContext,
    StepBuilder,
    SwitchBranch,
    current_context,
)
from pydurable.core.errors import (
    CompensationFailedError,
    DurableError,
    DurableExecutionError,
    DurableInvariantError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    LockAcquisitionError,
    ScheduleError,
    SignalTimeoutError,
    StepTimeoutError,
    WaitTimeoutError,
)
from pydurable.core.ids import SignalId, StepId, resolve_id
from pydurable.core.locking import hold_lock
from pydurable.core.outcome import SignalOutcome, SignalReceived, SignalTimedOut, SuspendReason

__all__ = [
    "EXECUTION_CONTEXT",
    "AuditEmitter",
    "AuditLogger",
    "CompensationFailedError",
    "DurableContext",
    "DurableError",
    "DurableExecutionError",
    "DurableInvariantError",
    "ExecutionCancelledError",
    "ExecutionTimeoutError",
    "LockAcquisitionError",
    "ScheduleError",
    "SignalId",
    "SignalOutcome",
    "SignalReceived",
    "SignalTimedOut",
    "SignalTimeoutError",
    "StepBuilder",
    "StepId",
    "StepTimeoutError",
    "SuspendReason",
    "SwitchBranch",
    "WaitTimeoutError",
    "current_context",
    "hold_lock",
    "resolve_id",
]
