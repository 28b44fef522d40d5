"""Data model for executions, steps, timers, schedules, audit and messages."""

from pydurable.models.audit import AuditEntry, AuditEntryKind
from pydurable.models.execution import ErrorInfo, Execution
from pydurable.models.message import BusEvent, QueueMessage
from pydurable.models.retry import RetryableError, RetryPolicy, is_retryable
from pydurable.models.schedule import Schedule
from pydurable.models.status import (
    ExecutionStatus,
    MessageType,
    ScheduleStatus,
    ScheduleType,
    TimerStatus,
    TimerType,
)
from pydurable.models.step_result import StepResult
from pydurable.models.timer import Timer

__all__ = [
    "AuditEntry",
    "AuditEntryKind",
    "BusEvent",
    "ErrorInfo",
    "Execution",
    "ExecutionStatus",
    "MessageType",
    "QueueMessage",
    "RetryPolicy",
    "RetryableError",
    "Schedule",
    "ScheduleStatus",
    "ScheduleType",
    "StepResult",
    "Timer",
    "TimerStatus",
    "TimerType",
    "is_retryable",
]
