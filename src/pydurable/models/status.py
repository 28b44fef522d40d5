"""Status and kind enumerations for executions, timers, schedules and messages.

Every enum is a ``str`` enum so values persist unchanged in any backend and
compare equal to their wire strings.
"""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Lifecycle of a single execution.

    Lifecycle:
        PENDING → RUNNING → (SLEEPING | RETRYING) → RUNNING → ... → terminal

    PENDING, RUNNING, SLEEPING and RETRYING cycle among themselves. The
    terminal states never revert through the normal execution path; only the
    operator layer may move an execution out of one.
    """

    PENDING = "pending"
    """Created, waiting for its first attempt."""

    RUNNING = "running"
    """An attempt is advancing the workflow."""

    SLEEPING = "sleeping"
    """Suspended on a timer or a signal."""

    RETRYING = "retrying"
    """Last attempt failed; a retry timer is armed."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPENSATION_FAILED = "compensation_failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work will happen)."""
        return self in _TERMINAL_EXECUTION

    def __str__(self) -> str:
        return self.value


_TERMINAL_EXECUTION = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.COMPENSATION_FAILED,
    }
)


class TimerType(str, Enum):
    """What a timer wakes up when it fires.

    The polling loop switches on this tag explicitly.
    """

    SLEEP = "sleep"
    TIMEOUT = "timeout"
    SCHEDULED = "scheduled"
    CRON = "cron"
    RETRY = "retry"
    SIGNAL_TIMEOUT = "signal_timeout"

    def __str__(self) -> str:
        return self.value


class TimerStatus(str, Enum):
    PENDING = "pending"
    FIRED = "fired"

    def __str__(self) -> str:
        return self.value


class ScheduleType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"

    def __str__(self) -> str:
        return self.value


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    """A one-shot schedule that already ran."""

    def __str__(self) -> str:
        return self.value


class MessageType(str, Enum):
    """Queue hint types consumed by the worker."""

    EXECUTE = "execute"
    RESUME = "resume"

    def __str__(self) -> str:
        return self.value
