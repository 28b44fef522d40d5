"""Orchestration: execution lifecycle, timers, signals, schedules, workers."""

from pydurable.executor.execution import ExecutionManager, kickoff_timer_id, timeout_timer_id
from pydurable.executor.operator import DurableOperator, ExecutionDetail
from pydurable.executor.registry import (
    DirectTaskExecutor,
    DurableTask,
    FunctionTask,
    TaskExecutor,
    TaskRegistry,
    TaskResolver,
    durable_task,
)
from pydurable.executor.scheduler import ScheduleManager, next_cron_run
from pydurable.executor.service import DurableService
from pydurable.executor.signal import SignalError, SignalHandler
from pydurable.executor.timer import TimerPoller
from pydurable.executor.wait import WaitManager
from pydurable.executor.worker import QueueWorker, WorkerError, WorkerHandle

__all__ = [
    "DirectTaskExecutor",
    "DurableOperator",
    "DurableService",
    "DurableTask",
    "ExecutionDetail",
    "ExecutionManager",
    "FunctionTask",
    "QueueWorker",
    "ScheduleManager",
    "SignalError",
    "SignalHandler",
    "TaskExecutor",
    "TaskRegistry",
    "TaskResolver",
    "TimerPoller",
    "WaitManager",
    "WorkerError",
    "WorkerHandle",
    "durable_task",
    "kickoff_timer_id",
    "next_cron_run",
    "timeout_timer_id",
]
