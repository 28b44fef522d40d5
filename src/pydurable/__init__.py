"""
pydurable: durable execution for Python

Workflows are ordinary async functions. Every checkpoint (step, sleep,
signal wait, emit, switch) is persisted, so after a crash or a suspension
the function is replayed from the top and completed checkpoints return
their stored results instead of running again.

Design Pattern: Facade
This module re-exports the pieces an application needs; DurableService
wires storage, queue, bus, timers and signals together.

Example:
    ```python
    import asyncio
    from pydurable import DurableService, InMemoryStore, current_context, durable_task

    @durable_task("checkout")
    async def checkout(order):
        ctx = current_context()
        charge = await ctx.step("charge", lambda: charge_card(order))
        await ctx.sleep(60_000)
        await ctx.step("ship", lambda: ship(order, charge))
        return charge

    async def main():
        async with DurableService(InMemoryStore(), tasks=[checkout]) as service:
            result = await service.start_and_wait(checkout, {"order_id": 42})

    asyncio.run(main())
    ```
"""

# Core first: storage and executor modules import from it
from pydurable.core import (
    EXECUTION_CONTEXT,
    AuditLogger,
    CompensationFailedError,
    DurableContext,
    DurableError,
    DurableExecutionError,
    DurableInvariantError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    LockAcquisitionError,
    ScheduleError,
    SignalId,
    SignalOutcome,
    SignalReceived,
    SignalTimedOut,
    SignalTimeoutError,
    StepId,
    StepTimeoutError,
    SuspendReason,
    SwitchBranch,
    WaitTimeoutError,
    current_context,
)
from pydurable.config import DurableConfig, ExecutionConfig, PollingConfig
from pydurable.models import (
    AuditEntry,
    AuditEntryKind,
    ErrorInfo,
    Execution,
    ExecutionStatus,
    RetryableError,
    RetryPolicy,
    Schedule,
    ScheduleStatus,
    ScheduleType,
    StepResult,
    Timer,
    TimerType,
)
from pydurable.storage import DurableStore, StorageError
from pydurable.storage.memory import InMemoryStore
from pydurable.queue import DurableQueue, InMemoryQueue
from pydurable.bus import EventBus, InMemoryEventBus
from pydurable.executor import (
    DurableOperator,
    DurableService,
    DurableTask,
    ExecutionDetail,
    FunctionTask,
    QueueWorker,
    TaskExecutor,
    TaskRegistry,
    TimerPoller,
    WorkerHandle,
    durable_task,
)

# SqliteStore stays lazy so aiosqlite is only imported when used


def __getattr__(name: str):
    if name == "SqliteStore":
        from pydurable.storage.sqlite import SqliteStore

        return SqliteStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__version__ = "0.1.0"

__all__ = [
    # Workflow API
    "current_context",
    "durable_task",
    "DurableContext",
    "EXECUTION_CONTEXT",
    "FunctionTask",
    "DurableTask",
    "SignalId",
    "StepId",
    "SwitchBranch",
    "SignalOutcome",
    "SignalReceived",
    "SignalTimedOut",
    "SuspendReason",
    "RetryPolicy",
    "RetryableError",

    # Service
    "DurableService",
    "DurableOperator",
    "ExecutionDetail",
    "QueueWorker",
    "WorkerHandle",
    "TimerPoller",
    "TaskExecutor",
    "TaskRegistry",
    "AuditLogger",

    # Configuration
    "DurableConfig",
    "ExecutionConfig",
    "PollingConfig",

    # Storage, queue and bus
    "DurableStore",
    "InMemoryStore",
    "SqliteStore",
    "StorageError",
    "DurableQueue",
    "InMemoryQueue",
    "EventBus",
    "InMemoryEventBus",

    # Models
    "AuditEntry",
    "AuditEntryKind",
    "ErrorInfo",
    "Execution",
    "ExecutionStatus",
    "Schedule",
    "ScheduleStatus",
    "ScheduleType",
    "StepResult",
    "Timer",
    "TimerType",

    # Errors
    "DurableError",
    "DurableExecutionError",
    "DurableInvariantError",
    "CompensationFailedError",
    "ExecutionCancelledError",
    "ExecutionTimeoutError",
    "LockAcquisitionError",
    "ScheduleError",
    "SignalTimeoutError",
    "StepTimeoutError",
    "WaitTimeoutError",

    # Metadata
    "__version__",
]
