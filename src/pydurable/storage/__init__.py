"""Storage backends for durable execution state.

Provides storage implementations behind a common interface:
    - DurableStore: Abstract interface plus optional capability protocols
    - InMemoryStore: In-memory storage for tests and single-process use
    - SqliteStore: SQLite-backed storage

Design: Adapter Pattern + Dependency Inversion
    The engine depends on DurableStore and checks capabilities with
    isinstance(), so backends can be swapped without changing engine logic.
"""

from pydurable.storage.base import (
    AuditStore,
    DurableStore,
    ExecutionQueryStore,
    IdempotencyStore,
    LockProvider,
    OperatorStore,
    StorageError,
    TimerClaimer,
    TimerNotificationSource,
)

# Lazy imports keep aiosqlite off the import path for in-memory users


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryStore":
        from pydurable.storage.memory import InMemoryStore

        return InMemoryStore
    elif name == "SqliteStore":
        from pydurable.storage.sqlite import SqliteStore

        return SqliteStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "AuditStore",
    "DurableStore",
    "ExecutionQueryStore",
    "IdempotencyStore",
    "InMemoryStore",
    "LockProvider",
    "OperatorStore",
    "SqliteStore",
    "StorageError",
    "TimerClaimer",
    "TimerNotificationSource",
]
