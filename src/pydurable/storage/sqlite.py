"""SQLite-backed store.

Design Pattern: Adapter Pattern
SqliteStore adapts a SQLite database to the DurableStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent readers across processes
- IMMEDIATE transactions around every read-merge-write
- records pickled into BLOB columns; columns used for filtering
  (status, task_id, fire_at, ...) are stored alongside as INTEGER/TEXT
- INTEGER millisecond timestamps
"""

from __future__ import annotations

import asyncio
import pickle
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
from uuid_extensions import uuid7

from pydurable.models import (
    AuditEntry,
    ErrorInfo,
    Execution,
    ExecutionStatus,
    Schedule,
    StepResult,
    Timer,
    TimerStatus,
)
from pydurable.storage.base import DurableStore, StorageError, merge_execution_changes


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _now_ms() -> int:
    return _ms(datetime.now(UTC))


class SqliteStore(DurableStore):
    """SQLite-backed durable store.

    After __init__, the instance is not yet usable. Call connect() (or
    init()) first. This follows asyncio practice: no async work in __init__.

    Usage:
        store = SqliteStore("durable.db")
        await store.connect()
        try:
            service = DurableService(store)
            ...
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection
        self._timer_notify = asyncio.Event()

    @classmethod
    async def in_memory(cls) -> SqliteStore:
        """
        Create a connected in-memory store for testing.

        Example:
            store = await SqliteStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteStore(in-memory)"
        return f"SqliteStore({self.db_path})"

    def timer_notify(self) -> asyncio.Event:
        return self._timer_notify

    async def init(self) -> None:
        await self.connect()

    async def connect(self) -> None:
        """Open the connection and create the schema.

        Fixed initialization sequence:
        1. Open connection (autocommit; transactions are explicit)
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()

    async def _create_schema(self) -> None:
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                data BLOB NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_executions_status
                ON executions(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_executions_task
                ON executions(task_id, created_at);

            CREATE TABLE IF NOT EXISTS step_results (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                data BLOB NOT NULL,
                UNIQUE (execution_id, step_id)
            );

            CREATE TABLE IF NOT EXISTS timers (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                fire_at INTEGER NOT NULL,
                data BLOB NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_timers_ready ON timers(status, fire_at);

            CREATE TABLE IF NOT EXISTS schedules (
                id TEXT PRIMARY KEY,
                created_at INTEGER NOT NULL,
                data BLOB NOT NULL
            );

            CREATE TABLE IF NOT EXISTS idempotency_keys (
                task_id TEXT NOT NULL,
                key TEXT NOT NULL,
                execution_id TEXT NOT NULL,
                PRIMARY KEY (task_id, key)
            );

            CREATE TABLE IF NOT EXISTS locks (
                resource TEXT PRIMARY KEY,
                lock_id TEXT NOT NULL,
                expires_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_entries (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                data BLOB NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_audit_execution
                ON audit_entries(execution_id, seq);
        """)

    async def close(self) -> None:
        """Close the connection. Explicit resource cleanup, not relying on GC."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """IMMEDIATE transaction holding the connection lock."""
        self._check_connected()
        async with self._lock:
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield self._connection
            except BaseException:
                await self._connection.execute("ROLLBACK")
                raise
            else:
                await self._connection.execute("COMMIT")

    async def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    @staticmethod
    def _dump(value: Any) -> bytes:
        try:
            return pickle.dumps(value)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise StorageError(f"Value is not serializable: {e}") from e

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def save_execution(self, execution: Execution) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO executions (id, task_id, status, created_at, data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    task_id = excluded.task_id,
                    status = excluded.status,
                    data = excluded.data
                """,
                (
                    execution.id,
                    execution.task_id,
                    execution.status.value,
                    _ms(execution.created_at),
                    self._dump(execution),
                ),
            )

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await self._fetchone("SELECT data FROM executions WHERE id = ?", (execution_id,))
        return pickle.loads(row[0]) if row else None

    async def update_execution(
        self,
        execution_id: str,
        changes: dict[str, Any],
        *,
        allow_terminal_revert: bool = False,
    ) -> Execution | None:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT data FROM executions WHERE id = ?", (execution_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
            if row is None:
                return None
            merged = merge_execution_changes(
                pickle.loads(row[0]), changes, allow_terminal_revert=allow_terminal_revert
            )
            if merged is None:
                return None
            await conn.execute(
                "UPDATE executions SET status = ?, data = ? WHERE id = ?",
                (merged.status.value, self._dump(merged), execution_id),
            )
            return merged

    async def list_incomplete_executions(self) -> list[Execution]:
        terminal = [s.value for s in ExecutionStatus if s.is_terminal]
        placeholders = ",".join("?" * len(terminal))
        rows = await self._fetchall(
            f"SELECT data FROM executions WHERE status NOT IN ({placeholders}) "
            "ORDER BY created_at ASC",
            tuple(terminal),
        )
        return [pickle.loads(row[0]) for row in rows]

    async def list_executions(
        self,
        *,
        status: ExecutionStatus | None = None,
        task_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Execution]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT data FROM executions {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return [pickle.loads(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Step results
    # ------------------------------------------------------------------

    async def get_step_result(self, execution_id: str, step_id: str) -> StepResult | None:
        row = await self._fetchone(
            "SELECT data FROM step_results WHERE execution_id = ? AND step_id = ?",
            (execution_id, step_id),
        )
        return pickle.loads(row[0]) if row else None

    async def save_step_result(self, result: StepResult) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO step_results (execution_id, step_id, data) VALUES (?, ?, ?)
                ON CONFLICT(execution_id, step_id) DO UPDATE SET data = excluded.data
                """,
                (result.execution_id, result.step_id, self._dump(result)),
            )

    async def save_step_result_if_absent(self, result: StepResult) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT OR IGNORE INTO step_results (execution_id, step_id, data) VALUES (?, ?, ?)",
                (result.execution_id, result.step_id, self._dump(result)),
            )
            return cursor.rowcount > 0

    async def list_step_results(self, execution_id: str) -> list[StepResult]:
        rows = await self._fetchall(
            "SELECT data FROM step_results WHERE execution_id = ? ORDER BY seq ASC",
            (execution_id,),
        )
        return [pickle.loads(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def create_timer(self, timer: Timer) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO timers (id, status, fire_at, data) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    fire_at = excluded.fire_at,
                    data = excluded.data
                """,
                (timer.id, timer.status.value, _ms(timer.fire_at), self._dump(timer)),
            )
        self._timer_notify.set()

    async def get_timer(self, timer_id: str) -> Timer | None:
        row = await self._fetchone("SELECT data FROM timers WHERE id = ?", (timer_id,))
        return pickle.loads(row[0]) if row else None

    async def get_ready_timers(self, now: datetime | None = None) -> list[Timer]:
        now_ms = _ms(now) if now is not None else _now_ms()
        rows = await self._fetchall(
            "SELECT data FROM timers WHERE status = ? AND fire_at <= ? ORDER BY fire_at ASC",
            (TimerStatus.PENDING.value, now_ms),
        )
        return [pickle.loads(row[0]) for row in rows]

    async def mark_timer_fired(self, timer_id: str) -> None:
        async with self._transaction() as conn:
            cursor = await conn.execute("SELECT data FROM timers WHERE id = ?", (timer_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if row is None:
                return
            fired = replace(pickle.loads(row[0]), status=TimerStatus.FIRED)
            await conn.execute(
                "UPDATE timers SET status = ?, data = ? WHERE id = ?",
                (TimerStatus.FIRED.value, self._dump(fired), timer_id),
            )

    async def delete_timer(self, timer_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM timers WHERE id = ?", (timer_id,))
            await conn.execute("DELETE FROM locks WHERE resource = ?", (f"timer:claim:{timer_id}",))

    async def claim_timer(self, timer_id: str, worker_id: str, ttl_ms: int) -> bool:
        """Lease a pending timer for ``ttl_ms``.

        Only one caller wins while the lease is live; an expired lease can be
        taken over.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM timers WHERE id = ? AND status = ?",
                (timer_id, TimerStatus.PENDING.value),
            )
            pending = await cursor.fetchone()
            await cursor.close()
            if pending is None:
                return False
            return await self._upsert_lock(conn, f"timer:claim:{timer_id}", worker_id, ttl_ms)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def create_schedule(self, schedule: Schedule) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT OR IGNORE INTO schedules (id, created_at, data) VALUES (?, ?, ?)",
                (schedule.id, _ms(schedule.created_at), self._dump(schedule)),
            )
            return cursor.rowcount > 0

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        row = await self._fetchone("SELECT data FROM schedules WHERE id = ?", (schedule_id,))
        return pickle.loads(row[0]) if row else None

    async def update_schedule(self, schedule_id: str, changes: dict[str, Any]) -> Schedule | None:
        async with self._transaction() as conn:
            cursor = await conn.execute("SELECT data FROM schedules WHERE id = ?", (schedule_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if row is None:
                return None
            try:
                updated = replace(pickle.loads(row[0]), **changes, updated_at=datetime.now(UTC))
            except TypeError as e:
                raise StorageError(f"Invalid schedule update for {schedule_id}: {e}") from e
            await conn.execute(
                "UPDATE schedules SET data = ? WHERE id = ?", (self._dump(updated), schedule_id)
            )
            return updated

    async def delete_schedule(self, schedule_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))

    async def list_schedules(self) -> list[Schedule]:
        rows = await self._fetchall("SELECT data FROM schedules ORDER BY created_at ASC")
        return [pickle.loads(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    async def get_execution_id_by_idempotency_key(self, task_id: str, key: str) -> str | None:
        row = await self._fetchone(
            "SELECT execution_id FROM idempotency_keys WHERE task_id = ? AND key = ?",
            (task_id, key),
        )
        return row[0] if row else None

    async def set_execution_id_by_idempotency_key(
        self, task_id: str, key: str, execution_id: str
    ) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT OR IGNORE INTO idempotency_keys (task_id, key, execution_id) "
                "VALUES (?, ?, ?)",
                (task_id, key, execution_id),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    @staticmethod
    async def _upsert_lock(
        conn: aiosqlite.Connection, resource: str, lock_id: str, ttl_ms: int
    ) -> bool:
        now = _now_ms()
        cursor = await conn.execute(
            """
            INSERT INTO locks (resource, lock_id, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(resource) DO UPDATE SET
                lock_id = excluded.lock_id,
                expires_at = excluded.expires_at
            WHERE locks.expires_at <= ? OR locks.lock_id = excluded.lock_id
            """,
            (resource, lock_id, now + ttl_ms, now),
        )
        return cursor.rowcount > 0

    async def acquire_lock(self, resource: str, ttl_ms: int) -> str | None:
        lock_id = str(uuid7())
        async with self._transaction() as conn:
            acquired = await self._upsert_lock(conn, resource, lock_id, ttl_ms)
        return lock_id if acquired else None

    async def renew_lock(self, resource: str, lock_id: str, ttl_ms: int) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "UPDATE locks SET expires_at = ? WHERE resource = ? AND lock_id = ?",
                (_now_ms() + ttl_ms, resource, lock_id),
            )
            return cursor.rowcount > 0

    async def release_lock(self, resource: str, lock_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM locks WHERE resource = ? AND lock_id = ?", (resource, lock_id)
            )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT INTO audit_entries (execution_id, data) VALUES (?, ?)",
                (entry.execution_id, self._dump(entry)),
            )

    async def list_audit_entries(
        self, execution_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[AuditEntry]:
        rows = await self._fetchall(
            "SELECT data FROM audit_entries WHERE execution_id = ? "
            "ORDER BY seq ASC LIMIT ? OFFSET ?",
            (execution_id, -1 if limit is None else limit, offset),
        )
        return [pickle.loads(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def retry_rollback(self, execution_id: str) -> Execution | None:
        return await self.update_execution(
            execution_id,
            {"status": ExecutionStatus.PENDING, "error": None, "completed_at": None},
            allow_terminal_revert=True,
        )

    async def skip_step(self, execution_id: str, step_id: str) -> None:
        await self.save_step_result(
            StepResult(execution_id, step_id, {"skipped": True, "manual": True})
        )

    async def force_fail(self, execution_id: str, message: str) -> Execution | None:
        return await self.update_execution(
            execution_id,
            {
                "status": ExecutionStatus.FAILED,
                "error": ErrorInfo(message=message),
                "completed_at": datetime.now(UTC),
            },
            allow_terminal_revert=True,
        )

    async def edit_step_result(self, execution_id: str, step_id: str, result: Any) -> None:
        await self.save_step_result(StepResult(execution_id, step_id, result))
