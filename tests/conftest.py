"""
Pytest configuration and fixtures for pydurable tests.

Provides store backends, preconfigured services and small helpers for
driving timers deterministically.
"""

import shutil
import tempfile
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from hypothesis import strategies as st

from pydurable import DurableConfig, DurableService, InMemoryStore
from pydurable.storage.sqlite import SqliteStore


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    import os

    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


def make_config(**execution) -> DurableConfig:
    """Config for tests: no background polling, tiny retry delays."""
    config = (
        DurableConfig(worker_id="test-worker", wait_poll_interval_ms=20)
        .with_polling(enabled=False, interval_ms=20)
        .with_execution(retry_base_delay_ms=1)
    )
    if execution:
        config = config.with_execution(**execution)
    return config


def later(ms: int = 60_000) -> datetime:
    """A point in the future, for polling timers without waiting for them."""
    return datetime.now(UTC) + timedelta(milliseconds=ms)


class Calls:
    """Counts side effects per key."""

    def __init__(self):
        self.counts: dict[str, int] = {}
        self.order: list[str] = []

    def hit(self, key: str) -> int:
        self.counts[key] = self.counts.get(key, 0) + 1
        self.order.append(key)
        return self.counts[key]

    def __getitem__(self, key: str) -> int:
        return self.counts.get(key, 0)


@pytest.fixture
def calls() -> Calls:
    return Calls()


@pytest.fixture
async def memory_store() -> AsyncGenerator[InMemoryStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_store() -> AsyncGenerator[SqliteStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = await SqliteStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture(params=["memory", "sqlite"])
async def store(request) -> AsyncGenerator[InMemoryStore | SqliteStore, None]:
    """Every backend, for contract tests."""
    if request.param == "memory":
        backend = InMemoryStore()
        yield backend
        await backend.reset()
    else:
        backend = await SqliteStore.in_memory()
        yield backend
        await backend.close()


@pytest.fixture
def service(memory_store: InMemoryStore) -> DurableService:
    """Queue-less service on the in-memory store; attempts run inline."""
    return DurableService(memory_store, config=make_config())


@pytest.fixture
def sqlite_service(sqlite_store: SqliteStore) -> DurableService:
    return DurableService(sqlite_store, config=make_config())


# Hypothesis strategies for property-based testing

step_ids = st.text(
    alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd"), whitelist_characters="-_."),
    min_size=1,
    max_size=30,
).filter(lambda s: not s.startswith("__"))

json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.text(max_size=20),
    lambda children: st.lists(children, max_size=4)
    | st.dictionaries(st.text(max_size=8), children, max_size=4),
    max_leaves=10,
)
