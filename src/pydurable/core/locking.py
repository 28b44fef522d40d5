"""Context manager around the optional LockProvider capability."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from pydurable.core.errors import LockAcquisitionError
from pydurable.storage.base import LockProvider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def hold_lock(
    store: object,
    resource: str,
    ttl_ms: int = 10_000,
    *,
    attempts: int = 50,
    retry_delay: float = 0.02,
) -> AsyncIterator[str | None]:
    """
    Hold ``resource`` for the duration of the block.

    Stores without locks run the block unguarded and yield None.

    Raises:
        LockAcquisitionError: if the lock stays held for all ``attempts``.

    Example:
        ```python
        async with hold_lock(store, f"schedule:{schedule_id}"):
            ...
        ```
    """
    if not isinstance(store, LockProvider):
        yield None
        return

    lock_id = None
    for _ in range(attempts):
        lock_id = await store.acquire_lock(resource, ttl_ms)
        if lock_id is not None:
            break
        await asyncio.sleep(retry_delay)
    if lock_id is None:
        raise LockAcquisitionError(f"Could not acquire lock on {resource}")

    try:
        yield lock_id
    finally:
        try:
            await store.release_lock(resource, lock_id)
        except Exception as e:
            logger.warning(f"Failed to release lock {resource}: {e}")
