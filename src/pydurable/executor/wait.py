"""Blocking until an execution reaches a terminal status."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pydurable.bus.base import EventBus, execution_channel
from pydurable.core.errors import (
    DurableError,
    DurableExecutionError,
    ExecutionCancelledError,
    WaitTimeoutError,
)
from pydurable.models import BusEvent, Execution, ExecutionStatus
from pydurable.storage.base import DurableStore

logger = logging.getLogger(__name__)


class WaitManager:
    """
    Polls the store for a terminal status, woken early by bus notifications.

    The bus only shortens latency. Every decision is taken from a fresh
    store read, so a lost notification costs at most one poll interval.
    """

    def __init__(self, store: DurableStore, bus: EventBus | None = None, *, poll_interval_ms: int = 500):
        self.store = store
        self.bus = bus
        self.poll_interval_ms = poll_interval_ms

    async def wait(
        self,
        execution_id: str,
        *,
        timeout_ms: int | None = None,
        poll_interval_ms: int | None = None,
    ) -> Any:
        """
        Wait for the execution to finish and return its result.

        ``timeout_ms`` bounds the wait only; the execution keeps running.

        Raises:
            DurableExecutionError: the execution failed or its compensation failed.
            ExecutionCancelledError: the execution was cancelled.
            WaitTimeoutError: ``timeout_ms`` elapsed first.
            DurableError: no such execution.
        """
        interval = (poll_interval_ms or self.poll_interval_ms) / 1000
        deadline = None if timeout_ms is None else time.monotonic() + timeout_ms / 1000
        channel = execution_channel(execution_id)
        woke = asyncio.Event()

        def on_event(event: BusEvent) -> None:
            woke.set()

        subscribed = False
        if self.bus is not None:
            try:
                await self.bus.subscribe(channel, on_event)
                subscribed = True
            except Exception as e:
                logger.warning(f"Bus subscribe failed for {channel}, polling only: {e}")

        try:
            while True:
                woke.clear()
                execution = await self.store.get_execution(execution_id)
                if execution is None:
                    raise DurableError(f"Execution {execution_id} not found")
                if execution.is_terminal:
                    return self._settle(execution)

                wait_for = interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise WaitTimeoutError(
                            f"Timed out waiting for execution {execution_id}",
                            execution_id=execution_id,
                            task_id=execution.task_id,
                            attempt=execution.attempt,
                            status=execution.status,
                        )
                    wait_for = min(interval, remaining)
                try:
                    await asyncio.wait_for(woke.wait(), timeout=wait_for)
                except TimeoutError:
                    pass
        finally:
            if subscribed:
                try:
                    await self.bus.unsubscribe(channel, on_event)
                except Exception as e:
                    logger.warning(f"Bus unsubscribe failed for {channel}: {e}")

    @staticmethod
    def _settle(execution: Execution) -> Any:
        if execution.status is ExecutionStatus.COMPLETED:
            return execution.result

        details = dict(
            execution_id=execution.id,
            task_id=execution.task_id,
            attempt=execution.attempt,
            status=execution.status,
            error=execution.error,
        )
        if execution.status is ExecutionStatus.CANCELLED:
            message = execution.error.message if execution.error else "Execution cancelled"
            raise ExecutionCancelledError(message, **details)
        message = (
            execution.error.message
            if execution.error
            else f"Execution {execution.id} ended as {execution.status}"
        )
        raise DurableExecutionError(message, **details)
