"""Task registry and the task-execution collaborator.

The engine never runs workflow code itself: it hands a task and its input to
a ``TaskExecutor``, which applies whatever the host framework needs
(dependency injection, middleware) and returns the result or raises.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class DurableTask(Protocol):
    """Anything with an ``id`` and an async ``run(input)``."""

    id: str

    async def run(self, input: Any) -> Any: ...


@dataclass(frozen=True)
class FunctionTask:
    """Task wrapping a plain function of one argument."""

    id: str
    fn: Callable[[Any], Awaitable[Any] | Any]

    async def run(self, input: Any) -> Any:
        result = self.fn(input)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionTask(id={self.id!r}, fn={getattr(self.fn, '__qualname__', self.fn)!r})"


def durable_task(task_id: str) -> Callable[[Callable[[Any], Any]], FunctionTask]:
    """
    Turn a function into a durable task.

    Example:
        ```python
        @durable_task("send-invoice")
        async def send_invoice(order):
            ctx = current_context()
            ...
        ```
    """

    def decorator(fn: Callable[[Any], Any]) -> FunctionTask:
        return FunctionTask(task_id, fn)

    return decorator


@runtime_checkable
class TaskExecutor(Protocol):
    """Runs a task with its input the way the host framework requires."""

    async def run(self, task: DurableTask, input: Any) -> Any: ...


class DirectTaskExecutor:
    """Calls ``task.run(input)`` with no framework around it."""

    async def run(self, task: DurableTask, input: Any) -> Any:
        return await task.run(input)


TaskResolver = Callable[[str], DurableTask | None]


class TaskRegistry:
    """Maps task ids to tasks.

    An optional resolver is consulted for ids that were never registered,
    e.g. to look tasks up in the host framework.

    Example:
        ```python
        registry = TaskRegistry()
        registry.register(send_invoice)
        registry.get("send-invoice")
        ```
    """

    def __init__(self, resolver: TaskResolver | None = None):
        self._tasks: dict[str, DurableTask] = {}
        self._resolver = resolver

    def register(self, task: DurableTask) -> DurableTask:
        existing = self._tasks.get(task.id)
        if existing is not None and existing is not task:
            raise ValueError(f"A different task is already registered as '{task.id}'")
        self._tasks[task.id] = task
        logger.debug(f"Registered durable task: {task.id}")
        return task

    def get(self, task_id: str) -> DurableTask | None:
        task = self._tasks.get(task_id)
        if task is None and self._resolver is not None:
            task = self._resolver(task_id)
        return task

    def __contains__(self, task_id: str) -> bool:
        return self.get(task_id) is not None

    def __len__(self) -> int:
        return len(self._tasks)

    def task_ids(self) -> list[str]:
        return sorted(self._tasks)
