"""Delivery of external signals to waiting executions."""

from __future__ import annotations

import logging
from typing import Any

from pydurable.core.audit import AuditLogger
from pydurable.core.errors import DurableError
from pydurable.core.ids import SignalId, resolve_id
from pydurable.executor.execution import ExecutionManager
from pydurable.models import AuditEntryKind, StepResult
from pydurable.storage.base import DurableStore, ExecutionQueryStore
from pydurable.core.locking import hold_lock

logger = logging.getLogger(__name__)

MAX_SIGNAL_SLOTS = 1000


class SignalError(DurableError):
    """A signal could not be delivered (corrupt slot state, too many slots)."""


def _slot_order(base: str, step_id: str) -> tuple[int, int, str]:
    """Sort key: base slot, then numbered slots, then explicitly named slots."""
    if step_id == base:
        return (0, 0, step_id)
    suffix = step_id[len(base) + 1 :] if step_id.startswith(f"{base}:") else None
    if suffix is not None and suffix.isdigit():
        return (1, int(suffix), step_id)
    return (2, 0, step_id)


class SignalHandler:
    """
    Resolves ``signal()`` calls against ``wait_for_signal`` slots.

    Deliver-to-current-or-next: the earliest slot still waiting on the
    signal receives the payload and the execution is resumed. With no
    waiting slot, the payload is buffered in the first free slot and picked
    up when the workflow reaches its next wait. A delivered slot is never
    overwritten.
    """

    def __init__(self, store: DurableStore, manager: ExecutionManager, audit: AuditLogger):
        self.store = store
        self.manager = manager
        self.audit = audit

    async def signal(self, execution_id: str, signal: str | SignalId, payload: Any = None) -> str:
        """
        Deliver ``payload`` to the execution.

        Returns:
            The step id of the slot that received the payload.
        """
        name = resolve_id(signal)
        async with hold_lock(
            self.store, f"signal:{execution_id}:{name}", 10_000, attempts=20, retry_delay=0.005
        ):
            step_id, should_resume = await self._deliver(execution_id, name, payload)

        execution = await self.store.get_execution(execution_id)
        await self.audit.record(
            execution_id,
            AuditEntryKind.SIGNAL_DELIVERED,
            {"signal_id": name, "buffered": not should_resume},
            task_id=execution.task_id if execution else None,
            step_id=step_id,
            attempt=execution.attempt if execution else None,
        )
        logger.info(
            f"Signal {name!r} delivered to execution {execution_id} at {step_id}"
            + ("" if should_resume else " (buffered)")
        )

        if should_resume and execution is not None and not execution.is_terminal:
            await self.manager.resume(execution_id)
        return step_id

    async def _deliver(self, execution_id: str, name: str, payload: Any) -> tuple[str, bool]:
        base = f"__signal:{name}"
        target: str | None = None
        should_resume = False

        if isinstance(self.store, ExecutionQueryStore):
            waiting = [
                step
                for step in await self.store.list_step_results(execution_id)
                if step.step_id.startswith("__signal:")
                and step.state() == "waiting"
                and step.result.get("signal_id") == name
            ]
            if waiting:
                best = min(waiting, key=lambda step: _slot_order(base, step.step_id))
                target = best.step_id
                should_resume = True
                await self._disarm(best)

        if target is None:
            for index in range(MAX_SIGNAL_SLOTS):
                step_id = base if index == 0 else f"{base}:{index}"
                existing = await self.store.get_step_result(execution_id, step_id)
                if existing is None:
                    target = step_id
                    break
                state = existing.state()
                if state == "waiting" and existing.result.get("signal_id", name) != name:
                    raise SignalError(
                        f"Slot '{step_id}' waits on '{existing.result['signal_id']}', not '{name}'"
                    )
                if state == "waiting":
                    await self._disarm(existing)
                    target = step_id
                    should_resume = True
                    break
                if state not in ("completed", "timed_out"):
                    raise SignalError(f"Invalid signal step state for '{name}' at '{step_id}'")
            else:
                raise SignalError(f"Too many signal slots for '{name}' (over {MAX_SIGNAL_SLOTS})")

        await self.store.save_step_result(
            StepResult(execution_id, target, {"state": "completed", "payload": payload})
        )
        return target, should_resume

    async def _disarm(self, slot: StepResult) -> None:
        timer_id = slot.result.get("timer_id")
        if timer_id:
            await self.store.delete_timer(timer_id)
