"""
Timer polling loop.

Time needs an active driver: the poller periodically fetches ready timers
and acts on each according to its type. When the store supports atomic
claims, a timer is handled by exactly one poller even with many workers.
A timer whose handling fails stays pending and is retried on a later poll.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from pydurable.config import DurableConfig
from pydurable.core.audit import AuditLogger
from pydurable.core.errors import ScheduleError
from pydurable.executor.execution import ExecutionManager
from pydurable.executor.scheduler import ScheduleManager
from pydurable.models import (
    AuditEntryKind,
    ScheduleStatus,
    ScheduleType,
    StepResult,
    Timer,
    TimerType,
)
from pydurable.storage.base import DurableStore, TimerClaimer, TimerNotificationSource

logger = logging.getLogger(__name__)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class TimerPoller:
    """
    Drives sleeps, signal timeouts, retries, execution timeouts and schedules.

    Usage:
        poller = TimerPoller(store, manager, schedules, audit, config)
        poller.start()
        ...
        await poller.stop()

    Tests can drive it deterministically with ``await poller.poll_once()``.
    """

    def __init__(
        self,
        store: DurableStore,
        manager: ExecutionManager,
        schedules: ScheduleManager,
        audit: AuditLogger,
        config: DurableConfig | None = None,
    ):
        self.store = store
        self.manager = manager
        self.schedules = schedules
        self.audit = audit
        self.config = config or DurableConfig()
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = self.config.polling.interval_ms / 1000
        notify = (
            self.store.timer_notify() if isinstance(self.store, TimerNotificationSource) else None
        )
        logger.info(f"Timer poller {self.config.worker_id} started (interval {interval}s)")

        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Timer polling error: {e}")

            waiters = [asyncio.ensure_future(self._stop_event.wait())]
            if notify is not None:
                notify.clear()
                waiters.append(asyncio.ensure_future(notify.wait()))
            try:
                await asyncio.wait(waiters, timeout=interval, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()

        logger.info(f"Timer poller {self.config.worker_id} stopped")

    async def poll_once(self, now: datetime | None = None) -> int:
        """
        Handle every timer ready at ``now``.

        Returns:
            Number of timers handled successfully.
        """
        ready = await self.store.get_ready_timers(now or datetime.now(UTC))
        if ready:
            logger.debug(f"Processing {len(ready)} ready timer(s)")
        handled = 0
        for timer in ready:
            if await self.handle_timer(timer):
                handled += 1
        return handled

    async def handle_timer(self, timer: Timer) -> bool:
        """
        Claim (when supported), dispatch by type, then mark fired and delete.

        Returns:
            True if the timer was handled and removed.
        """
        if isinstance(self.store, TimerClaimer):
            claimed = await self.store.claim_timer(
                timer.id, self.config.worker_id, self.config.polling.claim_ttl_ms
            )
            if not claimed:
                logger.debug(f"Timer {timer.id} already claimed by another poller")
                return False

        try:
            if timer.type is TimerType.SLEEP:
                await self._complete_sleep(timer)
            elif timer.type is TimerType.SIGNAL_TIMEOUT:
                await self._time_out_signal(timer)
            elif timer.type in (TimerType.SCHEDULED, TimerType.CRON):
                await self._run_schedule(timer)

            if timer.execution_id is not None:
                await self.manager.resume(timer.execution_id)

            await self.store.mark_timer_fired(timer.id)
            await self.store.delete_timer(timer.id)
        except Exception:
            logger.exception(f"Failed to handle timer {timer!r}; keeping it pending")
            return False
        logger.info(f"Timer fired: {timer.id} ({timer.type})")
        return True

    async def _complete_sleep(self, timer: Timer) -> None:
        if timer.execution_id is None or timer.step_id is None:
            return
        await self.store.save_step_result(
            StepResult(timer.execution_id, timer.step_id, {"state": "completed"})
        )
        await self._record(timer, AuditEntryKind.SLEEP_COMPLETED)

    async def _time_out_signal(self, timer: Timer) -> None:
        if timer.execution_id is None or timer.step_id is None:
            return
        existing = await self.store.get_step_result(timer.execution_id, timer.step_id)
        if existing is None or existing.state() != "waiting":
            # The signal won the race
            return
        await self.store.save_step_result(
            StepResult(timer.execution_id, timer.step_id, {"state": "timed_out"})
        )
        await self._record(
            timer, AuditEntryKind.SIGNAL_TIMED_OUT, signal_id=existing.result.get("signal_id")
        )

    async def _record(self, timer: Timer, kind: AuditEntryKind, **data) -> None:
        execution = await self.store.get_execution(timer.execution_id)
        await self.audit.record(
            timer.execution_id,
            kind,
            {"timer_id": timer.id, **data},
            task_id=execution.task_id if execution else None,
            step_id=timer.step_id,
            attempt=execution.attempt if execution else None,
        )

    async def _run_schedule(self, timer: Timer) -> None:
        if timer.schedule_id is None:
            logger.warning(f"Schedule timer {timer.id} has no schedule; dropping it")
            return

        schedule = await self.store.get_schedule(timer.schedule_id)
        if schedule is None or schedule.status is not ScheduleStatus.ACTIVE:
            logger.debug(f"Schedule {timer.schedule_id} missing or not active; dropping {timer.id}")
            return
        if schedule.next_run is not None and _ms(schedule.next_run) != _ms(timer.fire_at):
            logger.debug(f"Timer {timer.id} is stale for schedule {schedule.id}; dropping it")
            return

        task = self.manager.registry.get(schedule.task_id)
        if task is None:
            raise ScheduleError(
                f"Schedule {schedule.id}: task not registered: {schedule.task_id}"
            )

        now = datetime.now(UTC)
        execution_id = await self.manager.start(task, schedule.input)
        logger.info(f"Schedule {schedule.id} started execution {execution_id}")

        if schedule.type is ScheduleType.ONCE:
            await self.store.update_schedule(
                schedule.id,
                {"status": ScheduleStatus.COMPLETED, "last_run": now, "next_run": None},
            )
            return

        current = await self.store.get_schedule(schedule.id)
        if current is not None and current.is_active:
            await self.schedules.reschedule(current, last_run=now, after=timer.fire_at)
