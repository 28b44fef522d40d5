"""
Schedules: cron, fixed-interval and one-shot starts of durable tasks.

A schedule owns at most one live timer. Each reschedule computes the next
fire time, records it as ``next_run`` and arms a timer for exactly that
instant; the poller drops any timer whose fire time no longer matches
``next_run``, which makes concurrent or repeated reschedules harmless.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from croniter import croniter
from uuid_extensions import uuid7

from pydurable.core.errors import ScheduleError
from pydurable.executor.registry import DurableTask, TaskRegistry
from pydurable.models import Schedule, ScheduleStatus, ScheduleType, Timer, TimerType
from pydurable.storage.base import DurableStore
from pydurable.core.locking import hold_lock

logger = logging.getLogger(__name__)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def schedule_timer_id(schedule_id: str, fire_at: datetime) -> str:
    return f"sched:{schedule_id}:{_ms(fire_at)}"


def once_timer_id(schedule_id: str) -> str:
    return f"once:{schedule_id}"


def next_cron_run(pattern: str, base: datetime) -> datetime:
    """Next instant after ``base`` matching the cron expression (UTC)."""
    try:
        return croniter(pattern, base).get_next(datetime)
    except (ValueError, KeyError) as e:
        raise ScheduleError(f"Invalid cron expression {pattern!r}: {e}") from e


def _validate(cron: str | None, interval_ms: int | None) -> ScheduleType:
    if cron is not None and interval_ms is not None:
        raise ScheduleError("Pass either cron or interval_ms, not both")
    if cron is not None:
        if not croniter.is_valid(cron):
            raise ScheduleError(f"Invalid cron expression {cron!r}")
        return ScheduleType.CRON
    if interval_ms is not None:
        if interval_ms <= 0:
            raise ScheduleError(f"interval_ms must be positive, got {interval_ms}")
        return ScheduleType.INTERVAL
    raise ScheduleError("A recurring schedule requires cron or interval_ms")


class ScheduleManager:
    """
    Creates, updates and reschedules schedules.

    Usage:
        schedules = ScheduleManager(store, registry)
        await schedules.ensure_schedule(nightly_report, None, id="nightly", cron="0 2 * * *")
    """

    def __init__(self, store: DurableStore, registry: TaskRegistry):
        self.store = store
        self.registry = registry

    async def ensure_schedule(
        self,
        task: DurableTask,
        input: Any = None,
        *,
        id: str,
        cron: str | None = None,
        interval_ms: int | None = None,
    ) -> Schedule:
        """
        Idempotently create or update the schedule ``id``.

        Safe to call on every boot and from several processes at once: the
        record is created with an atomic create-if-absent, and an existing
        schedule is updated in place (and re-activated).

        Raises:
            ScheduleError: neither cron nor interval given, or ``id`` is
                already bound to a different task.
        """
        schedule_type = _validate(cron, interval_ms)
        self.registry.register(task)

        async with hold_lock(self.store, f"schedule:{id}", 10_000, attempts=20, retry_delay=0.005):
            candidate = Schedule(
                id=id,
                task_id=task.id,
                type=schedule_type,
                pattern=cron,
                interval_ms=interval_ms,
                input=input,
            )
            if await self.store.create_schedule(candidate):
                logger.info(f"Created schedule {candidate!r}")
                return await self.reschedule(candidate)

            existing = await self.store.get_schedule(id)
            if existing is None:
                raise ScheduleError(f"Schedule '{id}' vanished during ensure_schedule")
            if existing.task_id != task.id:
                raise ScheduleError(
                    f"Schedule '{id}' already exists for task '{existing.task_id}', "
                    f"cannot rebind to '{task.id}'"
                )
            updated = await self.store.update_schedule(
                id,
                {
                    "type": schedule_type,
                    "pattern": cron,
                    "interval_ms": interval_ms,
                    "input": input,
                    "status": ScheduleStatus.ACTIVE,
                },
            )
            logger.debug(f"Updated schedule {updated!r}")
            return await self.reschedule(updated)

    async def schedule(
        self,
        task: DurableTask,
        input: Any = None,
        *,
        id: str | None = None,
        at: datetime | None = None,
        delay_ms: int | None = None,
        cron: str | None = None,
        interval_ms: int | None = None,
    ) -> str:
        """
        Schedule a task.

        With ``cron`` or ``interval_ms`` a recurring schedule is created
        (failing if ``id`` is taken). Otherwise a one-shot schedule fires
        once at ``at`` or after ``delay_ms`` (default: immediately).

        Returns:
            The schedule id.
        """
        self.registry.register(task)
        schedule_id = id or str(uuid7())

        if cron is not None or interval_ms is not None:
            schedule = Schedule(
                id=schedule_id,
                task_id=task.id,
                type=_validate(cron, interval_ms),
                pattern=cron,
                interval_ms=interval_ms,
                input=input,
            )
            if not await self.store.create_schedule(schedule):
                raise ScheduleError(f"Schedule '{schedule_id}' already exists")
            await self.reschedule(schedule)
            return schedule_id

        fire_at = at or datetime.now(UTC) + timedelta(milliseconds=delay_ms or 0)
        schedule = Schedule(
            id=schedule_id,
            task_id=task.id,
            type=ScheduleType.ONCE,
            input=input,
            next_run=fire_at,
        )
        if not await self.store.create_schedule(schedule):
            raise ScheduleError(f"Schedule '{schedule_id}' already exists")
        await self.store.create_timer(
            Timer(
                id=once_timer_id(schedule_id),
                type=TimerType.SCHEDULED,
                fire_at=fire_at,
                schedule_id=schedule_id,
            )
        )
        logger.info(f"Scheduled one-shot run of {task.id} at {fire_at.isoformat()}")
        return schedule_id

    def next_run(self, schedule: Schedule, base: datetime | None = None) -> datetime:
        base = base or datetime.now(UTC)
        if schedule.type is ScheduleType.CRON:
            return next_cron_run(schedule.pattern, base)
        if schedule.type is ScheduleType.INTERVAL:
            return base + timedelta(milliseconds=schedule.interval_ms)
        raise ScheduleError(f"Schedule '{schedule.id}' of type {schedule.type} does not recur")

    async def reschedule(
        self,
        schedule: Schedule,
        *,
        last_run: datetime | None = None,
        after: datetime | None = None,
    ) -> Schedule:
        """
        Compute the next run, persist it and arm its timer.

        Intervals are measured from now (the kickoff of the previous run),
        not from its completion. ``after`` is the fire time being replaced;
        the next run is never computed from an earlier base.
        """
        base = datetime.now(UTC)
        if after is not None and after > base:
            base = after
        next_run = self.next_run(schedule, base)
        changes: dict[str, Any] = {"next_run": next_run}
        if last_run is not None:
            changes["last_run"] = last_run
        updated = await self.store.update_schedule(schedule.id, changes)
        if updated is None:
            raise ScheduleError(f"Schedule '{schedule.id}' not found")

        await self.store.create_timer(
            Timer(
                id=schedule_timer_id(schedule.id, next_run),
                type=TimerType.CRON if schedule.type is ScheduleType.CRON else TimerType.SCHEDULED,
                fire_at=next_run,
                schedule_id=schedule.id,
            )
        )
        logger.debug(f"Schedule {schedule.id} next run at {next_run.isoformat()}")
        return updated

    async def pause(self, schedule_id: str) -> Schedule | None:
        """Stop starting new executions; the pending timer is dropped when it fires."""
        return await self.store.update_schedule(schedule_id, {"status": ScheduleStatus.PAUSED})

    async def resume(self, schedule_id: str) -> Schedule | None:
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is None:
            return None
        updated = await self.store.update_schedule(schedule_id, {"status": ScheduleStatus.ACTIVE})
        if schedule.type is ScheduleType.ONCE:
            if updated.next_run is not None:
                await self.store.create_timer(
                    Timer(
                        id=once_timer_id(schedule_id),
                        type=TimerType.SCHEDULED,
                        fire_at=updated.next_run,
                        schedule_id=schedule_id,
                    )
                )
            return updated
        return await self.reschedule(updated)

    async def update(
        self,
        schedule_id: str,
        *,
        cron: str | None = None,
        interval_ms: int | None = None,
        input: Any = ...,
    ) -> Schedule:
        """Change the timing and/or input of a recurring schedule."""
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleError(f"Schedule '{schedule_id}' not found")
        changes: dict[str, Any] = {}
        if cron is not None or interval_ms is not None:
            changes["type"] = _validate(cron, interval_ms)
            changes["pattern"] = cron
            changes["interval_ms"] = interval_ms
        if input is not ...:
            changes["input"] = input
        updated = await self.store.update_schedule(schedule_id, changes)
        if "type" in changes and updated.is_active:
            return await self.reschedule(updated)
        return updated

    async def remove(self, schedule_id: str) -> None:
        """Delete a schedule. Its pending timer is dropped when it fires."""
        await self.store.delete_schedule(schedule_id)
        await self.store.delete_timer(once_timer_id(schedule_id))

    async def get(self, schedule_id: str) -> Schedule | None:
        return await self.store.get_schedule(schedule_id)

    async def list(self) -> list[Schedule]:
        return await self.store.list_schedules()
