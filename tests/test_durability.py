"""
Restart and replay scenarios.

A workflow is started by one "process" (service + store instance), the
process goes away, and a fresh process on the same database finishes it.
Side effects that completed before the restart must not run again.
"""

import pytest

from pydurable import DurableService, ExecutionStatus, current_context, durable_task
from pydurable.storage.sqlite import SqliteStore

from conftest import Calls, later, make_config


def checkout_task(calls: Calls):
    @durable_task("checkout")
    async def checkout(order):
        ctx = current_context()

        def charge():
            calls.hit("charge")
            return f"receipt-{order['id']}"

        receipt = await ctx.step("charge", charge)
        await ctx.sleep(50)
        await ctx.step("ship", lambda: calls.hit("ship"))
        return receipt

    return checkout


@pytest.mark.durability
@pytest.mark.asyncio
async def test_charge_runs_once_across_restart(temp_db_path, calls):
    checkout = checkout_task(calls)

    first_store = SqliteStore(str(temp_db_path))
    await first_store.connect()
    first = DurableService(first_store, tasks=[checkout], config=make_config())
    execution_id = await first.start(checkout, {"id": 7})

    execution = await first_store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.SLEEPING
    assert calls["charge"] == 1
    await first_store.close()

    second_store = SqliteStore(str(temp_db_path))
    await second_store.connect()
    try:
        second = DurableService(second_store, tasks=[checkout], config=make_config())

        # Recovery replays up to the sleep and suspends again
        assert await second.recover() == [execution_id]
        assert calls["charge"] == 1

        assert await second.poller.poll_once(later()) == 1
        assert await second.wait(execution_id, timeout_ms=1000) == "receipt-7"
    finally:
        await second_store.close()

    assert calls["charge"] == 1
    assert calls["ship"] == 1


@pytest.mark.durability
@pytest.mark.asyncio
async def test_sleep_does_not_fire_early(service, calls):
    checkout = checkout_task(calls)
    execution_id = await service.start(checkout, {"id": 1})

    assert await service.poller.poll_once() == 0
    execution = await service.store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.SLEEPING
    assert calls["ship"] == 0

    timer = await service.store.get_timer(f"sleep:{execution_id}:__sleep:0")
    assert timer is not None
    assert timer.step_id == "__sleep:0"


@pytest.mark.durability
@pytest.mark.asyncio
async def test_lost_sleep_timer_is_rearmed_on_replay(service, calls):
    checkout = checkout_task(calls)
    execution_id = await service.start(checkout, {"id": 2})
    timer_id = f"sleep:{execution_id}:__sleep:0"
    await service.store.delete_timer(timer_id)

    await service.process_execution(execution_id)

    assert await service.store.get_timer(timer_id) is not None
    await service.poller.poll_once(later())
    assert await service.wait(execution_id, timeout_ms=1000) == "receipt-2"
    assert calls["charge"] == 1


@pytest.mark.durability
@pytest.mark.asyncio
async def test_duplicate_resume_is_harmless(service, calls):
    checkout = checkout_task(calls)
    execution_id = await service.start(checkout, {"id": 3})
    await service.poller.poll_once(later())

    # Late duplicates of the resume hint
    await service.process_execution(execution_id)
    await service.process_execution(execution_id)

    assert await service.wait(execution_id, timeout_ms=1000) == "receipt-3"
    assert calls["charge"] == 1
    assert calls["ship"] == 1


@pytest.mark.durability
@pytest.mark.asyncio
async def test_recover_skips_terminal_executions(service):
    @durable_task("quick")
    async def quick(_):
        return "ok"

    execution_id = await service.start(quick)
    assert await service.wait(execution_id) == "ok"
    assert await service.recover() == []
