"""
Tests for external signals: delivery, buffering, exactly-once slots and
timeouts.
"""

import asyncio

import pytest

from pydurable import (
    DurableContext,
    DurableInvariantError,
    ExecutionStatus,
    SignalId,
    SignalReceived,
    SignalTimedOut,
    SignalTimeoutError,
    StepResult,
    current_context,
    durable_task,
)
from pydurable.executor.signal import SignalError
from pydurable.models import AuditEntryKind

from conftest import later

Approved: SignalId[dict] = SignalId("approved")


@durable_task("approval")
async def approval(_):
    ctx = current_context()
    decision = await ctx.wait_for_signal(Approved)
    return decision["by"]


@pytest.mark.asyncio
async def test_signal_resumes_waiting_execution(service):
    execution_id = await service.start(approval)
    execution = await service.store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.SLEEPING

    slot = await service.signal(execution_id, "approved", {"by": "alice"})

    assert slot == "__signal:approved"
    assert await service.wait(execution_id, timeout_ms=1000) == "alice"


@pytest.mark.asyncio
async def test_signal_before_wait_is_buffered(service):
    @durable_task("buffered")
    async def buffered(_):
        ctx = current_context()
        await ctx.sleep(10)
        return await ctx.wait_for_signal("go")

    execution_id = await service.start(buffered)
    slot = await service.signal(execution_id, "go", 42)
    assert slot == "__signal:go"

    entries = await service.store.list_audit_entries(execution_id)
    delivered = [e for e in entries if e.kind is AuditEntryKind.SIGNAL_DELIVERED]
    assert delivered[0].data["buffered"] is True

    await service.poller.poll_once(later())
    assert await service.wait(execution_id, timeout_ms=1000) == 42


@pytest.mark.asyncio
async def test_each_wait_consumes_one_signal(service):
    @durable_task("collector")
    async def collector(_):
        ctx = current_context()
        first = await ctx.wait_for_signal("item")
        second = await ctx.wait_for_signal("item")
        return [first, second]

    execution_id = await service.start(collector)
    assert await service.signal(execution_id, "item", "a") == "__signal:item"
    assert await service.signal(execution_id, "item", "b") == "__signal:item:1"

    assert await service.wait(execution_id, timeout_ms=1000) == ["a", "b"]


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_concurrent_signals_land_in_distinct_slots(service):
    @durable_task("fan-in")
    async def fan_in(_):
        ctx = current_context()
        return [await ctx.wait_for_signal("vote") for _ in range(3)]

    execution_id = await service.start(fan_in)
    slots = await asyncio.gather(
        *(service.signal(execution_id, "vote", n) for n in range(3))
    )

    assert sorted(slots) == ["__signal:vote", "__signal:vote:1", "__signal:vote:2"]
    result = await service.wait(execution_id, timeout_ms=2000)
    assert sorted(result) == [0, 1, 2]


@pytest.mark.asyncio
async def test_signal_wait_times_out(service):
    @durable_task("expiring")
    async def expiring(_):
        ctx = current_context()
        outcome = await ctx.wait_for_signal("reply", timeout_ms=50)
        match outcome:
            case SignalReceived(payload):
                return ("received", payload)
            case SignalTimedOut():
                return ("timed_out", None)

    execution_id = await service.start(expiring)
    assert await service.poller.poll_once(later()) == 1

    assert await service.wait(execution_id, timeout_ms=1000) == ("timed_out", None)
    slot = await service.store.get_step_result(execution_id, "__signal:reply")
    assert slot.result == {"state": "timed_out"}


Shipped: SignalId[dict] = SignalId("shipped")


@pytest.mark.asyncio
async def test_step_sleep_then_signal_timeout_replays_step_once(service, calls):
    @durable_task("ship-or-expire")
    async def ship_or_expire(_):
        ctx = current_context()
        await ctx.step("charge", lambda: calls.hit("charge"))
        await ctx.sleep(10)
        return await ctx.wait_for_signal(Shipped, timeout_ms=20)

    execution_id = await service.start(ship_or_expire)
    assert await service.store.get_timer(f"sleep:{execution_id}:__sleep:0") is not None

    # Fires the sleep; the replay arms the signal timeout and suspends again
    await service.poller.poll_once(later())
    execution = await service.store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.SLEEPING
    timeout_timer = f"signal_timeout:{execution_id}:__signal:shipped"
    assert await service.store.get_timer(timeout_timer) is not None

    await service.poller.poll_once(later())

    outcome = await service.wait(execution_id, timeout_ms=1000)
    assert isinstance(outcome, SignalTimedOut)
    assert outcome.kind == "timeout"
    assert calls["charge"] == 1


@pytest.mark.asyncio
async def test_signal_beats_timeout_and_disarms_timer(service):
    @durable_task("racing")
    async def racing(_):
        ctx = current_context()
        return await ctx.wait_for_signal("reply", timeout_ms=60_000)

    execution_id = await service.start(racing)
    timer_id = f"signal_timeout:{execution_id}:__signal:reply"
    assert await service.store.get_timer(timer_id) is not None

    await service.signal(execution_id, "reply", "yes")

    assert await service.store.get_timer(timer_id) is None
    assert await service.wait(execution_id, timeout_ms=1000) == SignalReceived("yes")
    assert await service.poller.poll_once(later(120_000)) == 0


@pytest.mark.asyncio
async def test_signal_to_finished_execution_is_buffered_without_resume(service):
    @durable_task("done")
    async def done(_):
        return 1

    execution_id = await service.start(done)
    await service.signal(execution_id, "late", "ignored")

    execution = await service.store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_explicit_step_id_names_the_slot(service):
    @durable_task("named-wait")
    async def named_wait(_):
        ctx = current_context()
        return await ctx.wait_for_signal("approved", step_id="manager-approval")

    execution_id = await service.start(named_wait)
    assert (
        await service.signal(execution_id, "approved", "ok")
        == "__signal:approved:manager-approval"
    )
    assert await service.wait(execution_id, timeout_ms=1000) == "ok"


@pytest.mark.asyncio
async def test_explicit_slot_does_not_catch_a_signal_of_the_same_name(service):
    @durable_task("two-signals")
    async def two_signals(_):
        ctx = current_context()
        approved = await ctx.wait_for_signal("approved", step_id="shipped")
        shipped = await ctx.wait_for_signal("shipped")
        return {"approved": approved, "shipped": shipped}

    execution_id = await service.start(two_signals)

    # Buffered for the later wait, the approval slot keeps waiting
    assert await service.signal(execution_id, "shipped", {"tracking": "T1"}) == "__signal:shipped"
    execution = await service.store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.SLEEPING

    await service.signal(execution_id, "approved", {"by": "ana"})
    assert await service.wait(execution_id, timeout_ms=1000) == {
        "approved": {"by": "ana"},
        "shipped": {"tracking": "T1"},
    }


@pytest.mark.asyncio
async def test_numeric_explicit_signal_slot_is_rejected(memory_store):
    ctx = DurableContext(memory_store, "exec-numeric")
    with pytest.raises(DurableInvariantError):
        await ctx.wait_for_signal("approved", step_id="1")


@pytest.mark.asyncio
async def test_slot_waiting_on_another_signal_is_not_a_delivery_target(service):
    execution_id = "exec-legacy"
    await service.store.save_step_result(
        StepResult(execution_id, "__signal:shipped", {"state": "waiting", "signal_id": "approved"})
    )

    with pytest.raises(SignalError):
        await service.signal(execution_id, "shipped", {"tracking": "T1"})

    slot = await service.store.get_step_result(execution_id, "__signal:shipped")
    assert slot.state() == "waiting"

@pytest.mark.asyncio
async def test_timed_out_slot_without_timeout_is_an_error(memory_store):
    await memory_store.save_step_result(
        StepResult("exec-changed", "__signal:approved", {"state": "timed_out"})
    )
    ctx = DurableContext(memory_store, "exec-changed")

    with pytest.raises(SignalTimeoutError):
        await ctx.wait_for_signal(Approved)


@pytest.mark.asyncio
async def test_slot_waiting_on_another_signal_is_rejected(memory_store):
    await memory_store.save_step_result(
        StepResult(
            "exec-renamed",
            "__signal:approved",
            {"state": "waiting", "signal_id": "rejected"},
        )
    )
    ctx = DurableContext(memory_store, "exec-renamed")

    with pytest.raises(DurableInvariantError):
        await ctx.wait_for_signal(Approved)
