"""
Tests for memoized steps: at-most-once side effects, retries, timeouts and
step id rules.
"""

import pytest

from pydurable import (
    DurableContext,
    DurableInvariantError,
    ExecutionStatus,
    RetryableError,
    RetryPolicy,
    StepId,
    StepTimeoutError,
    current_context,
    durable_task,
)
from pydurable.core.outcome import _SuspendExecution

from conftest import later


class Declined(RetryableError):
    def is_retryable(self) -> bool:
        return False


@pytest.mark.asyncio
async def test_step_result_is_replayed_not_recomputed(service, calls):
    @durable_task("replay")
    async def replay(_):
        ctx = current_context()
        first = await ctx.step("charge", lambda: calls.hit("charge"))
        await ctx.sleep(10)
        return first

    execution_id = await service.start(replay)
    execution = await service.store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.SLEEPING

    await service.poller.poll_once(later())

    assert await service.wait(execution_id, timeout_ms=1000) == 1
    assert calls["charge"] == 1


@pytest.mark.asyncio
async def test_sync_and_async_step_functions(service):
    async def fetch():
        return {"id": 7}

    @durable_task("mixed")
    async def mixed(_):
        ctx = current_context()
        a = await ctx.step("sync", lambda: 1)
        b = await ctx.step("async", fetch)
        return a, b

    assert await service.start_and_wait(mixed) == (1, {"id": 7})


@pytest.mark.asyncio
async def test_cached_value_wins_over_new_computation(memory_store):
    ctx = DurableContext(memory_store, "exec-1")
    assert await ctx.step("a", lambda: "first") == "first"

    replayed = DurableContext(memory_store, "exec-1")
    assert await replayed.step("a", lambda: "second") == "first"


@pytest.mark.asyncio
async def test_mutating_a_step_result_does_not_change_replays(memory_store):
    ctx = DurableContext(memory_store, "exec-1")
    order = await ctx.step("order", lambda: {"lines": ["book"]})
    order["lines"].append("lamp")

    replayed = DurableContext(memory_store, "exec-1")
    cached = await replayed.step("order", lambda: {"lines": []})
    cached["lines"].clear()

    again = DurableContext(memory_store, "exec-1")
    assert await again.step("order", lambda: {"lines": []}) == {"lines": ["book"]}


@pytest.mark.asyncio
async def test_step_retries_until_success(memory_store, calls):
    def flaky():
        if calls.hit("flaky") < 3:
            raise ConnectionError("transient")
        return "ok"

    ctx = DurableContext(memory_store, "exec-retry")
    policy = RetryPolicy(max_attempts=3, initial_delay_ms=1, max_delay_ms=5)
    assert await ctx.step("flaky", flaky, retry_policy=policy) == "ok"
    assert calls["flaky"] == 3


@pytest.mark.asyncio
async def test_step_gives_up_after_policy_is_exhausted(memory_store, calls):
    def broken():
        calls.hit("broken")
        raise ConnectionError("down")

    ctx = DurableContext(memory_store, "exec-exhaust")
    policy = RetryPolicy(max_attempts=2, initial_delay_ms=1, max_delay_ms=1)
    with pytest.raises(ConnectionError):
        await ctx.step("broken", broken, retry_policy=policy)
    assert calls["broken"] == 2
    assert await memory_store.get_step_result("exec-exhaust", "broken") is None


@pytest.mark.asyncio
async def test_non_retryable_error_is_not_retried(memory_store, calls):
    def decline():
        calls.hit("decline")
        raise Declined("card declined")

    ctx = DurableContext(memory_store, "exec-declined")
    policy = RetryPolicy(max_attempts=5, initial_delay_ms=1, max_delay_ms=1)
    with pytest.raises(Declined):
        await ctx.step("decline", decline, retry_policy=policy)
    assert calls["decline"] == 1


@pytest.mark.asyncio
async def test_step_timeout(memory_store):
    import asyncio

    async def slow():
        await asyncio.sleep(1)

    ctx = DurableContext(memory_store, "exec-timeout")
    with pytest.raises(StepTimeoutError):
        await ctx.step("slow", slow, timeout_ms=10)


@pytest.mark.asyncio
async def test_builder_form_and_typed_step_id(memory_store):
    Total: StepId[int] = StepId("total")
    ctx = DurableContext(memory_store, "exec-builder")
    assert await ctx.step(Total).up(lambda: 42).down(lambda: None) == 42

    stored = await memory_store.get_step_result("exec-builder", "total")
    assert stored.result == 42


@pytest.mark.asyncio
async def test_step_without_function_is_rejected(memory_store):
    ctx = DurableContext(memory_store, "exec-nofn")
    with pytest.raises(DurableInvariantError):
        await ctx.step("empty")


@pytest.mark.asyncio
@pytest.mark.parametrize("step_id", ["__sleep:0", "__custom", "rollback:charge"])
async def test_reserved_step_ids_are_rejected(memory_store, step_id):
    ctx = DurableContext(memory_store, "exec-reserved")
    with pytest.raises(DurableInvariantError):
        await ctx.step(step_id, lambda: 1)


@pytest.mark.asyncio
async def test_duplicate_step_id_in_one_run_is_rejected(memory_store):
    ctx = DurableContext(memory_store, "exec-dup")
    await ctx.step("a", lambda: 1)
    with pytest.raises(DurableInvariantError):
        await ctx.step("a", lambda: 2)


@pytest.mark.asyncio
async def test_current_context_outside_execution():
    from pydurable import DurableError

    with pytest.raises(DurableError):
        current_context()


@pytest.mark.asyncio
async def test_implicit_step_id_policy_error(memory_store):
    ctx = DurableContext(memory_store, "exec-policy", implicit_step_ids="error")
    with pytest.raises(DurableInvariantError):
        await ctx.sleep(10)

    # An explicit id is always accepted
    with pytest.raises(_SuspendExecution):
        await ctx.sleep(10, step_id="cool-down")
    assert await memory_store.get_step_result("exec-policy", "__sleep:cool-down") is not None


@pytest.mark.asyncio
async def test_note_and_emit_are_written_once(service, calls):
    received = []

    @durable_task("annotated")
    async def annotated(_):
        ctx = current_context()
        await ctx.note("starting", {"n": 1})
        await ctx.emit("order.created", {"id": 1})
        await ctx.sleep(5)
        return "done"

    from pydurable import InMemoryEventBus
    from pydurable.bus import EVENTS_CHANNEL

    bus = InMemoryEventBus()
    await bus.subscribe(EVENTS_CHANNEL, lambda event: received.append(event.type))
    service.manager.bus = bus

    execution_id = await service.start(annotated)
    await service.poller.poll_once(later())
    assert await service.wait(execution_id, timeout_ms=1000) == "done"

    assert received == ["order.created"]
    steps = await service.store.list_step_results(execution_id)
    ids = [step.step_id for step in steps]
    assert "__note:0" in ids
    assert "__emit:order.created:0" in ids
