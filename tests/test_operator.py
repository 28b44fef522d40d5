"""
Tests for operator inspection and manual interventions.
"""

import pytest

from pydurable import (
    DurableError,
    DurableOperator,
    ExecutionStatus,
    current_context,
    durable_task,
)
from pydurable.models import AuditEntryKind
from pydurable.storage.base import DurableStore

from conftest import later


@pytest.fixture
def operator(service) -> DurableOperator:
    return DurableOperator(service.store, audit=service.audit, manager=service.manager)


def flaky_compensation(calls):
    @durable_task("flaky-compensation")
    async def flaky_compensation_task(_):
        ctx = current_context()

        def release():
            if calls.hit("release") == 1:
                raise RuntimeError("inventory service down")

        await ctx.step("reserve").up(lambda: calls.hit("reserve")).down(release)
        await ctx.step("ship").up(lambda: calls.hit("ship")).down(lambda: calls.hit("unship"))
        try:
            await ctx.step("pay", _fail)
        except ValueError:
            await ctx.rollback()
            return "compensated"

    return flaky_compensation_task


def _fail():
    raise ValueError("payment failed")


@pytest.mark.asyncio
async def test_execution_detail_includes_steps_and_audit(service, operator):
    @durable_task("detailed")
    async def detailed(_):
        ctx = current_context()
        await ctx.step("a", lambda: 1)
        await ctx.step("b", lambda: 2)
        return 3

    execution_id = await service.start(detailed)
    detail = await operator.get_execution_detail(execution_id)

    assert detail.execution.status is ExecutionStatus.COMPLETED
    assert [step.step_id for step in detail.steps] == ["a", "b"]
    assert detail.audit
    assert await operator.get_execution_detail("missing") is None


@pytest.mark.asyncio
async def test_list_executions_filters_by_status(service, operator):
    @durable_task("listed")
    async def listed(fail):
        if fail:
            raise ValueError("no")
        return "ok"

    done = await service.start(listed, False)
    retrying = await service.start(listed, True)

    completed = await operator.list_executions(status=ExecutionStatus.COMPLETED)
    assert [e.id for e in completed] == [done]
    newest_first = await operator.list_executions(task_id="listed")
    assert [e.id for e in newest_first] == [retrying, done]


@pytest.mark.asyncio
async def test_retry_rollback_finishes_compensation(service, operator, calls):
    task = flaky_compensation(calls)
    execution_id = await service.start(task)
    execution = await service.store.get_execution(execution_id)
    assert execution.status is ExecutionStatus.COMPENSATION_FAILED
    assert calls["unship"] == 1

    await operator.retry_rollback(execution_id, actor="ops")

    assert await service.wait(execution_id, timeout_ms=1000) == "compensated"
    # The compensation that already succeeded is not repeated
    assert calls["unship"] == 1
    assert calls["release"] == 2
    assert calls["reserve"] == 1

    entries = await service.store.list_audit_entries(execution_id)
    actions = [e.data for e in entries if e.kind is AuditEntryKind.OPERATOR_ACTION]
    assert actions == [{"action": "retry_rollback", "actor": "ops"}]


@pytest.mark.asyncio
async def test_retry_rollback_requires_compensation_failed(service, operator):
    @durable_task("fine")
    async def fine(_):
        return 1

    execution_id = await service.start(fine)
    with pytest.raises(DurableError):
        await operator.retry_rollback(execution_id)


@pytest.mark.asyncio
async def test_skip_step_lets_replay_move_past_it(service, operator, calls):
    @durable_task("stuck")
    async def stuck(_):
        ctx = current_context()
        await ctx.sleep(5)
        await ctx.step("legacy-call", lambda: calls.hit("legacy"))
        return "past it"

    execution_id = await service.start(stuck)
    await operator.skip_step(execution_id, "legacy-call", actor="ops")
    await service.poller.poll_once(later())

    assert await service.wait(execution_id, timeout_ms=1000) == "past it"
    assert calls["legacy"] == 0
    step = await service.store.get_step_result(execution_id, "legacy-call")
    assert step.result == {"skipped": True, "manual": True}


@pytest.mark.asyncio
async def test_force_fail_overrides_status(service, operator):
    @durable_task("waiting")
    async def waiting(_):
        return await current_context().wait_for_signal("never")

    execution_id = await service.start(waiting)
    failed = await operator.force_fail(execution_id, "abandoned", actor="ops")

    assert failed.status is ExecutionStatus.FAILED
    with pytest.raises(DurableError):
        await service.wait(execution_id, timeout_ms=100)
    with pytest.raises(DurableError):
        await operator.force_fail("missing", "x")


@pytest.mark.asyncio
async def test_edit_step_result_changes_replayed_value(service, operator):
    @durable_task("editable")
    async def editable(_):
        ctx = current_context()
        price = await ctx.step("price", lambda: 100)
        await ctx.sleep(5)
        return price

    execution_id = await service.start(editable)
    await operator.edit_step_result(execution_id, "price", 80, actor="ops")
    await service.poller.poll_once(later())

    assert await service.wait(execution_id, timeout_ms=1000) == 80


@pytest.mark.asyncio
async def test_list_stuck_executions(service, operator, calls):
    assert await operator.list_stuck_executions() == []

    execution_id = await service.start(flaky_compensation(calls))

    stuck = await operator.list_stuck_executions()
    assert [e.id for e in stuck] == [execution_id]


class MinimalStore(DurableStore):
    """Implements only the required contract, no optional capabilities."""

    async def save_execution(self, execution):
        return None

    async def get_execution(self, execution_id):
        return None

    async def update_execution(self, execution_id, changes, *, allow_terminal_revert=False):
        return None

    async def list_incomplete_executions(self):
        return []

    async def get_step_result(self, execution_id, step_id):
        return None

    async def save_step_result(self, result):
        return None

    async def save_step_result_if_absent(self, result):
        return True

    async def create_timer(self, timer):
        return None

    async def get_timer(self, timer_id):
        return None

    async def get_ready_timers(self, now=None):
        return []

    async def mark_timer_fired(self, timer_id):
        return None

    async def delete_timer(self, timer_id):
        return None

    async def create_schedule(self, schedule):
        return True

    async def get_schedule(self, schedule_id):
        return None

    async def update_schedule(self, schedule_id, changes):
        return None

    async def delete_schedule(self, schedule_id):
        return None

    async def list_schedules(self):
        return []


@pytest.mark.asyncio
async def test_missing_capability_is_reported():
    operator = DurableOperator(MinimalStore())
    with pytest.raises(DurableError, match="list_executions"):
        await operator.list_executions()
    with pytest.raises(DurableError, match="skip_step"):
        await operator.skip_step("e", "s")
