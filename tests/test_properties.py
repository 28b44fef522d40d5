"""
Property-based tests for pydurable using Hypothesis.

These cover the invariants that must hold for any input:
- Retry policy delays
- Signal slot ordering
- Step memoization and the write-once step store
- Execution status transitions guarded by the store
"""

import pickle

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pydurable import (
    DurableContext,
    ExecutionStatus,
    InMemoryStore,
    RetryPolicy,
    StepResult,
)
from pydurable.core.ids import SignalId, StepId, resolve_id
from pydurable.executor.signal import _slot_order
from pydurable.models import Execution
from pydurable.storage.base import merge_execution_changes

from conftest import json_values, step_ids

# ==============================================================================
# Retry policy
# ==============================================================================


@pytest.mark.property
@given(
    max_attempts=st.integers(min_value=1, max_value=20),
    initial_delay_ms=st.integers(min_value=0, max_value=10_000),
    max_delay_ms=st.integers(min_value=0, max_value=60_000),
    multiplier=st.floats(min_value=1.0, max_value=5.0),
)
def test_retry_delays_are_monotonic_and_capped(
    max_attempts, initial_delay_ms, max_delay_ms, multiplier
):
    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay_ms=initial_delay_ms,
        max_delay_ms=max_delay_ms,
        backoff_multiplier=multiplier,
    )

    delays = [policy.delay_for_attempt(n) for n in range(1, max_attempts)]

    assert all(0 <= d <= max_delay_ms for d in delays)
    assert delays == sorted(delays)
    assert policy.delay_for_attempt(max_attempts) is None


@pytest.mark.property
@given(retries=st.integers(min_value=0, max_value=50))
def test_for_retries_allows_exactly_that_many_retries(retries):
    policy = RetryPolicy.for_retries(retries)

    allowed = [n for n in range(1, retries + 10) if policy.delay_for_attempt(n) is not None]
    assert len(allowed) == retries


@pytest.mark.property
@given(retries=st.integers(max_value=-1))
def test_for_retries_rejects_negative(retries):
    with pytest.raises(ValueError):
        RetryPolicy.for_retries(retries)


# ==============================================================================
# Identifiers and signal slots
# ==============================================================================


@pytest.mark.property
@given(key=step_ids)
def test_typed_ids_resolve_to_plain_key(key):
    assert resolve_id(key) == resolve_id(SignalId(key)) == resolve_id(StepId(key)) == key


@pytest.mark.property
@given(numbers=st.lists(st.integers(min_value=1, max_value=500), unique=True, max_size=20))
def test_numbered_slots_sort_numerically_after_base(numbers):
    base = "__signal:approved"
    slots = [f"{base}:{n}" for n in numbers] + [base, f"{base}:named-wait"]

    ordered = sorted(slots, key=lambda s: _slot_order(base, s))

    assert ordered[0] == base
    assert ordered[-1] == f"{base}:named-wait"
    assert [int(s.rsplit(":", 1)[1]) for s in ordered[1:-1]] == sorted(numbers)


# ==============================================================================
# Step memoization
# ==============================================================================


@pytest.mark.property
@given(step_id=step_ids, first=json_values, second=json_values)
@settings(max_examples=50, deadline=None)
async def test_step_result_is_memoized(step_id, first, second):
    store = InMemoryStore()

    ctx = DurableContext(store, "exec")
    assert await ctx.step(step_id, lambda: first) == first

    replayed = DurableContext(store, "exec")
    assert await replayed.step(step_id, lambda: second) == first


@pytest.mark.property
@given(values=st.lists(json_values, min_size=1, max_size=10))
@settings(max_examples=50, deadline=None)
async def test_first_writer_wins(values):
    store = InMemoryStore()

    outcomes = [
        await store.save_step_result_if_absent(StepResult("exec", "slot", value))
        for value in values
    ]

    assert outcomes == [True] + [False] * (len(values) - 1)
    assert (await store.get_step_result("exec", "slot")).result == values[0]


@pytest.mark.property
@given(value=json_values)
def test_step_results_survive_pickling(value):
    result = StepResult("exec", "step", value)
    assert pickle.loads(pickle.dumps(result)) == result


# ==============================================================================
# Status transitions
# ==============================================================================


@pytest.mark.property
@given(
    current=st.sampled_from(list(ExecutionStatus)),
    new=st.sampled_from(list(ExecutionStatus)),
    allow_revert=st.booleans(),
)
def test_terminal_status_is_sticky_without_revert(current, new, allow_revert):
    execution = Execution(id="e", task_id="t", status=current)

    merged = merge_execution_changes(
        execution, {"status": new}, allow_terminal_revert=allow_revert
    )

    if current.is_terminal and new is not current and not allow_revert:
        assert merged is None
    else:
        assert merged.status is new
