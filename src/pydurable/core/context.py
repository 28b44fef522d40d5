"""Checkpoint/replay context for durable workflows.

DurableContext is the API workflow code calls: ``step``, ``sleep``,
``wait_for_signal``, ``emit``, ``switch``, ``rollback`` and ``note``. Every
call is a checkpoint keyed by a deterministic step id inside the store, so
re-invoking the workflow from the top after a restart skips work that already
happened.

Design: Task-Local State (contextvars)
    The orchestrator binds the context to ``EXECUTION_CONTEXT`` around each
    attempt. Workflow code fetches it with ``current_context()`` instead of
    threading it through every call, and concurrent executions in one
    process never see each other's context.

Example:
    ```python
    @durable_task("process-order")
    async def process_order(order):
        ctx = current_context()
        charge = await ctx.step("charge", lambda: payments.charge(order))
        await ctx.sleep(60_000)
        shipped = await ctx.wait_for_signal(Shipped, timeout_ms=86_400_000)
        ...
    ```
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Generator, Sequence
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

from pydurable.bus.base import EVENTS_CHANNEL, EventBus
from pydurable.config import ImplicitStepIdPolicy
from pydurable.core.audit import AuditLogger
from pydurable.core.errors import (
    CompensationFailedError,
    DurableError,
    DurableInvariantError,
    ExecutionCancelledError,
    SignalTimeoutError,
    StepTimeoutError,
)
from pydurable.core.ids import SignalId, StepId, resolve_id
from pydurable.core.locking import hold_lock
from pydurable.core.outcome import (
    SignalOutcome,
    SignalReceived,
    SignalTimedOut,
    SuspendReason,
    _SuspendExecution,
)
from pydurable.models import (
    AuditEntryKind,
    BusEvent,
    ErrorInfo,
    ExecutionStatus,
    RetryPolicy,
    StepResult,
    Timer,
    TimerType,
    is_retryable,
)
from pydurable.storage.base import DurableStore, ExecutionQueryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

StepFn = Callable[[], Awaitable[T] | T]

RESERVED_PREFIXES = ("__", "rollback:")

EXECUTION_CONTEXT: ContextVar[DurableContext | None] = ContextVar(
    "durable_execution_context", default=None
)
"""Task-local DurableContext of the running attempt."""


def current_context() -> DurableContext:
    """
    Context of the execution running in the current task.

    Raises:
        DurableError: when called outside a durable execution.
    """
    ctx = EXECUTION_CONTEXT.get()
    if ctx is None:
        raise DurableError("current_context() called outside a durable execution")
    return ctx


async def _call(fn: Callable[[], Any]) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


def _signal_lock(execution_id: str, signal: str) -> str:
    return f"signal:{execution_id}:{signal}"


def _ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


@dataclass(frozen=True)
class SwitchBranch(Generic[T]):
    """One arm of ``DurableContext.switch``.

    ``match`` receives the switch value; ``run`` is called with no arguments
    when this branch is chosen.
    """

    id: str
    match: Callable[[Any], bool]
    run: StepFn[T]


class StepBuilder(Generic[T]):
    """
    Awaitable returned by ``DurableContext.step``.

    ``up`` sets the side effect, ``down`` registers its compensation for
    ``rollback()``. Awaiting the builder runs the step.

    Example:
        ```python
        await ctx.step("reserve").up(reserve_stock).down(release_stock)
        ```
    """

    def __init__(
        self,
        ctx: DurableContext,
        step_id: str | StepId[T],
        up: StepFn[T] | None,
        policy: RetryPolicy,
        timeout_ms: int | None,
    ):
        self._ctx = ctx
        self._step_id = step_id
        self._up = up
        self._down: StepFn[Any] | None = None
        self._policy = policy
        self._timeout_ms = timeout_ms

    def up(self, fn: StepFn[T]) -> StepBuilder[T]:
        self._up = fn
        return self

    def down(self, fn: StepFn[Any]) -> StepBuilder[T]:
        self._down = fn
        return self

    def __await__(self) -> Generator[Any, None, T]:
        if self._up is None:
            raise DurableInvariantError(f"Step '{self._step_id}' has no function to run")
        return self._ctx._run_step(
            resolve_id(self._step_id), self._up, self._down, self._policy, self._timeout_ms
        ).__await__()


class DurableContext:
    """
    Per-attempt state of one execution.

    A new context is created for every attempt; everything that must survive
    the attempt lives in the store. In-memory state here only tracks the
    current replay pass: seen step ids, positional counters, and registered
    compensations.
    """

    def __init__(
        self,
        store: DurableStore,
        execution_id: str,
        *,
        task_id: str | None = None,
        attempt: int = 1,
        bus: EventBus | None = None,
        audit: AuditLogger | None = None,
        implicit_step_ids: ImplicitStepIdPolicy = "allow",
    ):
        self.store = store
        self.execution_id = execution_id
        self.task_id = task_id
        self.attempt = attempt
        self._bus = bus
        self._audit = audit
        self._implicit_step_ids = implicit_step_ids

        self._seen_step_ids: set[str] = set()
        self._compensations: list[tuple[str, StepFn[Any]]] = []
        self._sleep_index = 0
        self._note_index = 0
        self._signal_indexes: dict[str, int] = {}
        self._emit_indexes: dict[str, int] = {}
        self._warned_kinds: set[str] = set()

    def __repr__(self) -> str:
        return f"DurableContext(execution_id={self.execution_id!r}, attempt={self.attempt})"

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    async def _check_cancelled(self) -> None:
        execution = await self.store.get_execution(self.execution_id)
        if execution is not None and execution.status is ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(
                "Execution cancelled",
                execution_id=self.execution_id,
                task_id=execution.task_id,
                attempt=execution.attempt,
                status=execution.status,
                error=execution.error,
            )

    def _claim_step_id(self, step_id: str) -> None:
        if step_id in self._seen_step_ids:
            raise DurableInvariantError(
                f"Duplicate step id '{step_id}' in one run of execution {self.execution_id}"
            )
        self._seen_step_ids.add(step_id)

    def _check_user_step_id(self, step_id: str) -> None:
        if step_id.startswith(RESERVED_PREFIXES):
            raise DurableInvariantError(
                f"Step id '{step_id}' uses a reserved prefix ('__' and 'rollback:' are internal)"
            )

    def _implicit_step_id(self, kind: str) -> None:
        if self._implicit_step_ids == "allow":
            return
        message = (
            f"{kind}() without step_id derives its id from call order; "
            "refactoring call sites can desynchronize in-flight executions"
        )
        if self._implicit_step_ids == "error":
            raise DurableInvariantError(message)
        if kind not in self._warned_kinds:
            self._warned_kinds.add(kind)
            logger.warning(f"Execution {self.execution_id}: {message}")

    async def _record(self, kind: AuditEntryKind, step_id: str | None = None, **data: Any) -> None:
        if self._audit is None:
            return
        await self._audit.record(
            self.execution_id,
            kind,
            data,
            task_id=self.task_id,
            step_id=step_id,
            attempt=self.attempt,
        )

    # ------------------------------------------------------------------
    # step
    # ------------------------------------------------------------------

    def step(
        self,
        step_id: str | StepId[T],
        fn: StepFn[T] | None = None,
        *,
        retries: int = 0,
        retry_policy: RetryPolicy | None = None,
        timeout_ms: int | None = None,
    ) -> StepBuilder[T]:
        """
        Run ``fn`` at most once for this execution and memoize its result.

        On replay the stored result is returned without calling ``fn``. A
        failing call is retried according to ``retry_policy`` (or
        ``retries`` extra calls with exponential backoff) before the error
        propagates.

        Args:
            step_id: Stable id, unique within the workflow. Must not start
                with ``__`` or ``rollback:``.
            fn: Zero-argument callable, sync or async. May be supplied later
                through ``.up()``.
            retries: Shorthand for ``RetryPolicy.for_retries(retries)``.
            retry_policy: Full retry policy; wins over ``retries``.
            timeout_ms: Per-call timeout raising StepTimeoutError.

        Example:
            ```python
            receipt = await ctx.step("charge", lambda: charge(card), retries=2)
            await ctx.step("book").up(book_flight).down(cancel_flight)
            ```
        """
        policy = retry_policy or (RetryPolicy.for_retries(retries) if retries else RetryPolicy.NONE)
        return StepBuilder(self, step_id, fn, policy, timeout_ms)

    async def _run_step(
        self,
        step_id: str,
        up: StepFn[T],
        down: StepFn[Any] | None,
        policy: RetryPolicy,
        timeout_ms: int | None,
    ) -> T:
        self._check_user_step_id(step_id)
        return await self._memoized(step_id, up, down, policy, timeout_ms)

    async def _memoized(
        self,
        step_id: str,
        up: StepFn[T],
        down: StepFn[Any] | None = None,
        policy: RetryPolicy = RetryPolicy.NONE,
        timeout_ms: int | None = None,
    ) -> T:
        self._claim_step_id(step_id)
        await self._check_cancelled()

        cached = await self.store.get_step_result(self.execution_id, step_id)
        if cached is not None:
            logger.debug(f"Execution {self.execution_id}: replaying step '{step_id}' from cache")
            if down is not None:
                self._compensations.append((step_id, down))
            return cached.result

        result = await self._call_with_retry(step_id, up, policy, timeout_ms)

        written = await self.store.save_step_result_if_absent(
            StepResult(self.execution_id, step_id, result)
        )
        if not written:
            # Another worker memoized this step first; its value is the truth
            winner = await self.store.get_step_result(self.execution_id, step_id)
            if winner is not None:
                result = winner.result
        if down is not None:
            self._compensations.append((step_id, down))
        await self._record(AuditEntryKind.STEP_COMPLETED, step_id)
        return result

    async def _call_with_retry(
        self,
        step_id: str,
        fn: StepFn[T],
        policy: RetryPolicy,
        timeout_ms: int | None,
    ) -> T:
        call_number = 1
        while True:
            try:
                if timeout_ms is None:
                    return await _call(fn)
                try:
                    return await asyncio.wait_for(_call(fn), timeout_ms / 1000)
                except TimeoutError as e:
                    raise StepTimeoutError(
                        f"Step '{step_id}' timed out after {timeout_ms}ms"
                    ) from e
            except Exception as e:
                delay_ms = policy.delay_for_attempt(call_number) if is_retryable(e) else None
                if delay_ms is None:
                    raise
                logger.warning(
                    f"Execution {self.execution_id}: step '{step_id}' failed "
                    f"(call {call_number}/{policy.max_attempts}), retrying in {delay_ms}ms: {e}"
                )
                await asyncio.sleep(delay_ms / 1000)
                call_number += 1

    # ------------------------------------------------------------------
    # sleep
    # ------------------------------------------------------------------

    async def sleep(self, duration_ms: int, *, step_id: str | StepId | None = None) -> None:
        """
        Suspend the execution for ``duration_ms``.

        Persists a ``sleep`` timer and suspends the attempt. Once the timer
        has fired, the replayed call returns immediately.
        """
        await self._check_cancelled()
        if step_id is None:
            self._implicit_step_id("sleep")
            key = f"__sleep:{self._sleep_index}"
            self._sleep_index += 1
        else:
            key = f"__sleep:{resolve_id(step_id)}"
        self._claim_step_id(key)

        existing = await self.store.get_step_result(self.execution_id, key)
        state = existing.state() if existing is not None else None
        if state == "completed":
            return

        timer_id = f"sleep:{self.execution_id}:{key}"
        if state == "sleeping":
            if await self.store.get_timer(timer_id) is not None:
                raise _SuspendExecution(SuspendReason(self.execution_id, key, "sleep"))
            fire_at = _ms_to_datetime(existing.result["fire_at_ms"])
        else:
            fire_at = datetime.now(UTC) + timedelta(milliseconds=duration_ms)
            await self.store.save_step_result(
                StepResult(
                    self.execution_id,
                    key,
                    {
                        "state": "sleeping",
                        "timer_id": timer_id,
                        "fire_at_ms": int(fire_at.timestamp() * 1000),
                    },
                )
            )
            await self._record(
                AuditEntryKind.SLEEP_SCHEDULED, key, duration_ms=duration_ms, timer_id=timer_id
            )

        await self.store.create_timer(
            Timer(
                id=timer_id,
                type=TimerType.SLEEP,
                fire_at=fire_at,
                execution_id=self.execution_id,
                step_id=key,
            )
        )
        logger.debug(f"Execution {self.execution_id}: sleeping until {fire_at.isoformat()}")
        raise _SuspendExecution(SuspendReason(self.execution_id, key, "sleep"))

    # ------------------------------------------------------------------
    # wait_for_signal
    # ------------------------------------------------------------------

    async def wait_for_signal(
        self,
        signal: str | SignalId[T],
        *,
        timeout_ms: int | None = None,
        step_id: str | StepId | None = None,
    ) -> T | SignalOutcome[T]:
        """
        Suspend until ``signal`` is delivered to this execution.

        Each call site waits on its own slot: the first wait on a signal uses
        ``__signal:<id>``, later ones ``__signal:<id>:<n>``. An explicit
        ``step_id`` names the slot ``__signal:<id>:<step_id>``. A payload
        delivered before the wait is reached is buffered in the next slot.

        Returns:
            The payload when no timeout is set. With ``timeout_ms``, a
            ``SignalReceived(payload)`` or ``SignalTimedOut()``.

        Raises:
            SignalTimeoutError: the slot timed out although no timeout was
                requested (the workflow code changed under a running execution).
        """
        await self._check_cancelled()
        name = resolve_id(signal)
        async with hold_lock(
            self.store, _signal_lock(self.execution_id, name), 10_000, attempts=20, retry_delay=0.005
        ):
            return await self._wait_for_signal_locked(name, timeout_ms, step_id)

    async def _wait_for_signal_locked(
        self, name: str, timeout_ms: int | None, step_id: str | StepId | None
    ) -> Any:
        if step_id is not None:
            if not isinstance(self.store, ExecutionQueryStore):
                raise DurableInvariantError(
                    "wait_for_signal(step_id=...) requires a store that implements list_step_results()"
                )
            slot = resolve_id(step_id)
            if slot.isdigit():
                raise DurableInvariantError(
                    f"wait_for_signal step_id {slot!r} clashes with numbered slots; use a name"
                )
            key = f"__signal:{name}:{slot}"
        else:
            self._implicit_step_id("wait_for_signal")
            index = self._signal_indexes.get(name, 0)
            self._signal_indexes[name] = index + 1
            key = f"__signal:{name}" if index == 0 else f"__signal:{name}:{index}"
        self._claim_step_id(key)

        existing = await self.store.get_step_result(self.execution_id, key)
        if existing is not None:
            state = existing.state()
            if state == "completed":
                payload = existing.result.get("payload")
                return SignalReceived(payload) if timeout_ms is not None else payload
            if state == "timed_out":
                if timeout_ms is None:
                    raise SignalTimeoutError(
                        f"Signal '{name}' at '{key}' timed out but no timeout_ms was given"
                    )
                return SignalTimedOut()
            if state != "waiting" or existing.result.get("signal_id", name) != name:
                raise DurableInvariantError(f"Invalid signal step state for '{name}' at '{key}'")

            if timeout_ms is not None:
                timer_id = existing.result.get("timer_id")
                if timer_id is not None:
                    # Re-arm idempotently in case the timer record was lost
                    await self._create_signal_timer(
                        timer_id, key, _ms_to_datetime(existing.result["timeout_at_ms"])
                    )
                else:
                    await self._arm_signal_wait(name, key, timeout_ms)
            raise _SuspendExecution(SuspendReason(self.execution_id, key, "signal", name))

        await self._arm_signal_wait(name, key, timeout_ms)
        raise _SuspendExecution(SuspendReason(self.execution_id, key, "signal", name))

    async def _arm_signal_wait(self, name: str, key: str, timeout_ms: int | None) -> None:
        state: dict[str, Any] = {"state": "waiting", "signal_id": name}
        if timeout_ms is not None:
            timer_id = f"signal_timeout:{self.execution_id}:{key}"
            timeout_at = datetime.now(UTC) + timedelta(milliseconds=timeout_ms)
            await self._create_signal_timer(timer_id, key, timeout_at)
            state["timer_id"] = timer_id
            state["timeout_at_ms"] = int(timeout_at.timestamp() * 1000)
        await self.store.save_step_result(StepResult(self.execution_id, key, state))
        await self._record(AuditEntryKind.SIGNAL_WAITING, key, signal_id=name, timeout_ms=timeout_ms)

    async def _create_signal_timer(self, timer_id: str, key: str, fire_at: datetime) -> None:
        await self.store.create_timer(
            Timer(
                id=timer_id,
                type=TimerType.SIGNAL_TIMEOUT,
                fire_at=fire_at,
                execution_id=self.execution_id,
                step_id=key,
            )
        )

    # ------------------------------------------------------------------
    # emit
    # ------------------------------------------------------------------

    async def emit(
        self, event: str | SignalId, payload: Any = None, *, step_id: str | StepId | None = None
    ) -> None:
        """
        Publish ``payload`` on the event bus once per execution and call site.

        Best-effort: delivery is not part of the correctness contract, and a
        store without a bus just records the step.
        """
        event_id = resolve_id(event)
        if step_id is not None:
            key = f"__emit:{event_id}:{resolve_id(step_id)}"
        else:
            self._implicit_step_id("emit")
            index = self._emit_indexes.get(event_id, 0)
            self._emit_indexes[event_id] = index + 1
            key = f"__emit:{event_id}:{index}"

        async def publish() -> dict[str, Any]:
            if self._bus is not None:
                await self._bus.publish(EVENTS_CHANNEL, BusEvent(type=event_id, payload=payload))
            await self._record(AuditEntryKind.EMIT_PUBLISHED, key, event_id=event_id)
            return {"emitted": True}

        await self._memoized(key, publish)

    # ------------------------------------------------------------------
    # switch
    # ------------------------------------------------------------------

    async def switch(
        self,
        step_id: str | StepId[T],
        value: Any,
        branches: Sequence[SwitchBranch[T]],
        default: SwitchBranch[T] | None = None,
    ) -> T:
        """
        Durable branch selection.

        The first branch whose ``match(value)`` is true runs, and
        ``{"branch_id", "result"}`` is persisted. On replay the cached
        result is returned without evaluating any matcher.

        Raises:
            DurableInvariantError: no branch matched and there is no default.
        """
        key = resolve_id(step_id)
        self._check_user_step_id(key)
        self._claim_step_id(key)
        await self._check_cancelled()

        cached = await self.store.get_step_result(self.execution_id, key)
        if cached is not None:
            logger.debug(f"Execution {self.execution_id}: replaying switch '{key}'")
            return cached.result["result"]

        chosen = next((branch for branch in branches if branch.match(value)), default)
        if chosen is None:
            raise DurableInvariantError(
                f"switch '{key}': no branch matched and no default was provided"
            )

        result = await _call(chosen.run)
        written = await self.store.save_step_result_if_absent(
            StepResult(self.execution_id, key, {"branch_id": chosen.id, "result": result})
        )
        if not written:
            winner = await self.store.get_step_result(self.execution_id, key)
            return winner.result["result"]
        await self._record(AuditEntryKind.SWITCH_EVALUATED, key, branch_id=chosen.id)
        return result

    # ------------------------------------------------------------------
    # rollback
    # ------------------------------------------------------------------

    async def rollback(self) -> None:
        """
        Run registered compensations in reverse order of completion.

        Each compensation is memoized as ``rollback:<step_id>``, so a retried
        rollback skips the ones that already ran. The first compensation
        that raises moves the execution to ``compensation_failed`` and stops
        the rest.

        Raises:
            CompensationFailedError: a compensation raised.
        """
        for step_id, action in reversed(self._compensations):

            async def compensate(action: StepFn[Any] = action) -> dict[str, bool]:
                await _call(action)
                return {"rolled_back": True}

            try:
                await self._memoized(f"rollback:{step_id}", compensate)
            except ExecutionCancelledError:
                raise
            except Exception as e:
                logger.error(f"Execution {self.execution_id}: compensation for '{step_id}' failed: {e}")
                await self.store.update_execution(
                    self.execution_id,
                    {
                        "status": ExecutionStatus.COMPENSATION_FAILED,
                        "error": ErrorInfo.from_exception(e),
                    },
                )
                await self._record(
                    AuditEntryKind.EXECUTION_STATUS_CHANGED,
                    status=ExecutionStatus.COMPENSATION_FAILED.value,
                    failed_step=step_id,
                )
                raise CompensationFailedError(step_id, e) from e

    # ------------------------------------------------------------------
    # note
    # ------------------------------------------------------------------

    async def note(self, label: str, data: Any = None, *, step_id: str | StepId | None = None) -> None:
        """Replay-safe audit annotation, written once per call site."""
        if step_id is not None:
            key = f"__note:{resolve_id(step_id)}"
        else:
            self._implicit_step_id("note")
            key = f"__note:{self._note_index}"
            self._note_index += 1

        async def write() -> dict[str, Any]:
            await self._record(AuditEntryKind.NOTE, key, label=label, data=data)
            return {"label": label}

        await self._memoized(key, write)
