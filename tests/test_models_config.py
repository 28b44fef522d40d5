"""
Tests for the model records and the configuration builders.
"""

from datetime import UTC, datetime, timedelta

import pytest

from pydurable import (
    DurableConfig,
    ErrorInfo,
    Execution,
    ExecutionStatus,
    RetryableError,
    RetryPolicy,
    SignalId,
    StepId,
    StepResult,
    Timer,
    TimerType,
)
from pydurable.core.ids import resolve_id
from pydurable.models import MessageType, QueueMessage, TimerStatus
from pydurable.models.retry import is_retryable


@pytest.mark.parametrize(
    "status,terminal",
    [
        (ExecutionStatus.PENDING, False),
        (ExecutionStatus.RUNNING, False),
        (ExecutionStatus.SLEEPING, False),
        (ExecutionStatus.RETRYING, False),
        (ExecutionStatus.COMPLETED, True),
        (ExecutionStatus.FAILED, True),
        (ExecutionStatus.CANCELLED, True),
        (ExecutionStatus.COMPENSATION_FAILED, True),
    ],
)
def test_terminal_statuses(status, terminal):
    assert status.is_terminal is terminal
    assert Execution(id="e", task_id="t", status=status).is_terminal is terminal


def test_status_compares_to_wire_string():
    assert ExecutionStatus("compensation_failed") is ExecutionStatus.COMPENSATION_FAILED
    assert ExecutionStatus.SLEEPING == "sleeping"
    assert str(TimerType.SIGNAL_TIMEOUT) == "signal_timeout"


def test_execution_deadline():
    created = datetime(2024, 5, 1, tzinfo=UTC)
    execution = Execution(id="e", task_id="t", created_at=created, timeout_ms=1500)
    assert execution.deadline() == created + timedelta(milliseconds=1500)
    assert Execution(id="e", task_id="t").deadline() is None


def test_error_info_from_exception():
    try:
        raise ValueError("bad input")
    except ValueError as e:
        info = ErrorInfo.from_exception(e)

    assert info.message == "bad input"
    assert info.error_type == "ValueError"
    assert "ValueError: bad input" in info.stack


def test_error_info_uses_type_name_for_empty_message():
    assert ErrorInfo.from_exception(TimeoutError()).message == "TimeoutError"


def test_timer_is_ready():
    now = datetime.now(UTC)
    timer = Timer(id="t", type=TimerType.SLEEP, fire_at=now)

    assert timer.is_ready(now)
    assert not timer.is_ready(now - timedelta(milliseconds=1))
    fired = Timer(id="t", type=TimerType.SLEEP, fire_at=now, status=TimerStatus.FIRED)
    assert not fired.is_ready(now)


def test_step_result_state():
    assert StepResult("e", "__sleep:0", {"state": "sleeping"}).state() == "sleeping"
    assert StepResult("e", "charge", {"receipt": 1}).state() is None
    assert StepResult("e", "charge", 42).state() is None


def test_queue_message_execution_id():
    assert QueueMessage("m", MessageType.EXECUTE, {"execution_id": "e1"}).execution_id() == "e1"
    assert QueueMessage("m", MessageType.EXECUTE, {"execution_id": ""}).execution_id() is None
    assert QueueMessage("m", MessageType.EXECUTE, {}).execution_id() is None


def test_retryable_error_controls_step_retries():
    class Declined(RetryableError):
        def is_retryable(self) -> bool:
            return False

    assert is_retryable(ConnectionError())
    assert is_retryable(RetryableError())
    assert not is_retryable(Declined())


def test_standard_retry_policies():
    assert RetryPolicy.NONE.delay_for_attempt(1) is None
    assert [RetryPolicy.STANDARD.delay_for_attempt(n) for n in (1, 2, 3)] == [200, 400, None]


def test_resolve_id():
    assert resolve_id("approved") == "approved"
    assert resolve_id(SignalId("approved")) == "approved"
    assert resolve_id(StepId("charge")) == "charge"
    with pytest.raises(ValueError):
        resolve_id("")
    with pytest.raises(ValueError):
        resolve_id(SignalId(""))


# ==============================================================================
# Configuration
# ==============================================================================


def test_config_defaults():
    config = DurableConfig()

    assert config.polling.enabled is True
    assert config.polling.interval_ms == 1000
    assert config.execution.max_attempts == 3
    assert config.execution.timeout_ms is None
    assert config.audit_enabled is True
    assert config.implicit_step_ids == "allow"
    assert config.worker_id != DurableConfig().worker_id


def test_config_builders_return_copies():
    base = DurableConfig(worker_id="w")
    tuned = base.with_polling(interval_ms=50).with_execution(max_attempts=7).with_worker_id("w2")

    assert tuned.polling.interval_ms == 50
    assert tuned.polling.enabled is True
    assert tuned.execution.max_attempts == 7
    assert tuned.worker_id == "w2"
    assert base.polling.interval_ms == 1000
    assert base.worker_id == "w"


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("DURABLE_WORKER_ID", "worker-7")
    monkeypatch.setenv("DURABLE_POLL_INTERVAL_MS", "250")
    monkeypatch.setenv("DURABLE_POLLING_ENABLED", "false")
    monkeypatch.setenv("DURABLE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("DURABLE_TIMEOUT_MS", "60000")
    monkeypatch.setenv("DURABLE_AUDIT_ENABLED", "no")
    monkeypatch.setenv("DURABLE_IMPLICIT_STEP_IDS", "warn")
    monkeypatch.setenv("DURABLE_CLAIM_TTL_MS", "")

    config = DurableConfig.from_env()

    assert config.worker_id == "worker-7"
    assert config.polling.interval_ms == 250
    assert config.polling.enabled is False
    assert config.polling.claim_ttl_ms == 30_000
    assert config.execution.max_attempts == 5
    assert config.execution.timeout_ms == 60_000
    assert config.audit_enabled is False
    assert config.implicit_step_ids == "warn"


def test_config_from_env_custom_prefix(monkeypatch):
    monkeypatch.setenv("APP_WAIT_POLL_INTERVAL_MS", "75")
    assert DurableConfig.from_env(prefix="APP_").wait_poll_interval_ms == 75


@pytest.mark.parametrize(
    "name,value",
    [("DURABLE_MAX_ATTEMPTS", "many"), ("DURABLE_IMPLICIT_STEP_IDS", "sometimes")],
)
def test_config_from_env_rejects_bad_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        DurableConfig.from_env()
