"""
Engine configuration.

Plain dataclasses with defaults that work for a single process, builder
methods for fluent tweaks, and ``from_env()`` for deployments that inject
settings through the environment.

Example:
    config = DurableConfig.from_env().with_polling(interval_ms=250)
    service = DurableService(store, queue=queue, config=config)
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field, replace
from typing import Literal

from uuid_extensions import uuid7

ImplicitStepIdPolicy = Literal["allow", "warn", "error"]


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{str(uuid7())[-8:]}"


@dataclass(frozen=True)
class PollingConfig:
    enabled: bool = True
    interval_ms: int = 1000
    """Time between polls of ready timers."""

    claim_ttl_ms: int = 30_000
    """Lease on a claimed timer; an expired lease lets another poller take over."""


@dataclass(frozen=True)
class ExecutionConfig:
    max_attempts: int = 3
    """Attempts per execution before it is marked failed."""

    timeout_ms: int | None = None
    """Default execution-level timeout, measured from creation."""

    retry_base_delay_ms: int = 1000
    """Retry timers fire after base * 2^attempt."""

    kickoff_failsafe_delay_ms: int = 10_000
    """Delay of the ``kickoff:<id>`` safety timer armed next to each queued start."""

    lock_ttl_ms: int = 30_000
    """TTL of the per-execution lock held while an attempt runs."""


@dataclass(frozen=True)
class DurableConfig:
    worker_id: str = field(default_factory=_default_worker_id)
    polling: PollingConfig = field(default_factory=PollingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    wait_poll_interval_ms: int = 500
    """Polling interval used by ``wait()`` between bus notifications."""

    audit_enabled: bool = True

    implicit_step_ids: ImplicitStepIdPolicy = "allow"
    """How to treat positional internal ids (sleep, signal, emit, note) without an explicit step_id."""

    def with_worker_id(self, worker_id: str) -> DurableConfig:
        """Return a copy with ``worker_id`` set (builder pattern)."""
        return replace(self, worker_id=worker_id)

    def with_polling(
        self,
        *,
        enabled: bool | None = None,
        interval_ms: int | None = None,
        claim_ttl_ms: int | None = None,
    ) -> DurableConfig:
        """Return a copy with polling settings overridden (builder pattern).

        Example:
            config = DurableConfig().with_polling(interval_ms=100)
        """
        polling = self.polling
        if enabled is not None:
            polling = replace(polling, enabled=enabled)
        if interval_ms is not None:
            polling = replace(polling, interval_ms=interval_ms)
        if claim_ttl_ms is not None:
            polling = replace(polling, claim_ttl_ms=claim_ttl_ms)
        return replace(self, polling=polling)

    def with_execution(self, **overrides) -> DurableConfig:
        """Return a copy with execution settings overridden (builder pattern)."""
        return replace(self, execution=replace(self.execution, **overrides))

    @classmethod
    def from_env(cls, prefix: str = "DURABLE_") -> DurableConfig:
        """
        Build a config from environment variables.

        Recognized variables (with the default prefix):
            DURABLE_WORKER_ID, DURABLE_POLL_INTERVAL_MS, DURABLE_POLLING_ENABLED,
            DURABLE_CLAIM_TTL_MS, DURABLE_MAX_ATTEMPTS, DURABLE_TIMEOUT_MS,
            DURABLE_WAIT_POLL_INTERVAL_MS, DURABLE_AUDIT_ENABLED,
            DURABLE_IMPLICIT_STEP_IDS

        Unset variables keep their defaults.

        Example:
            # $ export DURABLE_POLL_INTERVAL_MS=250
            config = DurableConfig.from_env()
        """

        def get(name: str) -> str | None:
            value = os.getenv(f"{prefix}{name}")
            return value if value not in (None, "") else None

        def get_int(name: str) -> int | None:
            value = get(name)
            if value is None:
                return None
            try:
                return int(value)
            except ValueError as e:
                raise ValueError(f"{prefix}{name} must be an integer, got {value!r}") from e

        def get_bool(name: str) -> bool | None:
            value = get(name)
            if value is None:
                return None
            return value.strip().lower() in ("1", "true", "yes", "on")

        config = cls()
        if (worker_id := get("WORKER_ID")) is not None:
            config = config.with_worker_id(worker_id)
        config = config.with_polling(
            enabled=get_bool("POLLING_ENABLED"),
            interval_ms=get_int("POLL_INTERVAL_MS"),
            claim_ttl_ms=get_int("CLAIM_TTL_MS"),
        )
        execution_overrides = {}
        if (max_attempts := get_int("MAX_ATTEMPTS")) is not None:
            execution_overrides["max_attempts"] = max_attempts
        if (timeout_ms := get_int("TIMEOUT_MS")) is not None:
            execution_overrides["timeout_ms"] = timeout_ms
        if execution_overrides:
            config = config.with_execution(**execution_overrides)
        if (wait_poll := get_int("WAIT_POLL_INTERVAL_MS")) is not None:
            config = replace(config, wait_poll_interval_ms=wait_poll)
        if (audit := get_bool("AUDIT_ENABLED")) is not None:
            config = replace(config, audit_enabled=audit)
        if (policy := get("IMPLICIT_STEP_IDS")) is not None:
            if policy not in ("allow", "warn", "error"):
                raise ValueError(f"{prefix}IMPLICIT_STEP_IDS must be allow, warn or error")
            config = replace(config, implicit_step_ids=policy)
        return config
