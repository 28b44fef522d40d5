"""
Retry policy for step execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates how a failing step is retried inside one attempt,
so the context's step loop does not change when the strategy does.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with exponential backoff for a single step.

    Examples:
        # Shorthand used by ``ctx.step(..., retries=2)``
        policy = RetryPolicy.for_retries(2)

        # Custom policy
        policy = RetryPolicy(
            max_attempts=5,
            initial_delay_ms=500,
            max_delay_ms=30000,
            backoff_multiplier=2.0,
        )
    """

    max_attempts: int
    """Maximum number of calls including the first one."""

    initial_delay_ms: int
    """Delay before the first retry."""

    max_delay_ms: int
    """Cap for the exponential backoff."""

    backoff_multiplier: float = 2.0
    """Each retry waits initial_delay * multiplier^(retry-1), capped at max_delay."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)

    @classmethod
    def for_retries(cls, retries: int) -> RetryPolicy:
        """Policy allowing ``retries`` extra calls, starting at 200ms and doubling."""
        if retries < 0:
            raise ValueError(f"retries must be >= 0, got {retries}")
        return cls(
            max_attempts=retries + 1,
            initial_delay_ms=200,
            max_delay_ms=10000,
            backoff_multiplier=2.0,
        )

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Delay before the call following ``attempt`` (1-indexed).

        Returns None once ``attempt`` reached ``max_attempts``.

        Example:
            policy = RetryPolicy.for_retries(2)
            policy.delay_for_attempt(1)  # 200
            policy.delay_for_attempt(2)  # 400
            policy.delay_for_attempt(3)  # None
        """
        if attempt >= self.max_attempts:
            return None
        delay_ms = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return int(min(delay_ms, self.max_delay_ms))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier})"
        )


RetryPolicy.NONE = RetryPolicy(max_attempts=1, initial_delay_ms=0, max_delay_ms=0)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=3,
    initial_delay_ms=200,
    max_delay_ms=10000,
    backoff_multiplier=2.0,
)


class RetryableError(Exception):
    """
    Base class for errors that decide whether a step retry makes sense.

    Errors that do not derive from this class are always retried while the
    policy allows it.

    Example:
        class PaymentDeclined(RetryableError):
            def is_retryable(self) -> bool:
                return False
    """

    def is_retryable(self) -> bool:
        return True


def is_retryable(error: BaseException) -> bool:
    """Whether ``error`` may be retried by a step retry policy."""
    if isinstance(error, RetryableError):
        return error.is_retryable()
    return True
