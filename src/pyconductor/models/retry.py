"""
Retry policy for failed tasks.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates how long a failed task waits before it is
re-selected, without changing the engine's failure handling.

The default is a fixed delay: every retry waits task.retry_delay_ms.
Exponential backoff is opt-in via RetryPolicy.exponential().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from pyconductor.models.task import Task


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for the delay between task retries.

    The delay for a retry is:
        task.retry_delay_ms * backoff_multiplier ** task.retry_count
    capped at max_delay_ms, where retry_count is the number of retries
    already scheduled (0 for the first retry).

    Examples:
        # Fixed delay (default behavior)
        policy = RetryPolicy.FIXED

        # Doubling delay, never above 30 seconds
        policy = RetryPolicy.exponential(2.0, max_delay_ms=30000)
    """

    backoff_multiplier: float = 1.0
    """Multiplier applied per retry. 1.0 means a fixed delay."""

    max_delay_ms: int | None = None
    """Upper bound for the computed delay, None for no cap."""

    # =========================================================================
    # Predefined Policies
    # =========================================================================

    if TYPE_CHECKING:
        FIXED: RetryPolicy
        EXPONENTIAL: RetryPolicy
    else:
        FIXED = cast("RetryPolicy", None)
        EXPONENTIAL = cast("RetryPolicy", None)

    def __post_init__(self):
        if self.backoff_multiplier < 1.0:
            raise ValueError(
                f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}"
            )
        if self.max_delay_ms is not None and self.max_delay_ms < 0:
            raise ValueError(f"max_delay_ms must be non-negative, got {self.max_delay_ms}")

    @classmethod
    def exponential(cls, multiplier: float = 2.0, max_delay_ms: int | None = 60000) -> RetryPolicy:
        """
        Create an exponential backoff policy.

        Args:
            multiplier: Growth factor per retry
            max_delay_ms: Cap for the computed delay

        Example:
            policy = RetryPolicy.exponential(1.5, max_delay_ms=10000)
        """
        return cls(backoff_multiplier=multiplier, max_delay_ms=max_delay_ms)

    @property
    def is_fixed(self) -> bool:
        return self.backoff_multiplier == 1.0

    def delay_for(self, base_delay_ms: int, retry_count: int) -> int:
        """
        Calculate the delay before the next retry.

        Args:
            base_delay_ms: The task's configured retry delay
            retry_count: Retries already scheduled (0-indexed)

        Returns:
            Delay in milliseconds

        Example:
            policy = RetryPolicy.exponential(2.0, max_delay_ms=None)
            policy.delay_for(100, 0)  # 100
            policy.delay_for(100, 2)  # 400
        """
        delay_ms = base_delay_ms * (self.backoff_multiplier**retry_count)
        if self.max_delay_ms is not None:
            delay_ms = min(delay_ms, self.max_delay_ms)
        return int(delay_ms)

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"RetryPolicy(backoff_multiplier={self.backoff_multiplier}, "
            f"max_delay_ms={self.max_delay_ms})"
        )


RetryPolicy.FIXED = RetryPolicy()

RetryPolicy.EXPONENTIAL = RetryPolicy(
    backoff_multiplier=2.0,
    max_delay_ms=60000,  # 60 seconds
)


def should_retry(task: Task) -> bool:
    """Return True if the failed task still has retries left."""
    return task.retry_count < task.max_retries


def compute_retry_delay(task: Task, policy: RetryPolicy | None = None) -> int:
    """Return the delay in milliseconds before the task's next retry.

    Args:
        task: The failed task (retry_count not yet incremented)
        policy: Backoff strategy, RetryPolicy.FIXED when None
    """
    if policy is None:
        policy = RetryPolicy.FIXED
    return policy.delay_for(task.retry_delay_ms, task.retry_count)
