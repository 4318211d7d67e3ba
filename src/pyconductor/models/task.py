"""
Task represents one unit of work inside a workflow and its execution state.

Design principles:
- Mutable value object: the engine updates it in place under the
  workflow's lock, callers only ever see deep copies
- All fields have sensible defaults except identity and type
- Serialization-friendly (pickle) so snapshots can be persisted as-is
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pyconductor.models.status import TaskStatus


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class Task:
    """
    A single task inside a workflow.

    A Task tracks everything about one unit of work:
    - Identity (id, name, type)
    - Executor configuration (config)
    - Scheduling constraints (dependencies, retry deadline)
    - Retry metadata (retry_count, max_retries, retry_delay_ms, attempts)
    - Outcome (result or error)

    Example:
        task = Task(id="fetch", name="Fetch data", type="http",
                    config={"url": "https://example.com/data"})
    """

    # ==========================================================================
    # Identity
    # ==========================================================================

    id: str
    """Identifier, unique within its workflow."""

    name: str
    """Human-readable name."""

    type: str
    """Executor type used to run the task (http, script, delay, condition, ...)."""

    config: dict[str, Any] = field(default_factory=dict)
    """Executor-specific configuration, passed through untouched."""

    # ==========================================================================
    # Scheduling
    # ==========================================================================

    status: TaskStatus = TaskStatus.PENDING

    dependencies: list[str] = field(default_factory=list)
    """Ids of tasks that must be COMPLETED before this one is eligible."""

    # ==========================================================================
    # Retry metadata
    # ==========================================================================

    retry_count: int = 0
    """Number of retries scheduled so far."""

    max_retries: int = 3
    """Retries allowed after the first attempt. The engine overrides this
    with its configured default when the definition leaves it out."""

    retry_delay_ms: int = 1000
    """Base delay before a retry in milliseconds."""

    next_retry_at_ms: int | None = None
    """Epoch milliseconds before which the task must not be re-selected.

    Only set while the task is PENDING and waiting for a retry.
    """

    attempts: int = 0
    """Number of times the task has been started."""

    # ==========================================================================
    # Outcome
    # ==========================================================================

    result: Any = None
    """Executor result, only meaningful when COMPLETED."""

    error: str | None = None
    """Message of the last failure."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    def __post_init__(self):
        """Validate invariants after creation."""
        if self.retry_count < 0:
            raise ValueError(f"retry_count must be non-negative, got {self.retry_count}")

        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")

        if self.retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be non-negative, got {self.retry_delay_ms}")

        if self.attempts < 0:
            raise ValueError(f"attempts must be non-negative, got {self.attempts}")

    # ==========================================================================
    # Queries
    # ==========================================================================

    def is_awaiting_retry(self, at_ms: int | None = None) -> bool:
        """Check if the task is pending but its retry deadline has not passed.

        Args:
            at_ms: Reference time in epoch milliseconds (defaults to now)
        """
        if self.status != TaskStatus.PENDING or self.next_retry_at_ms is None:
            return False
        if at_ms is None:
            at_ms = now_ms()
        return at_ms < self.next_retry_at_ms

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    # ==========================================================================
    # Transitions (called by the engine under the workflow lock)
    # ==========================================================================

    def mark_running(self) -> None:
        """Move to RUNNING and count the attempt."""
        self.status = TaskStatus.RUNNING
        self.started_at = datetime.now(UTC)
        self.next_retry_at_ms = None
        self.attempts += 1

    def mark_completed(self, result: Any) -> None:
        """Move to COMPLETED and store the executor result."""
        self.status = TaskStatus.COMPLETED
        self.result = result
        self.error = None
        self.completed_at = datetime.now(UTC)

    def mark_failed(self, message: str) -> None:
        """Move to FAILED and store the error message."""
        self.status = TaskStatus.FAILED
        self.result = None
        self.error = message
        self.failed_at = datetime.now(UTC)

    def schedule_retry(self, delay_ms: int, at_ms: int | None = None) -> None:
        """Move back to PENDING with a retry deadline.

        The last error message is kept for post-mortem inspection.

        Args:
            delay_ms: Delay before the task becomes eligible again
            at_ms: Reference time in epoch milliseconds (defaults to now)
        """
        if at_ms is None:
            at_ms = now_ms()
        self.retry_count += 1
        self.status = TaskStatus.PENDING
        self.next_retry_at_ms = at_ms + delay_ms

    def reset_interrupted(self) -> None:
        """Return a task left RUNNING by a crashed process to PENDING."""
        if self.status == TaskStatus.RUNNING:
            self.status = TaskStatus.PENDING
            self.started_at = None

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"Task(id={self.id!r}, type={self.type!r}, status={self.status}, "
            f"retry_count={self.retry_count}/{self.max_retries}, attempts={self.attempts})"
        )
