"""Status enumerations for workflow and task lifecycle tracking.

Defines the states a workflow moves through under engine control and the
states of the individual tasks it schedules.
"""

from enum import Enum


class TaskStatus(Enum):
    """Status of a single task inside a workflow.

    Lifecycle:
        PENDING → RUNNING → COMPLETED
        PENDING → RUNNING → FAILED → PENDING (retry) → RUNNING → ...

    A task that fails while it still has retries left is moved back to
    PENDING with a retry deadline. FAILED is only final once the workflow
    itself fails.
    """

    PENDING = "pending"
    """Task is waiting for its dependencies or its retry deadline."""

    RUNNING = "running"
    """Task is being executed. At most one task per workflow."""

    COMPLETED = "completed"
    """Task finished successfully and holds a result."""

    FAILED = "failed"
    """Task raised during execution and holds an error message."""

    @property
    def is_finished(self) -> bool:
        """Check if the task reached an outcome (success or failure)."""
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def __str__(self) -> str:
        return self.value


class WorkflowStatus(Enum):
    """Status of a workflow.

    Lifecycle:
        CREATED → RUNNING ⇄ PAUSED
        RUNNING → COMPLETED | FAILED
        any non-terminal → CANCELLED
    """

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more task execution)."""
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED, WorkflowStatus.FAILED)

    @property
    def can_start(self) -> bool:
        """Check if start_workflow() is allowed from this status."""
        return self in (WorkflowStatus.CREATED, WorkflowStatus.PAUSED)

    def __str__(self) -> str:
        return self.value


TERMINAL_STATUSES = frozenset(s for s in WorkflowStatus if s.is_terminal)
