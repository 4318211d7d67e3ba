"""Workflow aggregate: an ordered collection of tasks plus lifecycle state."""

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pyconductor.models.status import TaskStatus, WorkflowStatus
from pyconductor.models.task import Task


@dataclass
class Workflow:
    """A workflow instance owned by the engine.

    Task order is the insertion order of the definition. It does not imply
    execution order (dependencies do), but it breaks ties: when several
    tasks are eligible the first one in this list runs first.

    Design: Aggregate Root
        Tasks are only mutated through the workflow that owns them, and
        only by the engine. Everything handed outside the engine is a
        snapshot().
    """

    id: str
    name: str
    tasks: list[Task] = field(default_factory=list)
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.CREATED

    params: dict[str, Any] = field(default_factory=dict)
    """Caller-supplied execution context, attached at start."""

    metadata: dict[str, Any] = field(default_factory=dict)
    """Free-form metadata copied from the definition."""

    error: str | None = None
    """Top-level failure reason when status is FAILED."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_at: datetime | None = None

    def get_task(self, task_id: str) -> Task | None:
        """Find a task by id, None if it doesn't exist."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_ids(self) -> set[str]:
        return {task.id for task in self.tasks}

    def running_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.RUNNING]

    def pending_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.PENDING]

    def all_completed(self) -> bool:
        """Check if every task completed."""
        return all(task.status == TaskStatus.COMPLETED for task in self.tasks)

    def results(self) -> dict[str, Any]:
        """Results of completed tasks keyed by task id."""
        return {task.id: task.result for task in self.tasks if task.is_completed}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self) -> None:
        """Refresh updated_at after a mutation."""
        self.updated_at = datetime.now(UTC)

    def snapshot(self) -> "Workflow":
        """Deep copy safe to hand to code outside the engine."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"Workflow(id={self.id!r}, name={self.name!r}, status={self.status}, "
            f"tasks={len(self.tasks)})"
        )
