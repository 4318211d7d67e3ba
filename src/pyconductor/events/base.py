"""
EventPublisher - abstract interface for lifecycle notification sinks.

Design Pattern: Adapter Pattern
EventPublisher is the target interface. Concrete publishers (in-memory,
Redis pub/sub) adapt a transport to it. The engine depends only on this
abstraction.

Publishing is fire-and-forget: the engine logs publisher failures and
never lets them undo or block a state transition.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class EventTopic(str, Enum):
    """Topics published by the engine."""

    WORKFLOW_CREATED = "workflow.created"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_PAUSED = "workflow.paused"
    WORKFLOW_RESUMED = "workflow.resumed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    TASK_STARTED = "task.started"
    """Opt-in, see EngineConfig.emit_task_started."""
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Event:
    """A published lifecycle event.

    Attributes:
        topic: Topic name, e.g. "workflow.started"
        workflow_id: Workflow the event belongs to
        data: Topic payload (workflow_id, workflow, task_id, result, error)
        timestamp: When the transition happened
    """

    topic: str
    workflow_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __repr__(self) -> str:
        return f"Event(topic={self.topic!r}, workflow_id={self.workflow_id!r})"


class EventPublisher(ABC):
    """Abstract notification sink for lifecycle events."""

    @abstractmethod
    async def publish(self, event: Event) -> None:
        """
        Publish an event.

        Raises:
            Exception: Any transport failure. The engine logs it and
                carries on.
        """
        pass

    async def close(self) -> None:
        """Release transport resources (no-op by default)."""
        return None


class NullEventPublisher(EventPublisher):
    """Publisher that drops every event. Used when none is configured."""

    async def publish(self, event: Event) -> None:
        return None

    def __repr__(self) -> str:
        return "NullEventPublisher"
