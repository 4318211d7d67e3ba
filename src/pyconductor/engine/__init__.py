"""Workflow execution: the engine, its dependency resolver and control plane."""

from pyconductor.engine.control import ControlPlane, ControlTopic
from pyconductor.engine.engine import WorkflowEngine
from pyconductor.engine.resolver import (
    blocked_tasks,
    is_deadlocked,
    is_eligible,
    next_retry_due_ms,
    select_next_task,
)

__all__ = [
    "WorkflowEngine",
    "ControlPlane",
    "ControlTopic",
    "is_eligible",
    "select_next_task",
    "next_retry_due_ms",
    "blocked_tasks",
    "is_deadlocked",
]
