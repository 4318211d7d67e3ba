"""Core data models for workflow orchestration.

Defines the task and workflow value types, their lifecycle statuses,
workflow definitions, and retry behavior.

Design: Dependency-Free Models
These types have no dependencies on the engine, storage or events
packages to prevent circular imports and keep the layering clean.
"""

from pyconductor.models.definition import (
    DefinitionSummary,
    TaskDefinition,
    WorkflowDefinition,
    generate_task_id,
)
from pyconductor.models.retry import RetryPolicy, compute_retry_delay, should_retry
from pyconductor.models.status import TERMINAL_STATUSES, TaskStatus, WorkflowStatus
from pyconductor.models.task import Task, now_ms
from pyconductor.models.workflow import Workflow

__all__ = [
    "Task",
    "TaskStatus",
    "Workflow",
    "WorkflowStatus",
    "TERMINAL_STATUSES",
    "TaskDefinition",
    "WorkflowDefinition",
    "DefinitionSummary",
    "generate_task_id",
    "RetryPolicy",
    "should_retry",
    "compute_retry_delay",
    "now_ms",
]
