"""Task executors: the pluggable per-type runners the engine dispatches to."""

from pyconductor.executors.base import TaskContext, TaskExecutor, TaskExecutorRegistry
from pyconductor.executors.builtin import (
    ConditionTaskExecutor,
    DelayTaskExecutor,
    HttpTaskExecutor,
    ScriptTaskExecutor,
)

__all__ = [
    "TaskContext",
    "TaskExecutor",
    "TaskExecutorRegistry",
    "DelayTaskExecutor",
    "ConditionTaskExecutor",
    "ScriptTaskExecutor",
    "HttpTaskExecutor",
]
