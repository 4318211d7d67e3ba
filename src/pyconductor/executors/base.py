"""
Task executor contract and registry.

Design Pattern: Strategy + Registry
Each task type maps to an interchangeable TaskExecutor. The engine only
knows the dispatch contract: resolve(task.type).execute(task, context).
What an executor does (HTTP call, function call, sleep) is hidden behind
it.

Usage:
    registry = TaskExecutorRegistry.with_builtins(functions={"extract": extract})
    registry.register("email", SendEmailExecutor())
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pyconductor.errors import UnknownTaskType

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from pyconductor.models import Task, Workflow

logger = logging.getLogger(__name__)


@dataclass
class TaskContext:
    """Everything an executor may read about the workflow it runs in.

    All values are copies. Mutating them has no effect on engine state.
    """

    workflow_id: str
    task_id: str
    attempt: int
    """1 for the first run, 2 for the first retry, and so on."""

    params: dict[str, Any] = field(default_factory=dict)
    """Params passed to start_workflow()."""

    results: dict[str, Any] = field(default_factory=dict)
    """Results of completed tasks keyed by task id."""

    workflow: Workflow | None = None
    """Snapshot of the workflow at the moment the task started."""


class TaskExecutor(ABC):
    """Runs tasks of one type.

    Implementations may raise any exception. The engine catches it at the
    task boundary and turns it into a retry or a workflow failure.
    """

    @abstractmethod
    async def execute(self, task: Task, context: TaskContext) -> Any:
        """
        Run the task.

        Args:
            task: Snapshot of the task being run
            context: Workflow context for the run

        Returns:
            The task result, stored on the task when it completes
        """
        pass

    def validate_config(self, config: Mapping[str, Any]) -> list[str]:
        """Report problems with a task's config at definition time.

        Returns:
            Error messages, empty when the config is acceptable
        """
        return []


class TaskExecutorRegistry:
    """Registry mapping task type names to their executors.

    Example:
        registry = TaskExecutorRegistry()
        registry.register("delay", DelayTaskExecutor())
        executor = registry.resolve("delay")
    """

    def __init__(self):
        """Create a new empty executor registry."""
        self._executors: dict[str, TaskExecutor] = {}

    @classmethod
    def with_builtins(
        cls,
        functions: Mapping[str, Callable[..., Any]] | None = None,
        predicates: Mapping[str, Callable[..., Any]] | None = None,
        http_client: Any = None,
    ) -> TaskExecutorRegistry:
        """
        Create a registry with the built-in http, script, delay and
        condition executors.

        Args:
            functions: Named callables available to script tasks
            predicates: Named callables available to condition tasks
            http_client: Optional httpx.AsyncClient for http tasks
        """
        from pyconductor.executors.builtin import (
            ConditionTaskExecutor,
            DelayTaskExecutor,
            HttpTaskExecutor,
            ScriptTaskExecutor,
        )

        registry = cls()
        registry.register("http", HttpTaskExecutor(client=http_client))
        registry.register("script", ScriptTaskExecutor(functions))
        registry.register("delay", DelayTaskExecutor())
        registry.register("condition", ConditionTaskExecutor(predicates))
        return registry

    def register(self, task_type: str, executor: TaskExecutor) -> None:
        """Register (or replace) the executor for a task type.

        Raises:
            ValueError: If task_type is empty
        """
        if not task_type:
            raise ValueError("task type must be a non-empty string")

        if task_type in self._executors:
            logger.debug(f"Replacing executor for task type: {task_type}")
        else:
            logger.debug(f"Registered executor for task type: {task_type}")
        self._executors[task_type] = executor

    def resolve(self, task_type: str) -> TaskExecutor:
        """Get the executor for a task type.

        Raises:
            UnknownTaskType: If nothing is registered for the type
        """
        executor = self._executors.get(task_type)
        if executor is None:
            raise UnknownTaskType(task_type)
        return executor

    def validate(self, task_type: str, config: Mapping[str, Any]) -> list[str]:
        """Validate a task config with its executor (unknown types yield none)."""
        executor = self._executors.get(task_type)
        if executor is None:
            return []
        return executor.validate_config(config)

    def types(self) -> list[str]:
        """Registered task types, sorted."""
        return sorted(self._executors)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._executors

    def __len__(self) -> int:
        """Returns the number of registered task types."""
        return len(self._executors)

    def is_empty(self) -> bool:
        """Returns True if no task types are registered."""
        return len(self._executors) == 0
