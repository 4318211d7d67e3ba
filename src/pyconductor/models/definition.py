"""
Workflow definitions: the caller-supplied description a workflow is built from.

A definition is validated before the engine turns it into a Workflow. The
validator collects every problem instead of stopping at the first one, so
callers can fix a broken definition in one pass.

Checks:
- Workflow has a name and at least one task
- Every task has a name and a type (and a known type, when the caller
  passes the set of registered types)
- Task ids are unique
- Dependencies reference existing tasks, never the task itself
- The dependency graph has no cycles
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from uuid_extensions import uuid7

SIMPLE = "simple"
MEDIUM = "medium"
COMPLEX = "complex"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def generate_task_id() -> str:
    """Generate an id for a task the definition left unnamed."""
    return f"task_{uuid7()}"


@dataclass
class TaskDefinition:
    """Definition of a single task.

    max_retries and retry_delay_ms are None when the engine's configured
    defaults should apply.
    """

    name: str
    type: str
    id: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    max_retries: int | None = None
    retry_delay_ms: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskDefinition:
        """Build from a plain mapping, ignoring unknown keys.

        Malformed values are kept as they are for validate() to report.
        """
        dependencies = data.get("dependencies")
        if dependencies is None:
            dependencies = []
        elif isinstance(dependencies, (list, tuple)):
            dependencies = list(dependencies)

        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            type=data.get("type", ""),
            config=dict(data.get("config") or {}),
            dependencies=dependencies,
            max_retries=data.get("max_retries"),
            retry_delay_ms=data.get("retry_delay_ms"),
        )


@dataclass
class DefinitionSummary:
    """
    Summary of a definition's dependency graph.

    Attributes:
        task_count: Total number of tasks
        dependency_count: Total number of dependency edges
        max_depth: Longest dependency chain (roots have depth 0)
        roots: Ids of tasks with no dependencies
        leaves: Ids of tasks nothing depends on
        has_cycles: Whether the graph contains a cycle
        complexity: "simple", "medium" or "complex"
    """

    task_count: int
    dependency_count: int
    max_depth: int
    roots: list[str]
    leaves: list[str]
    has_cycles: bool
    complexity: str


@dataclass
class WorkflowDefinition:
    """
    Caller-supplied description of a workflow.

    Usage:
        definition = WorkflowDefinition(
            name="nightly-report",
            tasks=[
                TaskDefinition(id="extract", name="Extract", type="script",
                               config={"script": "extract"}),
                TaskDefinition(id="wait", name="Cool down", type="delay",
                               config={"duration": 500}, dependencies=["extract"]),
            ],
        )
        errors = definition.validate()
    """

    name: str
    tasks: list[TaskDefinition] = field(default_factory=list)
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowDefinition:
        """Build a definition from plain dicts (JSON, control-plane messages).

        Raises:
            TypeError: If tasks is not a list of mappings
        """
        raw_tasks = data.get("tasks") or []
        if not isinstance(raw_tasks, list):
            raise TypeError(f"tasks must be a list, got {type(raw_tasks).__name__}")

        tasks = []
        for raw in raw_tasks:
            if not isinstance(raw, Mapping):
                raise TypeError(f"task definitions must be mappings, got {type(raw).__name__}")
            tasks.append(TaskDefinition.from_dict(raw))

        return cls(
            name=data.get("name", ""),
            tasks=tasks,
            description=data.get("description") or "",
            metadata=dict(data.get("metadata") or {}),
        )

    def validate(self, known_types: Iterable[str] | None = None) -> list[str]:
        """
        Validate the definition.

        Args:
            known_types: Registered task types. When given, tasks of any
                other type are reported.

        Returns:
            List of error messages, empty when the definition is valid
        """
        errors: list[str] = []

        if not isinstance(self.name, str) or not self.name.strip():
            errors.append("workflow name is required")

        if not self.tasks:
            errors.append("workflow must define at least one task")
            return errors

        types = set(known_types) if known_types is not None else None
        seen_ids: set[str] = set()
        malformed_dependencies = False

        for index, task in enumerate(self.tasks):
            label = f"task {index}" if task.id is None else f"task {task.id!r}"

            if not isinstance(task.name, str) or not task.name.strip():
                errors.append(f"{label}: name is required")

            if not isinstance(task.type, str) or not task.type.strip():
                errors.append(f"{label}: type is required")
            elif types is not None and task.type not in types:
                errors.append(
                    f"{label}: unknown type {task.type!r}, "
                    f"registered types: {', '.join(sorted(types))}"
                )

            if task.id is not None:
                if task.id in seen_ids:
                    errors.append(f"{label}: duplicate task id")
                seen_ids.add(task.id)

            for key in ("max_retries", "retry_delay_ms"):
                value = getattr(task, key)
                if value is None:
                    continue
                if not _is_int(value):
                    errors.append(f"{label}: {key} must be an integer, got {type(value).__name__}")
                elif value < 0:
                    errors.append(f"{label}: {key} must be non-negative")

            if not isinstance(task.dependencies, list) or not all(
                isinstance(dep, str) for dep in task.dependencies
            ):
                errors.append(f"{label}: dependencies must be a list of task ids")
                malformed_dependencies = True

        if malformed_dependencies:
            return errors

        for task in self.tasks:
            label = f"task {task.id!r}" if task.id is not None else f"task {task.name!r}"
            for dep in task.dependencies:
                if dep == task.id:
                    errors.append(f"{label}: depends on itself")
                elif dep not in seen_ids:
                    errors.append(f"{label}: depends on non-existent task {dep!r}")

        cycle = self.find_cycle()
        if cycle:
            errors.append(f"dependency cycle detected: {' -> '.join(cycle)}")

        return errors

    def _graph(self) -> dict[str, list[str]]:
        """Dependency graph of tasks with explicit ids (task id -> deps)."""
        return {task.id: list(task.dependencies) for task in self.tasks if task.id is not None}

    def find_cycle(self) -> list[str] | None:
        """
        Find a dependency cycle using DFS.

        Self-dependencies are reported separately by validate() and ignored
        here.

        Returns:
            The cycle path with its first node repeated at the end
            (["a", "b", "a"]), or None if the graph is acyclic
        """
        graph = self._graph()
        visited: set[str] = set()
        path: list[str] = []
        on_path: set[str] = set()

        def visit(task_id: str) -> list[str] | None:
            visited.add(task_id)
            path.append(task_id)
            on_path.add(task_id)

            for dep in graph.get(task_id, []):
                if dep == task_id or dep not in graph:
                    continue
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                if dep not in visited:
                    found = visit(dep)
                    if found:
                        return found

            path.pop()
            on_path.discard(task_id)
            return None

        for task_id in graph:
            if task_id not in visited:
                found = visit(task_id)
                if found:
                    return found
        return None

    def _calculate_depths(self) -> dict[str, int]:
        """
        Calculate the depth of each task in the graph.

        Roots have depth 0, their dependents depth 1, and so on. Tasks on a
        cycle, or behind one, get no depth.
        """
        graph = self._graph()
        depths: dict[str, int] = {}

        changed = True
        while changed:
            changed = False
            for task_id, deps in graph.items():
                if task_id in depths:
                    continue
                known = [dep for dep in deps if dep in graph]
                dep_depths = [depths.get(dep) for dep in known]
                if all(d is not None for d in dep_depths):
                    depths[task_id] = (max(dep_depths) if dep_depths else -1) + 1
                    changed = True

        return depths

    def summary(self) -> DefinitionSummary:
        """
        Summarize the dependency graph and classify its complexity.

        More than 20 tasks or a depth above 5 is complex. More than 10
        tasks or a depth above 2 is medium. Any cycle makes it complex.
        """
        graph = self._graph()
        depths = self._calculate_depths()
        max_depth = max(depths.values()) if depths else 0

        depended_on: set[str] = set()
        for deps in graph.values():
            depended_on.update(deps)

        roots = [task_id for task_id, deps in graph.items() if not deps]
        leaves = [task_id for task_id in graph if task_id not in depended_on]
        has_cycles = self.find_cycle() is not None
        task_count = len(self.tasks)

        if task_count > 20 or max_depth > 5 or has_cycles:
            complexity = COMPLEX
        elif task_count > 10 or max_depth > 2:
            complexity = MEDIUM
        else:
            complexity = SIMPLE

        return DefinitionSummary(
            task_count=task_count,
            dependency_count=sum(len(task.dependencies) for task in self.tasks),
            max_depth=max_depth,
            roots=roots,
            leaves=leaves,
            has_cycles=has_cycles,
            complexity=complexity,
        )
