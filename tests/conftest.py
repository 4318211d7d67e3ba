"""
Pytest configuration and fixtures for pyconductor tests.

Provides reusable fixtures for state stores, publishers, a scriptable task
executor and engines wired from them.
"""

import asyncio
import shutil
import tempfile
from collections import defaultdict
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
from hypothesis import strategies as st

from pyconductor import (
    EngineConfig,
    InMemoryEventPublisher,
    InMemoryStateStore,
    TaskContext,
    TaskExecutor,
    TaskExecutorRegistry,
    WorkflowEngine,
)
from pyconductor.models import Task, TaskDefinition, WorkflowDefinition
from pyconductor.storage.sqlite import SqliteStateStore


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    import os

    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


class ScriptedExecutor(TaskExecutor):
    """Executor for the "test" task type whose runs are scripted per task id.

    - outcomes[task_id] is consumed one entry per attempt. An exception
      instance is raised, anything else is returned. Once empty the task
      returns f"{task_id}-done".
    - gate(task_id) returns an asyncio.Event the run blocks on.
    - started(task_id) returns an asyncio.Event set when a run begins.

    Every run is recorded in calls as (workflow_id, task_id, attempt).
    """

    def __init__(self):
        self.calls: list[tuple[str, str, int]] = []
        self.contexts: list[TaskContext] = []
        self.outcomes: dict[str, list[Any]] = defaultdict(list)
        self._gates: dict[str, asyncio.Event] = {}
        self._started: dict[str, asyncio.Event] = {}

        self._in_flight: dict[str, int] = defaultdict(int)
        self.max_in_flight_per_workflow = 0

    def fail(self, task_id: str, times: int, message: str = "boom") -> None:
        """Make the next `times` attempts of a task raise RuntimeError."""
        self.outcomes[task_id].extend(RuntimeError(message) for _ in range(times))

    def gate(self, task_id: str) -> asyncio.Event:
        return self._gates.setdefault(task_id, asyncio.Event())

    def started(self, task_id: str) -> asyncio.Event:
        return self._started.setdefault(task_id, asyncio.Event())

    def attempts(self, task_id: str) -> list[int]:
        return [attempt for _, tid, attempt in self.calls if tid == task_id]

    def order(self, workflow_id: str | None = None) -> list[str]:
        return [tid for wid, tid, _ in self.calls if workflow_id is None or wid == workflow_id]

    async def execute(self, task: Task, context: TaskContext) -> Any:
        self.calls.append((context.workflow_id, task.id, context.attempt))
        self.contexts.append(context)

        self._in_flight[context.workflow_id] += 1
        self.max_in_flight_per_workflow = max(
            self.max_in_flight_per_workflow, self._in_flight[context.workflow_id]
        )
        self.started(task.id).set()

        try:
            gate = self._gates.get(task.id)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)

            queue = self.outcomes.get(task.id)
            if queue:
                outcome = queue.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
            return f"{task.id}-done"
        finally:
            self._in_flight[context.workflow_id] -= 1


def task_def(task_id: str, *deps: str, **kwargs: Any) -> TaskDefinition:
    """Shorthand for a "test" task definition."""
    kwargs.setdefault("retry_delay_ms", 0)
    return TaskDefinition(
        id=task_id, name=task_id.upper(), type="test", dependencies=list(deps), **kwargs
    )


def chain_definition(*task_ids: str, name: str = "chain", **kwargs: Any) -> WorkflowDefinition:
    """Linear definition: each task depends on the previous one."""
    tasks = []
    previous: list[str] = []
    for task_id in task_ids:
        tasks.append(task_def(task_id, *previous, **kwargs))
        previous = [task_id]
    return WorkflowDefinition(name=name, tasks=tasks)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""

    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def registry(executor: ScriptedExecutor) -> TaskExecutorRegistry:
    """Built-in executors plus the scripted "test" type."""
    registry = TaskExecutorRegistry.with_builtins()
    registry.register("test", executor)
    return registry


@pytest.fixture
async def state_store() -> AsyncGenerator[InMemoryStateStore, None]:
    """Async in-memory state store with automatic cleanup."""
    store = InMemoryStateStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteStateStore, None]:
    """SQLite in-memory state store with automatic cleanup."""
    store = await SqliteStateStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "workflows.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def config() -> EngineConfig:
    """Engine defaults with immediate retries."""
    return EngineConfig(default_retry_delay_ms=0)


@pytest.fixture
async def engine(
    registry: TaskExecutorRegistry,
    state_store: InMemoryStateStore,
    publisher: InMemoryEventPublisher,
    config: EngineConfig,
) -> AsyncGenerator[WorkflowEngine, None]:
    """Engine wired to the in-memory store and publisher."""
    engine = WorkflowEngine(registry, state_store=state_store, publisher=publisher, config=config)
    yield engine
    await engine.shutdown()


# Hypothesis strategies for property-based testing


@st.composite
def dag_definitions(draw, max_tasks: int = 8) -> WorkflowDefinition:
    """Random acyclic definitions: tasks only depend on earlier tasks.

    Stored order is shuffled so it doesn't coincide with a topological order.
    """
    count = draw(st.integers(min_value=1, max_value=max_tasks))
    ids = [f"t{i}" for i in range(count)]

    tasks = []
    for index, task_id in enumerate(ids):
        deps = draw(st.lists(st.sampled_from(ids[:index]), unique=True)) if index else []
        tasks.append(task_def(task_id, *deps))

    shuffled = draw(st.permutations(tasks))
    return WorkflowDefinition(name="generated", tasks=list(shuffled))
