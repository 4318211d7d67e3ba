"""
PyConductor: asyncio workflow orchestration core.

Design Pattern: Façade Pattern
This module re-exports the pieces most programs need, hiding the package
layout of models, engine, executors, events and storage.

Example:
    ```python
    import asyncio
    from pyconductor import TaskExecutorRegistry, WorkflowEngine

    async def extract(context):
        return {"rows": 42}

    async def main():
        registry = TaskExecutorRegistry.with_builtins(functions={"extract": extract})
        async with WorkflowEngine(registry) as engine:
            workflow_id = await engine.create_workflow({
                "name": "etl",
                "tasks": [
                    {"id": "extract", "name": "Extract", "type": "script",
                     "config": {"script": "extract"}},
                    {"id": "wait", "name": "Cool down", "type": "delay",
                     "config": {"duration": 100}, "dependencies": ["extract"]},
                ],
            })
            await engine.start_workflow(workflow_id)
            final = await engine.wait_for(workflow_id)
            print(final.status, final.results())

    asyncio.run(main())
    ```
"""

from pyconductor.config import EngineConfig
from pyconductor.engine import ControlPlane, ControlTopic, WorkflowEngine
from pyconductor.errors import (
    ControlMessageError,
    DependencyDeadlock,
    EngineClosed,
    InvalidDefinition,
    InvalidParams,
    InvalidStateTransition,
    RetryExhausted,
    TaskExecutionError,
    UnknownTaskType,
    WorkflowError,
    WorkflowNotFound,
)
from pyconductor.events import (
    Event,
    EventPublisher,
    EventTopic,
    InMemoryEventPublisher,
    NullEventPublisher,
)
from pyconductor.executors import TaskContext, TaskExecutor, TaskExecutorRegistry
from pyconductor.models import (
    RetryPolicy,
    Task,
    TaskDefinition,
    TaskStatus,
    Workflow,
    WorkflowDefinition,
    WorkflowStatus,
)
from pyconductor.storage import InMemoryStateStore, StateStore, StorageError

__version__ = "0.1.0"


def __getattr__(name: str):
    """Lazy import optional backends (aiosqlite, redis)."""
    if name == "SqliteStateStore":
        from pyconductor.storage.sqlite import SqliteStateStore

        return SqliteStateStore
    elif name == "RedisStateStore":
        from pyconductor.storage.redis import RedisStateStore

        return RedisStateStore
    elif name == "RedisEventPublisher":
        from pyconductor.events.redis import RedisEventPublisher

        return RedisEventPublisher
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Engine
    "WorkflowEngine",
    "EngineConfig",
    "ControlPlane",
    "ControlTopic",
    # Models
    "Task",
    "TaskStatus",
    "Workflow",
    "WorkflowStatus",
    "TaskDefinition",
    "WorkflowDefinition",
    "RetryPolicy",
    # Executors
    "TaskContext",
    "TaskExecutor",
    "TaskExecutorRegistry",
    # Events
    "Event",
    "EventTopic",
    "EventPublisher",
    "NullEventPublisher",
    "InMemoryEventPublisher",
    "RedisEventPublisher",
    # Storage
    "StateStore",
    "StorageError",
    "InMemoryStateStore",
    "SqliteStateStore",
    "RedisStateStore",
    # Errors
    "WorkflowError",
    "InvalidDefinition",
    "InvalidStateTransition",
    "WorkflowNotFound",
    "DependencyDeadlock",
    "TaskExecutionError",
    "RetryExhausted",
    "UnknownTaskType",
    "ControlMessageError",
    "InvalidParams",
    "EngineClosed",
]
