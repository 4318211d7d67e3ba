import asyncio
import logging

from pyconductor import (
    InMemoryEventPublisher,
    TaskExecutorRegistry,
    WorkflowDefinition,
    WorkflowEngine,
)
from pyconductor.models import TaskDefinition
from pyconductor.storage.sqlite import SqliteStateStore

logging.basicConfig(level=logging.CRITICAL)


def validate(context) -> int:
    value = context.params["value"]
    print(f"{context.workflow_id} Validating: {value}")
    return value


def transform(context) -> int:
    value = context.results["validate"]
    result = value * 2
    print(f"{context.workflow_id} Transforming: {value} -> {result}")
    return result


PIPELINE = WorkflowDefinition(
    name="data-pipeline",
    tasks=[
        TaskDefinition(id="validate", name="Validate", type="script",
                       config={"script": "validate"}),
        TaskDefinition(id="transform", name="Transform", type="script",
                       config={"script": "transform"}, dependencies=["validate"]),
        TaskDefinition(id="settle", name="Settle", type="delay",
                       config={"duration": 100}, dependencies=["transform"]),
    ],
)


async def main():
    store = SqliteStateStore("data/simple_workflow.db")
    await store.connect()
    await store.reset()

    publisher = InMemoryEventPublisher()
    publisher.subscribe("workflow.*", lambda event: print(f"event: {event.topic}"))

    registry = TaskExecutorRegistry.with_builtins(
        functions={"validate": validate, "transform": transform}
    )
    engine = WorkflowEngine(registry, state_store=store, publisher=publisher)

    workflow_id = await engine.create_workflow(PIPELINE)
    await engine.start_workflow(workflow_id, {"value": 42})
    final = await engine.wait_for(workflow_id)

    print(f"Pipeline {final.status}: {final.results()}")
    await engine.shutdown()
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
