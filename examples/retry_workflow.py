"""
Retry handling with SQLite persistence and exponential backoff.

Demonstrates:
- A flaky task that fails twice, then succeeds within its retry budget
- A task that keeps failing and exhausts its retries, failing the workflow
- Snapshots in SQLite that a restarted engine picks up with recover()

Run:
    PYTHONPATH=src python examples/retry_workflow.py
"""

import asyncio
import logging

from pyconductor import (
    EngineConfig,
    InMemoryEventPublisher,
    RetryPolicy,
    TaskExecutorRegistry,
    WorkflowEngine,
)
from pyconductor.storage.sqlite import SqliteStateStore

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

FETCH_ATTEMPTS = 0


class ApiTimeoutError(Exception):
    """Transient network timeout error."""

    def __str__(self):
        return "API timeout - transient network error"


def fetch_inventory(context):
    global FETCH_ATTEMPTS
    FETCH_ATTEMPTS += 1
    if context.attempt < 3:
        raise ApiTimeoutError()
    return {"sku-1": 12, "sku-2": 0}


def reserve_item(context):
    item = context.params["item"]
    raise LookupError(f"Item '{item}' not found in catalog")


def order_definition(name: str, item_task: str) -> dict:
    return {
        "name": name,
        "tasks": [
            {"id": "fetch", "name": "Fetch inventory", "type": "script",
             "config": {"script": "fetch_inventory"}, "max_retries": 3},
            {"id": "reserve", "name": "Reserve item", "type": "script",
             "config": {"script": item_task}, "dependencies": ["fetch"], "max_retries": 1},
        ],
    }


async def main():
    store = SqliteStateStore("data/retry_workflow.db")
    await store.connect()
    await store.reset()

    publisher = InMemoryEventPublisher()
    publisher.subscribe(
        "task.failed",
        lambda event: print(f"  task {event.data['task_id']} failed: {event.data['error']}"),
    )

    registry = TaskExecutorRegistry.with_builtins(
        functions={
            "fetch_inventory": fetch_inventory,
            "reserve_item": reserve_item,
            "noop": lambda context: "reserved",
        }
    )
    config = EngineConfig.from_env().with_retry_delay(50).with_retry_policy(
        RetryPolicy.exponential(2.0, max_delay_ms=1000)
    )
    engine = WorkflowEngine(registry, state_store=store, publisher=publisher, config=config)

    ok_id = await engine.create_workflow(order_definition("order-ok", "noop"))
    bad_id = await engine.create_workflow(order_definition("order-missing", "reserve_item"))

    await engine.start_workflow(ok_id, {"item": "sku-1"})
    ok = await engine.wait_for(ok_id)
    print(f"order-ok: {ok.status} after {FETCH_ATTEMPTS} fetch attempts")

    await engine.start_workflow(bad_id, {"item": "sku-404"})
    bad = await engine.wait_for(bad_id)
    print(f"order-missing: {bad.status}: {bad.error}")

    await engine.shutdown()

    # A fresh engine only recovers unfinished workflows
    restarted = WorkflowEngine(registry, state_store=store)
    print(f"recovered after restart: {await restarted.recover()}")
    await restarted.shutdown()
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
