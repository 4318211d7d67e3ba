"""In-memory state store.

Design Pattern: Adapter Pattern
InMemoryStateStore adapts a dictionary to the StateStore interface.

Snapshots are stored pickled, so later mutation of the engine's live
objects never leaks into stored state, the same guarantee durable
backends give.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio

from pyconductor.models import Workflow
from pyconductor.storage.base import StateStore, deserialize_workflow, serialize_workflow


class InMemoryStateStore(StateStore):
    """In-memory storage for tests and single-process use.

    Can be substituted for SqliteStateStore without changing client code.

    Usage:
        store = InMemoryStateStore()
        engine = WorkflowEngine(registry, state_store=store)
    """

    def __init__(self):
        # Storage: {workflow_id: pickled Workflow}
        self._snapshots: dict[str, bytes] = {}

        # Number of save() calls, useful for asserting persistence happened
        self.save_count = 0

        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"InMemoryStateStore(workflows={len(self._snapshots)})"

    async def save(self, workflow: Workflow) -> None:
        data = serialize_workflow(workflow)
        async with self._lock:
            self._snapshots[workflow.id] = data
            self.save_count += 1

    async def load(self, workflow_id: str) -> Workflow | None:
        async with self._lock:
            data = self._snapshots.get(workflow_id)
        if data is None:
            return None
        return deserialize_workflow(data)

    async def load_all(self) -> list[Workflow]:
        async with self._lock:
            blobs = list(self._snapshots.values())
        workflows = [deserialize_workflow(data) for data in blobs]
        workflows.sort(key=lambda wf: wf.created_at)
        return workflows

    async def delete(self, workflow_id: str) -> bool:
        async with self._lock:
            return self._snapshots.pop(workflow_id, None) is not None

    async def reset(self) -> None:
        """Drop every snapshot."""
        async with self._lock:
            self._snapshots.clear()
            self.save_count = 0
