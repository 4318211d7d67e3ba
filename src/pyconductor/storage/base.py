"""
StateStore - Abstract interface for workflow snapshot persistence.

Design Pattern: Adapter Pattern
StateStore defines the target interface that all storage adapters
implement. Different backends (SQLite, Redis, Memory) adapt to it.

Design Principle: Dependency Inversion (SOLID)
The engine depends on this abstraction, not on concrete storage, so tests
can run against InMemoryStateStore.

The engine calls save() after every mutating operation and load_all()
once at startup to recover unfinished workflows.
"""

from __future__ import annotations

import pickle
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyconductor.models import Workflow


class StorageError(Exception):
    """
    Storage operation failed.

    Custom exception with context, not generic Exception.
    """

    pass


def serialize_workflow(workflow: Workflow) -> bytes:
    """Serialize a workflow snapshot (pickle format).

    Raises:
        StorageError: If the snapshot holds something that can't be pickled
            (for example a lambda in a task config or result)
    """
    try:
        return pickle.dumps(workflow)
    except (pickle.PicklingError, TypeError, AttributeError) as e:
        raise StorageError(f"Failed to serialize workflow {workflow.id}: {e}") from e


def deserialize_workflow(data: bytes) -> Workflow:
    """Deserialize a workflow snapshot.

    Raises:
        StorageError: If the data is corrupt
    """
    try:
        return pickle.loads(data)
    except Exception as e:
        raise StorageError(f"Failed to deserialize workflow snapshot: {e}") from e


class StateStore(ABC):
    """
    Abstract durable snapshot store.

    Implementations must store a copy: mutating the workflow after save()
    returns must not change what load() returns.
    """

    @abstractmethod
    async def save(self, workflow: Workflow) -> None:
        """
        Insert or replace the snapshot of a workflow.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def load(self, workflow_id: str) -> Workflow | None:
        """
        Load one snapshot.

        Returns:
            The workflow, or None if it was never saved
        """
        pass

    @abstractmethod
    async def load_all(self) -> list[Workflow]:
        """
        Load every stored snapshot, ordered by creation time.

        Used for recovery at startup.
        """
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """
        Remove a snapshot (retention and cleanup policies).

        Returns:
            True if a snapshot was removed
        """
        pass

    async def close(self) -> None:
        """Release resources (no-op by default)."""
        return None
