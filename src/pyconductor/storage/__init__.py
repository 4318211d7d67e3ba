"""State stores for durable workflow snapshots.

Provides multiple storage implementations behind a common interface:
    - StateStore: Abstract interface
    - InMemoryStateStore: In-memory storage for testing
    - SqliteStateStore: SQLite-backed storage
    - RedisStateStore: Redis-backed shared storage

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the StateStore interface.
    The engine depends on the abstraction, enabling easy swapping
    between storage backends.
"""

from pyconductor.storage.base import StateStore, StorageError
from pyconductor.storage.memory import InMemoryStateStore

# Lazy imports so aiosqlite and redis are only loaded when their
# backend is used


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "SqliteStateStore":
        from pyconductor.storage.sqlite import SqliteStateStore

        return SqliteStateStore
    elif name == "RedisStateStore":
        from pyconductor.storage.redis import RedisStateStore

        return RedisStateStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "StateStore",
    "StorageError",
    "InMemoryStateStore",
    "SqliteStateStore",
    "RedisStateStore",
]
