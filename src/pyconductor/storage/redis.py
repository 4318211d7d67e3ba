"""Redis-based state store.

Provides a Redis backend so several engine processes (or a dashboard)
can share workflow snapshots over the network.

Data Structures:
- <prefix>workflow:{id} (HASH): snapshot (pickled), name, status
- <prefix>workflows (ZSET): workflow ids, score = created_at in ms

Key Features:
- Atomic writes: snapshot hash and index updated in one MULTI/EXEC
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Adapts the Redis key-value store to the StateStore interface.
"""

from __future__ import annotations

import redis.asyncio as redis

from pyconductor.models import Workflow
from pyconductor.storage.base import (
    StateStore,
    StorageError,
    deserialize_workflow,
    serialize_workflow,
)

DEFAULT_PREFIX = "pyconductor:"


class RedisStateStore(StateStore):
    """Redis state store using connection pooling.

    Usage:
        store = RedisStateStore("redis://localhost:6379")
        await store.connect()
        engine = WorkflowEngine(registry, state_store=store)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        prefix: str = DEFAULT_PREFIX,
    ):
        """Initialize Redis state store.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            prefix: Key namespace
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._prefix = prefix
        self._redis: redis.Redis | None = None

    @classmethod
    def from_client(cls, client: redis.Redis, prefix: str = DEFAULT_PREFIX) -> RedisStateStore:
        """Wrap an existing client (shared pool, or a fake in tests)."""
        store = cls(prefix=prefix)
        store._redis = client
        return store

    def __repr__(self) -> str:
        return f"RedisStateStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # Snapshots are binary
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    def _workflow_key(self, workflow_id: str) -> str:
        return f"{self._prefix}workflow:{workflow_id}"

    def _index_key(self) -> str:
        return f"{self._prefix}workflows"

    async def save(self, workflow: Workflow) -> None:
        self._check_connected()

        data = serialize_workflow(workflow)
        created_ms = int(workflow.created_at.timestamp() * 1000)

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._workflow_key(workflow.id),
                    mapping={
                        "snapshot": data,
                        "name": workflow.name,
                        "status": workflow.status.value,
                    },
                )
                pipe.zadd(self._index_key(), {workflow.id: created_ms})
                await pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"Failed to save workflow {workflow.id}: {e}") from e

    async def load(self, workflow_id: str) -> Workflow | None:
        self._check_connected()

        data = await self._redis.hget(self._workflow_key(workflow_id), "snapshot")
        if data is None:
            return None
        return deserialize_workflow(data)

    async def load_all(self) -> list[Workflow]:
        self._check_connected()

        ids = await self._redis.zrange(self._index_key(), 0, -1)
        workflows = []
        for raw_id in ids:
            workflow_id = raw_id.decode("utf-8") if isinstance(raw_id, bytes) else raw_id
            workflow = await self.load(workflow_id)
            if workflow is not None:
                workflows.append(workflow)
        return workflows

    async def delete(self, workflow_id: str) -> bool:
        self._check_connected()

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._workflow_key(workflow_id))
            pipe.zrem(self._index_key(), workflow_id)
            deleted, _ = await pipe.execute()
        return deleted > 0
