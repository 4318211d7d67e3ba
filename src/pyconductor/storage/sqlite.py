"""SQLite-backed state store.

Design Pattern: Adapter Pattern
SqliteStateStore adapts an SQLite database to the StateStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- One row per workflow holding the pickled snapshot, with name and status
  columns for querying outside the engine
- xxhash digest of the snapshot: re-saving identical state is a no-op write
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import xxhash

from pyconductor.models import Workflow
from pyconductor.storage.base import (
    StateStore,
    StorageError,
    deserialize_workflow,
    serialize_workflow,
)


def snapshot_digest(data: bytes) -> int:
    """Fast 63-bit content hash (fits SQLite's signed INTEGER)."""
    return xxhash.xxh64(data).intdigest() & 0x7FFFFFFFFFFFFFFF


class SqliteStateStore(StateStore):
    """SQLite-backed durable snapshot storage.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteStateStore("workflows.db")
        await store.connect()
        try:
            engine = WorkflowEngine(registry, state_store=store)
            await engine.recover()
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

        self.skipped_writes = 0
        """Saves skipped because the stored snapshot was identical."""

    @classmethod
    async def in_memory(cls) -> SqliteStateStore:
        """
        Create an in-memory SQLite store for testing.

        Example:
            store = await SqliteStateStore.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteStateStore(in-memory)"
        return f"SqliteStateStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()

        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - workflows table, one row per workflow id
        - lowercase status values matching WorkflowStatus
        - INTEGER timestamps (milliseconds)
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'created','running','paused','completed','cancelled','failed'
                ) ) NOT NULL,
                snapshot BLOB NOT NULL,
                digest INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_workflows_status
            ON workflows(status, created_at)
        """)

    def _check_connected(self) -> None:
        """Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def save(self, workflow: Workflow) -> None:
        """Insert or replace a workflow snapshot.

        Uses INSERT ... ON CONFLICT with a digest guard, so identical
        snapshots don't rewrite the row.
        """
        self._check_connected()

        data = serialize_workflow(workflow)
        digest = snapshot_digest(data)
        created_ms = int(workflow.created_at.timestamp() * 1000)
        updated_ms = int(workflow.updated_at.timestamp() * 1000)

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    """
                    INSERT INTO workflows
                        (id, name, status, snapshot, digest, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        status = excluded.status,
                        snapshot = excluded.snapshot,
                        digest = excluded.digest,
                        updated_at = excluded.updated_at
                    WHERE workflows.digest != excluded.digest
                    """,
                    (
                        workflow.id,
                        workflow.name,
                        workflow.status.value,
                        data,
                        digest,
                        created_ms,
                        updated_ms,
                    ),
                )
                if cursor.rowcount == 0:
                    self.skipped_writes += 1
                await cursor.close()
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to save workflow {workflow.id}: {e}") from e

    async def load(self, workflow_id: str) -> Workflow | None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT snapshot FROM workflows WHERE id = ?", (workflow_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()

        if row is None:
            return None
        return deserialize_workflow(row[0])

    async def load_all(self) -> list[Workflow]:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT snapshot FROM workflows ORDER BY created_at, id"
            )
            rows = await cursor.fetchall()
            await cursor.close()

        return [deserialize_workflow(row[0]) for row in rows]

    async def load_by_status(self, status: str) -> list[Workflow]:
        """Load snapshots with the given status value (e.g. "running")."""
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT snapshot FROM workflows WHERE status = ? ORDER BY created_at, id",
                (status,),
            )
            rows = await cursor.fetchall()
            await cursor.close()

        return [deserialize_workflow(row[0]) for row in rows]

    async def delete(self, workflow_id: str) -> bool:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM workflows WHERE id = ?", (workflow_id,)
            )
            removed = cursor.rowcount > 0
            await cursor.close()
        return removed

    async def reset(self) -> None:
        """Clear all data (for testing/demos).

        After reset, storage is empty but functional.
        """
        self._check_connected()
        async with self._lock:
            await self._connection.execute("DELETE FROM workflows")

    async def close(self) -> None:
        """Close the connection.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
