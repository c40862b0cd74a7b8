"""SQLite-backed checkpoint store for orchestrator threads.

Implements LangGraph's ``BaseCheckpointSaver`` async interface on top of
``aiosqlite`` so the driver can swap it with ``InMemorySaver`` freely.
Rows live in two tables::

    orchestrator_checkpoints       one row per (thread_id, checkpoint_ns, checkpoint_id)
    orchestrator_pending_writes    node outputs recorded before they are merged

Checkpoint ids are uuid6 (time-ordered), so ordering by id is chronological.
Every write is an upsert; re-putting a checkpoint id is idempotent.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence

import aiosqlite
from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import (
    WRITES_IDX_MAP,
    BaseCheckpointSaver,
    ChannelVersions,
    Checkpoint,
    CheckpointMetadata,
    CheckpointTuple,
    get_checkpoint_id,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS orchestrator_checkpoints (
    thread_id TEXT NOT NULL,
    checkpoint_ns TEXT NOT NULL DEFAULT '',
    checkpoint_id TEXT NOT NULL,
    parent_checkpoint_id TEXT,
    type TEXT,
    checkpoint BLOB NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    PRIMARY KEY (thread_id, checkpoint_ns, checkpoint_id)
);
CREATE TABLE IF NOT EXISTS orchestrator_pending_writes (
    thread_id TEXT NOT NULL,
    checkpoint_ns TEXT NOT NULL DEFAULT '',
    checkpoint_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    channel TEXT NOT NULL,
    type TEXT,
    value BLOB,
    PRIMARY KEY (thread_id, checkpoint_ns, checkpoint_id, task_id, idx)
);
CREATE INDEX IF NOT EXISTS idx_orchestrator_checkpoints_thread
    ON orchestrator_checkpoints (thread_id, checkpoint_ns, created_at DESC);
"""


def thread_config(thread_id: str, checkpoint_id: str | None = None) -> RunnableConfig:
    """Build the RunnableConfig addressing a thread (and optionally one checkpoint)."""
    configurable = {"thread_id": thread_id, "checkpoint_ns": ""}
    if checkpoint_id:
        configurable["checkpoint_id"] = checkpoint_id
    return {"configurable": configurable}


class SqliteCheckpointSaver(BaseCheckpointSaver):
    """Async checkpoint saver persisting to a single SQLite database."""

    def __init__(self, conn: aiosqlite.Connection, *, serde=None):
        super().__init__(serde=serde)
        self.conn = conn
        self.is_setup = False
        self._lock = asyncio.Lock()

    @classmethod
    @asynccontextmanager
    async def from_path(cls, path: str | Path) -> AsyncIterator["SqliteCheckpointSaver"]:
        """Open (and create if needed) a checkpoint database at *path*."""
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(path)) as conn:
            saver = cls(conn)
            await saver.setup()
            logger.info("[Checkpointer] Opened SQLite checkpoint store: %s", path)
            yield saver

    async def setup(self) -> None:
        """Create tables and indexes. Safe to call repeatedly."""
        if self.is_setup:
            return
        async with self._lock:
            await self.conn.executescript(_SCHEMA)
            await self.conn.commit()
        self.is_setup = True

    # --- Writes ---

    async def aput(
        self,
        config: RunnableConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata,
        new_versions: Optional[ChannelVersions] = None,
    ) -> RunnableConfig:
        await self.setup()
        configurable = config["configurable"]
        thread_id = configurable["thread_id"]
        checkpoint_ns = configurable.get("checkpoint_ns", "")
        parent_id = configurable.get("checkpoint_id")
        type_, blob = self.serde.dumps_typed(checkpoint)

        async with self._lock:
            await self.conn.execute(
                """
                INSERT INTO orchestrator_checkpoints
                    (thread_id, checkpoint_ns, checkpoint_id, parent_checkpoint_id,
                     type, checkpoint, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (thread_id, checkpoint_ns, checkpoint_id) DO UPDATE SET
                    parent_checkpoint_id = excluded.parent_checkpoint_id,
                    type = excluded.type,
                    checkpoint = excluded.checkpoint,
                    metadata = excluded.metadata
                """,
                (
                    thread_id,
                    checkpoint_ns,
                    checkpoint["id"],
                    parent_id,
                    type_,
                    blob,
                    json.dumps(dict(metadata)),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            await self.conn.commit()

        return {
            "configurable": {
                "thread_id": thread_id,
                "checkpoint_ns": checkpoint_ns,
                "checkpoint_id": checkpoint["id"],
            }
        }

    async def aput_writes(
        self,
        config: RunnableConfig,
        writes: Sequence[tuple[str, Any]],
        task_id: str,
        task_path: str = "",
    ) -> None:
        await self.setup()
        configurable = config["configurable"]
        rows = []
        for idx, (channel, value) in enumerate(writes):
            type_, blob = self.serde.dumps_typed(value)
            rows.append((
                configurable["thread_id"],
                configurable.get("checkpoint_ns", ""),
                configurable["checkpoint_id"],
                task_id,
                WRITES_IDX_MAP.get(channel, idx),
                channel,
                type_,
                blob,
            ))
        async with self._lock:
            await self.conn.executemany(
                """
                INSERT INTO orchestrator_pending_writes
                    (thread_id, checkpoint_ns, checkpoint_id, task_id, idx, channel, type, value)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (thread_id, checkpoint_ns, checkpoint_id, task_id, idx) DO UPDATE SET
                    channel = excluded.channel,
                    type = excluded.type,
                    value = excluded.value
                """,
                rows,
            )
            await self.conn.commit()

    # --- Reads ---

    async def _pending_writes(
        self, thread_id: str, checkpoint_ns: str, checkpoint_id: str
    ) -> list[tuple[str, str, Any]]:
        async with self.conn.execute(
            """
            SELECT task_id, channel, type, value FROM orchestrator_pending_writes
            WHERE thread_id = ? AND checkpoint_ns = ? AND checkpoint_id = ?
            ORDER BY task_id, idx
            """,
            (thread_id, checkpoint_ns, checkpoint_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            (task_id, channel, self.serde.loads_typed((type_, value)))
            for task_id, channel, type_, value in rows
        ]

    async def _to_tuple(self, row) -> CheckpointTuple:
        thread_id, checkpoint_ns, checkpoint_id, parent_id, type_, blob, metadata = row
        parent_config = thread_config(thread_id, parent_id) if parent_id else None
        if parent_config:
            parent_config["configurable"]["checkpoint_ns"] = checkpoint_ns
        return CheckpointTuple(
            config={
                "configurable": {
                    "thread_id": thread_id,
                    "checkpoint_ns": checkpoint_ns,
                    "checkpoint_id": checkpoint_id,
                }
            },
            checkpoint=self.serde.loads_typed((type_, blob)),
            metadata=json.loads(metadata),
            parent_config=parent_config,
            pending_writes=await self._pending_writes(thread_id, checkpoint_ns, checkpoint_id),
        )

    async def aget_tuple(self, config: RunnableConfig) -> Optional[CheckpointTuple]:
        """Return the requested checkpoint, or the latest one for the thread."""
        await self.setup()
        configurable = config["configurable"]
        thread_id = configurable["thread_id"]
        checkpoint_ns = configurable.get("checkpoint_ns", "")
        checkpoint_id = get_checkpoint_id(config)

        select = (
            "SELECT thread_id, checkpoint_ns, checkpoint_id, parent_checkpoint_id, "
            "type, checkpoint, metadata FROM orchestrator_checkpoints "
        )
        if checkpoint_id:
            query = select + "WHERE thread_id = ? AND checkpoint_ns = ? AND checkpoint_id = ?"
            params: tuple = (thread_id, checkpoint_ns, checkpoint_id)
        else:
            query = select + (
                "WHERE thread_id = ? AND checkpoint_ns = ? ORDER BY checkpoint_id DESC LIMIT 1"
            )
            params = (thread_id, checkpoint_ns)

        async with self.conn.execute(query, params) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return await self._to_tuple(row)

    async def alist(
        self,
        config: Optional[RunnableConfig],
        *,
        filter: Optional[dict[str, Any]] = None,
        before: Optional[RunnableConfig] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[CheckpointTuple]:
        """Yield checkpoints newest first; ``before`` is exclusive."""
        await self.setup()
        clauses, params = [], []
        if config is not None:
            configurable = config["configurable"]
            clauses.append("thread_id = ?")
            params.append(configurable["thread_id"])
            if "checkpoint_ns" in configurable:
                clauses.append("checkpoint_ns = ?")
                params.append(configurable["checkpoint_ns"])
        if before is not None:
            before_id = get_checkpoint_id(before)
            if before_id:
                clauses.append("checkpoint_id < ?")
                params.append(before_id)

        query = (
            "SELECT thread_id, checkpoint_ns, checkpoint_id, parent_checkpoint_id, "
            "type, checkpoint, metadata FROM orchestrator_checkpoints"
        )
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY checkpoint_id DESC"

        async with self.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        yielded = 0
        for row in rows:
            if limit is not None and yielded >= limit:
                break
            if filter:
                metadata = json.loads(row[6])
                if any(metadata.get(k) != v for k, v in filter.items()):
                    continue
            yield await self._to_tuple(row)
            yielded += 1

    # --- Deletion ---

    async def adelete_thread(self, thread_id: str) -> None:
        """Delete every checkpoint and pending write of a thread in one transaction."""
        await self.setup()
        async with self._lock:
            try:
                await self.conn.execute(
                    "DELETE FROM orchestrator_pending_writes WHERE thread_id = ?", (thread_id,)
                )
                await self.conn.execute(
                    "DELETE FROM orchestrator_checkpoints WHERE thread_id = ?", (thread_id,)
                )
                await self.conn.commit()
            except Exception:
                await self.conn.rollback()
                raise
        logger.info("[Checkpointer] Deleted thread %s", thread_id)

    async def aprune(self, thread_id: str, keep: int) -> int:
        """Delete the oldest checkpoints of a thread beyond *keep*.

        Returns the number of checkpoints deleted.
        """
        await self.setup()
        async with self.conn.execute(
            "SELECT checkpoint_id FROM orchestrator_checkpoints WHERE thread_id = ? "
            "ORDER BY checkpoint_id DESC",
            (thread_id,),
        ) as cursor:
            ids = [row[0] for row in await cursor.fetchall()]
        stale = ids[keep:]
        if not stale:
            return 0

        placeholders = ", ".join("?" for _ in stale)
        async with self._lock:
            await self.conn.execute(
                f"DELETE FROM orchestrator_pending_writes WHERE thread_id = ? "
                f"AND checkpoint_id IN ({placeholders})",
                (thread_id, *stale),
            )
            await self.conn.execute(
                f"DELETE FROM orchestrator_checkpoints WHERE thread_id = ? "
                f"AND checkpoint_id IN ({placeholders})",
                (thread_id, *stale),
            )
            await self.conn.commit()
        logger.info(
            "[Checkpointer] Pruned %d old checkpoints for %s (kept %d)", len(stale), thread_id, keep
        )
        return len(stale)
