"""SQLite session store via aiosqlite.

One database holds every user's documents: the active session pointer, the
archived sessions, the per-session conversation logs and the cumulative
summary. Each public method is one committed transaction; an internal lock
keeps transactions on the shared connection from interleaving.
"""

from __future__ import annotations

import asyncio
import json
import os
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import aiosqlite
import structlog

from convkeeper.errors import PersistenceError

from .models import (
    SCHEMA_SQL,
    ConversationEntry,
    CumulativeSummary,
    SessionMetadata,
)

log = structlog.get_logger()


def new_local_id(now: float | None = None) -> str:
    """Allocate a session id: UTC creation time plus a random suffix."""
    stamp = datetime.fromtimestamp(now if now is not None else time.time(), tz=timezone.utc)
    return f"{stamp.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


class SessionStore:
    """Async SQLite store for session metadata, logs and summaries."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection and initialize schema."""
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(self._db_path)
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(SCHEMA_SQL)
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"cannot open session store {self._db_path}: {exc}") from exc
        log.info("store_connected", path=self._db_path)

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistenceError("Session store not connected")
        return self._conn

    @asynccontextmanager
    async def _transaction(self, op: str) -> AsyncIterator[aiosqlite.Connection]:
        """Run one serialized transaction, committing on success."""
        async with self._lock:
            conn = self.conn
            try:
                yield conn
                await conn.commit()
            except aiosqlite.Error as exc:
                await conn.rollback()
                log.error("store_operation_failed", op=op, error=str(exc))
                raise PersistenceError(f"{op} failed: {exc}") from exc
            except BaseException:
                await conn.rollback()
                raise

    async def read_active(self, user_id: str) -> SessionMetadata | None:
        async with self._transaction("read_active") as conn:
            cursor = await conn.execute(
                "SELECT metadata_json FROM active_sessions WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return SessionMetadata.from_json(row[0])

    async def write_active(self, user_id: str, meta: SessionMetadata) -> None:
        """Replace the active session document for a user."""
        if meta.ended_at is not None:
            raise PersistenceError(
                f"session {meta.local_id} is archived and cannot be made active"
            )
        async with self._transaction("write_active") as conn:
            await self._reject_if_archived(conn, user_id, meta.local_id)
            await conn.execute(
                """
                INSERT INTO active_sessions (user_id, local_id, metadata_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    local_id = excluded.local_id,
                    metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, meta.local_id, meta.to_json(), meta.updated_at),
            )

    async def clear_active(self, user_id: str) -> None:
        async with self._transaction("clear_active") as conn:
            await conn.execute("DELETE FROM active_sessions WHERE user_id = ?", (user_id,))

    async def create_active(self, user_id: str) -> SessionMetadata:
        """Create and persist a fresh active session with zeroed counters."""
        now = time.time()
        meta = SessionMetadata(local_id=new_local_id(now), created_at=now, updated_at=now)
        async with self._transaction("create_active") as conn:
            # Conversation log starts empty even on an id collision.
            await conn.execute(
                "DELETE FROM conversation_entries WHERE user_id = ? AND local_id = ?",
                (user_id, meta.local_id),
            )
            await conn.execute(
                """
                INSERT INTO active_sessions (user_id, local_id, metadata_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    local_id = excluded.local_id,
                    metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, meta.local_id, meta.to_json(), now),
            )
        log.debug("session_created", user_id=user_id, local_id=meta.local_id)
        return meta

    async def append_conversation(
        self, user_id: str, local_id: str, entries: list[ConversationEntry],
    ) -> None:
        """Append entries to a session's log, in order."""
        if not entries:
            return
        async with self._transaction("append_conversation") as conn:
            await self._reject_if_archived(conn, user_id, local_id)
            await conn.executemany(
                """
                INSERT INTO conversation_entries
                    (user_id, local_id, timestamp, role, content, metadata_json, blocks_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        user_id, local_id, e.timestamp, e.role, e.content,
                        json.dumps(e.metadata) if e.metadata is not None else None,
                        json.dumps(e.blocks) if e.blocks else None,
                    )
                    for e in entries
                ],
            )

    async def read_conversation(self, user_id: str, local_id: str) -> list[ConversationEntry]:
        """Return a session's log in insertion order."""
        async with self._transaction("read_conversation") as conn:
            cursor = await conn.execute(
                """
                SELECT timestamp, role, content, metadata_json, blocks_json
                FROM conversation_entries
                WHERE user_id = ? AND local_id = ?
                ORDER BY id
                """,
                (user_id, local_id),
            )
            rows = await cursor.fetchall()
        return [
            ConversationEntry(
                timestamp=r[0],
                role=r[1],
                content=r[2],
                metadata=json.loads(r[3]) if r[3] else None,
                blocks=json.loads(r[4]) if r[4] else None,
            )
            for r in rows
        ]

    async def archive(self, user_id: str, meta: SessionMetadata) -> None:
        """Archive a session. ``meta.ended_at`` must be set.

        Archived metadata is immutable: archiving the same local id twice
        fails. If the active pointer still refers to this session it is
        dropped in the same transaction.
        """
        if meta.ended_at is None:
            raise PersistenceError(f"cannot archive {meta.local_id} without ended_at")
        async with self._transaction("archive") as conn:
            await conn.execute(
                """
                INSERT INTO archived_sessions
                    (user_id, local_id, created_at, ended_at, metadata_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, meta.local_id, meta.created_at, meta.ended_at, meta.to_json()),
            )
            await conn.execute(
                "DELETE FROM active_sessions WHERE user_id = ? AND local_id = ?",
                (user_id, meta.local_id),
            )

    async def list_archived(self, user_id: str) -> list[SessionMetadata]:
        """List archived sessions, newest first by creation time."""
        async with self._transaction("list_archived") as conn:
            cursor = await conn.execute(
                """
                SELECT metadata_json FROM archived_sessions
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [SessionMetadata.from_json(r[0]) for r in rows]

    async def read_archived(self, user_id: str, local_id: str) -> SessionMetadata | None:
        async with self._transaction("read_archived") as conn:
            cursor = await conn.execute(
                "SELECT metadata_json FROM archived_sessions WHERE user_id = ? AND local_id = ?",
                (user_id, local_id),
            )
            row = await cursor.fetchone()
        return SessionMetadata.from_json(row[0]) if row else None

    async def read_cumulative_summary(self, user_id: str) -> CumulativeSummary | None:
        async with self._transaction("read_cumulative_summary") as conn:
            cursor = await conn.execute(
                "SELECT text, session_count, updated_at FROM cumulative_summaries WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return CumulativeSummary(text=row[0], session_count=row[1], updated_at=row[2])

    async def write_cumulative_summary(self, user_id: str, summary: CumulativeSummary) -> None:
        """Upsert the cumulative summary. ``session_count`` never decreases."""
        async with self._transaction("write_cumulative_summary") as conn:
            await conn.execute(
                """
                INSERT INTO cumulative_summaries (user_id, text, session_count, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    text = excluded.text,
                    session_count = MAX(cumulative_summaries.session_count, excluded.session_count),
                    updated_at = excluded.updated_at
                """,
                (user_id, summary.text, summary.session_count, summary.updated_at),
            )

    @staticmethod
    async def _reject_if_archived(
        conn: aiosqlite.Connection, user_id: str, local_id: str,
    ) -> None:
        cursor = await conn.execute(
            "SELECT 1 FROM archived_sessions WHERE user_id = ? AND local_id = ?",
            (user_id, local_id),
        )
        if await cursor.fetchone() is not None:
            raise PersistenceError(f"session {local_id} is archived")
