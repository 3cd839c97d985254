"""
Durable Store: the write-of-record for both memory tiers.

Conversations, their append-only message logs, and working-memory records
live in one SQLite database accessed through aiosqlite. Working memory is
stored here as well as in the hot cache so that a restart or a cache miss
never loses in-flight task state; rows carry ``expires_at`` and are indexed
on it for expiry-driven cleanup.

Every write runs in its own transaction behind an ``asyncio.Lock``. Any
SQLite failure is rolled back and surfaces as ``StoreError``.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite
import structlog

from careflow.errors import StoreError
from careflow.types import Conversation, ConversationFilters, Message, WorkingMemory

logger = structlog.get_logger(__name__)

CONVERSATION_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    subject_id TEXT,
    title TEXT NOT NULL DEFAULT 'New Conversation',
    summary TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL,
    last_activity REAL NOT NULL,
    archived INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, last_activity);
"""

MESSAGE_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    conversation_id TEXT NOT NULL REFERENCES conversations(conversation_id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp REAL NOT NULL,
    reasoning TEXT,
    tool_calls TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (conversation_id, seq)
);
"""

WORKING_MEMORY_SCHEMA = """
CREATE TABLE IF NOT EXISTS working_memory (
    conversation_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    expires_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_working_memory_expires ON working_memory(expires_at);
"""

_CONVERSATION_COLUMNS = (
    "conversation_id, user_id, subject_id, title, summary, "
    "created_at, last_activity, archived, message_count"
)


class DurableStore:
    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and ensure the schema exists."""
        if self._conn is not None:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._best_effort_chmod(self._db_path.parent, 0o700)
        try:
            self._conn = await aiosqlite.connect(str(self._db_path))
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.executescript(CONVERSATION_SCHEMA)
            await self._conn.executescript(MESSAGE_SCHEMA)
            await self._conn.executescript(WORKING_MEMORY_SCHEMA)
            await self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Could not open durable store at {self._db_path}: {e}") from e
        self._best_effort_chmod(self._db_path, 0o600)
        logger.info("durable_store.initialized", path=str(self._db_path))

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "DurableStore":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("DurableStore is not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            conn = self._require_connection()
            try:
                yield conn
                await conn.commit()
            except sqlite3.Error as e:
                await self._rollback(conn, operation)
                logger.error("durable_store.write_failed", operation=operation, error=str(e))
                raise StoreError(f"{operation} failed: {e}") from e
            except BaseException:
                # Cancellation mid-transaction must not leave writes for the next commit.
                await asyncio.shield(self._rollback(conn, operation))
                raise

    @staticmethod
    async def _rollback(conn: aiosqlite.Connection, operation: str) -> None:
        try:
            await conn.rollback()
        except sqlite3.Error:
            logger.warning("durable_store.rollback_failed", operation=operation)

    @asynccontextmanager
    async def _reading(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            conn = self._require_connection()
            try:
                yield conn
            except sqlite3.Error as e:
                logger.error("durable_store.read_failed", operation=operation, error=str(e))
                raise StoreError(f"{operation} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    async def create_conversation(self, conversation: Conversation) -> None:
        async with self._transaction("create_conversation") as conn:
            await conn.execute(
                f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)",
                (
                    conversation.conversation_id,
                    conversation.user_id,
                    conversation.subject_id,
                    conversation.title,
                    conversation.summary,
                    conversation.created_at,
                    conversation.last_activity,
                    int(conversation.archived),
                ),
            )

    async def get_conversation(
        self,
        conversation_id: str,
        include_messages: bool = True,
    ) -> Optional[Conversation]:
        async with self._reading("get_conversation") as conn:
            cursor = await conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            messages: list[Message] = []
            if include_messages:
                cursor = await conn.execute(
                    "SELECT role, content, timestamp, reasoning, tool_calls, metadata "
                    "FROM messages WHERE conversation_id = ? ORDER BY seq",
                    (conversation_id,),
                )
                messages = [self._row_to_message(r) for r in await cursor.fetchall()]
        return self._row_to_conversation(row, messages)

    async def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        async with self._reading("recent_messages") as conn:
            cursor = await conn.execute(
                "SELECT role, content, timestamp, reasoning, tool_calls, metadata FROM messages "
                "WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?",
                (conversation_id, max(0, int(limit))),
            )
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in reversed(rows)]

    async def append_message(self, conversation_id: str, message: Message) -> int:
        """Append at the next sequence number; returns the new message count."""
        async with self._transaction("append_message") as conn:
            cursor = await conn.execute(
                "SELECT message_count FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise sqlite3.IntegrityError(f"unknown conversation {conversation_id}")
            seq = int(row["message_count"]) + 1
            await conn.execute(
                "INSERT INTO messages (conversation_id, seq, role, content, timestamp, "
                "reasoning, tool_calls, metadata) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    conversation_id,
                    seq,
                    message.role,
                    message.content,
                    message.timestamp,
                    message.reasoning,
                    json.dumps([tc.model_dump(mode="json") for tc in message.tool_calls], default=str),
                    json.dumps(message.metadata, default=str),
                ),
            )
            await conn.execute(
                "UPDATE conversations SET message_count = ?, last_activity = ? WHERE conversation_id = ?",
                (seq, max(message.timestamp, time.time()), conversation_id),
            )
        return seq

    async def update_summary(self, conversation_id: str, summary: str) -> None:
        async with self._transaction("update_summary") as conn:
            await conn.execute(
                "UPDATE conversations SET summary = ? WHERE conversation_id = ?",
                (summary, conversation_id),
            )

    async def update_title(self, conversation_id: str, title: str) -> None:
        async with self._transaction("update_title") as conn:
            await conn.execute(
                "UPDATE conversations SET title = ? WHERE conversation_id = ?",
                (title, conversation_id),
            )

    async def set_archived(self, conversation_id: str, archived: bool) -> bool:
        async with self._transaction("set_archived") as conn:
            cursor = await conn.execute(
                "UPDATE conversations SET archived = ? WHERE conversation_id = ?",
                (int(archived), conversation_id),
            )
            return cursor.rowcount > 0

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._transaction("delete_conversation") as conn:
            await conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            await conn.execute("DELETE FROM working_memory WHERE conversation_id = ?", (conversation_id,))
            cursor = await conn.execute(
                "DELETE FROM conversations WHERE conversation_id = ?", (conversation_id,)
            )
            return cursor.rowcount > 0

    async def list_conversations(
        self,
        user_id: str,
        filters: Optional[ConversationFilters] = None,
    ) -> list[Conversation]:
        """Conversations for ``user_id``, most recently active first, without messages."""
        filters = filters or ConversationFilters()
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if filters.archived is not None:
            clauses.append("archived = ?")
            params.append(int(filters.archived))
        if filters.subject_id is not None:
            clauses.append("subject_id = ?")
            params.append(filters.subject_id)
        if filters.active_since is not None:
            clauses.append("last_activity >= ?")
            params.append(filters.active_since)
        if filters.active_until is not None:
            clauses.append("last_activity <= ?")
            params.append(filters.active_until)
        params.extend([max(1, filters.limit), max(0, filters.offset)])

        async with self._reading("list_conversations") as conn:
            cursor = await conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE {' AND '.join(clauses)} "
                "ORDER BY last_activity DESC LIMIT ? OFFSET ?",
                params,
            )
            rows = await cursor.fetchall()
        return [self._row_to_conversation(r, []) for r in rows]

    # -------------------------------------------------------------------------
    # Working memory
    # -------------------------------------------------------------------------

    async def get_working_memory(self, conversation_id: str) -> Optional[WorkingMemory]:
        """Raw read; expiry is the caller's decision."""
        async with self._reading("get_working_memory") as conn:
            cursor = await conn.execute(
                "SELECT payload FROM working_memory WHERE conversation_id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return WorkingMemory.model_validate_json(row["payload"])

    async def put_working_memory(self, memory: WorkingMemory) -> None:
        async with self._transaction("put_working_memory") as conn:
            await conn.execute(
                "INSERT INTO working_memory (conversation_id, payload, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(conversation_id) DO UPDATE SET payload = excluded.payload, "
                "expires_at = excluded.expires_at",
                (memory.conversation_id, memory.model_dump_json(), memory.expires_at),
            )

    async def delete_working_memory(self, conversation_id: str) -> bool:
        async with self._transaction("delete_working_memory") as conn:
            cursor = await conn.execute(
                "DELETE FROM working_memory WHERE conversation_id = ?", (conversation_id,)
            )
            return cursor.rowcount > 0

    async def purge_expired_working_memory(self, now: Optional[float] = None) -> int:
        cutoff = time.time() if now is None else now
        async with self._transaction("purge_expired_working_memory") as conn:
            cursor = await conn.execute(
                "DELETE FROM working_memory WHERE expires_at <= ?", (cutoff,)
            )
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_message(row: Any) -> Message:
        return Message(
            role=row["role"],
            content=row["content"],
            timestamp=row["timestamp"],
            reasoning=row["reasoning"],
            tool_calls=json.loads(row["tool_calls"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
        )

    @staticmethod
    def _row_to_conversation(row: Any, messages: list[Message]) -> Conversation:
        return Conversation(
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            subject_id=row["subject_id"],
            title=row["title"],
            summary=row["summary"],
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            archived=bool(row["archived"]),
            messages=messages,
        )

    @staticmethod
    def _best_effort_chmod(path: Path, mode: int) -> None:
        """Attempt chmod without failing on unsupported filesystems."""
        if not path.exists():
            return
        try:
            path.chmod(mode)
        except OSError:
            logger.debug("durable_store.chmod_skipped", path=str(path), mode=oct(mode))
