#!/usr/bin/env python3
"""
SQLite Conversation Store

Durable storage for conversations and their messages.

CONFIG: chat.storage.type = "sqlite", chat.storage.sqlite.db_path
FEATURES: WAL mode, per-conversation sequence numbers, JSON message payloads
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from relaychat.chat.models import Message

from .models import DEFAULT_TITLE, ConversationRecord
from .repository import MessageNotFoundError, PersistenceError

logger = logging.getLogger(__name__)


class SQLiteConversationStore:
    """SQLite-backed store. Writes are serialized through one lock."""

    def __init__(self, db_path: str = "relaychat.db"):
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.execute("PRAGMA synchronous=NORMAL")

                    await db.execute("""
                        CREATE TABLE IF NOT EXISTS conversations (
                            id TEXT PRIMARY KEY,
                            title TEXT NOT NULL,
                            created_at TEXT NOT NULL,
                            updated_at TEXT NOT NULL
                        )
                    """)
                    await db.execute("""
                        CREATE TABLE IF NOT EXISTS messages (
                            id TEXT PRIMARY KEY,
                            conversation_id TEXT NOT NULL,
                            seq INTEGER NOT NULL,
                            role TEXT NOT NULL,
                            payload TEXT NOT NULL,
                            created_at TEXT NOT NULL
                        )
                    """)
                    await db.execute("""
                        CREATE UNIQUE INDEX IF NOT EXISTS idx_conversation_seq
                        ON messages(conversation_id, seq)
                    """)
                    await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to initialize database at {self.db_path}: {e}") from e

            self._initialized = True

    def _serialize_message(self, conversation_id: str, seq: int, message: Message) -> dict[str, Any]:
        return {
            "id": message.id,
            "conversation_id": conversation_id,
            "seq": seq,
            "role": message.role,
            "payload": message.model_dump_json(),
            "created_at": message.created_at.isoformat(),
        }

    def _deserialize_message(self, row: aiosqlite.Row) -> Message:
        return Message.model_validate_json(row["payload"])

    def _deserialize_conversation(self, row: aiosqlite.Row) -> ConversationRecord:
        return ConversationRecord(
            id=row["id"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def _insert_conversation(self, db: aiosqlite.Connection, conversation_id: str, title: str) -> None:
        now = datetime.now(UTC).isoformat()
        await db.execute(
            "INSERT OR IGNORE INTO conversations (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (conversation_id, title, now, now),
        )

    async def create_conversation(
        self, conversation_id: str | None = None, title: str = DEFAULT_TITLE
    ) -> ConversationRecord:
        await self._ensure_initialized()
        conversation_id = conversation_id or str(uuid.uuid4())

        async with self._lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await self._insert_conversation(db, conversation_id, title)
                    await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to create conversation {conversation_id}: {e}") from e

        record = await self.get_conversation(conversation_id)
        if record is None:
            raise PersistenceError(f"Conversation {conversation_id} missing after insert")
        return record

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to load conversation {conversation_id}: {e}") from e
        return self._deserialize_conversation(row) if row else None

    async def list_conversations(self) -> list[ConversationRecord]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute("SELECT * FROM conversations ORDER BY updated_at DESC") as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to list conversations: {e}") from e
        return [self._deserialize_conversation(row) for row in rows]

    async def set_title(self, conversation_id: str, title: str) -> None:
        await self._ensure_initialized()
        async with self._lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await self._insert_conversation(db, conversation_id, title)
                    await db.execute(
                        "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                        (title, datetime.now(UTC).isoformat(), conversation_id),
                    )
                    await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to set title for {conversation_id}: {e}") from e

    async def append(self, conversation_id: str, message: Message) -> bool:
        await self._ensure_initialized()

        async with self._lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    async with db.execute("SELECT 1 FROM messages WHERE id = ?", (message.id,)) as cursor:
                        if await cursor.fetchone():
                            return False

                    await self._insert_conversation(db, conversation_id, DEFAULT_TITLE)

                    async with db.execute(
                        "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE conversation_id = ?",
                        (conversation_id,),
                    ) as cursor:
                        row = await cursor.fetchone()
                        seq = row[0] if row else 1

                    row_data = self._serialize_message(conversation_id, seq, message)
                    columns = ", ".join(row_data.keys())
                    placeholders = ", ".join("?" * len(row_data))
                    await db.execute(
                        f"INSERT INTO messages ({columns}) VALUES ({placeholders})",
                        list(row_data.values()),
                    )
                    await db.execute(
                        "UPDATE conversations SET updated_at = ? WHERE id = ?",
                        (datetime.now(UTC).isoformat(), conversation_id),
                    )
                    await db.commit()
                    return True
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to append message to {conversation_id}: {e}") from e

    async def history(self, conversation_id: str) -> list[Message]:
        await self._ensure_initialized()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    "SELECT payload FROM messages WHERE conversation_id = ? ORDER BY seq",
                    (conversation_id,),
                ) as cursor:
                    rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to load history for {conversation_id}: {e}") from e
        return [self._deserialize_message(row) for row in rows]

    async def replace_and_truncate(self, conversation_id: str, message_id: str, replacement: Message) -> list[Message]:
        await self._ensure_initialized()

        async with self._lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    async with db.execute(
                        "SELECT seq FROM messages WHERE conversation_id = ? AND id = ?",
                        (conversation_id, message_id),
                    ) as cursor:
                        row = await cursor.fetchone()
                    if row is None:
                        raise MessageNotFoundError(conversation_id, message_id)
                    seq = row[0]

                    await db.execute(
                        "DELETE FROM messages WHERE conversation_id = ? AND seq >= ?",
                        (conversation_id, seq),
                    )
                    row_data = self._serialize_message(conversation_id, seq, replacement)
                    columns = ", ".join(row_data.keys())
                    placeholders = ", ".join("?" * len(row_data))
                    await db.execute(
                        f"INSERT INTO messages ({columns}) VALUES ({placeholders})",
                        list(row_data.values()),
                    )
                    await db.execute(
                        "UPDATE conversations SET updated_at = ? WHERE id = ?",
                        (datetime.now(UTC).isoformat(), conversation_id),
                    )
                    await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to replace message {message_id}: {e}") from e

        logger.info("Replaced message %s in %s and truncated later history", message_id, conversation_id)
        return await self.history(conversation_id)
