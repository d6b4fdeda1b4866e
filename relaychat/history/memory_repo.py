#!/usr/bin/env python3
"""
In-Memory Conversation Store

CONFIG: chat.storage.type = "memory"
PURPOSE: Development/testing - all data lost on restart
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from relaychat.chat.models import Message

from .models import DEFAULT_TITLE, ConversationRecord
from .repository import MessageNotFoundError

logger = logging.getLogger(__name__)


class InMemoryConversationStore:
    """Session-only storage. A single lock orders all writes."""

    def __init__(self) -> None:
        self._conversations: dict[str, ConversationRecord] = {}
        self._messages: dict[str, list[Message]] = {}
        self._lock = asyncio.Lock()

    def _ensure_conversation(self, conversation_id: str, title: str = DEFAULT_TITLE) -> ConversationRecord:
        record = self._conversations.get(conversation_id)
        if record is None:
            record = ConversationRecord(id=conversation_id, title=title)
            self._conversations[conversation_id] = record
            self._messages[conversation_id] = []
        return record

    def _touch(self, conversation_id: str) -> None:
        record = self._conversations[conversation_id]
        self._conversations[conversation_id] = record.model_copy(update={"updated_at": datetime.now(UTC)})

    async def create_conversation(
        self, conversation_id: str | None = None, title: str = DEFAULT_TITLE
    ) -> ConversationRecord:
        async with self._lock:
            if conversation_id is None:
                record = ConversationRecord(title=title)
                conversation_id = record.id
                self._conversations[conversation_id] = record
                self._messages[conversation_id] = []
                return record
            return self._ensure_conversation(conversation_id, title)

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        return self._conversations.get(conversation_id)

    async def list_conversations(self) -> list[ConversationRecord]:
        return sorted(self._conversations.values(), key=lambda r: r.updated_at, reverse=True)

    async def set_title(self, conversation_id: str, title: str) -> None:
        async with self._lock:
            record = self._ensure_conversation(conversation_id)
            self._conversations[conversation_id] = record.model_copy(
                update={"title": title, "updated_at": datetime.now(UTC)}
            )

    async def append(self, conversation_id: str, message: Message) -> bool:
        async with self._lock:
            self._ensure_conversation(conversation_id)
            messages = self._messages[conversation_id]
            if any(m.id == message.id for m in messages):
                logger.debug("Message %s already stored; skipping duplicate", message.id)
                return False
            messages.append(message)
            self._touch(conversation_id)
            return True

    async def history(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, []))

    async def replace_and_truncate(self, conversation_id: str, message_id: str, replacement: Message) -> list[Message]:
        async with self._lock:
            messages = self._messages.get(conversation_id, [])
            index = next((i for i, m in enumerate(messages) if m.id == message_id), None)
            if index is None:
                raise MessageNotFoundError(conversation_id, message_id)

            kept = [*messages[:index], replacement]
            self._messages[conversation_id] = kept
            self._touch(conversation_id)
            logger.info(
                "Replaced message %s and dropped %d later messages in %s",
                message_id,
                len(messages) - index - 1,
                conversation_id,
            )
            return list(kept)
