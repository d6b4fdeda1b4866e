#!/usr/bin/env python3
"""
Conversation Store Interface

Protocol every storage backend implements. The store is the single
serialization point for persisted history: appends for one conversation are
applied in call order and a message never changes after it is appended,
except through ``replace_and_truncate``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from relaychat.chat.models import Message

from .models import DEFAULT_TITLE, ConversationRecord


class PersistenceError(Exception):
    """A storage backend failed to read or write history."""


class MessageNotFoundError(PersistenceError):
    def __init__(self, conversation_id: str, message_id: str) -> None:
        super().__init__(f"Message '{message_id}' not found in conversation '{conversation_id}'")


# ---------- Store interface ----------


@runtime_checkable
class ConversationStore(Protocol):
    async def create_conversation(
        self, conversation_id: str | None = None, title: str = DEFAULT_TITLE
    ) -> ConversationRecord: ...

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    async def list_conversations(self) -> list[ConversationRecord]: ...

    async def set_title(self, conversation_id: str, title: str) -> None: ...

    async def append(self, conversation_id: str, message: Message) -> bool: ...

    async def history(self, conversation_id: str) -> list[Message]: ...

    async def replace_and_truncate(
        self, conversation_id: str, message_id: str, replacement: Message
    ) -> list[Message]: ...
