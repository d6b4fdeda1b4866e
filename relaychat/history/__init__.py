#!/usr/bin/env python3
"""
Conversation History Module

Conversation stores with in-memory and SQLite backends.
"""

from __future__ import annotations

from .factory import create_store
from .memory_repo import InMemoryConversationStore
from .models import DEFAULT_TITLE, ConversationRecord
from .repository import ConversationStore, MessageNotFoundError, PersistenceError
from .sqlite_repo import SQLiteConversationStore

__all__ = [
    "DEFAULT_TITLE",
    "ConversationRecord",
    "ConversationStore",
    "InMemoryConversationStore",
    "MessageNotFoundError",
    "PersistenceError",
    "SQLiteConversationStore",
    "create_store",
]
