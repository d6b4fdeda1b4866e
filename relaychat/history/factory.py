#!/usr/bin/env python3
"""
Store Factory

Builds the conversation store selected by the ``chat.storage`` config section.
"""

from __future__ import annotations

import logging
from typing import Any

from .memory_repo import InMemoryConversationStore
from .repository import ConversationStore
from .sqlite_repo import SQLiteConversationStore

logger = logging.getLogger(__name__)


def create_store(storage_config: dict[str, Any]) -> ConversationStore:
    storage_type = storage_config.get("type", "memory")

    if storage_type == "memory":
        logger.info("Using in-memory conversation store")
        return InMemoryConversationStore()

    if storage_type == "sqlite":
        db_path = storage_config.get("sqlite", {}).get("db_path", "relaychat.db")
        logger.info("Using SQLite conversation store at %s", db_path)
        return SQLiteConversationStore(db_path)

    raise ValueError(f"Unknown storage type '{storage_type}'")
