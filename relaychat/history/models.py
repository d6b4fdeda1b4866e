#!/usr/bin/env python3
"""
Conversation History Data Models

Messages themselves are ``relaychat.chat.models.Message``; this module holds
the conversation-level records the stores keep alongside them.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Chat"


class ConversationRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = DEFAULT_TITLE
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_default_title(self) -> bool:
        return self.title == DEFAULT_TITLE
