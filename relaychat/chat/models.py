"""
Chat Data Models

Pydantic models for everything that flows through a conversation turn:
- Content parts (text, media, thinking blocks)
- Tool calls and tool results
- Search activities
- Persisted messages
- Provider stream events
- Streaming snapshots published to observers
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["system", "user", "assistant", "tool"]


# ============================================================================
# Content Parts
# ============================================================================


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Image content, inline (base64 ``data``) or by reference (``url``)."""

    type: Literal["image"] = "image"
    mime_type: str = "image/png"
    data: str | None = None
    url: str | None = None


class VideoPart(BaseModel):
    type: Literal["video"] = "video"
    mime_type: str = "video/mp4"
    data: str | None = None
    url: str | None = None


class ThinkingPart(BaseModel):
    type: Literal["thinking"] = "thinking"
    text: str = ""
    signature: str | None = None


class RedactedThinkingPart(BaseModel):
    """Opaque reasoning payload the provider does not expose as text."""

    type: Literal["redacted_thinking"] = "redacted_thinking"
    data: str


ContentPart = Annotated[
    TextPart | ImagePart | VideoPart | ThinkingPart | RedactedThinkingPart,
    Field(discriminator="type"),
]


# ============================================================================
# Tool Calls, Results and Search Activities
# ============================================================================


class ToolCall(BaseModel):
    """A model-requested tool invocation. Same id means same logical call."""

    id: str
    name: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)
    signature: str | None = None


class ToolResult(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tool_call_id: str
    tool_name: str
    content: str
    is_error: bool = False
    signature: str | None = None
    duration_seconds: float | None = None


class SearchActivityStatus(str, Enum):
    SEARCHING = "searching"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | SearchActivityStatus | None) -> SearchActivityStatus:
        """Map a provider status string onto a known status, ``unknown`` otherwise."""
        if isinstance(raw, SearchActivityStatus):
            return raw
        if not raw:
            return cls.UNKNOWN
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in (SearchActivityStatus.COMPLETED, SearchActivityStatus.FAILED)


class SearchActivity(BaseModel):
    """One web search performed by a provider or a search tool."""

    id: str
    type: str = "web_search"
    status: SearchActivityStatus = SearchActivityStatus.SEARCHING
    arguments: dict[str, Any] = Field(default_factory=dict)
    output_index: int | None = None
    sequence_number: int | None = None

    def merged(self, newer: SearchActivity) -> SearchActivity:
        """
        Combine this activity with a newer observation of the same search.

        Arguments are unioned with newer values winning. Status only moves
        forward: once completed or failed, a non-terminal update is ignored.
        """
        status = newer.status
        if self.status.is_terminal and not newer.status.is_terminal:
            status = self.status

        return SearchActivity(
            id=self.id,
            type=newer.type or self.type,
            status=status,
            arguments={**self.arguments, **newer.arguments},
            output_index=newer.output_index if newer.output_index is not None else self.output_index,
            sequence_number=(
                newer.sequence_number if newer.sequence_number is not None else self.sequence_number
            ),
        )


# ============================================================================
# Messages
# ============================================================================


class Message(BaseModel):
    """A persisted conversation message. Frozen: history never changes in place."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: list[ContentPart] = Field(default_factory=list)
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None
    search_activities: list[SearchActivity] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    @property
    def thinking_text(self) -> str:
        return "".join(part.text for part in self.content if isinstance(part, ThinkingPart))

    @classmethod
    def from_text(cls, role: MessageRole, text: str) -> Message:
        return cls(role=role, content=[TextPart(text=text)] if text else [])


# ============================================================================
# Generation Controls and Tool Definitions
# ============================================================================


class GenerationControls(BaseModel):
    """Per-request sampling and feature switches handed to the provider adapter."""

    model_config = ConfigDict(extra="allow")

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    reasoning_effort: str | None = None
    web_search_enabled: bool = False
    search_provider: str | None = None


class ToolDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    source: Literal["mcp", "builtin"] = "mcp"

    def to_openai(self) -> dict[str, Any]:
        """Minimal OpenAI function-tool wrapper."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# ============================================================================
# Provider Stream Events
# ============================================================================


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0


class MessageStart(BaseModel):
    kind: Literal["message_start"] = "message_start"
    id: str | None = None


class ContentDelta(BaseModel):
    kind: Literal["content_delta"] = "content_delta"
    part: ContentPart


class ThinkingDelta(BaseModel):
    """
    Incremental reasoning output.

    Carries either text (possibly empty) with an optional signature, or an
    opaque ``redacted_data`` payload.
    """

    kind: Literal["thinking_delta"] = "thinking_delta"
    text: str = ""
    signature: str | None = None
    redacted_data: str | None = None

    @classmethod
    def redacted(cls, data: str) -> ThinkingDelta:
        return cls(redacted_data=data)

    @property
    def is_redacted(self) -> bool:
        return self.redacted_data is not None


class ToolCallStart(BaseModel):
    kind: Literal["tool_call_start"] = "tool_call_start"
    call: ToolCall


class ToolCallDelta(BaseModel):
    kind: Literal["tool_call_delta"] = "tool_call_delta"
    id: str
    arguments_delta: str = ""


class ToolCallEnd(BaseModel):
    kind: Literal["tool_call_end"] = "tool_call_end"
    call: ToolCall


class SearchActivityEvent(BaseModel):
    kind: Literal["search_activity"] = "search_activity"
    activity: SearchActivity


class MessageEnd(BaseModel):
    kind: Literal["message_end"] = "message_end"
    usage: Usage | None = None


class StreamError(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    code: str | None = None


StreamEvent = Annotated[
    MessageStart
    | ContentDelta
    | ThinkingDelta
    | ToolCallStart
    | ToolCallDelta
    | ToolCallEnd
    | SearchActivityEvent
    | MessageEnd
    | StreamError,
    Field(discriminator="kind"),
]


# ============================================================================
# Live Session State
# ============================================================================


class StreamingSnapshot(BaseModel):
    """Observable state of an in-flight turn, published at a throttled rate."""

    conversation_id: str
    round_index: int = 0
    content: list[ContentPart] = Field(default_factory=list)
    text: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    search_activities: list[SearchActivity] = Field(default_factory=list)
    streamed_characters: int = 0
    revision: int = 0
