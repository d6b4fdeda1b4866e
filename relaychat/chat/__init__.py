"""
Chat Module

Turn orchestration: streaming rounds, tool execution, live snapshots.
Import orchestration classes from their modules; this package only
re-exports the data models.
"""

from .models import (
    ContentPart,
    GenerationControls,
    Message,
    SearchActivity,
    SearchActivityStatus,
    StreamEvent,
    StreamingSnapshot,
    ToolCall,
    ToolDefinition,
    ToolResult,
)

__all__ = [
    "ContentPart",
    "GenerationControls",
    "Message",
    "SearchActivity",
    "SearchActivityStatus",
    "StreamEvent",
    "StreamingSnapshot",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
]
