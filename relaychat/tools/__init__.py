"""Tool hubs: MCP servers and built-in web search behind one routing table."""

from __future__ import annotations

from .hub import CompositeToolHub, ToolExecutionOutput, ToolHub, ToolHubError, ToolRoute, ToolRoutes, UnknownToolError

__all__ = [
    "CompositeToolHub",
    "ToolExecutionOutput",
    "ToolHub",
    "ToolHubError",
    "ToolRoute",
    "ToolRoutes",
    "UnknownToolError",
]
