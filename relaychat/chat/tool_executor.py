"""
Tool Execution Handler

Runs the tool calls of one round:
- Sequential execution in declared order through the tool hub
- Result normalization (empty output placeholders, retry hint on failure)
- Per-call timing and signature propagation
- Search activity synthesis for search tools

A failing tool never aborts the round. Its failure becomes an error result
that the model sees on the next round.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from .logging_utils import (
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from .models import Message, SearchActivity, TextPart, ToolCall, ToolResult
from .search_activity import activity_from_tool_result

if TYPE_CHECKING:
    from relaychat.tools.hub import ToolHub, ToolRoutes

logger = logging.getLogger(__name__)

ToolResultCallback = Callable[[ToolResult, SearchActivity | None], None]


class ToolExecutionBatch(BaseModel):
    """Everything one round of tool execution produced."""

    results: list[ToolResult] = Field(default_factory=list)
    search_activities: list[SearchActivity] = Field(default_factory=list)
    output_blocks: list[str] = Field(default_factory=list)

    def to_message(self) -> Message:
        """Build the ``tool`` message persisted after the round."""
        content = "\n\n".join(self.output_blocks)
        return Message(
            role="tool",
            content=[TextPart(text=content)] if content else [],
            tool_results=self.results,
            search_activities=self.search_activities or None,
        )


def normalize_tool_output(tool_name: str, text: str, is_error: bool) -> str:
    trimmed = text.strip()
    if trimmed:
        return trimmed
    if is_error:
        return f"Tool {tool_name} failed without details"
    return f"Tool {tool_name} returned no output"


def tool_failure_content(error: BaseException) -> str:
    return f"Tool execution failed: {error}. You may retry this tool call with corrected arguments."


class ToolExecutor:
    """Executes tool calls through a tool hub."""

    def __init__(
        self,
        tool_hub: ToolHub,
        tool_logging_config: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tool_hub = tool_hub
        self.tool_logging_config = tool_logging_config or {}
        self._clock = clock

    async def execute_tool_calls(
        self,
        calls: list[ToolCall],
        routes: ToolRoutes,
        on_result: ToolResultCallback | None = None,
    ) -> ToolExecutionBatch:
        """
        Execute ``calls`` one after another and collect their results.

        Exactly one ``ToolResult`` is produced per call, in the order the
        calls were declared. Exceptions raised by the hub become error
        results carrying a retry hint; cancellation is not caught.

        Args:
            calls: Tool calls of the round, in declared order
            routes: Route snapshot taken when the turn collected its tools
            on_result: Invoked after each call with its result and any
                synthesized search activity
        """
        logger.info("→ Tools: executing %d tool calls", len(calls))
        batch = ToolExecutionBatch()
        truncate = self.tool_logging_config.get("tool_arguments_truncate", 500)
        results_truncate = self.tool_logging_config.get("tool_results_truncate", 200)

        for i, call in enumerate(calls):
            log_tool_arguments(call.name, call.arguments, f"call {i + 1}/{len(calls)}", truncate)
            log_tool_execution_start(call.name, i, len(calls))

            started = self._clock()
            try:
                output = await self.tool_hub.execute_tool(call.name, call.arguments, routes)
                content = normalize_tool_output(call.name, output.text, output.is_error)
                is_error = output.is_error
                duration = self._clock() - started
                if is_error:
                    log_tool_execution_error(call.name, content)
                else:
                    log_tool_execution_success(call.name, len(content), duration)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                duration = self._clock() - started
                content = tool_failure_content(e)
                is_error = True
                log_tool_execution_error(call.name, str(e))

            log_tool_results(call.name, content, results_truncate)

            result = ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                content=content,
                is_error=is_error,
                signature=call.signature,
                duration_seconds=duration,
            )
            batch.results.append(result)

            activity = activity_from_tool_result(call, content, is_error, routes.search_provider(call.name))
            if activity is not None:
                batch.search_activities.append(activity)

            header = f"Tool {call.name} failed:" if is_error else f"Tool {call.name}:"
            batch.output_blocks.append(f"{header}\n{content}")

            if on_result is not None:
                on_result(result, activity)

        logger.info("← Tools: completed all tool executions")
        return batch
