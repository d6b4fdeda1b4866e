"""
Chat Logging Utilities

Shared logging helpers with feature control. Feature flags are set from the
``logging.modules.<module>.enable_features`` config section by
``relaychat.application.configure_logging``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ContentPart, ToolCall

logger = logging.getLogger(__name__)


def should_log_feature(module: str, feature: str) -> bool:
    """Check whether a logging feature is enabled for a module."""
    module_features = getattr(logging, "_module_features", {}).get(module, {})
    return bool(module_features.get(feature, False))


def _truncate(text: str, limit: int) -> str:
    if limit > 0 and len(text) > limit:
        return text[:limit] + "..."
    return text


def log_assistant_round(
    parts: list[ContentPart],
    tool_calls: list[ToolCall],
    context: str,
    truncate_length: int = 500,
) -> None:
    """
    Log a completed assistant round when the ``chat.llm_replies`` feature is on.

    Args:
        parts: Accumulated content parts of the round
        tool_calls: Tool calls requested in the round
        context: Descriptive context for the log entry
        truncate_length: Maximum length for text and thinking excerpts
    """
    if not should_log_feature("chat", "llm_replies"):
        return

    text = "".join(getattr(p, "text", "") for p in parts if p.type == "text")
    thinking = "".join(getattr(p, "text", "") for p in parts if p.type == "thinking")

    log_parts = [f"LLM Reply ({context}):"]
    if thinking:
        log_parts.append(f"Thinking: {_truncate(thinking, truncate_length)}")
    if text:
        log_parts.append(f"Content: {_truncate(text, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, call in enumerate(tool_calls):
            log_parts.append(f"  [{i}] {call.name}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if total_calls > 1:
        logger.info("→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls)
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, content_length: int, duration_seconds: float) -> None:
    logger.info(
        "← Tool[%s]: success, content length: %d, took %.2fs",
        tool_name,
        content_length,
        duration_seconds,
    )


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_arguments(tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500) -> None:
    """
    Log the arguments sent to a tool when the ``tools.tool_arguments`` feature is on.

    Args:
        tool_name: Name of the tool being called
        arguments: Arguments dictionary being sent to the tool
        context: Descriptive context for the log entry
        truncate_length: Maximum length for argument logging
    """
    if not should_log_feature("tools", "tool_arguments"):
        return
    logger.info("→ Tool[%s]: arguments (%s): %s", tool_name, context, _truncate(str(arguments), truncate_length))


def log_tool_results(tool_name: str, results: str, truncate_length: int = 200) -> None:
    if not should_log_feature("tools", "tool_results"):
        return
    logger.info("← Tool[%s]: results: %s", tool_name, _truncate(results, truncate_length))


def log_error_with_context(context: str, error: BaseException) -> None:
    logger.error("Error %s: %s", context, error)
