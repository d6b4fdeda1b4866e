"""
History truncation applied before a turn's first round.

Token counts are rough estimates (about four characters per token plus a
fixed per-message overhead); they only need to keep requests comfortably
inside the model's context window.
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import (
    ContentPart,
    ImagePart,
    Message,
    RedactedThinkingPart,
    TextPart,
    ThinkingPart,
    VideoPart,
)

MESSAGE_OVERHEAD_TOKENS = 4


def approximate_text_tokens(text: str) -> int:
    trimmed = text.strip()
    if not trimmed:
        return 0
    return max(1, len(trimmed) // 4)


def approximate_part_tokens(part: ContentPart) -> int:
    if isinstance(part, TextPart | ThinkingPart):
        return approximate_text_tokens(part.text)
    if isinstance(part, RedactedThinkingPart):
        return 16
    if isinstance(part, ImagePart):
        return 1024 if part.data is not None else 256
    if isinstance(part, VideoPart):
        return 1536 if part.data is not None else 384
    return 0


def approximate_message_tokens(message: Message) -> int:
    tokens = MESSAGE_OVERHEAD_TOKENS
    tokens += sum(approximate_part_tokens(part) for part in message.content)

    for call in message.tool_calls or ():
        tokens += approximate_text_tokens(call.name)
        for key, value in call.arguments.items():
            tokens += approximate_text_tokens(key) + approximate_text_tokens(str(value))
        if call.signature:
            tokens += approximate_text_tokens(call.signature)

    for result in message.tool_results or ():
        tokens += approximate_text_tokens(result.tool_name)
        tokens += approximate_text_tokens(result.content)
        if result.signature:
            tokens += approximate_text_tokens(result.signature)

    return tokens


def truncate_history(
    messages: Sequence[Message],
    context_window: int,
    reserved_output_tokens: int = 0,
    max_messages: int | None = None,
) -> list[Message]:
    """
    Keep the leading system messages and as many recent messages as fit.

    The newest message is always kept, even when it alone exceeds the
    budget. Histories of two messages or fewer are returned unchanged.

    Args:
        messages: Full conversation history, oldest first
        context_window: Model context size in tokens; 0 or less disables truncation
        reserved_output_tokens: Tokens held back for the reply
        max_messages: Optional cap on non-system messages kept
    """
    history = list(messages)
    if context_window <= 0 or len(history) <= 2:
        return history

    reserved = min(max(0, reserved_output_tokens), context_window)
    budget = context_window - reserved

    index = 0
    while index < len(history) and history[index].role == "system":
        index += 1
    prefix = history[:index]
    rest = history[index:]
    if max_messages is not None and max_messages > 0:
        rest = rest[-max_messages:]

    total = sum(approximate_message_tokens(m) for m in prefix)
    tail: list[Message] = []
    for message in reversed(rest):
        tokens = approximate_message_tokens(message)
        if total + tokens <= budget or not tail:
            tail.append(message)
            total += tokens
            continue
        break

    return prefix + list(reversed(tail))
