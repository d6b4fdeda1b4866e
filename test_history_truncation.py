#!/usr/bin/env python3
"""
Tests for token estimates and history truncation.
"""

from relaychat.chat.history_truncation import (
    approximate_message_tokens,
    approximate_part_tokens,
    approximate_text_tokens,
    truncate_history,
)
from relaychat.chat.models import ImagePart, Message, RedactedThinkingPart, ToolCall, VideoPart


def test_text_token_estimate():
    assert approximate_text_tokens("") == 0
    assert approximate_text_tokens("   ") == 0
    assert approximate_text_tokens("hi") == 1
    assert approximate_text_tokens("x" * 400) == 100


def test_media_token_estimates():
    assert approximate_part_tokens(ImagePart(data="AAAA")) == 1024
    assert approximate_part_tokens(ImagePart(url="https://example.com/a.png")) == 256
    assert approximate_part_tokens(VideoPart(data="AAAA")) == 1536
    assert approximate_part_tokens(VideoPart(url="https://example.com/a.mp4")) == 384
    assert approximate_part_tokens(RedactedThinkingPart(data="x")) == 16


def test_message_estimate_counts_tool_calls():
    plain = Message.from_text("assistant", "x" * 40)
    with_call = Message(
        role="assistant",
        content=plain.content,
        tool_calls=[ToolCall(id="c1", name="get_weather", arguments={"city": "Paris"})],
    )

    assert approximate_message_tokens(plain) == 14
    assert approximate_message_tokens(with_call) > approximate_message_tokens(plain)


def test_short_or_unbounded_history_is_unchanged():
    history = [Message.from_text("user", "x" * 4000), Message.from_text("assistant", "y" * 4000)]
    assert truncate_history(history, context_window=10) == history

    longer = history + [Message.from_text("user", "z")]
    assert truncate_history(longer, context_window=0) == longer


def test_keeps_system_prefix_and_newest_messages():
    system = Message.from_text("system", "You are helpful")
    turns = [Message.from_text("user" if i % 2 == 0 else "assistant", "x" * 400) for i in range(10)]

    kept = truncate_history([system, *turns], context_window=350)

    assert kept[0] is system
    assert kept[1:] == turns[-3:]


def test_reserved_output_tokens_shrink_the_budget():
    turns = [Message.from_text("user", "x" * 400) for _ in range(6)]

    assert len(truncate_history(turns, context_window=1000)) == 6
    assert len(truncate_history(turns, context_window=1000, reserved_output_tokens=700)) == 2


def test_newest_message_is_kept_even_when_oversized():
    history = [
        Message.from_text("user", "short"),
        Message.from_text("assistant", "short"),
        Message.from_text("user", "x" * 40000),
    ]

    assert truncate_history(history, context_window=100) == [history[-1]]


def test_max_messages_caps_non_system_messages():
    system = Message.from_text("system", "rules")
    turns = [Message.from_text("user", f"m{i}") for i in range(5)]

    kept = truncate_history([system, *turns], context_window=100000, max_messages=2)

    assert kept == [system, *turns[-2:]]
