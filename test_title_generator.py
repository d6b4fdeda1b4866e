#!/usr/bin/env python3
"""
Tests for conversation title generation and normalization.
"""

import pytest

from conftest import text_delta
from relaychat.chat.models import ImagePart, Message, TextPart
from relaychat.chat.title_generator import TitleGenerationError, TitleGenerator, fallback_title, normalize_title


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('"Paris Weather"', "Paris Weather"),
        ("“Curly Quotes”", "Curly Quotes"),
        ("Title: Trip plan\nsecond line", "Trip plan"),
        ("标题: 天气", "天气"),
        ("Too   many    spaces", "Too many spaces"),
        ("  ", ""),
    ],
)
def test_normalize_title(raw, expected):
    assert normalize_title(raw) == expected


def test_normalize_title_truncates():
    title = normalize_title("A very long title that keeps going well past the limit", max_characters=20)
    assert title == "A very long title th"
    assert len(title) <= 20


def test_fallback_title():
    assert fallback_title(Message.from_text("user", "  How do I bake bread?\nThanks"), "New Chat") == (
        "How do I bake bread?"
    )
    assert fallback_title(Message(role="user", content=[ImagePart(url="https://x/y.png")]), "New Chat") == "Image"
    assert fallback_title(Message(role="user", content=[TextPart(text="   ")]), "New Chat") == "New Chat"
    assert len(fallback_title(Message.from_text("user", "w" * 100), "New Chat")) == 48


async def test_generate_title_collects_and_normalizes(make_adapter, provider_manager_for, provider_config):
    adapter = make_adapter(title_events=[text_delta("Title: Weekend  "), text_delta("plans")])
    generator = TitleGenerator(provider_manager_for(adapter))
    context = [Message.from_text("user", "Plan my weekend"), Message.from_text("assistant", "Sure!")]

    title = await generator.generate_title(provider_config, "model", context, max_characters=40)

    assert title == "Weekend plans"
    call = adapter.calls[0]
    assert call["streaming"] is False
    assert call["tools"] == []
    assert call["controls"].max_tokens == 64
    assert call["messages"][0].role == "system"
    assert "user: Plan my weekend" in call["messages"][1].text


async def test_empty_generated_title_raises(make_adapter, provider_manager_for, provider_config):
    adapter = make_adapter(title_events=[text_delta('""')])
    generator = TitleGenerator(provider_manager_for(adapter))

    with pytest.raises(TitleGenerationError):
        await generator.generate_title(provider_config, "model", [Message.from_text("user", "hi")])


async def test_no_context_raises(make_adapter, provider_manager_for, provider_config):
    generator = TitleGenerator(provider_manager_for(make_adapter()))

    with pytest.raises(TitleGenerationError):
        await generator.generate_title(provider_config, "model", [Message(role="user")])
