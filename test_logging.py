#!/usr/bin/env python3
"""
Tests for logging configuration and feature-gated log helpers.
"""

import logging

import pytest

from relaychat.application import _on_logging_config_change, configure_logging
from relaychat.chat.logging_utils import log_assistant_round, log_tool_results, should_log_feature
from relaychat.chat.models import TextPart, ToolCall


@pytest.fixture(autouse=True)
def _restore_logging():
    names = ["", "relaychat.chat", "relaychat.tools", "relaychat.history", "mcp"]
    levels = {name: logging.getLogger(name).level for name in names}
    features = getattr(logging, "_module_features", None)
    yield
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)
    if features is None:
        if hasattr(logging, "_module_features"):
            del logging._module_features
    else:
        logging._module_features = features


def test_module_levels_and_features():
    configure_logging(
        {
            "level": "WARNING",
            "modules": {
                "chat": {"level": "DEBUG", "enable_features": {"llm_replies": True}},
                "history": {"level": "ERROR"},
            },
        }
    )

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("relaychat.chat").level == logging.DEBUG
    assert logging.getLogger("relaychat.history").level == logging.ERROR
    assert should_log_feature("chat", "llm_replies")
    assert not should_log_feature("tools", "tool_results")


def test_reconfiguration_replaces_feature_flags():
    configure_logging({"modules": {"tools": {"enable_features": {"tool_results": True}}}})
    assert should_log_feature("tools", "tool_results")

    _on_logging_config_change({"logging": {"modules": {"tools": {"enable_features": {}}}}})
    assert not should_log_feature("tools", "tool_results")


def test_assistant_round_logged_only_when_enabled(caplog):
    caplog.set_level(logging.INFO, logger="relaychat.chat")
    parts = [TextPart(text="Hello there")]
    calls = [ToolCall(id="c1", name="get_weather", arguments={"city": "Paris"})]

    configure_logging({"level": "INFO", "modules": {"chat": {"enable_features": {"llm_replies": False}}}})
    log_assistant_round(parts, calls, "round 1")
    assert "Hello there" not in caplog.text

    configure_logging({"level": "INFO", "modules": {"chat": {"enable_features": {"llm_replies": True}}}})
    log_assistant_round(parts, calls, "round 1")
    assert "Hello there" in caplog.text
    assert "get_weather" in caplog.text


def test_tool_results_are_truncated(caplog):
    caplog.set_level(logging.INFO, logger="relaychat.chat")
    configure_logging({"level": "INFO", "modules": {"tools": {"enable_features": {"tool_results": True}}}})

    log_tool_results("lookup", "x" * 50, truncate_length=10)

    assert "x" * 10 + "..." in caplog.text
    assert "x" * 11 not in caplog.text
