#!/usr/bin/env python3
"""
Tests for search activity status merging and correlation.
"""

import json

import pytest

from relaychat.chat.models import Message, SearchActivity, SearchActivityStatus, TextPart, ToolCall
from relaychat.chat.search_activity import (
    TOOL_SEARCH_ACTIVITY_TYPE,
    SearchActivityCorrelator,
    activity_for_tool_call_start,
    activity_from_tool_result,
    is_search_tool_name,
    merge_search_timeline,
    search_activity_id,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("searching", SearchActivityStatus.SEARCHING),
        ("IN_PROGRESS", SearchActivityStatus.IN_PROGRESS),
        (" completed ", SearchActivityStatus.COMPLETED),
        ("failed", SearchActivityStatus.FAILED),
        ("queued", SearchActivityStatus.UNKNOWN),
        (None, SearchActivityStatus.UNKNOWN),
    ],
)
def test_status_parse(raw, expected):
    assert SearchActivityStatus.parse(raw) == expected


def test_terminal_status_is_not_replaced_by_non_terminal():
    done = SearchActivity(id="s1", status=SearchActivityStatus.COMPLETED, arguments={"query": "q"})
    late = SearchActivity(id="s1", status=SearchActivityStatus.IN_PROGRESS, arguments={"page": 2})

    merged = done.merged(late)

    assert merged.status == SearchActivityStatus.COMPLETED
    assert merged.arguments == {"query": "q", "page": 2}


def test_newer_terminal_status_wins():
    completed = SearchActivity(id="s1", status=SearchActivityStatus.COMPLETED)
    failed = SearchActivity(id="s1", status=SearchActivityStatus.FAILED)

    assert completed.merged(failed).status == SearchActivityStatus.FAILED


def test_indices_prefer_newer_non_null_values():
    first = SearchActivity(id="s1", output_index=0, sequence_number=3)
    second = SearchActivity(id="s1", sequence_number=7)

    merged = first.merged(second)
    assert merged.output_index == 0
    assert merged.sequence_number == 7


def test_correlator_keeps_one_entry_per_id():
    correlator = SearchActivityCorrelator()
    correlator.upsert(SearchActivity(id="a", status=SearchActivityStatus.SEARCHING))
    correlator.upsert(SearchActivity(id="b"))
    correlator.upsert(SearchActivity(id="a", status=SearchActivityStatus.COMPLETED))

    activities = correlator.activities()
    assert [a.id for a in activities] == ["a", "b"]
    assert activities[0].status == SearchActivityStatus.COMPLETED
    assert len(correlator) == 2


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("builtin_search__web_lookup", True),
        ("brave_web_search", True),
        ("SearchDocs", True),
        ("get_weather", False),
    ],
)
def test_is_search_tool_name(name, expected):
    assert is_search_tool_name(name) is expected


def test_tool_call_start_activity():
    call = ToolCall(id="call_1", name="builtin_search__web_lookup", arguments={"query": "  paris weather  "})

    activity = activity_for_tool_call_start(call, "brave")

    assert activity is not None
    assert activity.id == search_activity_id("call_1") == "tool-search-call_1"
    assert activity.type == TOOL_SEARCH_ACTIVITY_TYPE
    assert activity.status == SearchActivityStatus.SEARCHING
    assert activity.arguments == {"query": "paris weather", "provider": "brave"}


def test_non_search_tool_has_no_activity():
    call = ToolCall(id="c", name="get_weather")
    assert activity_for_tool_call_start(call) is None
    assert activity_from_tool_result(call, "sunny", False) is None


def test_tool_result_activity_reads_builtin_payload():
    call = ToolCall(id="call_1", name="builtin_search__web_lookup", arguments={"q": "ignored"})
    payload = {
        "provider": "brave",
        "query": "paris weather",
        "resultCount": 2,
        "results": [
            {"title": "Forecast", "url": "https://example.com/f", "snippet": "Sunny", "source": "example.com"},
            {"title": "No url"},
        ],
    }

    activity = activity_from_tool_result(call, json.dumps(payload), is_error=False)

    assert activity.status == SearchActivityStatus.COMPLETED
    assert activity.arguments["query"] == "paris weather"
    assert activity.arguments["provider"] == "brave"
    assert activity.arguments["sources"] == [
        {"url": "https://example.com/f", "title": "Forecast", "snippet": "Sunny", "source": "example.com"}
    ]


def test_failed_tool_result_activity_falls_back_to_call_arguments():
    call = ToolCall(id="call_2", name="web_search", arguments={"q": "rust async"})

    activity = activity_from_tool_result(call, "Tool execution failed: timeout", is_error=True)

    assert activity.status == SearchActivityStatus.FAILED
    assert activity.arguments == {"query": "rust async"}


def test_merge_search_timeline_across_messages():
    start = activity_for_tool_call_start(ToolCall(id="c1", name="web_search", arguments={"query": "q"}), "brave")
    end = activity_from_tool_result(ToolCall(id="c1", name="web_search", arguments={"query": "q"}), "ok", False)
    messages = [
        Message(role="assistant", search_activities=[start]),
        Message(role="tool", content=[TextPart(text="Tool web_search:\nok")], search_activities=[end]),
        Message(role="assistant", content=[TextPart(text="Answer")]),
    ]

    timeline = merge_search_timeline(messages)

    assert len(timeline) == 1
    assert timeline[0].status == SearchActivityStatus.COMPLETED
    assert timeline[0].arguments == {"query": "q", "provider": "brave"}
