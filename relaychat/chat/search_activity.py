"""
Search Activity Correlation

Keeps one timeline entry per search while the same search is reported from
several places: provider-native search events inside the stream, the
announcement of a search tool call, and the result of that tool call. All of
them key on the activity id and are folded together with
``SearchActivity.merged``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from .models import Message, SearchActivity, SearchActivityStatus, ToolCall

logger = logging.getLogger(__name__)

TOOL_SEARCH_ACTIVITY_TYPE = "tool_web_search"

_SEARCH_NAME_MARKERS = ("search", "web_lookup", "web_search")


def is_search_tool_name(name: str) -> bool:
    normalized = name.lower()
    return any(marker in normalized for marker in _SEARCH_NAME_MARKERS)


def search_activity_id(call_id: str) -> str:
    return f"tool-search-{call_id}"


class SearchActivityCorrelator:
    """Ordered, id-keyed collection of search activities."""

    def __init__(self, activities: Iterable[SearchActivity] | None = None) -> None:
        self._activities: dict[str, SearchActivity] = {}
        self._order: list[str] = []
        for activity in activities or ():
            self.upsert(activity)

    def upsert(self, activity: SearchActivity) -> SearchActivity:
        existing = self._activities.get(activity.id)
        if existing is None:
            self._order.append(activity.id)
            merged = activity
        else:
            merged = existing.merged(activity)
        self._activities[activity.id] = merged
        return merged

    def activities(self) -> list[SearchActivity]:
        return [self._activities[activity_id] for activity_id in self._order]

    def get(self, activity_id: str) -> SearchActivity | None:
        return self._activities.get(activity_id)

    def __len__(self) -> int:
        return len(self._order)

    def __bool__(self) -> bool:
        return bool(self._order)


def _query_from_arguments(arguments: dict[str, Any]) -> str:
    for key in ("query", "q"):
        value = arguments.get(key)
        if isinstance(value, str):
            return value.strip()
    return ""


def activity_for_tool_call_start(call: ToolCall, provider: str | None = None) -> SearchActivity | None:
    """Build the ``searching`` entry shown while a search tool is running."""
    if not is_search_tool_name(call.name):
        return None

    arguments: dict[str, Any] = {}
    query = _query_from_arguments(call.arguments)
    if query:
        arguments["query"] = query
    if provider:
        arguments["provider"] = provider

    return SearchActivity(
        id=search_activity_id(call.id),
        type=TOOL_SEARCH_ACTIVITY_TYPE,
        status=SearchActivityStatus.SEARCHING,
        arguments=arguments,
    )


def _parse_search_payload(text: str) -> dict[str, Any] | None:
    """Decode the JSON document produced by the built-in search tool, if it is one."""
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None

    if not isinstance(payload, dict):
        return None
    if not isinstance(payload.get("query"), str) or not isinstance(payload.get("results"), list):
        return None
    return payload


def activity_from_tool_result(
    call: ToolCall,
    result_text: str,
    is_error: bool,
    provider: str | None = None,
) -> SearchActivity | None:
    """
    Build the terminal entry for a finished search tool call.

    When the result is the built-in search payload, query, provider and the
    list of sources come from it; otherwise the query is read back from the
    call arguments.
    """
    if not is_search_tool_name(call.name):
        return None

    sources: list[dict[str, Any]] = []
    payload = _parse_search_payload(result_text)
    if payload is not None:
        query = payload["query"]
        provider = provider or payload.get("provider")
        for row in payload["results"]:
            if not isinstance(row, dict) or not row.get("url"):
                continue
            item: dict[str, Any] = {"url": row["url"], "title": row.get("title") or row["url"]}
            for key in ("snippet", "published_at", "source"):
                if row.get(key):
                    item[key] = row[key]
            sources.append(item)
    else:
        query = _query_from_arguments(call.arguments)

    arguments: dict[str, Any] = {}
    if query:
        arguments["query"] = query
    if sources:
        arguments["sources"] = sources
    if provider:
        arguments["provider"] = provider

    return SearchActivity(
        id=search_activity_id(call.id),
        type=TOOL_SEARCH_ACTIVITY_TYPE,
        status=SearchActivityStatus.FAILED if is_error else SearchActivityStatus.COMPLETED,
        arguments=arguments,
    )


def merge_search_timeline(messages: Iterable[Message]) -> list[SearchActivity]:
    """
    Collapse the search activities recorded across persisted messages.

    The assistant message of a round holds the ``searching`` entry and the
    following tool message holds the terminal one; both share an id and end
    up as a single entry here.
    """
    correlator = SearchActivityCorrelator()
    for message in messages:
        for activity in message.search_activities or ():
            correlator.upsert(activity)
    return correlator.activities()
