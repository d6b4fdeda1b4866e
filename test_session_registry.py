#!/usr/bin/env python3
"""
Tests for the streaming session registry.
"""

import asyncio

import pytest

from relaychat.chat.models import StreamingSnapshot
from relaychat.chat.session_registry import StreamingSessionRegistry


def test_one_session_per_conversation(registry: StreamingSessionRegistry):
    first = registry.begin("c1", "test/model")
    assert first is not None
    assert registry.begin("c1", "other/model") is None

    assert registry.session("c1") is first
    assert registry.is_streaming("c1")
    assert registry.active_conversations() == ["c1"]


def test_sessions_are_independent_across_conversations(registry):
    registry.begin("c1")
    registry.begin("c2")
    registry.cancel("c1")

    assert registry.session("c1").cancel_requested
    assert not registry.session("c2").cancel_requested


def test_cancel_without_session_returns_false(registry):
    assert registry.cancel("missing") is False


async def test_cancel_sets_flag_and_cancels_task(registry):
    session = registry.begin("c1")
    task = asyncio.create_task(asyncio.sleep(10))
    registry.attach(task, "c1")

    assert registry.cancel("c1") is True
    assert session.cancel_requested
    with pytest.raises(asyncio.CancelledError):
        await task


def test_end_ignores_stale_session(registry):
    old = registry.begin("c1")
    registry.end("c1", old)
    new = registry.begin("c1")

    registry.end("c1", old)

    assert registry.session("c1") is new


def test_publish_stores_snapshot_and_notifies(registry):
    seen = []
    registry.subscribe(lambda cid, snap: seen.append((cid, snap)))
    registry.begin("c1")

    snapshot = StreamingSnapshot(conversation_id="c1", text="Hi")
    registry.publish("c1", snapshot)
    registry.end("c1")

    assert seen == [("c1", snapshot), ("c1", None)]
    assert registry.snapshot("c1") is None


def test_publish_without_session_is_dropped(registry):
    seen = []
    registry.subscribe(lambda cid, snap: seen.append(cid))
    registry.publish("c1", StreamingSnapshot(conversation_id="c1"))

    assert seen == []


def test_failing_observer_does_not_block_others(registry):
    seen = []

    def broken(cid, snap):
        raise RuntimeError("observer failed")

    registry.subscribe(broken)
    registry.subscribe(lambda cid, snap: seen.append(cid))
    registry.begin("c1")
    registry.publish("c1", StreamingSnapshot(conversation_id="c1"))

    assert seen == ["c1"]


def test_unsubscribe(registry):
    seen = []
    unsubscribe = registry.subscribe(lambda cid, snap: seen.append(cid))
    unsubscribe()
    registry.begin("c1")
    registry.publish("c1", StreamingSnapshot(conversation_id="c1"))

    assert seen == []
