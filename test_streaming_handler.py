#!/usr/bin/env python3
"""
Tests for the turn loop: rounds, tool execution, cancellation and snapshots.
"""

import asyncio
import json

import pytest

from conftest import RecordingToolHub, text_delta
from relaychat.chat.models import (
    GenerationControls,
    Message,
    MessageEnd,
    MessageStart,
    SearchActivityStatus,
    StreamError,
    TextPart,
    ThinkingDelta,
    ThinkingPart,
    ToolCall,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    Usage,
)
from relaychat.chat.search_activity import merge_search_timeline
from relaychat.chat.streaming_handler import DEFAULT_MAX_TOOL_ROUNDS, StreamingHandler, TurnState
from relaychat.chat.tool_executor import ToolExecutor
from relaychat.clients.provider import ProviderStreamError
from relaychat.history import InMemoryConversationStore

CID = "conv-1"


def _handler(store, registry, hub, clock, chat_conf=None):
    return StreamingHandler(store, ToolExecutor(hub), registry, chat_conf, clock=clock)


async def _run(handler, registry, adapter, hub, history=None):
    session = registry.session(CID) or registry.begin(CID, "test/model")
    tools, routes = await hub.tool_definitions(GenerationControls())
    history = history if history is not None else [Message.from_text("user", "Hi")]
    return await handler.run_turn(session, adapter, "model", GenerationControls(), history, tools, routes)


def _tool_round(*calls: ToolCall):
    events = [MessageStart()]
    for call in calls:
        events.append(ToolCallStart(call=ToolCall(id=call.id, name=call.name)))
        events.append(ToolCallDelta(id=call.id, arguments_delta=json.dumps(call.arguments)))
        events.append(ToolCallEnd(call=call))
    events.append(MessageEnd())
    return events


async def test_plain_answer_finishes_in_one_round(store, registry, clock, make_adapter):
    hub = RecordingToolHub()
    adapter = make_adapter([[MessageStart(), text_delta("Hel"), text_delta("lo"), MessageEnd(usage=Usage())]])

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.state == TurnState.DONE
    assert outcome.rounds == 1
    assert [m.role for m in outcome.persisted] == ["assistant"]
    assert outcome.final_message.text == "Hello"
    assert (await store.history(CID)) == outcome.persisted


async def test_tool_round_with_one_failing_tool(store, registry, clock, make_adapter):
    hub = RecordingToolHub({"get_weather": "Sunny", "get_news": RuntimeError("feed down")})
    adapter = make_adapter(
        [
            _tool_round(
                ToolCall(id="c1", name="get_weather", arguments={"city": "Paris"}),
                ToolCall(id="c2", name="get_news", arguments={}),
            ),
            [text_delta("It is sunny; news is unavailable.")],
        ]
    )

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.state == TurnState.DONE
    assert outcome.rounds == 2
    assistant, tool, final = outcome.persisted
    assert [c.id for c in assistant.tool_calls] == ["c1", "c2"]
    assert assistant.tool_calls[0].arguments == {"city": "Paris"}
    assert [r.tool_call_id for r in tool.tool_results] == ["c1", "c2"]
    assert tool.tool_results[0].content == "Sunny"
    assert tool.tool_results[1].is_error
    assert tool.tool_results[1].content.startswith("Tool execution failed: feed down.")
    assert final.text == "It is sunny; news is unavailable."

    second_request = adapter.streaming_calls[1]["messages"]
    assert second_request[-2:] == [assistant, tool]


async def test_round_cap_stops_the_turn(store, registry, clock, make_adapter):
    hub = RecordingToolHub({"loop": "again"})
    rounds = [_tool_round(ToolCall(id=f"c{i}", name="loop")) for i in range(DEFAULT_MAX_TOOL_ROUNDS + 2)]
    adapter = make_adapter(rounds)

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.state == TurnState.ITERATION_LIMIT
    assert outcome.rounds == DEFAULT_MAX_TOOL_ROUNDS
    assert len(adapter.streaming_calls) == DEFAULT_MAX_TOOL_ROUNDS
    assert len(hub.executed) == DEFAULT_MAX_TOOL_ROUNDS
    assert len(await store.history(CID)) == 2 * DEFAULT_MAX_TOOL_ROUNDS


async def test_round_cap_is_configurable(store, registry, clock, make_adapter):
    hub = RecordingToolHub({"loop": "again"})
    adapter = make_adapter([_tool_round(ToolCall(id=f"c{i}", name="loop")) for i in range(5)])
    handler = _handler(store, registry, hub, clock, {"max_tool_rounds": 2})

    outcome = await _run(handler, registry, adapter, hub)

    assert outcome.state == TurnState.ITERATION_LIMIT
    assert len(adapter.streaming_calls) == 2


async def test_cancel_before_streaming(store, registry, clock, make_adapter):
    hub = RecordingToolHub()
    adapter = make_adapter([[text_delta("never")]])
    registry.begin(CID)
    registry.cancel(CID)

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.state == TurnState.CANCELLED
    assert adapter.calls == []
    assert await store.history(CID) == []


async def test_cancel_during_tool_execution_keeps_persisted_messages(store, registry, clock, make_adapter):
    def cancelling_tool(arguments):
        registry.cancel(CID)
        return "partial"

    hub = RecordingToolHub({"slow": cancelling_tool})
    adapter = make_adapter([_tool_round(ToolCall(id="c1", name="slow")), [text_delta("never")]])

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.state == TurnState.CANCELLED
    assert [m.role for m in outcome.persisted] == ["assistant", "tool"]
    assert len(adapter.streaming_calls) == 1
    assert await store.history(CID) == outcome.persisted


async def test_cancel_after_assistant_is_persisted_runs_no_tools(registry, clock, make_adapter):
    class CancelOnAssistantStore(InMemoryConversationStore):
        async def append(self, conversation_id, message):
            appended = await super().append(conversation_id, message)
            if message.role == "assistant":
                registry.cancel(conversation_id)
            return appended

    store = CancelOnAssistantStore()
    hub = RecordingToolHub({"lookup": "42"})
    adapter = make_adapter([_tool_round(ToolCall(id="c1", name="lookup")), [text_delta("never")]])

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.state == TurnState.CANCELLED
    assert [m.role for m in await store.history(CID)] == ["assistant"]
    assert hub.executed == []
    assert len(adapter.streaming_calls) == 1


async def test_cancel_mid_stream_through_task(store, registry, clock, make_adapter):
    hub = RecordingToolHub()
    started = asyncio.Event()
    blocker = asyncio.Event()

    async def block():
        started.set()
        await blocker.wait()

    adapter = make_adapter([[text_delta("partial "), block, text_delta("never")]])
    handler = _handler(store, registry, hub, clock)
    registry.begin(CID)

    task = asyncio.create_task(_run(handler, registry, adapter, hub))
    registry.attach(task, CID)
    await started.wait()
    registry.cancel(CID)
    outcome = await task

    assert not task.cancelled()
    assert outcome.state == TurnState.CANCELLED
    assert outcome.persisted == []
    assert await store.history(CID) == []


async def test_provider_error_event_propagates(store, registry, clock, make_adapter):
    hub = RecordingToolHub()
    adapter = make_adapter([[text_delta("partial"), StreamError(message="overloaded", code="529")]])

    with pytest.raises(ProviderStreamError) as exc_info:
        await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert exc_info.value.code == "529"
    assert await store.history(CID) == []


async def test_empty_tool_output_gets_placeholder(store, registry, clock, make_adapter):
    hub = RecordingToolHub({"lookup": ""})
    adapter = make_adapter([_tool_round(ToolCall(id="c1", name="lookup")), [text_delta("ok")]])

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    tool_message = outcome.persisted[1]
    assert tool_message.tool_results[0].content == "Tool lookup returned no output"
    assert tool_message.text == "Tool lookup:\nTool lookup returned no output"


async def test_search_tool_activity_is_correlated(store, registry, clock, make_adapter):
    payload = {
        "provider": "brave",
        "query": "paris weather",
        "resultCount": 1,
        "results": [{"title": "Forecast", "url": "https://example.com/f"}],
    }
    hub = RecordingToolHub(
        {"builtin_search__web_lookup": json.dumps(payload)},
        search_providers={"builtin_search__web_lookup": "brave"},
    )
    adapter = make_adapter(
        [
            _tool_round(ToolCall(id="s1", name="builtin_search__web_lookup", arguments={"query": "paris weather"})),
            [text_delta("Sunny.")],
        ]
    )
    snapshots = []
    registry.subscribe(lambda cid, snap: snapshots.append(snap))

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assistant, tool, _ = outcome.persisted
    assert assistant.search_activities[0].status == SearchActivityStatus.SEARCHING
    assert tool.search_activities[0].status == SearchActivityStatus.COMPLETED

    timeline = merge_search_timeline(await store.history(CID))
    assert len(timeline) == 1
    assert timeline[0].id == "tool-search-s1"
    assert timeline[0].status == SearchActivityStatus.COMPLETED
    assert timeline[0].arguments["sources"] == [{"url": "https://example.com/f", "title": "Forecast"}]

    last = [s for s in snapshots if s is not None][-1]
    assert [a.status for a in last.search_activities] == [SearchActivityStatus.COMPLETED]


async def test_thinking_is_accumulated_and_unknown_events_ignored(store, registry, clock, make_adapter):
    hub = RecordingToolHub()
    adapter = make_adapter(
        [
            [
                ThinkingDelta(text="Let me "),
                ThinkingDelta(text="check."),
                ThinkingDelta(text="", signature="sig"),
                object(),
                text_delta("Answer"),
            ]
        ]
    )

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.final_message.content == [
        ThinkingPart(text="Let me check.", signature="sig"),
        TextPart(text="Answer"),
    ]


async def test_empty_round_persists_nothing(store, registry, clock, make_adapter):
    hub = RecordingToolHub()
    adapter = make_adapter([[MessageStart(), MessageEnd()]])

    outcome = await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    assert outcome.state == TurnState.DONE
    assert outcome.persisted == []
    assert outcome.final_message is None


async def test_snapshots_are_throttled(store, registry, clock, make_adapter):
    hub = RecordingToolHub()
    adapter = make_adapter([[text_delta(c) for c in "streaming"]])
    snapshots = []
    registry.subscribe(lambda cid, snap: snapshots.append(snap))

    await _run(_handler(store, registry, hub, clock), registry, adapter, hub)

    # First delta publishes immediately; the frozen clock holds the rest until the final flush.
    assert len(snapshots) == 2
    assert snapshots[0].text == "s"
    assert snapshots[-1].text == "streaming"
    assert snapshots[-1].streamed_characters == len("streaming")
    assert [s.revision for s in snapshots] == [1, 2]
