"""
Streaming Turn Handler

Drives one conversation turn as a bounded loop of rounds:
- Stream the assistant reply from the provider adapter
- Fold deltas into content, tool call and search activity accumulators
- Publish throttled snapshots to the session registry
- Persist the assistant message, execute requested tools, persist the results
- Stop on a final answer, the round cap, cancellation or a provider error

Working history is local to the turn and only grows by the messages this
turn persists, in the order they were persisted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from relaychat.clients.provider import ProviderStreamError

from .content_accumulator import ContentAccumulator
from .flush_throttler import FlushThrottler
from .logging_utils import log_assistant_round
from .models import (
    ContentDelta,
    ContentPart,
    GenerationControls,
    ImagePart,
    Message,
    MessageEnd,
    MessageStart,
    RedactedThinkingPart,
    SearchActivity,
    SearchActivityEvent,
    StreamError,
    StreamingSnapshot,
    TextPart,
    ThinkingDelta,
    ThinkingPart,
    ToolCall,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolDefinition,
    ToolResult,
    VideoPart,
)
from .search_activity import SearchActivityCorrelator, activity_for_tool_call_start
from .session_registry import consume_cancel_request
from .tool_call_tracker import ToolCallTracker

if TYPE_CHECKING:
    from relaychat.clients.provider import ProviderAdapter
    from relaychat.history.repository import ConversationStore
    from relaychat.tools.hub import ToolRoutes

    from .session_registry import StreamingSession, StreamingSessionRegistry
    from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 8


class TurnCancelled(Exception):
    """Raised at a cancellation checkpoint once the session's cancel flag is set."""


class TurnState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    ITERATION_LIMIT = "iteration_limit"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TurnOutcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    conversation_id: str
    state: TurnState
    rounds: int = 0
    persisted: list[Message] = Field(default_factory=list)
    error: str | None = None
    exception: BaseException | None = Field(default=None, exclude=True)

    @property
    def final_message(self) -> Message | None:
        for message in reversed(self.persisted):
            if message.role == "assistant":
                return message
        return None


class RoundResult(BaseModel):
    parts: list[ContentPart] = Field(default_factory=list)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    search_activities: list[SearchActivity] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.parts or self.tool_calls or self.search_activities)


class _RoundState:
    """Mutable per-round accumulators plus the turn-wide pieces shown in snapshots."""

    def __init__(self, conversation_id: str, round_index: int, timeline: SearchActivityCorrelator) -> None:
        self.conversation_id = conversation_id
        self.round_index = round_index
        self.content = ContentAccumulator()
        self.tool_calls = ToolCallTracker()
        self.search_activities = SearchActivityCorrelator()
        self.timeline = timeline
        self.tool_results: list[ToolResult] = []
        self.revision = 0
        self.streamed_characters: Callable[[], int] = lambda: 0

    def upsert_activity(self, activity: SearchActivity) -> None:
        self.search_activities.upsert(activity)
        self.timeline.upsert(activity)

    def snapshot(self) -> StreamingSnapshot:
        self.revision += 1
        return StreamingSnapshot(
            conversation_id=self.conversation_id,
            round_index=self.round_index,
            content=self.content.parts(),
            text=self.content.text,
            thinking=self.content.thinking_text,
            tool_calls=self.tool_calls.calls(),
            tool_results=list(self.tool_results),
            search_activities=self.timeline.activities(),
            streamed_characters=self.streamed_characters(),
            revision=self.revision,
        )

    def result(self) -> RoundResult:
        return RoundResult(
            parts=self.content.parts(),
            tool_calls=self.tool_calls.calls(),
            search_activities=self.search_activities.activities(),
        )


class StreamingHandler:
    """Runs the round loop of a turn."""

    def __init__(
        self,
        store: ConversationStore,
        tool_executor: ToolExecutor,
        registry: StreamingSessionRegistry,
        chat_conf: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.tool_executor = tool_executor
        self.registry = registry
        self.chat_conf = chat_conf or {}
        self._clock = clock

    @property
    def max_rounds(self) -> int:
        return int(self.chat_conf.get("max_tool_rounds", DEFAULT_MAX_TOOL_ROUNDS))

    def _flush_config(self) -> dict[str, Any]:
        return self.chat_conf.get("streaming", {}).get("flush", {})

    def _check_cancelled(self, session: StreamingSession) -> None:
        if session.cancel_requested:
            raise TurnCancelled()

    def _transition(self, conversation_id: str, current: TurnState, new: TurnState) -> TurnState:
        logger.debug("Turn %s: %s → %s", conversation_id, current.value, new.value)
        return new

    async def run_turn(
        self,
        session: StreamingSession,
        adapter: ProviderAdapter,
        model_id: str,
        controls: GenerationControls,
        history: Sequence[Message],
        tools: Sequence[ToolDefinition],
        routes: ToolRoutes,
    ) -> TurnOutcome:
        """
        Run rounds until the model answers without tool calls.

        Cancellation requested through the registry ends the turn cleanly
        with state ``cancelled``; whatever was persisted before the request
        stays persisted. Reaching the round cap ends the turn with state
        ``iteration_limit`` without raising. Provider and persistence errors
        propagate to the caller.
        """
        conversation_id = session.conversation_id
        working: list[Message] = list(history)
        timeline = SearchActivityCorrelator()
        outcome = TurnOutcome(conversation_id=conversation_id, state=TurnState.IDLE)
        state = TurnState.IDLE

        try:
            while outcome.rounds < self.max_rounds:
                self._check_cancelled(session)
                state = self._transition(conversation_id, state, TurnState.STREAMING)

                round_state = _RoundState(conversation_id, outcome.rounds, timeline)
                result = await self.stream_round(session, round_state, adapter, model_id, controls, working, tools, routes)
                log_assistant_round(result.parts, result.tool_calls, f"round {outcome.rounds + 1}")

                if not result.is_empty:
                    assistant = Message(
                        role="assistant",
                        content=result.parts,
                        tool_calls=result.tool_calls or None,
                        search_activities=result.search_activities or None,
                    )
                    await self.store.append(conversation_id, assistant)
                    working.append(assistant)
                    outcome.persisted.append(assistant)

                if not result.tool_calls:
                    outcome.rounds += 1
                    state = self._transition(conversation_id, state, TurnState.DONE)
                    break

                self._check_cancelled(session)
                state = self._transition(conversation_id, state, TurnState.EXECUTING_TOOLS)

                def on_result(tool_result: ToolResult, activity: SearchActivity | None) -> None:
                    round_state.tool_results.append(tool_result)
                    if activity is not None:
                        timeline.upsert(activity)
                    self.registry.publish(conversation_id, round_state.snapshot())

                batch = await self.tool_executor.execute_tool_calls(result.tool_calls, routes, on_result=on_result)
                tool_message = batch.to_message()
                await self.store.append(conversation_id, tool_message)
                working.append(tool_message)
                outcome.persisted.append(tool_message)
                outcome.rounds += 1
            else:
                state = self._transition(conversation_id, state, TurnState.ITERATION_LIMIT)
                logger.warning(
                    "Maximum tool rounds (%d) reached for conversation %s, stopping",
                    self.max_rounds,
                    conversation_id,
                )
        except TurnCancelled:
            state = self._transition(conversation_id, state, TurnState.CANCELLED)
            consume_cancel_request()
            logger.info("← Turn: cancelled for conversation %s", conversation_id)
        except asyncio.CancelledError:
            if not session.cancel_requested:
                raise
            state = self._transition(conversation_id, state, TurnState.CANCELLED)
            consume_cancel_request()
            logger.info("← Turn: cancelled for conversation %s", conversation_id)

        outcome.state = state
        return outcome

    async def stream_round(
        self,
        session: StreamingSession,
        round_state: _RoundState,
        adapter: ProviderAdapter,
        model_id: str,
        controls: GenerationControls,
        working: Sequence[Message],
        tools: Sequence[ToolDefinition],
        routes: ToolRoutes,
    ) -> RoundResult:
        """Stream one assistant reply and return what it accumulated."""
        conversation_id = session.conversation_id
        throttler = FlushThrottler.from_config(
            round_state.snapshot,
            lambda snapshot: self.registry.publish(conversation_id, snapshot),
            self._flush_config(),
            clock=self._clock,
        )
        round_state.streamed_characters = lambda: throttler.streamed_characters

        logger.info("→ LLM: starting streaming request (round %d)", round_state.round_index + 1)
        self._check_cancelled(session)
        stream = await adapter.send_message(working, model_id, controls, tools, streaming=True)

        async for event in stream:
            self._check_cancelled(session)
            characters = self._apply_event(event, round_state, routes)
            if characters is not None:
                throttler.record(characters)
                await throttler.maybe_flush()

        await throttler.flush()
        result = round_state.result()
        logger.info(
            "← LLM: streaming completed (round %d), %d parts, %d tool calls",
            round_state.round_index + 1,
            len(result.parts),
            len(result.tool_calls),
        )
        return result

    def _apply_event(self, event: Any, round_state: _RoundState, routes: ToolRoutes) -> int | None:
        """
        Apply one stream event.

        Returns the number of text or thinking characters it added, or None
        when the event did not change any accumulated state.
        """
        if isinstance(event, ContentDelta):
            part = event.part
            if isinstance(part, TextPart):
                round_state.content.append_text(part.text)
                return len(part.text)
            if isinstance(part, ImagePart):
                round_state.content.append_image(part)
            elif isinstance(part, VideoPart):
                round_state.content.append_video(part)
            elif isinstance(part, ThinkingPart):
                round_state.content.append_thinking(ThinkingDelta(text=part.text, signature=part.signature))
                return len(part.text)
            elif isinstance(part, RedactedThinkingPart):
                round_state.content.append_thinking(ThinkingDelta.redacted(part.data))
            return 0

        if isinstance(event, ThinkingDelta):
            round_state.content.append_thinking(event)
            return len(event.text)

        if isinstance(event, ToolCallStart):
            call = round_state.tool_calls.upsert(event.call)
            provider = routes.search_provider(call.name)
            if provider is not None:
                activity = activity_for_tool_call_start(call, provider)
                if activity is not None:
                    round_state.upsert_activity(activity)
            return 0

        if isinstance(event, ToolCallEnd):
            round_state.tool_calls.upsert(event.call)
            return 0

        if isinstance(event, SearchActivityEvent):
            round_state.upsert_activity(event.activity)
            return 0

        if isinstance(event, StreamError):
            raise ProviderStreamError(event.message, event.code)

        if isinstance(event, MessageEnd):
            if event.usage is not None:
                logger.debug(
                    "← LLM: usage input=%d output=%d cached=%d",
                    event.usage.input_tokens,
                    event.usage.output_tokens,
                    event.usage.cached_tokens,
                )
            return None

        if isinstance(event, MessageStart | ToolCallDelta):
            return None

        logger.debug("Ignoring unrecognized stream event: %r", event)
        return None
