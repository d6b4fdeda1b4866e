"""
Chat Orchestrator

Entry points for starting, re-running and cancelling conversation turns.
Each turn runs as its own asyncio task registered with the session
registry; this layer prepares the turn (history, tools, adapter), hands it
to the streaming handler and always releases the session afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from relaychat.clients.provider import ProviderConfig
from relaychat.history.repository import MessageNotFoundError
from relaychat.tools.hub import ToolRoutes

from .history_truncation import truncate_history
from .logging_utils import log_error_with_context
from .models import ContentPart, GenerationControls, Message, TextPart
from .session_registry import consume_cancel_request
from .streaming_handler import StreamingHandler, TurnOutcome, TurnState
from .title_generator import DEFAULT_MAX_TITLE_CHARACTERS, TitleGenerator, fallback_title
from .tool_executor import ToolExecutor

if TYPE_CHECKING:
    from relaychat.clients.provider import CacheOptimizer, ProviderManager
    from relaychat.history.repository import ConversationStore
    from relaychat.tools.hub import ToolHub

    from .session_registry import StreamingSession, StreamingSessionRegistry

logger = logging.getLogger(__name__)


class TurnRequest(BaseModel):
    """What a turn should run against."""

    model_config = ConfigDict(protected_namespaces=())

    conversation_id: str
    provider_config: ProviderConfig
    model_id: str
    controls: GenerationControls = Field(default_factory=GenerationControls)
    system_prompt: str | None = None
    context_window: int = 0
    reserved_output_tokens: int = 0
    max_history_messages: int | None = None
    title_provider_config: ProviderConfig | None = None
    title_model_id: str | None = None

    @property
    def model_label(self) -> str:
        return f"{self.provider_config.id}/{self.model_id}"


class ChatOrchestrator:
    """
    Conversation orchestrator:
    1. Claims the conversation's streaming session
    2. Persists the user's message
    3. Runs the turn loop in a task the registry can cancel
    4. Names the conversation after its first exchange
    """

    class ChatOrchestratorConfig(BaseModel):
        model_config = ConfigDict(arbitrary_types_allowed=True)

        store: Any  # ConversationStore protocol
        registry: Any  # StreamingSessionRegistry
        provider_manager: Any  # ProviderManager
        tool_hub: Any  # ToolHub protocol
        cache_optimizer: Any  # CacheOptimizer protocol
        chat_conf: dict[str, Any] = Field(default_factory=dict)
        tool_logging_config: dict[str, Any] = Field(default_factory=dict)
        clock: Callable[[], float] = time.monotonic

    def __init__(self, service_config: ChatOrchestratorConfig):
        self.store: ConversationStore = service_config.store
        self.registry: StreamingSessionRegistry = service_config.registry
        self.provider_manager: ProviderManager = service_config.provider_manager
        self.tool_hub: ToolHub = service_config.tool_hub
        self.cache_optimizer: CacheOptimizer = service_config.cache_optimizer
        self.chat_conf = service_config.chat_conf

        self.tool_executor = ToolExecutor(self.tool_hub, service_config.tool_logging_config, service_config.clock)
        self.streaming_handler = StreamingHandler(
            self.store,
            self.tool_executor,
            self.registry,
            self.chat_conf,
            clock=service_config.clock,
        )
        self.title_generator = TitleGenerator(self.provider_manager)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str | list[ContentPart],
        request: TurnRequest,
    ) -> asyncio.Task[TurnOutcome] | None:
        """
        Persist a user message and start a turn for it.

        Returns the turn's task, or ``None`` when the conversation already
        has a turn in flight (nothing is persisted in that case).
        """
        conversation_id = request.conversation_id
        session = self.registry.begin(conversation_id, request.model_label)
        if session is None:
            return None

        parts = [TextPart(text=content)] if isinstance(content, str) else list(content)
        user_message = Message(role="user", content=parts)
        try:
            await self.store.append(conversation_id, user_message)
        except Exception:
            self.registry.end(conversation_id, session)
            raise

        logger.info("→ Orchestrator: user message %s persisted for %s", user_message.id, conversation_id)
        return self._start_turn(session, request, triggered_by_user_send=True)

    async def regenerate(self, request: TurnRequest) -> asyncio.Task[TurnOutcome] | None:
        """Start a turn over the existing history without adding a message."""
        session = self.registry.begin(request.conversation_id, request.model_label)
        if session is None:
            return None
        return self._start_turn(session, request, triggered_by_user_send=False)

    async def edit_and_regenerate(
        self,
        message_id: str,
        content: str | list[ContentPart],
        request: TurnRequest,
    ) -> asyncio.Task[TurnOutcome] | None:
        """
        Replace a user message, drop everything after it, and run a new turn.

        This is the only path that rewrites persisted history. Raises
        ``MessageNotFoundError`` for an unknown id and ``ValueError`` when
        the target is not a user message.
        """
        conversation_id = request.conversation_id
        session = self.registry.begin(conversation_id, request.model_label)
        if session is None:
            return None

        parts = [TextPart(text=content)] if isinstance(content, str) else list(content)
        try:
            target = next((m for m in await self.store.history(conversation_id) if m.id == message_id), None)
            if target is None:
                raise MessageNotFoundError(conversation_id, message_id)
            if target.role != "user":
                raise ValueError(f"Only user messages can be edited; {message_id} is a {target.role} message")

            await self.store.replace_and_truncate(
                conversation_id,
                message_id,
                Message(id=message_id, role="user", content=parts),
            )
        except Exception:
            self.registry.end(conversation_id, session)
            raise

        return self._start_turn(session, request, triggered_by_user_send=True)

    def update_chat_conf(self, chat_conf: dict[str, Any]) -> None:
        """Swap in round cap, flush and title settings after a configuration reload."""
        self.chat_conf = chat_conf
        self.streaming_handler.chat_conf = chat_conf

    def cancel(self, conversation_id: str) -> bool:
        return self.registry.cancel(conversation_id)

    def is_streaming(self, conversation_id: str) -> bool:
        return self.registry.is_streaming(conversation_id)

    # ------------------------------------------------------------------
    # Turn task
    # ------------------------------------------------------------------

    def _start_turn(
        self,
        session: StreamingSession,
        request: TurnRequest,
        triggered_by_user_send: bool,
    ) -> asyncio.Task[TurnOutcome]:
        task = asyncio.create_task(
            self._run_turn(session, request, triggered_by_user_send),
            name=f"turn:{request.conversation_id}",
        )
        # A task cancelled from outside before its first step never reaches _run_turn's finally
        task.add_done_callback(lambda _: self.registry.end(request.conversation_id, session))
        return task

    async def _run_turn(
        self,
        session: StreamingSession,
        request: TurnRequest,
        triggered_by_user_send: bool,
    ) -> TurnOutcome:
        conversation_id = request.conversation_id
        # Attached only once running; until then a registry cancel just sets the flag
        self.registry.attach(asyncio.current_task(), conversation_id)
        try:
            if session.cancel_requested:
                logger.info("← Orchestrator: turn for %s cancelled before it started", conversation_id)
                return TurnOutcome(conversation_id=conversation_id, state=TurnState.CANCELLED)

            history = await self._prepare_history(request)

            adapter = self.provider_manager.create_adapter(request.provider_config)
            if request.provider_config.capabilities.supports_tool_calling:
                tools, routes = await self.tool_hub.tool_definitions(request.controls)
            else:
                tools, routes = [], ToolRoutes()

            history, controls = await self.cache_optimizer.apply_optimizations(
                adapter,
                request.provider_config.kind,
                request.model_id,
                history,
                request.controls,
                tools,
            )

            logger.info(
                "→ Orchestrator: turn started for %s with %d messages and %d tools",
                conversation_id,
                len(history),
                len(tools),
            )
            outcome = await self.streaming_handler.run_turn(
                session, adapter, request.model_id, controls, history, tools, routes
            )
            logger.info(
                "← Orchestrator: turn for %s ended in state %s after %d rounds",
                conversation_id,
                outcome.state.value,
                outcome.rounds,
            )

            if triggered_by_user_send and outcome.state == TurnState.DONE and outcome.final_message is not None:
                await self._title_after_turn(session, request, outcome.final_message)
            return outcome
        except asyncio.CancelledError:
            # Cancelled while preparing the turn, before the round loop took over
            if not session.cancel_requested:
                raise
            consume_cancel_request()
            return TurnOutcome(conversation_id=conversation_id, state=TurnState.CANCELLED)
        except Exception as e:
            log_error_with_context(f"running turn for conversation {conversation_id}", e)
            return TurnOutcome(
                conversation_id=conversation_id,
                state=TurnState.FAILED,
                error=str(e),
                exception=e,
            )
        finally:
            self.registry.end(conversation_id, session)

    async def _prepare_history(self, request: TurnRequest) -> list[Message]:
        history = await self.store.history(request.conversation_id)
        if request.system_prompt:
            history = [Message.from_text("system", request.system_prompt), *history]
        if request.context_window > 0:
            before = len(history)
            history = truncate_history(
                history,
                request.context_window,
                request.reserved_output_tokens,
                request.max_history_messages,
            )
            if len(history) < before:
                logger.debug("Truncated history from %d to %d messages", before, len(history))
        return history

    async def _title_after_turn(self, session: StreamingSession, request: TurnRequest, final_message: Message) -> None:
        """Best-effort titling: errors are logged and a cancel stops it without failing the finished turn."""
        conversation_id = request.conversation_id
        try:
            await self._maybe_generate_title(request, final_message)
        except asyncio.CancelledError:
            if not session.cancel_requested:
                raise
            consume_cancel_request()
            logger.info("← Orchestrator: title generation for %s cancelled", conversation_id)
        except Exception as e:
            logger.warning("Titling conversation %s failed: %s", conversation_id, e)

    async def _maybe_generate_title(self, request: TurnRequest, final_message: Message) -> None:
        """Title the conversation after its first answer. Failures fall back to the user's text."""
        conversation_id = request.conversation_id
        record = await self.store.get_conversation(conversation_id)
        if record is None or not record.has_default_title:
            return

        history = await self.store.history(conversation_id)
        latest_user = next((m for m in reversed(history) if m.role == "user"), None)
        if latest_user is None:
            return

        provider_config = request.title_provider_config or request.provider_config
        model_id = request.title_model_id or request.model_id
        max_characters = int(self.chat_conf.get("title", {}).get("max_characters", DEFAULT_MAX_TITLE_CHARACTERS))

        try:
            title = await self.title_generator.generate_title(
                provider_config, model_id, [latest_user, final_message], max_characters
            )
        except Exception as e:
            logger.warning("Title generation failed for %s: %s", conversation_id, e)
            title = fallback_title(latest_user, record.title)

        if title and title != record.title:
            await self.store.set_title(conversation_id, title)
            logger.info("Conversation %s titled '%s'", conversation_id, title)
