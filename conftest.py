"""Shared fakes and fixtures for the relaychat test suite."""

from __future__ import annotations

import inspect
from collections.abc import Callable, Sequence
from typing import Any

import pytest

from relaychat.chat.models import ContentDelta, GenerationControls, Message, TextPart, ToolDefinition
from relaychat.chat.session_registry import StreamingSessionRegistry
from relaychat.clients.provider import ProviderConfig, ProviderKind, ProviderManager
from relaychat.history import InMemoryConversationStore
from relaychat.tools.hub import ToolExecutionOutput, ToolRoute, ToolRoutes, UnknownToolError


class ScriptedAdapter:
    """
    Provider adapter replaying one scripted list of events per streaming call.

    Script entries are stream events, exceptions (raised at that point) or
    callables (called, and awaited if they return an awaitable). Calls with
    ``streaming=False`` replay ``title_events`` instead.
    """

    def __init__(
        self,
        provider_config: ProviderConfig,
        rounds: Sequence[Sequence[Any]] | None = None,
        title_events: Sequence[Any] | None = None,
    ) -> None:
        self.provider_config = provider_config
        self.rounds = [list(r) for r in rounds or []]
        self.title_events = list(title_events) if title_events is not None else [text_delta("Generated Title")]
        self.calls: list[dict[str, Any]] = []

    async def send_message(
        self,
        messages: Sequence[Message],
        model_id: str,
        controls: GenerationControls,
        tools: Sequence[ToolDefinition],
        streaming: bool = True,
    ):
        self.calls.append(
            {
                "messages": list(messages),
                "model_id": model_id,
                "controls": controls,
                "tools": list(tools),
                "streaming": streaming,
            }
        )
        if not streaming:
            return self._replay(self.title_events)
        script = self.rounds.pop(0) if self.rounds else [text_delta("done")]
        return self._replay(script)

    @property
    def streaming_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["streaming"]]

    async def _replay(self, script: Sequence[Any]):
        for entry in script:
            if isinstance(entry, BaseException):
                raise entry
            if callable(entry):
                result = entry()
                if inspect.isawaitable(result):
                    await result
                continue
            yield entry


class RecordingToolHub:
    """
    Tool hub returning canned outputs.

    ``outputs`` maps tool name to a string, a ``ToolExecutionOutput``, an
    exception to raise, or a callable taking the arguments.
    """

    def __init__(self, outputs: dict[str, Any] | None = None, search_providers: dict[str, str] | None = None) -> None:
        self.outputs = outputs or {}
        self.search_providers = search_providers or {}
        self.executed: list[tuple[str, dict[str, Any]]] = []

    async def tool_definitions(self, controls: GenerationControls) -> tuple[list[ToolDefinition], ToolRoutes]:
        definitions = [ToolDefinition(name=name, description=f"{name} tool") for name in self.outputs]
        routes = {
            name: ToolRoute(hub_name="fake", target=name, search_provider=self.search_providers.get(name))
            for name in self.outputs
        }
        return definitions, ToolRoutes(routes)

    async def execute_tool(self, name: str, arguments: dict[str, Any], routes: ToolRoutes) -> ToolExecutionOutput:
        self.executed.append((name, arguments))
        if name not in self.outputs:
            raise UnknownToolError(name)

        output = self.outputs[name]
        if isinstance(output, BaseException):
            raise output
        if callable(output):
            output = output(arguments)
            if inspect.isawaitable(output):
                output = await output
        if isinstance(output, str):
            return ToolExecutionOutput(text=output)
        return output


class ManualClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def text_delta(text: str) -> ContentDelta:
    return ContentDelta(part=TextPart(text=text))


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(id="test", name="Test", kind=ProviderKind.OPENROUTER)


@pytest.fixture
def registry() -> StreamingSessionRegistry:
    return StreamingSessionRegistry()


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_adapter(provider_config: ProviderConfig) -> Callable[..., ScriptedAdapter]:
    def factory(rounds=None, title_events=None, config: ProviderConfig | None = None) -> ScriptedAdapter:
        return ScriptedAdapter(config or provider_config, rounds, title_events)

    return factory


@pytest.fixture
def provider_manager_for() -> Callable[[ScriptedAdapter], ProviderManager]:
    """Provider manager handing out one adapter instance for every provider kind."""

    def factory(adapter: ScriptedAdapter) -> ProviderManager:
        manager = ProviderManager()
        for kind in ProviderKind:
            manager.register(kind, lambda _config: adapter)
        return manager

    return factory
