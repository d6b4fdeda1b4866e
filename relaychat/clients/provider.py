"""
Provider Layer

Everything the turn loop needs to know about LLM providers without speaking
any provider's wire format:
- ProviderKind, a closed set of supported providers, and its capability table
- ProviderConfig, loaded from YAML
- ProviderAdapter, the streaming interface concrete adapters implement
- ProviderManager, the registry that builds adapters per provider kind
- CacheOptimizer, the prompt-cache hook applied once per turn
- LLMError and its subclasses, the normalized provider failures
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Sequence
from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from relaychat.chat.models import GenerationControls, Message, StreamEvent, ToolDefinition

logger = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================


class LLMError(Exception):
    """Base class for normalized provider failures."""


class AuthenticationError(LLMError):
    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(f"Authentication failed: {message}")


class RateLimitError(LLMError):
    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        if retry_after is not None:
            super().__init__(f"Rate limit exceeded. Retry after {retry_after:g} seconds.")
        else:
            super().__init__("Rate limit exceeded.")


class InvalidRequestError(LLMError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Invalid request: {message}")


class ProviderStreamError(LLMError):
    """The provider reported an error in the middle of a stream."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(f"Provider error: {message}" if not code else f"Provider error ({code}): {message}")


class UnsupportedProviderError(LLMError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"No adapter registered for provider kind '{kind}'")


# ============================================================================
# Provider kinds and capabilities
# ============================================================================


class ProviderKind(str, Enum):
    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai_compatible"
    OPENROUTER = "openrouter"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    VERTEXAI = "vertexai"
    XAI = "xai"
    DEEPSEEK = "deepseek"
    GROQ = "groq"
    MISTRAL = "mistral"
    COHERE = "cohere"
    PERPLEXITY = "perplexity"
    FIREWORKS = "fireworks"
    CEREBRAS = "cerebras"
    DEEPINFRA = "deepinfra"


class ProviderCapabilities(BaseModel):
    supports_tool_calling: bool = True
    supports_reasoning: bool = False
    supports_web_search: bool = False
    supports_prompt_cache: bool = False
    supports_vision: bool = False


_CAPABILITIES: dict[ProviderKind, ProviderCapabilities] = {
    ProviderKind.OPENAI: ProviderCapabilities(
        supports_reasoning=True, supports_web_search=True, supports_prompt_cache=True, supports_vision=True
    ),
    ProviderKind.OPENAI_COMPATIBLE: ProviderCapabilities(),
    ProviderKind.OPENROUTER: ProviderCapabilities(
        supports_reasoning=True, supports_web_search=True, supports_prompt_cache=True, supports_vision=True
    ),
    ProviderKind.ANTHROPIC: ProviderCapabilities(
        supports_reasoning=True, supports_web_search=True, supports_prompt_cache=True, supports_vision=True
    ),
    ProviderKind.GEMINI: ProviderCapabilities(
        supports_reasoning=True, supports_web_search=True, supports_prompt_cache=True, supports_vision=True
    ),
    ProviderKind.VERTEXAI: ProviderCapabilities(
        supports_reasoning=True, supports_web_search=True, supports_prompt_cache=True, supports_vision=True
    ),
    ProviderKind.XAI: ProviderCapabilities(supports_reasoning=True, supports_web_search=True, supports_vision=True),
    ProviderKind.DEEPSEEK: ProviderCapabilities(supports_reasoning=True, supports_prompt_cache=True),
    ProviderKind.GROQ: ProviderCapabilities(supports_reasoning=True),
    ProviderKind.MISTRAL: ProviderCapabilities(supports_vision=True),
    ProviderKind.COHERE: ProviderCapabilities(supports_reasoning=True),
    ProviderKind.PERPLEXITY: ProviderCapabilities(
        supports_tool_calling=False, supports_reasoning=True, supports_web_search=True
    ),
    ProviderKind.FIREWORKS: ProviderCapabilities(supports_reasoning=True),
    ProviderKind.CEREBRAS: ProviderCapabilities(supports_reasoning=True),
    ProviderKind.DEEPINFRA: ProviderCapabilities(),
}


def capabilities_for(kind: ProviderKind) -> ProviderCapabilities:
    return _CAPABILITIES[kind]


class ProviderConfig(BaseModel):
    id: str
    name: str = ""
    kind: ProviderKind
    base_url: str | None = None
    api_key_env: str | None = None
    models: list[str] = Field(default_factory=list)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return capabilities_for(self.kind)


# ============================================================================
# Adapter interface and registry
# ============================================================================


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Streaming interface to one provider.

    ``send_message`` is awaited to open the stream (connection errors raise
    there) and returns an async iterator of normalized stream events.
    """

    provider_config: ProviderConfig

    async def send_message(
        self,
        messages: Sequence[Message],
        model_id: str,
        controls: GenerationControls,
        tools: Sequence[ToolDefinition],
        streaming: bool = True,
    ) -> AsyncIterator[StreamEvent]: ...


AdapterFactory = Callable[[ProviderConfig], ProviderAdapter]


class ProviderManager:
    """Builds provider adapters from registered per-kind factories."""

    def __init__(self) -> None:
        self._factories: dict[ProviderKind, AdapterFactory] = {}

    def register(self, kind: ProviderKind, factory: AdapterFactory) -> None:
        self._factories[kind] = factory
        logger.debug("Registered adapter factory for provider kind '%s'", kind.value)

    def supports(self, kind: ProviderKind) -> bool:
        return kind in self._factories

    def create_adapter(self, config: ProviderConfig) -> ProviderAdapter:
        factory = self._factories.get(config.kind)
        if factory is None:
            raise UnsupportedProviderError(config.kind.value)
        return factory(config)


# ============================================================================
# Prompt-cache optimization
# ============================================================================


class CacheOptimizer(Protocol):
    async def apply_optimizations(
        self,
        adapter: ProviderAdapter,
        provider_kind: ProviderKind,
        model_id: str,
        messages: list[Message],
        controls: GenerationControls,
        tools: Sequence[ToolDefinition],
    ) -> tuple[list[Message], GenerationControls]: ...


class PassthroughCacheOptimizer:
    """Leaves history and controls untouched."""

    async def apply_optimizations(
        self,
        adapter: ProviderAdapter,
        provider_kind: ProviderKind,
        model_id: str,
        messages: list[Message],
        controls: GenerationControls,
        tools: Sequence[ToolDefinition],
    ) -> tuple[list[Message], GenerationControls]:
        return messages, controls
