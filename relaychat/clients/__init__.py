"""Provider adapter contracts and the provider manager."""

from __future__ import annotations

from .provider import (
    LLMError,
    PassthroughCacheOptimizer,
    ProviderAdapter,
    ProviderConfig,
    ProviderKind,
    ProviderManager,
)

__all__ = [
    "LLMError",
    "PassthroughCacheOptimizer",
    "ProviderAdapter",
    "ProviderConfig",
    "ProviderKind",
    "ProviderManager",
]
