"""Provider adapters and the adapter selection heuristic."""

from __future__ import annotations

import httpx

from ..types import LLMProviderConfig
from .anthropic import AnthropicProvider
from .base import BaseProvider, ProviderError, StreamRejected
from .ollama import OllamaProvider
from .openai_compat import OpenAICompatProvider

OPENAI_COMPAT_NAMES = frozenset({"lm_studio", "openai_compat", "mybuhdi_cloud", "openai", "openrouter"})

Provider = BaseProvider


def provider_family(config: LLMProviderConfig) -> type[BaseProvider]:
    """Pick the adapter class for a provider config.

    Explicit ``type`` wins, then the well-known ``name``; untagged legacy
    configs are sniffed by endpoint host and credential prefix.
    """
    tag = (config.type or "").lower()
    if tag == "ollama":
        return OllamaProvider
    if tag == "anthropic":
        return AnthropicProvider
    if tag in ("openai", "openai_compat"):
        return OpenAICompatProvider

    if config.name == "ollama":
        return OllamaProvider
    if config.name == "anthropic":
        return AnthropicProvider
    if config.name in OPENAI_COMPAT_NAMES:
        return OpenAICompatProvider

    if "api.anthropic.com" in (config.endpoint or "") or (config.api_key or "").startswith("sk-ant-oat"):
        return AnthropicProvider
    return OpenAICompatProvider


def create_provider(
    config: LLMProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseProvider:
    return provider_family(config)(config, transport=transport)


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "OllamaProvider",
    "OpenAICompatProvider",
    "Provider",
    "ProviderError",
    "StreamRejected",
    "create_provider",
    "provider_family",
]
