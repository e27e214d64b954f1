"""Provider selector: explicit name first, then URL detection in order."""

from __future__ import annotations

import logging

from conduit.config import LLMConfig
from conduit.providers.anthropic import AnthropicAdapter
from conduit.providers.base import ProviderAdapter
from conduit.providers.codex import CodexAdapter
from conduit.providers.google import GoogleAdapter
from conduit.providers.openai import OpenAIAdapter
from conduit.providers.openrouter import OpenRouterAdapter

logger = logging.getLogger(__name__)

# Order matters: first match wins, and the first entry is the fallback.
PROVIDERS: tuple[type[ProviderAdapter], ...] = (
    AnthropicAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
    GoogleAdapter,
    CodexAdapter,
)


def adapter_class(name: str) -> type[ProviderAdapter] | None:
    for provider in PROVIDERS:
        if provider.name == name:
            return provider
    return None


def select_provider(
    endpoint_url: str,
    config: LLMConfig,
    provider_name: str | None = None,
) -> ProviderAdapter:
    """Return an adapter instance for the endpoint.

    An unknown explicit name falls through to URL detection; an
    unrecognized URL falls back to the Anthropic wire format.
    """
    if provider_name:
        provider = adapter_class(provider_name)
        if provider is not None:
            return provider(config)
        logger.warning("Unknown provider name %r, detecting from URL", provider_name)

    for provider in PROVIDERS:
        if provider.matches(endpoint_url):
            return provider(config)

    logger.warning(
        "Unknown provider for URL: %s, defaulting to %s format",
        endpoint_url,
        PROVIDERS[0].name,
    )
    return PROVIDERS[0](config)


def detect_provider(endpoint_url: str) -> str:
    for provider in PROVIDERS:
        if provider.matches(endpoint_url):
            return provider.name
    return PROVIDERS[0].name
