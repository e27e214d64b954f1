"""Providers -- wire-format adapters for each LLM backend.

Public API:
    select_provider  - Pick an adapter by explicit name or endpoint URL
    detect_provider  - Adapter name for an endpoint URL
    ProviderAdapter  - Adapter contract
    AuthContext      - Credentials resolved for one request

Adapters:
    AnthropicAdapter, OpenAIAdapter, OpenRouterAdapter,
    GoogleAdapter, CodexAdapter
"""

from conduit.providers.anthropic import AnthropicAdapter
from conduit.providers.base import AuthContext, ProviderAdapter, TextDeltaCallback
from conduit.providers.codex import CodexAdapter
from conduit.providers.google import GoogleAdapter
from conduit.providers.openai import OpenAIAdapter
from conduit.providers.openrouter import OpenRouterAdapter
from conduit.providers.registry import PROVIDERS, detect_provider, select_provider
from conduit.providers.schema import sanitize_schema

__all__ = [
    "AnthropicAdapter",
    "AuthContext",
    "CodexAdapter",
    "GoogleAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "PROVIDERS",
    "ProviderAdapter",
    "TextDeltaCallback",
    "detect_provider",
    "sanitize_schema",
    "select_provider",
]
