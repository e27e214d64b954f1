"""OpenRouter adapter -- OpenAI wire shape with ``max_tokens``.

Serves Qwen, Kimi K2.5, Mistral and the rest of the OpenRouter catalog.
Reasoning payloads round-trip through the OpenAI adapter's extras.
"""

from __future__ import annotations

from conduit.providers.openai import OpenAIAdapter


class OpenRouterAdapter(OpenAIAdapter):
    name = "openrouter"
    url_markers = ("openrouter.ai",)
    token_param = "max_tokens"
