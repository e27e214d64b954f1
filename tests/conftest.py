"""Shared fixtures: frozen configs and a scripted gateway stand-in."""

from __future__ import annotations

import pytest

from conduit.api.models import CanonicalResponse, Message, StopReason, TextBlock
from conduit.config import AgentConfig, LLMConfig

# ---------------------------------------------------------------------------
# Scripted gateway
# ---------------------------------------------------------------------------


class ScriptedGateway:
    """Replays preset responses and records every call.

    An entry that is an exception instance is raised instead of returned.
    """

    def __init__(self, responses: list | None = None, summaries: list | None = None) -> None:
        self.responses = list(responses or [])
        self.summaries = list(summaries or [])
        self.calls: list[dict] = []
        self.simple_calls: list[dict] = []

    async def call(self, messages, **kwargs):
        self.calls.append({"messages": list(messages), **kwargs})
        on_text_delta = kwargs.get("on_text_delta")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if on_text_delta is not None and response.text:
            on_text_delta(response.text)
        return response

    async def simple(self, messages, max_tokens=None, **kwargs):
        self.simple_calls.append(
            {"messages": list(messages), "max_tokens": max_tokens, "cancel": kwargs.get("cancel")}
        )
        summary = self.summaries.pop(0) if self.summaries else "Summary of work so far."
        if isinstance(summary, BaseException):
            raise summary
        return CanonicalResponse(
            content=[TextBlock(text=summary)], stop_reason=StopReason.END_TURN
        )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(
        api_base_url="https://api.anthropic.com/v1/messages",
        model="claude-test",
        max_tokens=1024,
        api_key="sk-ant-api-test",
    )


@pytest.fixture
def agent_config() -> AgentConfig:
    return AgentConfig(max_steps=10, system_prompt="You are a browser agent.")


@pytest.fixture
def conversation() -> list[Message]:
    return [Message.user("Open example.com"), Message.assistant("Done.")]


@pytest.fixture
def scripted_gateway() -> type[ScriptedGateway]:
    return ScriptedGateway
