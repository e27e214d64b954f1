"""Tests for the OpenAI and OpenRouter adapters."""

import json

import pytest

from conduit.api.errors import ProtocolError
from conduit.api.models import (
    ImageBlock,
    Message,
    Role,
    StopReason,
    TextBlock,
    ToolCallBlock,
    ToolDefinition,
    ToolResultBlock,
)
from conduit.config import LLMConfig
from conduit.providers.base import AuthContext
from conduit.providers.openai import OpenAIAdapter
from conduit.providers.openrouter import OpenRouterAdapter


async def _sse(*events):
    for event in events:
        yield "data: " + (json.dumps(event) if isinstance(event, dict) else event)
        yield ""


def _chunk(delta=None, finish_reason=None, **extra):
    return {"choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}], **extra}


@pytest.fixture
def openai():
    return OpenAIAdapter(
        LLMConfig(api_base_url="https://api.openai.com/v1/chat/completions", model="gpt-4o")
    )


@pytest.fixture
def openrouter():
    return OpenRouterAdapter(
        LLMConfig(
            api_base_url="https://openrouter.ai/api/v1/chat/completions",
            model="moonshotai/kimi-k2.5",
        )
    )


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class TestBuildRequest:
    def test_headers_use_bearer(self, openai):
        assert openai.headers(AuthContext(api_key="sk-1"))["authorization"] == "Bearer sk-1"

    def test_token_param_differs(self, openai, openrouter):
        assert openai.build_request([], "", None, False)["max_completion_tokens"] == 10000
        body = openrouter.build_request([], "", None, False)
        assert body["max_tokens"] == 10000
        assert "max_completion_tokens" not in body

    def test_system_prompt_first(self, openai):
        body = openai.build_request([Message.user("hi")], "be brief", None, streaming=True)
        assert body["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ]
        assert body["stream"] is True

    def test_tool_calls_and_results(self, openai):
        messages = [
            Message(
                role=Role.ASSISTANT,
                content=[
                    TextBlock(text=""),
                    ToolCallBlock(id="call_1", name="screenshot", input={"full": True}),
                ],
            ),
            Message(
                role=Role.USER,
                content=[
                    ToolResultBlock(
                        tool_call_id="call_1",
                        content=[TextBlock(text="Screenshot captured"), ImageBlock(data="AAAA")],
                    )
                ],
            ),
        ]
        body = openai.build_request(messages, "", None, streaming=False)
        assistant, tool, user = body["messages"]

        assert assistant["role"] == "assistant"
        assert assistant["content"] is None
        assert assistant["tool_calls"][0]["function"] == {
            "name": "screenshot",
            "arguments": json.dumps({"full": True}),
        }
        assert tool == {"role": "tool", "tool_call_id": "call_1", "content": "Screenshot captured"}
        assert user["role"] == "user"
        assert user["content"] == [
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}
        ]

    def test_claude_only_tools_dropped(self, openai):
        tools = [
            ToolDefinition(name="computer", claude_only=True),
            ToolDefinition(name="navigate", description="Go", input_schema={"type": "object"}),
        ]
        body = openai.build_request([], "", tools, streaming=False)
        assert body["tools"] == [
            {
                "type": "function",
                "function": {
                    "name": "navigate",
                    "description": "Go",
                    "parameters": {"type": "object"},
                },
            }
        ]

    def test_reasoning_round_trip(self, openrouter):
        call = ToolCallBlock(
            id="call_1",
            name="click",
            extras={"reasoning": "I should click", "reasoning_details": [{"type": "text"}]},
        )
        body = openrouter.build_request(
            [Message(role=Role.ASSISTANT, content=[call])], "", None, streaming=False
        )
        assistant = body["messages"][0]
        assert assistant["reasoning_content"] == "I should click"
        assert assistant["reasoning_details"] == [{"type": "text"}]


# ---------------------------------------------------------------------------
# Non-streaming decode
# ---------------------------------------------------------------------------


class TestDecodeBody:
    def test_tool_calls(self, openrouter):
        response = openrouter.decode_body(
            {
                "choices": [
                    {
                        "message": {
                            "role": "assistant",
                            "content": None,
                            "reasoning": "thinking",
                            "tool_calls": [
                                {
                                    "id": "call_9",
                                    "type": "function",
                                    "function": {"name": "click", "arguments": '{"x": 1}'},
                                }
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 30, "completion_tokens": 5},
            }
        )
        assert response.stop_reason == StopReason.TOOL_USE
        call = response.tool_calls[0]
        assert (call.id, call.name, call.input) == ("call_9", "click", {"x": 1})
        assert call.extras == {"reasoning": "thinking"}
        assert response.usage.input_tokens == 30

    def test_length_maps_to_max_tokens(self, openai):
        response = openai.decode_body(
            {"choices": [{"message": {"content": "partial"}, "finish_reason": "length"}]}
        )
        assert response.stop_reason == StopReason.MAX_TOKENS
        assert response.text == "partial"

    def test_bad_arguments_become_empty_input(self, openai):
        response = openai.decode_body(
            {
                "choices": [
                    {
                        "message": {
                            "tool_calls": [{"id": "c", "function": {"name": "f", "arguments": "{oops"}}]
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            }
        )
        assert response.tool_calls[0].input == {}

    def test_no_choices_is_protocol_error(self, openai):
        with pytest.raises(ProtocolError):
            openai.decode_body({"error": None})

    def test_non_object_choice_is_protocol_error(self, openai):
        with pytest.raises(ProtocolError):
            openai.decode_body({"choices": ["oops"]})

    def test_cached_prompt_tokens(self, openai):
        response = openai.decode_body(
            {
                "choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}],
                "usage": {
                    "prompt_tokens": 100,
                    "completion_tokens": 4,
                    "prompt_tokens_details": {"cached_tokens": 64},
                },
            }
        )
        assert response.usage.cache_read_tokens == 64


# ---------------------------------------------------------------------------
# Streaming decode
# ---------------------------------------------------------------------------


class TestDecodeStream:
    @pytest.mark.asyncio
    async def test_text_stream(self, openai):
        deltas = []
        lines = _sse(
            _chunk({"role": "assistant", "content": ""}),
            _chunk({"content": "Hello"}),
            _chunk({"content": " world"}),
            _chunk(finish_reason="stop"),
            {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2}},
            "[DONE]",
        )
        response = await openai.decode_stream(lines, deltas.append)
        assert deltas == ["Hello", " world"]
        assert response.content == [TextBlock(text="Hello world")]
        assert response.stop_reason == StopReason.END_TURN
        assert response.usage.output_tokens == 2

    @pytest.mark.asyncio
    async def test_tool_call_fragments_reassembled(self, openrouter):
        lines = _sse(
            _chunk({"reasoning": "need to click"}),
            _chunk(
                {
                    "tool_calls": [
                        {"index": 0, "id": "call_a", "function": {"name": "click", "arguments": ""}}
                    ]
                }
            ),
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"sel'}}]}),
            "{garbage",
            _chunk({"tool_calls": [{"index": 0, "function": {"arguments": 'ector": "#go"}'}}]}),
            _chunk({"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "wait"}}]}),
            _chunk(finish_reason="tool_calls"),
        )
        response = await openrouter.decode_stream(lines)

        assert [c.id for c in response.tool_calls] == ["call_a", "call_b"]
        first = response.tool_calls[0]
        assert first.input == {"selector": "#go"}
        assert first.extras == {"reasoning": "need to click"}
        assert response.tool_calls[1].input == {}
        assert response.stop_reason == StopReason.TOOL_USE

    @pytest.mark.asyncio
    async def test_missing_finish_reason_inferred(self, openai):
        lines = _sse(
            _chunk({"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "f", "arguments": "{}"}}]})
        )
        response = await openai.decode_stream(lines)
        assert response.stop_reason == StopReason.TOOL_USE

    @pytest.mark.asyncio
    async def test_tool_call_fragment_without_index(self, openai):
        deltas = []
        lines = _sse(
            _chunk(
                {
                    "content": "Clicking",
                    "tool_calls": [{"id": "call_x", "function": {"name": "click", "arguments": "{}"}}],
                }
            ),
            _chunk(finish_reason="tool_calls"),
        )
        response = await openai.decode_stream(lines, deltas.append)
        assert deltas == ["Clicking"]
        assert response.text == "Clicking"
        assert [c.name for c in response.tool_calls] == ["click"]
