"""Tests for the Anthropic adapter: headers, request body, body and stream decoding."""

import json

import pytest

from conduit.api.errors import ProtocolError, ProviderError
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
from conduit.providers.anthropic import AnthropicAdapter, _parse_sse_event
from conduit.providers.base import AuthContext


async def _sse(*events):
    for event in events:
        yield "event: " + (event.get("type", "") if isinstance(event, dict) else "")
        yield "data: " + (json.dumps(event) if isinstance(event, dict) else event)
        yield ""


@pytest.fixture
def adapter(llm_config):
    return AnthropicAdapter(llm_config)


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------


class TestHeaders:
    def test_api_key(self, adapter):
        headers = adapter.headers(AuthContext(api_key="sk-ant-api-1"))
        assert headers["x-api-key"] == "sk-ant-api-1"
        assert headers["anthropic-version"] == "2023-06-01"
        assert "authorization" not in headers

    def test_bearer_token(self, adapter):
        headers = adapter.headers(AuthContext(bearer_token="tok"))
        assert headers["authorization"] == "Bearer tok"
        assert headers["anthropic-beta"] == "oauth-2025-04-20"
        assert "x-api-key" not in headers

    def test_oat_key_in_api_key_field_uses_bearer(self, adapter):
        headers = adapter.headers(AuthContext(api_key="sk-ant-oat01-abc"))
        assert headers["authorization"] == "Bearer sk-ant-oat01-abc"
        assert "x-api-key" not in headers


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class TestBuildRequest:
    def test_body_shape(self, adapter):
        messages = [
            Message(role=Role.USER, content=[ImageBlock(data="AAAA"), TextBlock(text="task")]),
            Message(
                role=Role.ASSISTANT,
                content=[ToolCallBlock(id="c1", name="click", input={"x": 1})],
            ),
            Message(
                role=Role.USER,
                content=[
                    ToolResultBlock(
                        tool_call_id="c1", content=[TextBlock(text="Error: nope")], is_error=True
                    )
                ],
            ),
        ]
        tools = [ToolDefinition(name="click", description="Click", claude_only=True)]
        body = adapter.build_request(messages, "system text", tools, streaming=True)

        assert body["model"] == "claude-test"
        assert body["max_tokens"] == 1024
        assert body["stream"] is True
        assert body["metadata"] == {"user_id": "conduit"}
        assert body["system"][0]["text"] == "system text"
        assert body["system"][0]["cache_control"] == {"type": "ephemeral"}
        # claude_only tools are kept for Anthropic
        assert [t["name"] for t in body["tools"]] == ["click"]
        assert "claude_only" not in body["tools"][0]

        image = body["messages"][0]["content"][0]
        assert image == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"},
        }
        tool_use = body["messages"][1]["content"][0]
        assert tool_use["type"] == "tool_use"
        assert tool_use["cache_control"] == {"type": "ephemeral"}
        result = body["messages"][2]["content"][0]
        assert result["tool_use_id"] == "c1"
        assert result["is_error"] is True

    def test_non_streaming_has_no_stream_flag(self, adapter):
        body = adapter.build_request([Message.user("hi")], "", None, streaming=False, max_tokens=50)
        assert "stream" not in body
        assert "system" not in body
        assert "tools" not in body
        assert body["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_empty_reply_not_sent_back(self, adapter):
        reply = await adapter.decode_stream(
            _sse(
                {"type": "message_start", "message": {"usage": {"input_tokens": 3}}},
                {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
            )
        )
        assert reply.content == [TextBlock(text="")]
        history = [
            Message.user("hi"),
            Message(role=Role.ASSISTANT, content=reply.content),
            Message.user("still there?"),
        ]

        body = adapter.build_request(history, "", None, streaming=True)

        assert [m["role"] for m in body["messages"]] == ["user", "user"]
        for msg in body["messages"]:
            assert all(block.get("text", "x").strip() for block in msg["content"])

    def test_cache_marker_skips_blank_text(self, adapter):
        assistant = Message(
            role=Role.ASSISTANT,
            content=[
                ToolCallBlock(id="c1", name="click", input={}),
                TextBlock(text="  "),
            ],
        )
        body = adapter.build_request(
            [Message.user("go"), assistant], "", None, streaming=False
        )
        (block,) = body["messages"][1]["content"]
        assert block["type"] == "tool_use"
        assert block["cache_control"] == {"type": "ephemeral"}


# ---------------------------------------------------------------------------
# Non-streaming decode
# ---------------------------------------------------------------------------


class TestDecodeBody:
    def test_text_and_tool_use(self, adapter):
        response = adapter.decode_body(
            {
                "content": [
                    {"type": "text", "text": "Clicking."},
                    {"type": "tool_use", "id": "tu_1", "name": "click", "input": {"x": 3}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 12, "output_tokens": 4},
            }
        )
        assert response.stop_reason == StopReason.TOOL_USE
        assert response.text == "Clicking."
        assert response.tool_calls[0].input == {"x": 3}
        assert response.usage.input_tokens == 12

    def test_stop_sequence_maps_to_end_turn(self, adapter):
        response = adapter.decode_body({"content": [], "stop_reason": "stop_sequence"})
        assert response.stop_reason == StopReason.END_TURN
        assert response.content == [TextBlock(text="")]

    def test_missing_content_is_protocol_error(self, adapter):
        with pytest.raises(ProtocolError):
            adapter.decode_body({"type": "message"})

    def test_tool_use_without_id_is_protocol_error(self, adapter):
        with pytest.raises(ProtocolError):
            adapter.decode_body({"content": [{"type": "tool_use", "name": "click"}]})

    def test_non_object_block_is_protocol_error(self, adapter):
        with pytest.raises(ProtocolError):
            adapter.decode_body({"content": ["text"]})

    def test_cache_usage(self, adapter):
        response = adapter.decode_body(
            {
                "content": [{"type": "text", "text": "ok"}],
                "usage": {
                    "input_tokens": 10,
                    "output_tokens": 2,
                    "cache_creation_input_tokens": 400,
                    "cache_read_input_tokens": 1200,
                },
            }
        )
        assert response.usage.cache_creation_tokens == 400
        assert response.usage.cache_read_tokens == 1200


# ---------------------------------------------------------------------------
# Streaming decode
# ---------------------------------------------------------------------------


class TestParseSSEEvent:
    def test_ping_skipped(self):
        assert _parse_sse_event({"type": "ping"}) is None

    def test_text_delta_carries_index(self):
        event = _parse_sse_event(
            {"type": "content_block_delta", "index": 2, "delta": {"type": "text_delta", "text": "hi"}}
        )
        assert event.type == "text_delta"
        assert event.block_index == 2

    def test_message_delta_stop_reason(self):
        event = _parse_sse_event(
            {"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 9}}
        )
        assert event.type == "done"
        assert event.stop_reason == "max_tokens"
        assert event.usage == {"output_tokens": 9}


class TestDecodeStream:
    @pytest.mark.asyncio
    async def test_text_and_tool_blocks(self, adapter):
        deltas = []
        lines = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 20}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Let me "}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "click."}},
            {"type": "content_block_stop", "index": 0},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "tu_1", "name": "click"},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"x"'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ": 5}"}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        )
        response = await adapter.decode_stream(lines, deltas.append)

        assert deltas == ["Let me ", "click."]
        assert response.content[0] == TextBlock(text="Let me click.")
        assert response.tool_calls[0] == ToolCallBlock(id="tu_1", name="click", input={"x": 5})
        assert response.stop_reason == StopReason.TOOL_USE
        assert response.usage.input_tokens == 20
        assert response.usage.output_tokens == 7

    @pytest.mark.asyncio
    async def test_malformed_event_skipped(self, adapter):
        lines = _sse(
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
            "{not json",
            # delta for a block that was never opened
            {"type": "content_block_delta", "index": 7, "delta": {"type": "text_delta", "text": "lost"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
        )
        response = await adapter.decode_stream(lines)
        assert response.content == [TextBlock(text="ok")]
        assert response.stop_reason == StopReason.END_TURN

    @pytest.mark.asyncio
    async def test_unclosed_blocks_dropped(self, adapter):
        lines = _sse(
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "cut"}},
        )
        response = await adapter.decode_stream(lines)
        assert response.content == [TextBlock(text="")]
        assert response.stop_reason == StopReason.END_TURN

    @pytest.mark.asyncio
    async def test_stream_error_event_raises(self, adapter):
        lines = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        with pytest.raises(ProviderError, match="overloaded_error: Overloaded"):
            await adapter.decode_stream(lines)
