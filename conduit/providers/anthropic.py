"""Anthropic Messages API adapter -- the native shape of the canonical model."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from conduit.api.errors import ProviderError
from conduit.api.models import (
    CanonicalResponse,
    ContentBlock,
    ImageBlock,
    Message,
    StopReason,
    TextBlock,
    ToolCallBlock,
    ToolDefinition,
    ToolResultBlock,
)
from conduit.providers.base import (
    AuthContext,
    PendingToolCall,
    ProviderAdapter,
    StreamState,
    TextDeltaCallback,
)

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_OAUTH_BETA = "oauth-2025-04-20"

_STOP_REASONS = {
    "end_turn": StopReason.END_TURN,
    "stop_sequence": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
}


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_block_start, text_delta, tool_start, tool_input_delta, block_stop, usage, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, Any] = field(default_factory=dict)


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse Anthropic SSE event dict into StreamEvent.

    Skips ping keepalives. stop_reason arrives in message_delta.delta,
    not message_start. In-stream error events (HTTP 200 with an error
    body) surface as type "error".
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage") or {}
        return StreamEvent(type="usage", usage=usage) if usage else None

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        if block.get("type") == "text":
            return StreamEvent(
                type="text_block_start",
                text=block.get("text", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return StreamEvent(
                type="text_delta", text=delta.get("text", ""), block_index=block_index
            )
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=data.get("usage") or {},
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


def _is_blank(block: ContentBlock) -> bool:
    return isinstance(block, TextBlock) and not block.text.strip()


def _encode_block(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": block.mime_type, "data": block.data},
        }
    if isinstance(block, ToolCallBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    encoded: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": block.tool_call_id,
        "content": [_encode_block(part) for part in block.content if not _is_blank(part)],
    }
    if block.is_error:
        encoded["is_error"] = True
    return encoded


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"
    url_markers = ("anthropic.com",)
    supports_claude_only_tools = True

    def headers(self, auth: AuthContext) -> dict[str, str]:
        headers = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        # OAT tokens (sk-ant-oat*) need Bearer auth plus the oauth beta,
        # even when they arrive through the api_key field.
        token = auth.bearer_token
        if not token and "sk-ant-oat" in auth.api_key:
            token = auth.api_key
        if token:
            headers["authorization"] = f"Bearer {token}"
            headers["anthropic-beta"] = _OAUTH_BETA
            headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif auth.api_key:
            headers["x-api-key"] = auth.api_key
        return headers

    def build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        streaming: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": max_tokens or self.config.max_tokens,
            "messages": self._encode_messages(messages),
            "metadata": {"user_id": self.config.user_id},
        }
        if system_prompt:
            payload["system"] = [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        offered = self.offered_tools(tools)
        if offered:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in offered
            ]
        if streaming:
            payload["stream"] = True
        return payload

    def _encode_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        # The API rejects empty text blocks; a turn left with no content is omitted
        encoded = []
        for m in messages:
            content = [_encode_block(b) for b in m.content if not _is_blank(b)]
            if content:
                encoded.append({"role": str(m.role), "content": content})
        # Conversation caching: mark the last block of the last assistant turn
        for msg in reversed(encoded):
            if msg["role"] == "assistant":
                if msg["content"]:
                    msg["content"][-1]["cache_control"] = {"type": "ephemeral"}
                break
        return encoded

    def decode_body(self, data: dict[str, Any]) -> CanonicalResponse:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise self._unexpected(data)

        content: list[ContentBlock] = []
        for block in blocks:
            if not isinstance(block, dict):
                raise self._unexpected(data)
            if block.get("type") == "text":
                content.append(TextBlock(text=block.get("text", "")))
            elif block.get("type") == "tool_use":
                if "id" not in block or "name" not in block:
                    raise self._unexpected(data)
                content.append(
                    ToolCallBlock(
                        id=block["id"], name=block["name"], input=block.get("input") or {}
                    )
                )
        return self._finalize(
            content, _STOP_REASONS.get(data.get("stop_reason") or ""), data.get("usage")
        )

    def _apply_stream_event(
        self,
        state: StreamState,
        event: dict[str, Any],
        on_text_delta: TextDeltaCallback | None,
    ) -> None:
        parsed = _parse_sse_event(event)
        if parsed is None:
            return

        if parsed.type == "error":
            raise ProviderError(200, json.dumps(event), f"Stream error - {parsed.text}")

        if parsed.type == "text_block_start":
            state.open_text[parsed.block_index] = [parsed.text] if parsed.text else []
        elif parsed.type == "text_delta":
            state.open_text[parsed.block_index].append(parsed.text)
            self._text_delta(on_text_delta, parsed.text)
        elif parsed.type == "tool_start":
            state.open_tool(
                parsed.block_index, PendingToolCall(id=parsed.tool_id, name=parsed.tool_name)
            )
        elif parsed.type == "tool_input_delta":
            state.open_tools[parsed.block_index].arguments += parsed.text
        elif parsed.type == "block_stop":
            state.close_text(parsed.block_index)
            state.close_tool(parsed.block_index)
        elif parsed.type in ("usage", "done"):
            if parsed.usage:
                state.usage = {**(state.usage or {}), **parsed.usage}
            if parsed.stop_reason:
                state.stop_reason = _STOP_REASONS.get(parsed.stop_reason)

    def _finish_stream(self, state: StreamState) -> CanonicalResponse:
        if state.open_text or state.open_tools:
            logger.warning(
                "Anthropic stream ended with %d unclosed block(s); dropping them",
                len(state.open_text) + len(state.open_tools),
            )
        return self._finalize(state.content, state.stop_reason, state.usage)
