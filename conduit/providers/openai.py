"""OpenAI Chat Completions adapter (GPT-4o, GPT-5 and compatible APIs)."""

from __future__ import annotations

import json
import uuid
from typing import Any, ClassVar

from conduit.api.models import (
    CanonicalResponse,
    ContentBlock,
    ImageBlock,
    Message,
    Role,
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
    parse_arguments,
)

_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "content_filter": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
}

# Reasoning models (Kimi K2.5 and friends) return ``reasoning`` but expect
# ``reasoning_content`` when the turn is sent back.
_REASONING_KEYS = ("reasoning", "reasoning_details")


def _image_part(image: ImageBlock) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{image.mime_type};base64,{image.data}"},
    }


def _reasoning_extras(source: dict[str, Any]) -> dict[str, Any]:
    extras: dict[str, Any] = {}
    reasoning = source.get("reasoning") or source.get("reasoning_content")
    if reasoning:
        extras["reasoning"] = reasoning
    if source.get("reasoning_details"):
        extras["reasoning_details"] = source["reasoning_details"]
    return extras


class OpenAIAdapter(ProviderAdapter):
    name = "openai"
    url_markers = ("openai.com",)
    token_param: ClassVar[str] = "max_completion_tokens"

    def headers(self, auth: AuthContext) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        token = auth.bearer_token or auth.api_key
        if token:
            headers["authorization"] = f"Bearer {token}"
        return headers

    def build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        streaming: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        wire_messages: list[dict[str, Any]] = []
        if system_prompt:
            wire_messages.append({"role": "system", "content": system_prompt})
        for msg in messages:
            if msg.role == Role.ASSISTANT:
                wire_messages.append(self._encode_assistant(msg))
            else:
                wire_messages.extend(self._encode_user(msg))

        payload: dict[str, Any] = {
            "model": self.config.model,
            self.token_param: max_tokens or self.config.max_tokens,
            "messages": wire_messages,
        }
        offered = self.offered_tools(tools)
        if offered:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in offered
            ]
        if streaming:
            payload["stream"] = True
        return payload

    def _encode_assistant(self, msg: Message) -> dict[str, Any]:
        tool_calls = []
        extras: dict[str, Any] = {}
        for call in msg.tool_calls:
            tool_calls.append(
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.input)},
                }
            )
            for key in _REASONING_KEYS:
                if key in call.extras and key not in extras:
                    extras[key] = call.extras[key]

        encoded: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
        if tool_calls:
            encoded["tool_calls"] = tool_calls
        if "reasoning" in extras:
            encoded["reasoning_content"] = extras["reasoning"]
        if "reasoning_details" in extras:
            encoded["reasoning_details"] = extras["reasoning_details"]
        return encoded

    def _encode_user(self, msg: Message) -> list[dict[str, Any]]:
        """Tool results become ``role: tool`` messages; the rest one user message.

        The tool role only carries text, so images returned by tools ride
        along in the trailing user message.
        """
        encoded: list[dict[str, Any]] = []
        parts: list[dict[str, Any]] = []
        for block in msg.content:
            if isinstance(block, ToolResultBlock):
                encoded.append(
                    {"role": "tool", "tool_call_id": block.tool_call_id, "content": block.text}
                )
                parts.extend(_image_part(p) for p in block.content if isinstance(p, ImageBlock))
            elif isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append(_image_part(block))

        if parts:
            if all(p["type"] == "text" for p in parts):
                encoded.append(
                    {"role": "user", "content": "\n".join(p["text"] for p in parts)}
                )
            else:
                encoded.append({"role": "user", "content": parts})
        return encoded

    def decode_body(self, data: dict[str, Any]) -> CanonicalResponse:
        choices = data.get("choices") or []
        choice = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(choice, dict) or not isinstance(choice.get("message"), dict):
            raise self._unexpected(data)
        message = choice["message"]

        content: list[ContentBlock] = []
        if message.get("content"):
            content.append(TextBlock(text=message["content"]))

        extras = _reasoning_extras(message)
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            content.append(
                ToolCallBlock(
                    id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    name=function.get("name", ""),
                    input=parse_arguments(function.get("arguments")),
                    extras=dict(extras),
                )
            )

        return self._finalize(
            content, _FINISH_REASONS.get(choice.get("finish_reason") or ""), data.get("usage")
        )

    def _apply_stream_event(
        self,
        state: StreamState,
        event: dict[str, Any],
        on_text_delta: TextDeltaCallback | None,
    ) -> None:
        if event.get("usage"):
            state.usage = event["usage"]

        choices = event.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}

        if delta.get("content"):
            state.append_text("text", delta["content"])
            self._text_delta(on_text_delta, delta["content"])

        for call in delta.get("tool_calls") or []:
            index = call.get("index", 0)
            function = call.get("function") or {}
            if index not in state.open_tools:
                state.open_tool(
                    index,
                    PendingToolCall(
                        id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                        name=function.get("name") or "",
                    ),
                )
            pending = state.open_tools[index]
            if function.get("name"):
                pending.name = function["name"]
            if function.get("arguments"):
                pending.arguments += function["arguments"]

        # First reasoning payload wins; some backends repeat it on the full message.
        for source in (delta, choice.get("message") or {}):
            for key, value in _reasoning_extras(source).items():
                state.extras.setdefault(key, value)

        if choice.get("finish_reason"):
            state.stop_reason = _FINISH_REASONS.get(choice["finish_reason"])

    def _finish_stream(self, state: StreamState) -> CanonicalResponse:
        for pending in state.open_tools.values():
            pending.extras.update(state.extras)
        return super()._finish_stream(state)
