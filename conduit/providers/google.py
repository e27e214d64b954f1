"""Google Gemini adapter (generateContent / streamGenerateContent).

Thinking models attach a ``thoughtSignature`` to function-call parts; it
must be echoed back on the call and on its functionResponse, so it is
carried in the tool call's extras.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

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
)
from conduit.providers.schema import sanitize_schema

_SIGNATURE = "thoughtSignature"


def _stop_reason(finish_reason: str | None) -> StopReason | None:
    # STOP, SAFETY and RECITATION fall through to inference: tool_use when
    # function calls were produced, end_turn otherwise.
    if finish_reason == "MAX_TOKENS":
        return StopReason.MAX_TOKENS
    return None


def _inline_data(image: ImageBlock) -> dict[str, Any]:
    return {"inlineData": {"mimeType": image.mime_type, "data": image.data}}


def _call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class GoogleAdapter(ProviderAdapter):
    name = "google"
    url_markers = ("generativelanguage.googleapis.com",)

    def headers(self, auth: AuthContext) -> dict[str, str]:
        # The key travels in the URL query, not a header
        return {"content-type": "application/json"}

    def build_url(self, streaming: bool, auth: AuthContext) -> str:
        base = self.config.api_base_url.rstrip("/")
        if streaming:
            return f"{base}/{self.config.model}:streamGenerateContent?key={auth.api_key}&alt=sse"
        return f"{base}/{self.config.model}:generateContent?key={auth.api_key}"

    def build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        streaming: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": self._encode_contents(messages),
            "generationConfig": {"maxOutputTokens": max_tokens or self.config.max_tokens},
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        offered = self.offered_tools(tools)
        if offered:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": t.name,
                            "description": t.description,
                            "parameters": sanitize_schema(t.input_schema),
                        }
                        for t in offered
                    ]
                }
            ]
            payload["tool_config"] = {"function_calling_config": {"mode": "AUTO"}}
        return payload

    def _encode_contents(self, messages: list[Message]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        # functionResponse needs the function name; tool results only carry the id
        calls: dict[str, ToolCallBlock] = {}

        for msg in messages:
            role = "model" if msg.role == Role.ASSISTANT else "user"
            parts: list[dict[str, Any]] = []
            for block in msg.content:
                if isinstance(block, TextBlock):
                    parts.append({"text": block.text})
                elif isinstance(block, ImageBlock):
                    parts.append(_inline_data(block))
                elif isinstance(block, ToolCallBlock):
                    calls[block.id] = block
                    part: dict[str, Any] = {
                        "functionCall": {"name": block.name, "args": block.input}
                    }
                    if block.extras.get(_SIGNATURE):
                        part[_SIGNATURE] = block.extras[_SIGNATURE]
                    parts.append(part)
                elif isinstance(block, ToolResultBlock):
                    call = calls.get(block.tool_call_id)
                    part = {
                        "functionResponse": {
                            "name": call.name if call else "unknown",
                            "response": {"result": block.text},
                        }
                    }
                    if call and call.extras.get(_SIGNATURE):
                        part[_SIGNATURE] = call.extras[_SIGNATURE]
                    parts.append(part)
                    parts.extend(
                        _inline_data(p) for p in block.content if isinstance(p, ImageBlock)
                    )
            if parts:
                contents.append({"role": role, "parts": parts})
        return contents

    def decode_body(self, data: dict[str, Any]) -> CanonicalResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            raise self._unexpected(data)
        candidate = candidates[0]

        texts: list[str] = []
        calls: list[ContentBlock] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text") and not part.get("thought"):
                texts.append(part["text"])
            elif part.get("functionCall"):
                call = part["functionCall"]
                extras = {_SIGNATURE: part[_SIGNATURE]} if part.get(_SIGNATURE) else {}
                calls.append(
                    ToolCallBlock(
                        id=call.get("id") or _call_id(),
                        name=call["name"],
                        input=call.get("args") or {},
                        extras=extras,
                    )
                )

        content: list[ContentBlock] = [TextBlock(text="".join(texts))] if texts else []
        content.extend(calls)
        return self._finalize(
            content, _stop_reason(candidate.get("finishReason")), data.get("usageMetadata")
        )

    def _apply_stream_event(
        self,
        state: StreamState,
        event: dict[str, Any],
        on_text_delta: TextDeltaCallback | None,
    ) -> None:
        if event.get("usageMetadata"):
            state.usage = event["usageMetadata"]

        candidates = event.get("candidates") or []
        if not candidates:
            return
        candidate = candidates[0]

        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text") and not part.get("thought"):
                state.append_text("text", part["text"])
                self._text_delta(on_text_delta, part["text"])
            elif part.get("functionCall"):
                # Gemini sends each function call whole, in a single part
                call = part["functionCall"]
                extras = {_SIGNATURE: part[_SIGNATURE]} if part.get(_SIGNATURE) else {}
                state.open_tool(
                    len(state.open_tools),
                    PendingToolCall(
                        id=call.get("id") or _call_id(),
                        name=call["name"],
                        arguments=json.dumps(call.get("args") or {}),
                        extras=extras,
                    ),
                )

        if candidate.get("finishReason"):
            state.stop_reason = _stop_reason(candidate["finishReason"])
