"""ChatGPT Codex adapter (OpenAI Responses API over the ChatGPT backend).

Authenticates with the Codex CLI's OAuth bearer plus the ChatGPT
account id. The backend only serves streams and refuses stored
responses, so every request is ``stream: true, store: false``.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from conduit.api.errors import ProviderError
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

CODEX_API_URL = "https://chatgpt.com/backend-api/codex/responses"
DEFAULT_MODEL = "gpt-5.1-codex-max"

_COMPLETED_EVENTS = ("response.completed", "response.incomplete", "response.done")


def _input_image(image: ImageBlock) -> dict[str, Any]:
    return {"type": "input_image", "image_url": f"data:{image.mime_type};base64,{image.data}"}


def _stop_reason(has_calls: bool, status: str | None) -> StopReason:
    if has_calls:
        return StopReason.TOOL_USE
    if status == "incomplete":
        return StopReason.MAX_TOKENS
    return StopReason.END_TURN


class CodexAdapter(ProviderAdapter):
    name = "codex"
    url_markers = ("chatgpt.com", "codex")
    always_streams = True

    def headers(self, auth: AuthContext) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "accept": "text/event-stream",
            "openai-beta": "responses=experimental",
            "originator": "codex_cli_rs",
            "session_id": str(uuid.uuid4()),
        }
        token = auth.bearer_token or auth.api_key
        if token:
            headers["authorization"] = f"Bearer {token}"
        if auth.account_id:
            headers["chatgpt-account-id"] = auth.account_id
        return headers

    def build_url(self, streaming: bool, auth: AuthContext) -> str:
        if self.config.api_base_url.rstrip("/").endswith("/responses"):
            return self.config.api_base_url
        return CODEX_API_URL

    def build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        streaming: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model or DEFAULT_MODEL,
            "instructions": system_prompt,
            "input": self._encode_input(messages),
            "stream": True,
            "store": False,
        }
        offered = self.offered_tools(tools)
        if offered:
            payload["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.input_schema,
                }
                for t in offered
            ]
        return payload

    def _encode_input(self, messages: list[Message]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == Role.ASSISTANT:
                if msg.text.strip():
                    items.append(
                        {
                            "type": "message",
                            "role": "assistant",
                            "content": [{"type": "output_text", "text": msg.text}],
                        }
                    )
                for call in msg.tool_calls:
                    items.append(
                        {
                            "type": "function_call",
                            "call_id": call.id,
                            "name": call.name,
                            "arguments": json.dumps(call.input),
                        }
                    )
                continue

            parts: list[dict[str, Any]] = []
            for block in msg.content:
                if isinstance(block, ToolResultBlock):
                    items.append(
                        {
                            "type": "function_call_output",
                            "call_id": block.tool_call_id,
                            "output": block.text,
                        }
                    )
                    parts.extend(
                        _input_image(p) for p in block.content if isinstance(p, ImageBlock)
                    )
                elif isinstance(block, TextBlock):
                    parts.append({"type": "input_text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    parts.append(_input_image(block))
            if parts:
                items.append({"type": "message", "role": "user", "content": parts})
        return items

    def decode_body(self, data: dict[str, Any]) -> CanonicalResponse:
        content: list[ContentBlock] = []

        if isinstance(data.get("output"), list):
            for item in data["output"]:
                if item.get("type") == "message" and item.get("role") == "assistant":
                    for part in item.get("content") or []:
                        if part.get("type") == "output_text" and part.get("text"):
                            content.append(TextBlock(text=part["text"]))
                elif item.get("type") == "function_call":
                    content.append(
                        ToolCallBlock(
                            id=item.get("call_id") or item.get("id", ""),
                            name=item["name"],
                            input=parse_arguments(item.get("arguments")),
                        )
                    )
            has_calls = any(isinstance(b, ToolCallBlock) for b in content)
            stop = _stop_reason(has_calls, data.get("status"))
        elif (data.get("choices") or [{}])[0].get("message"):
            # Legacy chat-completions shape
            choice = data["choices"][0]
            message = choice["message"]
            if message.get("content"):
                content.append(TextBlock(text=message["content"]))
            for call in message.get("tool_calls") or []:
                content.append(
                    ToolCallBlock(
                        id=call["id"],
                        name=call["function"]["name"],
                        input=parse_arguments(call["function"].get("arguments")),
                    )
                )
            if choice.get("finish_reason") == "length" and not message.get("tool_calls"):
                stop = StopReason.MAX_TOKENS
            else:
                stop = _stop_reason(bool(message.get("tool_calls")), None)
        else:
            raise self._unexpected(data)

        return self._finalize(content, stop, data.get("usage"))

    def _apply_stream_event(
        self,
        state: StreamState,
        event: dict[str, Any],
        on_text_delta: TextDeltaCallback | None,
    ) -> None:
        event_type = event.get("type", "")
        closed: set[str] = state.extras.setdefault("closed_items", set())

        if event_type == "response.output_item.added":
            item = event["item"]
            if item.get("type") == "function_call":
                state.open_tool(
                    item["id"],
                    PendingToolCall(
                        id=item.get("call_id") or item["id"],
                        name=item.get("name") or "",
                        arguments=item.get("arguments") or "",
                    ),
                )
            elif item.get("type") == "message":
                state.open_text.setdefault(item["id"], [])

        elif event_type == "response.output_text.delta":
            text = event.get("delta") or ""
            state.append_text(event.get("item_id", "text"), text)
            self._text_delta(on_text_delta, text)

        elif event_type == "response.function_call_arguments.delta":
            state.open_tools[event["item_id"]].arguments += event.get("delta") or ""

        elif event_type == "response.function_call_arguments.done":
            state.open_tools[event["item_id"]].arguments = event.get("arguments") or ""

        elif event_type == "response.output_item.done":
            item = event["item"]
            if item.get("type") == "function_call":
                pending = state.open_tools.get(item["id"])
                if pending is None:
                    pending = PendingToolCall(id=item.get("call_id") or item["id"], name="")
                    state.open_tool(item["id"], pending)
                pending.name = item.get("name") or pending.name
                pending.arguments = item.get("arguments") or pending.arguments
                state.close_tool(item["id"])
            elif item.get("type") == "message":
                state.close_text(item["id"])
            closed.add(item.get("id", ""))

        elif event_type in _COMPLETED_EVENTS:
            response = event.get("response") or {}
            if response.get("usage"):
                state.usage = response["usage"]
            state.extras["status"] = response.get("status")
            for item in response.get("output") or []:
                if item.get("type") == "function_call" and item.get("id") not in closed:
                    state.open_tools.pop(item.get("id"), None)
                    state.content.append(
                        ToolCallBlock(
                            id=item.get("call_id") or item["id"],
                            name=item["name"],
                            input=parse_arguments(item.get("arguments")),
                        )
                    )
                    closed.add(item["id"])

        elif event_type in ("error", "response.failed"):
            error = event.get("error") or (event.get("response") or {}).get("error") or {}
            raise ProviderError(
                200,
                json.dumps(event),
                f"Stream error - {error.get('code', 'unknown')}: {error.get('message', '')}",
            )

        if event.get("usage"):
            state.usage = event["usage"]

    def _finish_stream(self, state: StreamState) -> CanonicalResponse:
        state.close_all()
        # Items without a name cannot be dispatched
        content = [
            b for b in state.content if not (isinstance(b, ToolCallBlock) and not b.name)
        ]
        has_calls = any(isinstance(b, ToolCallBlock) for b in content)
        return self._finalize(
            content, _stop_reason(has_calls, state.extras.get("status")), state.usage
        )
