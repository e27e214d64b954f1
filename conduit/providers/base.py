"""Provider adapter contract.

One adapter per backend translates the canonical model to and from the
backend's wire format. Adapters are stateless apart from the frozen
LLMConfig they are built with; per-stream state lives in StreamState.
Retry and auth refresh are the gateway's job, never the adapter's.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from conduit.api.errors import MalformedStreamEvent, ProtocolError
from conduit.api.models import (
    CanonicalResponse,
    ContentBlock,
    Message,
    StopReason,
    TextBlock,
    ToolCallBlock,
    ToolDefinition,
    usage_from,
)
from conduit.config import LLMConfig
from conduit.providers.sse import iter_sse_json

logger = logging.getLogger(__name__)

TextDeltaCallback = Callable[[str], None]


@dataclass(frozen=True)
class AuthContext:
    """Credentials resolved by the gateway for one request."""

    api_key: str = ""
    bearer_token: str | None = None
    account_id: str | None = None  # ChatGPT account for the Codex backend


@dataclass
class PendingToolCall:
    """A tool call whose argument string is still arriving."""

    id: str
    name: str
    arguments: str = ""
    extras: dict[str, Any] = field(default_factory=dict)

    def to_block(self) -> ToolCallBlock:
        return ToolCallBlock(
            id=self.id,
            name=self.name,
            input=parse_arguments(self.arguments),
            extras=self.extras,
        )


@dataclass
class StreamState:
    """Accumulator for one streamed response.

    Text and tool calls are keyed by whatever the backend uses to address
    an open block (content index, item id, tool index). A block moves into
    ``content`` only when it is closed.
    """

    content: list[ContentBlock] = field(default_factory=list)
    open_text: dict[Any, list[str]] = field(default_factory=dict)
    open_tools: dict[Any, PendingToolCall] = field(default_factory=dict)
    stop_reason: StopReason | None = None
    usage: dict[str, Any] | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def append_text(self, key: Any, text: str) -> None:
        self.open_text.setdefault(key, []).append(text)

    def close_text(self, key: Any) -> None:
        parts = self.open_text.pop(key, None)
        if parts is not None:
            self.content.append(TextBlock(text="".join(parts)))

    def open_tool(self, key: Any, call: PendingToolCall) -> None:
        self.open_tools[key] = call

    def close_tool(self, key: Any) -> None:
        pending = self.open_tools.pop(key, None)
        if pending is not None:
            self.content.append(pending.to_block())

    def close_all(self) -> None:
        """Close every open block: text first, then tool calls in key order."""
        for key in list(self.open_text):
            self.close_text(key)
        for key in list(self.open_tools):
            self.close_tool(key)


def parse_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode a tool-call argument payload into a dict.

    Accepts an inline object or a JSON string. Anything unparsable
    becomes an empty dict so a truncated stream never aborts the turn.
    """
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        logger.warning("Unparsable tool arguments, using {}: %s", arguments[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def system_text(system_prompt: str | list[dict[str, Any]]) -> str:
    """Flatten a system prompt given as text or as a list of text blocks."""
    if isinstance(system_prompt, list):
        return "\n\n".join(p.get("text", "") for p in system_prompt)
    return system_prompt


class ProviderAdapter(ABC):
    """Translate canonical messages to one backend and back."""

    name: ClassVar[str]
    url_markers: ClassVar[tuple[str, ...]] = ()
    supports_claude_only_tools: ClassVar[bool] = False
    always_streams: ClassVar[bool] = False

    def __init__(self, config: LLMConfig) -> None:
        self.config = config

    @classmethod
    def matches(cls, url: str) -> bool:
        return any(marker in url for marker in cls.url_markers)

    # ------------------------------------------------------------------
    # Request side
    # ------------------------------------------------------------------

    @abstractmethod
    def headers(self, auth: AuthContext) -> dict[str, str]:
        """Auth scheme plus any version/beta headers."""

    def build_url(self, streaming: bool, auth: AuthContext) -> str:
        return self.config.api_base_url

    @abstractmethod
    def build_request(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        streaming: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Build the provider-specific JSON body."""

    def offered_tools(self, tools: list[ToolDefinition] | None) -> list[ToolDefinition]:
        """Drop tools this backend cannot use."""
        if not tools:
            return []
        if self.supports_claude_only_tools:
            return list(tools)
        return [t for t in tools if not t.claude_only]

    # ------------------------------------------------------------------
    # Response side
    # ------------------------------------------------------------------

    @abstractmethod
    def decode_body(self, data: dict[str, Any]) -> CanonicalResponse:
        """Normalize a complete (non-streamed) response body."""

    async def decode_stream(
        self,
        lines: AsyncIterator[str],
        on_text_delta: TextDeltaCallback | None = None,
    ) -> CanonicalResponse:
        """Fold a stream of SSE lines into one CanonicalResponse."""
        state = StreamState()
        async for event in iter_sse_json(lines, self.name):
            try:
                self._apply_stream_event(state, event, on_text_delta)
            except (MalformedStreamEvent, KeyError, TypeError, AttributeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed %s stream event (%s): %s",
                    self.name,
                    e,
                    str(event)[:200],
                )
        return self._finish_stream(state)

    @abstractmethod
    def _apply_stream_event(
        self,
        state: StreamState,
        event: dict[str, Any],
        on_text_delta: TextDeltaCallback | None,
    ) -> None:
        """Apply one parsed event to the stream state."""

    def _finish_stream(self, state: StreamState) -> CanonicalResponse:
        state.close_all()
        return self._finalize(state.content, state.stop_reason, state.usage)

    def _finalize(
        self,
        content: list[ContentBlock],
        stop_reason: StopReason | None,
        usage: dict[str, Any] | None,
    ) -> CanonicalResponse:
        """Apply the shared normalization rules.

        Empty content becomes one empty text block. A missing stop reason
        is inferred from whether any tool call was produced.
        """
        if not content:
            content = [TextBlock(text="")]
        if stop_reason is None:
            has_calls = any(isinstance(b, ToolCallBlock) for b in content)
            stop_reason = StopReason.TOOL_USE if has_calls else StopReason.END_TURN
        return CanonicalResponse(
            content=content, stop_reason=stop_reason, usage=usage_from(usage)
        )

    def _unexpected(self, data: Any) -> ProtocolError:
        body = json.dumps(data)[:500] if not isinstance(data, str) else data[:500]
        return ProtocolError(
            f"Unexpected {self.name} response format: {body[:200]}", body=body
        )

    def _text_delta(
        self, on_text_delta: TextDeltaCallback | None, text: str
    ) -> None:
        if on_text_delta and text:
            on_text_delta(text)
