"""Canonical wire model shared by every layer.

Adapters translate these types to and from provider formats; the
runner, compactor and gateway never see provider JSON.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class StopReason(StrEnum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    mime_type: str = "image/png"
    data: str  # base64, no data: prefix


class ToolCallBlock(BaseModel):
    """A model-issued tool invocation.

    ``extras`` round-trips provider-specific fields (thought signatures,
    reasoning payloads) that must be echoed back on the next request.
    """

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    extras: dict[str, Any] = Field(default_factory=dict)


ResultPart = Annotated[TextBlock | ImageBlock, Field(discriminator="type")]


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    content: list[ResultPart] = Field(default_factory=list)
    is_error: bool = False

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.content if isinstance(p, TextBlock))

    @property
    def has_images(self) -> bool:
        return any(isinstance(p, ImageBlock) for p in self.content)


ContentBlock = Annotated[
    TextBlock | ImageBlock | ToolCallBlock | ToolResultBlock,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One conversation turn."""

    role: Role
    content: list[ContentBlock] = Field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=[TextBlock(text=text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role=Role.ASSISTANT, content=[TextBlock(text=text)])

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def has_images(self) -> bool:
        """True if any image is present, top-level or inside a tool result."""
        for block in self.content:
            if isinstance(block, ImageBlock):
                return True
            if isinstance(block, ToolResultBlock) and block.has_images:
                return True
        return False


class ToolDefinition(BaseModel):
    """A tool offered to the model.

    ``domains`` and ``claude_only`` are local routing hints and are never
    serialized into a provider request.
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    domains: list[str] | None = None
    claude_only: bool = False


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    raw: dict[str, Any] | None = None


class CanonicalResponse(BaseModel):
    """Normalized model response, transient per gateway call."""

    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: StopReason = StopReason.END_TURN
    usage: Usage | None = None

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


# ---------------------------------------------------------------------------
# Invariant helpers
# ---------------------------------------------------------------------------


def find_orphan_tool_results(messages: list[Message]) -> list[str]:
    """Return ids of tool_result blocks with no earlier matching tool_call."""
    seen: set[str] = set()
    orphans: list[str] = []
    for msg in messages:
        for block in msg.content:
            if isinstance(block, ToolCallBlock):
                seen.add(block.id)
            elif isinstance(block, ToolResultBlock) and block.tool_call_id not in seen:
                orphans.append(block.tool_call_id)
    return orphans


def usage_from(raw: dict[str, Any] | None) -> Usage | None:
    """Build Usage from any provider's usage dict."""
    if not raw:
        return None
    input_tokens = (
        raw.get("input_tokens")
        or raw.get("prompt_tokens")
        or raw.get("promptTokenCount")
        or 0
    )
    output_tokens = (
        raw.get("output_tokens")
        or raw.get("completion_tokens")
        or raw.get("candidatesTokenCount")
        or 0
    )
    cache_read = (
        raw.get("cache_read_input_tokens")
        or (raw.get("prompt_tokens_details") or {}).get("cached_tokens")
        or (raw.get("input_tokens_details") or {}).get("cached_tokens")
        or raw.get("cachedContentTokenCount")
        or 0
    )
    return Usage(
        input_tokens=int(input_tokens),
        output_tokens=int(output_tokens),
        cache_creation_tokens=int(raw.get("cache_creation_input_tokens") or 0),
        cache_read_tokens=int(cache_read),
        raw=raw,
    )
