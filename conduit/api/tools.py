"""Tool catalog, executor contract and tool-result construction.

Provides:
- ToolCatalog: registers tool definitions with optional handlers,
  filters them by page URL, and doubles as a ToolExecutor
- ToolExecutor: the contract the agent loop dispatches through
- build_tool_result: turns any executor return value into a tool_result
  block (binary payloads become caption + image, objects become JSON,
  recognized error categories get guidance appended)
"""

from __future__ import annotations

import base64
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlparse

from conduit.api.models import ImageBlock, TextBlock, ToolCallBlock, ToolDefinition, ToolResultBlock

logger = logging.getLogger(__name__)

ERROR_PREFIX = "Error:"


@dataclass
class ToolOutput:
    """Binary tool payload, e.g. a screenshot."""

    data: bytes
    mime_type: str = "image/png"
    caption: str | None = None
    image_id: str | None = None

    @property
    def text(self) -> str:
        if self.caption:
            return self.caption
        if self.image_id:
            return f"Screenshot captured (ID: {self.image_id})"
        return "Screenshot captured"


ToolResultValue = str | dict[str, Any] | list[Any] | ToolOutput | None


class ToolExecutor(Protocol):
    """Runs one tool call. Failures come back as strings starting with "Error:"."""

    async def execute(self, name: str, tool_input: dict[str, Any]) -> ToolResultValue: ...


# ---------------------------------------------------------------------------
# Site filtering
# ---------------------------------------------------------------------------


def _host(page_url: str | None) -> str:
    if not page_url:
        return ""
    return (urlparse(page_url).hostname or "").lower()


def matches_domain(page_url: str | None, domains: list[str]) -> bool:
    """True if the page host is one of ``domains`` or a subdomain of one."""
    host = _host(page_url)
    if not host:
        return False
    for domain in domains:
        domain = domain.lower().lstrip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False


def tools_for_url(
    tools: list[ToolDefinition] | None, page_url: str | None
) -> list[ToolDefinition]:
    """Site-specific tools are offered only on their own sites."""
    if not tools:
        return []
    return [t for t in tools if t.domains is None or matches_domain(page_url, t.domains)]


# ---------------------------------------------------------------------------
# ToolCatalog
# ---------------------------------------------------------------------------


class ToolCatalog:
    """Registers tool definitions and, optionally, async handlers for them.

    Handlers are called with the model's arguments unpacked as kwargs.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, Callable[..., Awaitable[ToolResultValue]]] = {}

    def register(
        self,
        definition: ToolDefinition,
        handler: Callable[..., Awaitable[ToolResultValue]] | None = None,
    ) -> None:
        self._definitions[definition.name] = definition
        if handler is not None:
            self._handlers[definition.name] = handler

    def definitions(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    def available_tools(self, page_url: str | None) -> list[ToolDefinition]:
        return tools_for_url(self.definitions(), page_url)

    async def execute(self, name: str, tool_input: dict[str, Any]) -> ToolResultValue:
        handler = self._handlers.get(name)
        if handler is None:
            return f"{ERROR_PREFIX} Unknown tool: {name}"
        return await handler(**tool_input)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

_PERMISSION_DENIED = re.compile(
    r"permission denied|not permitted|not allowed|access denied|forbidden", re.IGNORECASE
)
_RESTRICTED_PAGE = re.compile(
    r"cannot access|restricted page|chrome://|chrome-extension://|about:|edge://"
    r"|blocks extensions",
    re.IGNORECASE,
)

PERMISSION_GUIDANCE = (
    "This action was blocked by a permission setting. Do not retry it; "
    "choose a different approach or ask the user to grant access."
)
RESTRICTED_PAGE_GUIDANCE = (
    "The browser blocks automation on this page (system or extension pages). "
    "Navigate to a regular website before using page tools again."
)


def enrich_error(text: str) -> str:
    """Append guidance for error categories the model cannot fix by retrying."""
    if _RESTRICTED_PAGE.search(text):
        return f"{text}\n\n{RESTRICTED_PAGE_GUIDANCE}"
    if _PERMISSION_DENIED.search(text):
        return f"{text}\n\n{PERMISSION_GUIDANCE}"
    return text


def build_tool_result(tool_call_id: str, result: ToolResultValue) -> ToolResultBlock:
    if isinstance(result, ToolOutput):
        return ToolResultBlock(
            tool_call_id=tool_call_id,
            content=[
                TextBlock(text=result.text),
                ImageBlock(
                    mime_type=result.mime_type,
                    data=base64.b64encode(result.data).decode("ascii"),
                ),
            ],
        )
    if isinstance(result, str):
        if result.startswith(ERROR_PREFIX):
            return ToolResultBlock(
                tool_call_id=tool_call_id,
                content=[TextBlock(text=enrich_error(result))],
                is_error=True,
            )
        return ToolResultBlock(tool_call_id=tool_call_id, content=[TextBlock(text=result)])
    return ToolResultBlock(
        tool_call_id=tool_call_id, content=[TextBlock(text=json.dumps(result, default=str))]
    )


def summarize_result(block: ToolResultBlock) -> str:
    """Short human-readable summary for progress updates."""
    if block.has_images:
        return block.text or "Screenshot captured"
    return block.text[:200]


async def dispatch_tool(executor: ToolExecutor, call: ToolCallBlock) -> ToolResultBlock:
    """Execute one tool call; executor exceptions become model-visible errors."""
    try:
        result = await executor.execute(call.name, call.input)
    except Exception as e:
        logger.exception("Tool dispatch error for %s", call.name)
        result = f"{ERROR_PREFIX} {e}"
    return build_tool_result(call.id, result)
