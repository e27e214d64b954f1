"""Server-sent-event framing shared by every streaming decoder.

Only ``data:`` lines carry payloads; ``event:`` lines, comments and
keepalives are skipped naturally. The ``[DONE]`` sentinel used by
OpenAI-style backends is ignored rather than treated as JSON.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from conduit.api.errors import MalformedStreamEvent

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def parse_sse_payload(payload: str) -> dict[str, Any]:
    """Parse one ``data:`` payload into a JSON object.

    Raises MalformedStreamEvent for anything that is not a JSON object.
    """
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise MalformedStreamEvent(f"unparsable event ({e}): {payload[:200]}") from e
    if not isinstance(data, dict):
        raise MalformedStreamEvent(f"event is not an object: {payload[:200]}")
    return data


async def iter_sse_json(
    lines: AsyncIterator[str],
    provider: str = "",
) -> AsyncIterator[dict[str, Any]]:
    """Yield parsed JSON events from an async iterator of SSE lines.

    A malformed frame is logged and skipped; the stream keeps going.
    """
    async for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload or payload == DONE_SENTINEL:
            continue
        try:
            yield parse_sse_payload(payload)
        except MalformedStreamEvent as e:
            logger.warning("Skipping malformed %s stream event: %s", provider or "SSE", e)


def format_sse_line(event: dict[str, Any]) -> str:
    """Serialize an already-parsed event back into a ``data:`` line."""
    return f"data: {json.dumps(event)}"
