"""Error taxonomy for the gateway, decoders, compaction and runner.

Only AuthenticationFailed, ProviderError, NetworkError and unclassified
exceptions leave the agent loop. MalformedStreamEvent and
CompactionFailure are always absorbed where they are raised.
"""

from __future__ import annotations

import json
from typing import Any

_BODY_EXCERPT = 500


class ConduitError(Exception):
    """Base class for all conduit errors."""


class NetworkError(ConduitError):
    """Timeout, abort or transport failure. Not retried by the gateway."""


class AuthenticationFailed(ConduitError):
    """401 that survived exactly one refresh-and-retry."""


AuthError = AuthenticationFailed


class ProviderError(ConduitError):
    """Non-auth HTTP error returned by a provider."""

    def __init__(self, status: int, body: str, message: str | None = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message or describe_error(status, body))


class ProtocolError(ConduitError):
    """Response body did not match the provider's expected shape."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class MalformedStreamEvent(ConduitError):
    """One SSE frame could not be parsed. Logged and skipped, never fatal."""


class CompactionFailure(ConduitError):
    """Summarization failed. Always degrades to emergency compaction."""


class TaskCancelled(ConduitError):
    """The task's cancel signal fired. A terminal outcome, not a failure."""


class TokenRefreshError(ConduitError):
    """OAuth refresh failed. The gateway turns it into AuthenticationFailed."""


def describe_error(status: int, body: str | bytes | None) -> str:
    """Build a readable error string from any provider's error body.

    Fallback chain: error.message (+code, +metadata) -> error.type ->
    any other error object -> top-level message -> raw body excerpt.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    body = body or ""
    message = f"API error: {status}"

    try:
        data: Any = json.loads(body)
    except ValueError:
        return f"{message} - {body[:_BODY_EXCERPT]}"

    if not isinstance(data, dict):
        return f"{message} - {body[:_BODY_EXCERPT]}"

    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        message += f" - {error['message']}"
        if error.get("code"):
            message += f" ({error['code']})"
        if error.get("metadata"):
            message += f" [{json.dumps(error['metadata'])}]"
    elif isinstance(error, dict) and error.get("type"):
        message += f" - {error['type']}: {error.get('message') or 'Unknown error'}"
    elif error:
        message += f" - {json.dumps(error) if not isinstance(error, str) else error}"
    elif data.get("message"):
        message += f" - {data['message']}"
    else:
        message += f" - {body[:_BODY_EXCERPT]}"
    return message
