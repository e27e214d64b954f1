"""Single-refresh retry policy shared by every gateway call path.

A 401 triggers exactly one credential refresh and exactly one retry.
Everything else (429, 5xx, timeouts) is surfaced to the caller as-is.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from conduit.api.errors import AuthenticationFailed, ConduitError, TokenRefreshError, describe_error
from conduit.auth import CredentialManager
from conduit.providers.base import AuthContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Unauthorized(ConduitError):
    """A 401 from the provider. Internal signal consumed by with_auth_retry."""

    def __init__(self, body: str) -> None:
        self.body = body
        super().__init__(describe_error(401, body))


async def with_auth_retry(
    attempt: Callable[[AuthContext], Awaitable[T]],
    credentials: CredentialManager,
) -> T:
    """Run ``attempt`` with fresh credentials, refreshing once on a 401.

    Raises AuthenticationFailed when no refresh is possible, when the
    refresh fails, or when the retried call is rejected again.
    """
    try:
        return await attempt(await credentials.auth_context())
    except Unauthorized as first:
        if not credentials.can_refresh:
            raise AuthenticationFailed(f"Authentication failed: {first}") from first
        logger.info("Got 401, attempting token refresh...")
        try:
            await credentials.refresh()
        except TokenRefreshError as e:
            raise AuthenticationFailed(
                f"Authentication failed: OAuth token expired and refresh failed ({e}). "
                "Please re-authenticate."
            ) from e

    try:
        result = await attempt(await credentials.auth_context())
    except Unauthorized as second:
        raise AuthenticationFailed(
            "Authentication failed: request rejected again after token refresh "
            f"({second}). Please re-authenticate."
        ) from second
    logger.info("Token refresh successful, retried request")
    return result
