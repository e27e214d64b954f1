"""Credential resolution and OAuth token refresh.

Secrets live behind the SecretStore protocol; the bundled
MemorySecretStore keeps them in process. CredentialManager turns the
configured auth method into an AuthContext per request and performs the
single refresh the gateway asks for on a 401.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol

import httpx

from conduit.api.errors import TokenRefreshError
from conduit.config import LLMConfig
from conduit.providers.base import AuthContext

logger = logging.getLogger(__name__)

# Claude CLI public OAuth client
DEFAULT_OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"

# Refresh proactively when the token expires within this window
_EXPIRY_BUFFER_SECONDS = 5 * 60

OAUTH_ACCESS_TOKEN = "oauth_access_token"
OAUTH_REFRESH_TOKEN = "oauth_refresh_token"
OAUTH_EXPIRES_AT = "oauth_expires_at"
CODEX_ACCESS_TOKEN = "codex_access_token"
CODEX_ACCOUNT_ID = "codex_account_id"


class SecretStore(Protocol):
    """Async key/value storage for credentials."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemorySecretStore:
    """In-process SecretStore. Contents are lost when the process exits."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)


class CredentialManager:
    """Resolve per-request credentials and refresh OAuth tokens."""

    def __init__(
        self,
        config: LLMConfig,
        store: SecretStore,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._http = http

    @property
    def can_refresh(self) -> bool:
        return self._config.auth_method != "api_key"

    async def auth_context(self) -> AuthContext:
        """Credentials for the next request.

        OAuth methods fall back to the static API key (with a warning)
        when the store holds no usable token.
        """
        method = self._config.auth_method
        if method == "oauth":
            token = await self.access_token()
            if token:
                return AuthContext(api_key="", bearer_token=token)
            logger.warning("OAuth configured but no token available, falling back to API key")
        elif method == "codex_oauth":
            token = await self._store.get(CODEX_ACCESS_TOKEN)
            if token:
                return AuthContext(
                    api_key="",
                    bearer_token=token,
                    account_id=await self._store.get(CODEX_ACCOUNT_ID),
                )
            logger.warning("Codex OAuth configured but no token available, falling back to API key")
        return AuthContext(api_key=self._config.api_key)

    async def access_token(self) -> str | None:
        """Stored OAuth access token, refreshed first if it is about to expire."""
        token = await self._store.get(OAUTH_ACCESS_TOKEN)
        if not token:
            return None

        expires_at = await self._store.get(OAUTH_EXPIRES_AT)
        if not expires_at or time.time() + _EXPIRY_BUFFER_SECONDS < float(expires_at):
            return token

        if not await self._store.get(OAUTH_REFRESH_TOKEN):
            return token
        try:
            return await self.refresh()
        except TokenRefreshError as e:
            logger.error("Failed to refresh expiring OAuth token: %s", e)
            await self.logout()
            return None

    async def refresh(self) -> str:
        """Exchange the stored refresh token for a new access token.

        Raises TokenRefreshError with a human-readable reason.
        """
        if self._config.auth_method == "codex_oauth":
            raise TokenRefreshError(
                "Codex tokens are managed by the Codex CLI. Run: codex login"
            )

        refresh_token = await self._store.get(OAUTH_REFRESH_TOKEN)
        if not refresh_token:
            raise TokenRefreshError("no refresh token stored")

        body = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._config.oauth_client_id or DEFAULT_OAUTH_CLIENT_ID,
        }
        logger.info("Refreshing OAuth access token")

        try:
            if self._http is not None:
                response = await self._http.post(self._config.oauth_token_url, json=body)
            else:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(30.0, connect=self._config.connect_timeout)
                ) as client:
                    response = await client.post(self._config.oauth_token_url, json=body)
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Token refresh request failed: {e}") from e

        if response.status_code != 200:
            raise TokenRefreshError(
                f"Token refresh failed: {response.status_code} {response.text[:500]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TokenRefreshError(f"Token refresh returned invalid JSON: {e}") from e
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise TokenRefreshError("Token refresh returned no access token")

        await self._store.set(OAUTH_ACCESS_TOKEN, access_token)
        # Some servers do not rotate the refresh token
        await self._store.set(OAUTH_REFRESH_TOKEN, data.get("refresh_token") or refresh_token)
        if data.get("expires_in"):
            await self._store.set(
                OAUTH_EXPIRES_AT, str(time.time() + float(data["expires_in"]))
            )
        logger.info("OAuth token refreshed (expires in %ss)", data.get("expires_in", "?"))
        return access_token

    async def store_tokens(
        self,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: float | None = None,
    ) -> None:
        """Persist tokens pushed by an external refresher (the native host)."""
        await self._store.set(OAUTH_ACCESS_TOKEN, access_token)
        if refresh_token:
            await self._store.set(OAUTH_REFRESH_TOKEN, refresh_token)
        if expires_at:
            await self._store.set(OAUTH_EXPIRES_AT, str(expires_at))

    async def logout(self) -> None:
        for key in (OAUTH_ACCESS_TOKEN, OAUTH_REFRESH_TOKEN, OAUTH_EXPIRES_AT):
            await self._store.remove(key)
