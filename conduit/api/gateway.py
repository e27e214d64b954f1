"""Gateway -- one canonical call surface over every provider and channel.

Resolves the adapter once per task snapshot, resolves credentials per
request, bounds every call by a fixed timeout OR'd with the task's
cancel signal, and applies the single-refresh 401 policy.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable
from typing import Any, TypeVar

import httpx

from conduit.api.channel import Channel, ChannelRequest, HttpChannel, NativeHostChannel
from conduit.api.errors import NetworkError, ProtocolError, ProviderError, TaskCancelled
from conduit.api.models import CanonicalResponse, Message, ToolDefinition
from conduit.api.retry import Unauthorized, with_auth_retry
from conduit.api.tools import tools_for_url
from conduit.auth import CredentialManager, MemorySecretStore, SecretStore
from conduit.config import LLMConfig
from conduit.providers import AuthContext, ProviderAdapter, TextDeltaCallback, select_provider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Gateway:
    """Dispatch canonical requests to the configured provider."""

    def __init__(
        self,
        config: LLMConfig,
        credentials: CredentialManager,
        channel: Channel,
        adapter: ProviderAdapter | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._channel = channel
        self.adapter = adapter or select_provider(config.api_base_url, config, config.provider)
        self.call_count = 0

    @classmethod
    def create(
        cls,
        config: LLMConfig,
        store: SecretStore | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> Gateway:
        """Wire credentials and the configured channel for one task."""
        credentials = CredentialManager(config, store or MemorySecretStore(), http)
        channel: Channel
        if config.use_native_host:

            async def on_tokens_refreshed(creds: dict[str, Any]) -> None:
                expires_at = creds.get("expiresAt")
                await credentials.store_tokens(
                    creds.get("accessToken", ""),
                    creds.get("refreshToken"),
                    # native host reports epoch milliseconds
                    float(expires_at) / 1000 if expires_at else None,
                )

            channel = NativeHostChannel(config.native_host_command, on_tokens_refreshed)
        else:
            channel = HttpChannel(config, http)
        return cls(config, credentials, channel)

    async def aclose(self) -> None:
        await self._channel.aclose()

    # ------------------------------------------------------------------
    # Call paths
    # ------------------------------------------------------------------

    async def call(
        self,
        messages: list[Message],
        *,
        tools: list[ToolDefinition] | None = None,
        on_text_delta: TextDeltaCallback | None = None,
        page_url: str | None = None,
        cancel: asyncio.Event | None = None,
        max_tokens: int | None = None,
        system_prompt: str = "",
    ) -> CanonicalResponse:
        """Tool-enabled call bounded by ``request_timeout``."""
        return await self._dispatch(
            messages,
            system_prompt=system_prompt,
            tools=tools_for_url(tools, page_url),
            on_text_delta=on_text_delta,
            max_tokens=max_tokens,
            timeout=self._config.request_timeout,
            cancel=cancel,
        )

    async def simple(
        self,
        messages: list[Message],
        max_tokens: int | None = None,
        *,
        system_prompt: str = "",
        cancel: asyncio.Event | None = None,
    ) -> CanonicalResponse:
        """Non-tool, non-streaming call bounded by ``simple_timeout``."""
        return await self._dispatch(
            messages,
            system_prompt=system_prompt,
            tools=None,
            on_text_delta=None,
            max_tokens=max_tokens,
            timeout=self._config.simple_timeout,
            cancel=cancel,
        )

    async def _dispatch(
        self,
        messages: list[Message],
        *,
        system_prompt: str,
        tools: list[ToolDefinition] | None,
        on_text_delta: TextDeltaCallback | None,
        max_tokens: int | None,
        timeout: float,
        cancel: asyncio.Event | None,
    ) -> CanonicalResponse:
        adapter = self.adapter
        streaming = on_text_delta is not None or adapter.always_streams
        body = adapter.build_request(messages, system_prompt, tools, streaming, max_tokens)

        async def attempt(auth: AuthContext) -> CanonicalResponse:
            request = ChannelRequest(
                url=adapter.build_url(streaming, auth),
                headers=adapter.headers(auth),
                body=body,
                stream=streaming,
            )
            async with self._channel.open(request) as response:
                if response.status_code == 401:
                    raise Unauthorized(_decode(await response.aread()))
                if not 200 <= response.status_code < 300:
                    raise ProviderError(response.status_code, _decode(await response.aread()))
                if streaming:
                    return await adapter.decode_stream(response.aiter_lines(), on_text_delta)
                raw = _decode(await response.aread())
                try:
                    data = json.loads(raw)
                except ValueError as e:
                    raise ProtocolError(
                        f"Unparsable {adapter.name} response: {e}",
                        status=response.status_code,
                        body=raw[:500],
                    ) from e
                if not isinstance(data, dict):
                    raise ProtocolError(
                        f"Unexpected {adapter.name} response format",
                        status=response.status_code,
                        body=raw[:500],
                    )
                return adapter.decode_body(data)

        self.call_count += 1
        call_number = self.call_count
        start = time.monotonic()
        result = await run_bounded(with_auth_retry(attempt, self._credentials), timeout, cancel)
        logger.info(
            "API #%d %s -> %s (%d messages, usage=%s, %.0fms)",
            call_number,
            self._config.model,
            result.stop_reason,
            len(messages),
            result.usage.model_dump(exclude={"raw"}) if result.usage else None,
            (time.monotonic() - start) * 1000,
        )
        return result


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


async def run_bounded(
    work: Awaitable[T],
    timeout: float,
    cancel: asyncio.Event | None = None,
) -> T:
    """Await ``work`` until it finishes, the timeout elapses, or ``cancel`` fires.

    The in-flight work is cancelled in the latter two cases. Raises
    TaskCancelled for the cancel signal and NetworkError on timeout.
    """
    if cancel is not None and cancel.is_set():
        if asyncio.iscoroutine(work):
            work.close()
        raise TaskCancelled("Task stopped by user")

    task = asyncio.ensure_future(work)
    waiters: set[asyncio.Future[Any]] = {task}
    cancel_waiter: asyncio.Future[Any] | None = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task in done:
        return task.result()
    if cancel_waiter is not None and cancel_waiter in done:
        raise TaskCancelled("Task stopped by user")
    raise NetworkError(
        f"API request timed out after {timeout:g} seconds. "
        "The model may be overloaded or unavailable."
    )
