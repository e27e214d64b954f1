"""Transport channels the gateway sends requests through.

HttpChannel talks to the provider directly with httpx. NativeHostChannel
hands the request to a local helper process over stdio (4-byte
little-endian length prefix + JSON), which holds CLI credentials and
performs the HTTP call itself. Both yield a response with
``status_code``, ``aiter_lines()`` and ``aread()``, so the gateway does
not know which one it is using.
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from conduit.api.errors import AuthenticationFailed, NetworkError
from conduit.config import LLMConfig
from conduit.providers.sse import format_sse_line

logger = logging.getLogger(__name__)

# Native messaging caps a single frame at 1 MB from host to client
MAX_FRAME_BYTES = 1024 * 1024

TokensRefreshed = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class ChannelRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    stream: bool = False
    method: str = "POST"


class ChannelResponse(Protocol):
    status_code: int

    def aiter_lines(self) -> AsyncIterator[str]: ...

    async def aread(self) -> bytes: ...


class Channel(Protocol):
    def open(self, request: ChannelRequest) -> AbstractAsyncContextManager[ChannelResponse]: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# Direct HTTP
# ---------------------------------------------------------------------------


class HttpChannel:
    """Direct HTTPS calls via a shared httpx.AsyncClient."""

    def __init__(self, config: LLMConfig, client: httpx.AsyncClient | None = None) -> None:
        if client is None:
            timeout = httpx.Timeout(
                connect=config.connect_timeout,
                read=config.request_timeout,
                write=10.0,
                pool=10.0,
            )
            limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
            client = httpx.AsyncClient(timeout=timeout, limits=limits)
        self._client = client

    @asynccontextmanager
    async def open(self, request: ChannelRequest) -> AsyncIterator[ChannelResponse]:
        try:
            async with self._client.stream(
                request.method, request.url, headers=request.headers, json=request.body
            ) as response:
                yield response
        except httpx.TimeoutException as e:
            raise NetworkError(f"API request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"HTTP error: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Native-host proxy
# ---------------------------------------------------------------------------


def encode_frame(message: dict[str, Any]) -> bytes:
    payload = json.dumps(message).encode("utf-8")
    return struct.pack("<I", len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> dict[str, Any] | None:
    """Read one length-prefixed JSON frame; None on clean EOF."""
    try:
        header = await reader.readexactly(4)
    except asyncio.IncompleteReadError:
        return None
    (length,) = struct.unpack("<I", header)
    if length > MAX_FRAME_BYTES:
        raise NetworkError(f"Native host frame too large: {length} bytes")
    try:
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise NetworkError("Native host closed mid-frame") from e
    message = json.loads(payload)
    if not isinstance(message, dict):
        raise NetworkError(f"Native host sent a non-object frame: {payload[:200]!r}")
    return message


@dataclass
class NativeHostResponse:
    """Response assembled from native-host frames.

    A streamed reply is re-serialized into ``data:`` lines so the same
    SSE decoders apply.
    """

    status_code: int
    _reader: asyncio.StreamReader | None = None
    _on_tokens_refreshed: TokensRefreshed | None = None
    _pending: list[dict[str, Any]] = field(default_factory=list)
    _body: bytes = b""
    _done: bool = False

    async def aiter_lines(self) -> AsyncIterator[str]:
        while self._pending:
            yield format_sse_line(self._pending.pop(0))
        while not self._done and self._reader is not None:
            message = await read_frame(self._reader)
            if message is None:
                self._done = True
                break
            kind = message.get("type")
            if kind == "stream_chunk":
                yield format_sse_line(message.get("data") or {})
            elif kind == "stream_end":
                self._done = True
            elif kind == "api_error":
                self._done = True
                raise NetworkError(message.get("error") or "Native host error")
            elif kind == "tokens_refreshed":
                await _forward_tokens(self._on_tokens_refreshed, message)

    async def aread(self) -> bytes:
        return self._body


async def _forward_tokens(callback: TokensRefreshed | None, message: dict[str, Any]) -> None:
    logger.info("Native host refreshed OAuth tokens")
    if callback is not None:
        await callback(message.get("credentials") or {})


class NativeHostChannel:
    """Proxy requests through a local helper speaking length-prefixed JSON.

    One helper process is spawned per request, mirroring a native
    messaging port that is connected and dropped around each call.
    """

    def __init__(
        self,
        command: tuple[str, ...] | list[str],
        on_tokens_refreshed: TokensRefreshed | None = None,
    ) -> None:
        if not command:
            raise ValueError("native_host_command is empty")
        self._command = tuple(command)
        self._on_tokens_refreshed = on_tokens_refreshed

    async def aclose(self) -> None:
        """Nothing to release; each request owns its helper process."""

    @asynccontextmanager
    async def open(self, request: ChannelRequest) -> AsyncIterator[ChannelResponse]:
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise NetworkError(f"Failed to connect to native host: {e}") from e

        try:
            if process.stdin is None or process.stdout is None:
                raise NetworkError("Native host pipes unavailable")
            process.stdin.write(
                encode_frame(
                    {
                        "type": "proxy_api_call",
                        "data": {
                            "url": request.url,
                            "method": request.method,
                            "headers": request.headers,
                            "body": json.dumps(request.body),
                        },
                    }
                )
            )
            await process.stdin.drain()
            yield await self._first_response(process.stdout)
        finally:
            if process.returncode is None:
                process.kill()
            await process.wait()

    async def _first_response(self, reader: asyncio.StreamReader) -> NativeHostResponse:
        while True:
            message = await read_frame(reader)
            if message is None:
                raise NetworkError("Native host disconnected before responding")
            kind = message.get("type")
            if kind == "tokens_refreshed":
                await _forward_tokens(self._on_tokens_refreshed, message)
            elif kind == "stream_chunk":
                return NativeHostResponse(
                    status_code=200,
                    _reader=reader,
                    _on_tokens_refreshed=self._on_tokens_refreshed,
                    _pending=[message.get("data") or {}],
                )
            elif kind == "stream_end":
                return NativeHostResponse(status_code=200, _done=True)
            elif kind == "api_response":
                body = message.get("body") or ""
                return NativeHostResponse(
                    status_code=int(message.get("status", 200)),
                    _body=body.encode("utf-8") if isinstance(body, str) else json.dumps(body).encode(),
                    _done=True,
                )
            elif kind == "api_error":
                if message.get("errorType") == "oauth_refresh_failed":
                    raise AuthenticationFailed(
                        "Authentication failed: OAuth token expired and refresh failed "
                        f"({message.get('error', 'unknown')}). Please re-authenticate."
                    )
                raise NetworkError(message.get("error") or "Native host error")
            else:
                logger.debug("Ignoring native host message type %r", kind)
