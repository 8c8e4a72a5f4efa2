"""
Stream Session

Bridges one WebSocket connection to one outbound HTTP exchange so a client
can stream a request body and receive a streamed response.

Wire protocol (client drives the first half, the relay the second):
1. client: request-meta {method, url, headers}
2. client: zero or more binary body frames
3. client: request-end {}
4. relay:  response-meta {statusCode, headers}
5. relay:  response body frames, then a normal close

Lifecycle:
AWAITING_META -> REQUEST_STREAMING -> AWAITING_RESPONSE -> RESPONSE_STREAMING -> CLOSED
FAILED is reachable from any state on a transport error.

The outbound request starts as soon as request-meta arrives. Body frames
go through a bounded queue into the request body, so a slow upstream stops
the relay from reading further client frames. Response chunks are sent one
at a time, each awaited before the next read.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Callable

import httpx
from fastapi import WebSocket

from relay.outbound.request import OutboundRequest
from relay.protocol.frames import (
    ControlType,
    RequestEnd,
    RequestMeta,
    ResponseMeta,
    classify,
    encode_control,
)
from relay.session.bridge import CLOSE_INTERNAL_ERROR, CLOSE_NORMAL, Bridge, SessionKind

logger = logging.getLogger(__name__)

CLIENT_CONTROL = (ControlType.REQUEST_META, ControlType.REQUEST_END)

# Methods issued without a body unless the client declares a content-length
BODYLESS_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

FAILURE_STATUS = 502

_END = object()

ClientFactory = Callable[[OutboundRequest], httpx.AsyncClient]


class StreamState(str, Enum):
    """Stream session lifecycle states."""
    AWAITING_META = "awaiting_meta"
    REQUEST_STREAMING = "request_streaming"
    AWAITING_RESPONSE = "awaiting_response"
    RESPONSE_STREAMING = "response_streaming"
    CLOSED = "closed"
    FAILED = "failed"


def default_client_factory(connect_timeout: float = 10.0) -> ClientFactory:
    """
    Build httpx clients for outbound exchanges.

    Only the connect phase is bounded; reads and writes wait on the peers.
    """
    def factory(outbound: OutboundRequest) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            verify=not outbound.insecure,
            timeout=httpx.Timeout(None, connect=connect_timeout),
            follow_redirects=False,
        )
    return factory


def response_headers(response: httpx.Response) -> dict[str, str | list[str]]:
    """Upstream headers with lowercased names; repeated headers become lists."""
    headers: dict[str, str | list[str]] = {}
    for name, value in response.headers.multi_items():
        name = name.lower()
        if name not in headers:
            headers[name] = value
        elif isinstance(headers[name], list):
            headers[name].append(value)
        else:
            headers[name] = [headers[name], value]
    return headers


class StreamSession(Bridge):
    """Streaming HTTP proxy bridge."""

    kind = SessionKind.STREAM
    terminal_states = frozenset({StreamState.CLOSED, StreamState.FAILED})

    def __init__(
        self,
        websocket: WebSocket,
        client_factory: ClientFactory | None = None,
        queue_size: int = 16,
        connect_timeout: float = 10.0,
    ):
        """
        Initialize the session.

        Args:
            websocket: Accepted client connection
            client_factory: Builds the httpx client for the outbound exchange
            queue_size: Request-body frames buffered before client reads pause
            connect_timeout: Connect timeout for the default client factory
        """
        super().__init__(websocket, StreamState.AWAITING_META)
        self._client_factory = client_factory or default_client_factory(connect_timeout)
        self._body: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._request: OutboundRequest | None = None
        self._request_ended = False
        self._response_started = False
        self._exchange_task: asyncio.Task | None = None
        self._exchange_done = asyncio.Event()

    async def run(self) -> None:
        client_task = asyncio.create_task(
            self._read_client(),
            name=f"{self.label}-client"
        )
        exchange_waiter = asyncio.create_task(self._exchange_done.wait())
        try:
            await asyncio.wait(
                {client_task, exchange_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            tasks = [client_task, exchange_waiter]
            if self._exchange_task is not None:
                tasks.append(self._exchange_task)
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            if client_task.done() and not client_task.cancelled() and client_task.exception():
                logger.error(f"[{self.label}] client loop error: {client_task.exception()!r}")
                self.transition(StreamState.FAILED)

            await self.close_client(CLOSE_NORMAL)
            self.transition(StreamState.CLOSED)
            logger.info(f"[{self.label}] finished ({self.state.value})")

    async def _read_client(self) -> None:
        while True:
            message = await self.websocket.receive()
            frame = classify(message, CLIENT_CONTROL)
            if frame is None:
                self.mark_client_closed()
                if self._exchange_task is not None and not self._exchange_task.done():
                    logger.info(f"[{self.label}] client closed, aborting upstream request")
                return
            await self._handle_frame(frame)

    async def _handle_frame(self, frame: RequestMeta | RequestEnd | bytes) -> None:
        if self.is_terminal:
            return

        if self.state == StreamState.AWAITING_META:
            if isinstance(frame, RequestMeta):
                self._start(frame)
            else:
                logger.debug(f"[{self.label}] ignoring frame before request-meta")
            return

        if isinstance(frame, RequestMeta):
            logger.debug(f"[{self.label}] ignoring duplicate request-meta")
            return

        if isinstance(frame, RequestEnd):
            if self._request_ended:
                logger.debug(f"[{self.label}] ignoring duplicate request-end")
                return
            self._request_ended = True
            await self._body.put(_END)
            if self.state == StreamState.REQUEST_STREAMING:
                self.transition(StreamState.AWAITING_RESPONSE)
            return

        if self._request_ended:
            logger.debug(f"[{self.label}] dropping {len(frame)} bytes after request-end")
            return
        if frame:
            # Blocks while the upstream is behind
            await self._body.put(frame)

    def _start(self, meta: RequestMeta) -> None:
        self._request = OutboundRequest(url=meta.url, method=meta.method, headers=meta.headers)
        self.transition(StreamState.REQUEST_STREAMING)
        self._exchange_task = asyncio.create_task(
            self._exchange(self._request),
            name=f"{self.label}-exchange"
        )

    def _sends_body(self, outbound: OutboundRequest) -> bool:
        if outbound.normalized_method not in BODYLESS_METHODS:
            return True
        return any(name.lower() == "content-length" for name in outbound.headers)

    async def _body_stream(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._body.get()
            if chunk is _END:
                return
            yield chunk

    async def _drain_body(self) -> None:
        """Consume queued frames for a request sent without a body."""
        while await self._body.get() is not _END:
            pass

    async def _exchange(self, outbound: OutboundRequest) -> None:
        logger.info(f"[{self.label}] {outbound.normalized_method} {outbound.url}")
        drain_task: asyncio.Task | None = None
        try:
            kwargs = outbound.to_httpx_kwargs(sanitize=True)
            if self._sends_body(outbound):
                kwargs["content"] = self._body_stream()
            else:
                drain_task = asyncio.create_task(self._drain_body())

            async with self._client_factory(outbound) as client:
                request = client.build_request(**kwargs)
                response = await client.send(request, stream=True, auth=outbound.basic_auth())
                try:
                    await self._relay_response(response)
                finally:
                    await response.aclose()

            logger.info(f"[{self.label}] response complete")
            await self.close_client(CLOSE_NORMAL)
        except Exception as e:
            await self._fail(e)
        finally:
            if drain_task is not None and not drain_task.done():
                drain_task.cancel()
            self._exchange_done.set()

    async def _relay_response(self, response: httpx.Response) -> None:
        self.transition(StreamState.RESPONSE_STREAMING)
        meta = ResponseMeta(
            status_code=response.status_code,
            headers=response_headers(response),
        )
        if not await self.send_text(encode_control(meta)):
            logger.info(f"[{self.label}] client gone before response-meta")
            return
        self._response_started = True

        async for chunk in response.aiter_raw():
            if chunk:
                await self.websocket.send_bytes(chunk)

    async def _fail(self, error: Exception) -> None:
        """Report an outbound failure so the client never sees a silent disconnect."""
        reason = str(error) or type(error).__name__
        url = self._request.url if self._request else "?"
        logger.error(f"[{self.label}] request error {url}: {reason}")
        self.transition(StreamState.FAILED)

        if self._response_started:
            await self.close_client(CLOSE_INTERNAL_ERROR, "Upstream error")
            return

        meta = ResponseMeta(
            status_code=FAILURE_STATUS,
            headers={"content-type": "text/plain; charset=utf-8"},
        )
        if await self.send_text(encode_control(meta)):
            try:
                await self.websocket.send_bytes(f"Request failed: {reason}".encode("utf-8"))
            except Exception as e:
                logger.debug(f"[{self.label}] failure body not delivered: {e}")
        await self.close_client(CLOSE_NORMAL)
