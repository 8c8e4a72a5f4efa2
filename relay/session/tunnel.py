"""
Tunnel Session

Bridges one WebSocket connection to one raw TCP connection, emulating an
HTTPS CONNECT tunnel: the browser's TLS stack talks to the real destination
and the relay only moves bytes.

Lifecycle:
1. CONNECTING - open TCP to host:port from the upgrade query string
2. READY - "tunnel-ready" sent to the client
3. STREAMING - bytes copied verbatim in both directions
4. CLOSED - either side closed; the other side is torn down

FAILED is reachable only from CONNECTING: "tunnel-error:<reason>" is sent
instead of "tunnel-ready" and no body frame ever flows.

Backpressure: each direction is a loop that awaits its write before
issuing the next read, so a slow consumer stops the producer.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Mapping

from fastapi import WebSocket

from relay.protocol.frames import TUNNEL_READY, body_bytes, is_disconnect, tunnel_error
from relay.session.bridge import (
    CLOSE_CONNECT_FAILED,
    CLOSE_MISSING_HOST,
    CLOSE_NORMAL,
    Bridge,
    SessionKind,
)

logger = logging.getLogger(__name__)

DEFAULT_TUNNEL_PORT = 443


class TunnelState(str, Enum):
    """Tunnel session lifecycle states."""
    CONNECTING = "connecting"
    READY = "ready"
    STREAMING = "streaming"
    CLOSED = "closed"
    FAILED = "failed"


def parse_port(raw: str | None) -> int:
    """Port from a query value; 443 when absent, unparsable or out of range."""
    if raw is None:
        return DEFAULT_TUNNEL_PORT
    try:
        port = int(raw.strip())
    except ValueError:
        return DEFAULT_TUNNEL_PORT
    if not 0 < port < 65536:
        return DEFAULT_TUNNEL_PORT
    return port


class TunnelSession(Bridge):
    """
    Raw TCP bridge.

    Every client message after the handshake, text or binary, is written to
    the socket as-is. Text is never parsed, since TLS records may look like
    anything.
    """

    kind = SessionKind.TUNNEL
    terminal_states = frozenset({TunnelState.CLOSED, TunnelState.FAILED})

    def __init__(
        self,
        websocket: WebSocket,
        host: str | None,
        port: int = DEFAULT_TUNNEL_PORT,
        connect_timeout: float = 10.0,
        read_chunk_size: int = 65536,
    ):
        """
        Initialize the tunnel.

        Args:
            websocket: Accepted client connection
            host: Destination host; None or empty closes the session with 4001
            port: Destination port
            connect_timeout: Seconds allowed for the TCP connect
            read_chunk_size: Max bytes per socket read
        """
        super().__init__(websocket, TunnelState.CONNECTING)
        self.host = host
        self.port = port
        self._connect_timeout = connect_timeout
        self._read_chunk_size = read_chunk_size

    @classmethod
    def from_query(
        cls,
        websocket: WebSocket,
        params: Mapping[str, str],
        **kwargs,
    ) -> "TunnelSession":
        """Build a tunnel from the upgrade request's query parameters."""
        return cls(
            websocket,
            host=(params.get("host") or "").strip() or None,
            port=parse_port(params.get("port")),
            **kwargs,
        )

    async def run(self) -> None:
        if not self.host:
            logger.warning(f"[{self.label}] rejected: missing host")
            await self.close_client(CLOSE_MISSING_HOST, "Missing host")
            self.transition(TunnelState.FAILED)
            return

        logger.info(f"[{self.label}] {self.host}:{self.port}")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            reason = str(e) or "connect timed out"
            logger.error(f"[{self.label}] connect failed {self.host}:{self.port}: {reason}")
            await self.send_text(tunnel_error(reason))
            await self.close_client(CLOSE_CONNECT_FAILED, "Connection failed")
            self.transition(TunnelState.FAILED)
            return

        try:
            if not await self.send_text(TUNNEL_READY):
                logger.info(f"[{self.label}] client left before tunnel-ready")
                return
            self.transition(TunnelState.READY)
            self.transition(TunnelState.STREAMING)
            await self._relay(reader, writer)
        finally:
            # Forced termination; no further reads are expected
            writer.transport.abort()
            await self.close_client(CLOSE_NORMAL, "done")
            self.transition(TunnelState.CLOSED)
            logger.info(f"[{self.label}] closed {self.host}:{self.port}")

    async def _relay(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Run both copy loops until one of them stops."""
        upstream = asyncio.create_task(
            self._client_to_socket(writer),
            name=f"{self.label}-up"
        )
        downstream = asyncio.create_task(
            self._socket_to_client(reader),
            name=f"{self.label}-down"
        )
        try:
            done, pending = await asyncio.wait(
                {upstream, downstream},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (upstream, downstream):
                if not task.done():
                    task.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.info(f"[{self.label}] {task.get_name()} ended: {task.exception()!r}")

    async def _client_to_socket(self, writer: asyncio.StreamWriter) -> None:
        while True:
            message = await self.websocket.receive()
            if is_disconnect(message):
                self.mark_client_closed()
                return
            data = body_bytes(message)
            if not data:
                continue
            writer.write(data)
            # Stop consuming client messages until the socket accepts more
            await writer.drain()

    async def _socket_to_client(self, reader: asyncio.StreamReader) -> None:
        while True:
            chunk = await reader.read(self._read_chunk_size)
            if not chunk:
                return
            # Stop reading the socket until the client side accepts the chunk
            await self.websocket.send_bytes(chunk)
