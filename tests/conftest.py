"""
Shared fixtures for relay tests.

- Threaded TCP servers for tunnel targets (the TestClient runs the app in
  its own event loop thread, so targets must not depend on the test loop)
- A fake WebSocket for driving sessions directly from async tests
- App factories wired to httpx.MockTransport upstreams
"""

import asyncio
import logging
import socket
import socketserver
import threading
from typing import Any, Callable

import httpx
import pytest
from fastapi.websockets import WebSocketState

from relay.config import RelaySettings
from relay.transport.app import create_app

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        try:
            while True:
                data = self.request.recv(65536)
                if not data:
                    return
                self.request.sendall(data)
        except OSError:
            return


class _GreetingHandler(socketserver.BaseRequestHandler):
    def handle(self):
        try:
            self.request.sendall(b"hello")
        except OSError:
            return


class _Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


def _serve(handler) -> tuple[_Server, threading.Thread]:
    server = _Server(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread


@pytest.fixture
def echo_server():
    """TCP server echoing everything it receives. Yields its port."""
    server, thread = _serve(_EchoHandler)
    yield server.server_address[1]
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture
def greeting_server():
    """TCP server that writes b"hello" and closes. Yields its port."""
    server, thread = _serve(_GreetingHandler)
    yield server.server_address[1]
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def settings() -> RelaySettings:
    return RelaySettings(connect_timeout=5.0, stream_queue_size=4)


def mock_factory(handler: Callable[[httpx.Request], Any]):
    """Client factory whose clients send every request to ``handler``."""
    def factory(outbound):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return factory


@pytest.fixture
def make_app(settings):
    """Build an app whose upstream HTTP calls go to a mock handler."""
    def build(handler=None, fetch_handler=None):
        return create_app(
            settings,
            stream_client_factory=mock_factory(handler) if handler else None,
            fetch_client_factory=mock_factory(fetch_handler) if fetch_handler else None,
        )
    return build


class FakeWebSocket:
    """
    Minimal stand-in for a Starlette WebSocket.

    Inbound events are queued with ``feed_*``; sends are recorded in
    ``sent`` as ("text", str) or ("bytes", bytes). ``send_gate`` can be
    cleared to make binary sends block, simulating a slow client.
    """

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[tuple[str, Any]] = []
        self.send_calls = 0
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.closed = asyncio.Event()
        self.send_gate = asyncio.Event()
        self.send_gate.set()
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED

    def feed_text(self, text: str) -> None:
        self.inbound.put_nowait({"type": "websocket.receive", "text": text})

    def feed_bytes(self, data: bytes) -> None:
        self.inbound.put_nowait({"type": "websocket.receive", "bytes": data})

    def feed_disconnect(self, code: int = 1000) -> None:
        self.inbound.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self) -> dict:
        return await self.inbound.get()

    async def send_text(self, text: str) -> None:
        self.sent.append(("text", text))

    async def send_bytes(self, data: bytes) -> None:
        self.send_calls += 1
        await self.send_gate.wait()
        self.sent.append(("bytes", data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_code = code
        self.close_reason = reason
        self.application_state = WebSocketState.DISCONNECTED
        self.closed.set()

    def received_bytes(self) -> bytes:
        return b"".join(payload for kind, payload in self.sent if kind == "bytes")

    def texts(self) -> list[str]:
        return [payload for kind, payload in self.sent if kind == "text"]


@pytest.fixture
def fake_ws() -> FakeWebSocket:
    return FakeWebSocket()


@pytest.fixture
def client_factory_for():
    """Turn an httpx handler into a stream-session client factory."""
    return mock_factory
