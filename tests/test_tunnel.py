"""
Tunnel session tests.

Handshake and close codes go through the app with TestClient, always
against a target that closes first so the server ends every session.
Byte relaying, close cascades and backpressure drive the session directly
with a fake WebSocket.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from relay.session.tunnel import TunnelSession, TunnelState, parse_port


def receive_exactly(ws, size: int) -> bytes:
    received = b""
    while len(received) < size:
        received += ws.receive_bytes()
    return received


async def wait_for_bytes(fake_ws, size: int, timeout: float = 5) -> bytes:
    async def poll():
        while len(fake_ws.received_bytes()) < size:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout=timeout)
    return fake_ws.received_bytes()


class TestTunnelOverWebSocket:

    def test_socket_close_closes_websocket_normally(self, make_app, greeting_server):
        with TestClient(make_app()) as client:
            with client.websocket_connect(f"/vpn/tunnel?host=127.0.0.1&port={greeting_server}") as ws:
                assert ws.receive_text() == "tunnel-ready"
                assert receive_exactly(ws, 5) == b"hello"
                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_bytes()
                assert exc.value.code == 1000

    def test_missing_host(self, make_app):
        with TestClient(make_app()) as client:
            with client.websocket_connect("/vpn/tunnel?port=443") as ws:
                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_text()
                assert exc.value.code == 4001

    def test_connect_failure_reports_once_then_closes(self, make_app, closed_port):
        with TestClient(make_app()) as client:
            with client.websocket_connect(f"/vpn/tunnel?host=127.0.0.1&port={closed_port}") as ws:
                message = ws.receive()
                assert message["type"] == "websocket.send"
                assert message["text"].startswith("tunnel-error:")
                assert len(message["text"]) > len("tunnel-error:")

                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_bytes()
                assert exc.value.code == 4002

    def test_any_prefix_routes_by_suffix(self, make_app, greeting_server):
        with TestClient(make_app()) as client:
            with client.websocket_connect(f"/edge/proxy/tunnel?host=127.0.0.1&port={greeting_server}") as ws:
                assert ws.receive_text() == "tunnel-ready"
                assert receive_exactly(ws, 5) == b"hello"
                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_bytes()
                assert exc.value.code == 1000


@pytest.mark.parametrize("raw,port", [
    (None, 443),
    ("8080", 8080),
    (" 22 ", 22),
    ("abc", 443),
    ("", 443),
    ("0", 443),
    ("70000", 443),
])
def test_parse_port(raw, port):
    assert parse_port(raw) == port


class TestTunnelSession:

    async def test_byte_exact_echo(self, fake_ws, echo_server):
        session = TunnelSession(fake_ws, host="127.0.0.1", port=echo_server)
        task = asyncio.create_task(session.run())

        expected = b""
        for payload in (b"\x00", b"hello world", bytes(range(256)) * 64):
            fake_ws.feed_bytes(payload)
            expected += payload
            assert await wait_for_bytes(fake_ws, len(expected)) == expected

        fake_ws.feed_disconnect()
        await asyncio.wait_for(task, timeout=5)

        assert fake_ws.texts() == ["tunnel-ready"]
        assert session.state == TunnelState.CLOSED

    async def test_empty_write_is_harmless(self, fake_ws, echo_server):
        session = TunnelSession(fake_ws, host="127.0.0.1", port=echo_server)
        task = asyncio.create_task(session.run())

        fake_ws.feed_bytes(b"")
        fake_ws.feed_bytes(b"x")
        assert await wait_for_bytes(fake_ws, 1) == b"x"

        fake_ws.feed_disconnect()
        await asyncio.wait_for(task, timeout=5)
        assert session.state == TunnelState.CLOSED

    async def test_text_frames_are_relayed_verbatim(self, fake_ws, echo_server):
        payload = '{"type":"request-meta","url":"http://x.test/"}'
        session = TunnelSession(fake_ws, host="127.0.0.1", port=echo_server)
        task = asyncio.create_task(session.run())

        fake_ws.feed_text(payload)
        assert await wait_for_bytes(fake_ws, len(payload)) == payload.encode()

        fake_ws.feed_disconnect()
        await asyncio.wait_for(task, timeout=5)
        assert fake_ws.texts() == ["tunnel-ready"]

    async def test_slow_socket_pauses_client_reads(self, fake_ws):
        frame = b"y" * 65536
        frames = 400
        release = asyncio.Event()

        async def on_connect(reader, writer):
            await release.wait()
            try:
                while await reader.read(65536):
                    pass
            except ConnectionError:
                pass
            writer.close()

        server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            session = TunnelSession(fake_ws, host="127.0.0.1", port=port)
            for _ in range(frames):
                fake_ws.feed_bytes(frame)
            fake_ws.feed_disconnect()
            task = asyncio.create_task(session.run())

            await asyncio.sleep(0.5)
            # Socket buffers absorb some frames; the rest wait for the peer
            assert fake_ws.inbound.qsize() > 100
            assert session.state == TunnelState.STREAMING

            release.set()
            await asyncio.wait_for(task, timeout=10)

        assert fake_ws.inbound.qsize() == 0
        assert session.state == TunnelState.CLOSED

    async def test_client_close_aborts_socket(self, fake_ws):
        peer_closed = asyncio.Event()

        async def on_connect(reader, writer):
            try:
                await reader.read()
            except ConnectionError:
                pass
            peer_closed.set()
            writer.close()

        server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            session = TunnelSession(fake_ws, host="127.0.0.1", port=port)
            task = asyncio.create_task(session.run())

            fake_ws.feed_bytes(b"ping")
            fake_ws.feed_disconnect()
            await asyncio.wait_for(task, timeout=5)
            await asyncio.wait_for(peer_closed.wait(), timeout=5)

        assert fake_ws.texts() == ["tunnel-ready"]
        assert session.state == TunnelState.CLOSED

    async def test_slow_client_pauses_socket_reads(self, fake_ws):
        total = 1024 * 1024

        async def on_connect(reader, writer):
            writer.write(b"x" * total)
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            fake_ws.send_gate.clear()
            session = TunnelSession(fake_ws, host="127.0.0.1", port=port, read_chunk_size=4096)
            task = asyncio.create_task(session.run())

            await asyncio.sleep(0.3)
            # One chunk in flight; no further reads while the client is stalled
            assert fake_ws.send_calls == 1
            assert session.state == TunnelState.STREAMING

            fake_ws.send_gate.set()
            await asyncio.wait_for(task, timeout=10)

        assert fake_ws.received_bytes() == b"x" * total
        assert fake_ws.close_code == 1000
        assert session.state == TunnelState.CLOSED

    async def test_ready_precedes_any_body_frame(self, fake_ws):
        async def on_connect(reader, writer):
            writer.write(b"banner")
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            session = TunnelSession(fake_ws, host="127.0.0.1", port=port)
            await asyncio.wait_for(session.run(), timeout=5)

        assert fake_ws.sent[0] == ("text", "tunnel-ready")
        assert fake_ws.received_bytes() == b"banner"

    async def test_connect_failure_state(self, fake_ws, closed_port):
        session = TunnelSession(fake_ws, host="127.0.0.1", port=closed_port)
        await asyncio.wait_for(session.run(), timeout=5)

        assert len(fake_ws.texts()) == 1
        assert fake_ws.texts()[0].startswith("tunnel-error:")
        assert fake_ws.received_bytes() == b""
        assert fake_ws.close_code == 4002
        assert session.state == TunnelState.FAILED
