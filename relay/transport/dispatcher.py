"""
WebSocket Dispatcher

Accepts an upgraded connection and starts the session matching its path:

- .../tunnel?host=<host>&port=<port>  -> TunnelSession
- .../http-stream                      -> StreamSession

Any other path is closed with 4000 before anything is opened.
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import WebSocket

from relay.config import RelaySettings
from relay.session.bridge import CLOSE_INTERNAL_ERROR, CLOSE_UNKNOWN_PATH, Bridge, SessionRegistry
from relay.session.stream import ClientFactory, StreamSession
from relay.session.tunnel import TunnelSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[WebSocket], Bridge]


class Dispatcher:
    """
    Routes upgraded connections to relay sessions by path suffix.

    Each connection gets its own session object; the dispatcher holds no
    per-session state beyond the registry used for health reporting.
    """

    def __init__(
        self,
        settings: RelaySettings | None = None,
        registry: SessionRegistry | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            settings: Relay settings (defaults if omitted)
            registry: Live-session registry
            client_factory: httpx client factory for stream sessions
        """
        self._settings = settings or RelaySettings()
        self._registry = registry or SessionRegistry()
        self._client_factory = client_factory
        self._routes: dict[str, SessionFactory] = {
            "/tunnel": self._tunnel,
            "/http-stream": self._stream,
        }

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def resolve(self, path: str) -> SessionFactory | None:
        """Session factory for a request path, or None if unroutable."""
        for suffix, factory in self._routes.items():
            if path.endswith(suffix):
                return factory
        return None

    def _tunnel(self, websocket: WebSocket) -> TunnelSession:
        return TunnelSession.from_query(
            websocket,
            websocket.query_params,
            connect_timeout=self._settings.connect_timeout,
            read_chunk_size=self._settings.read_chunk_size,
        )

    def _stream(self, websocket: WebSocket) -> StreamSession:
        return StreamSession(
            websocket,
            client_factory=self._client_factory,
            queue_size=self._settings.stream_queue_size,
            connect_timeout=self._settings.connect_timeout,
        )

    async def handle(self, websocket: WebSocket) -> None:
        """
        Handle one upgraded connection until its session ends.

        Session errors are logged and contained; they never reach the server.
        """
        await websocket.accept()

        path = websocket.url.path
        factory = self.resolve(path)
        if factory is None:
            logger.warning(f"Rejected WebSocket for unknown path: {path}")
            await websocket.close(code=CLOSE_UNKNOWN_PATH, reason="Unknown path")
            return

        session = factory(websocket)
        self._registry.add(session)
        logger.debug(f"[{session.label}] opened for {path}")
        try:
            await session.run()
        except Exception as e:
            logger.error(f"[{session.label}] session error: {e!r}")
            await session.close_client(CLOSE_INTERNAL_ERROR, "Internal error")
        finally:
            self._registry.remove(session)
            logger.debug(f"[{session.label}] ended {session.state.value} after {session.age_seconds:.1f}s")
