"""
Relay Bridge

Base class shared by tunnel and stream sessions. A bridge couples exactly
one WebSocket connection to exactly one outbound resource and relays bytes
until either side closes.

Each session owns its state machine. Transitions are explicit calls to
``transition()`` so resource release happens at a known point and not as a
side effect of garbage collection. Terminal states cannot be left.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)

# Close codes visible to clients
CLOSE_NORMAL = 1000
CLOSE_INTERNAL_ERROR = 1011
CLOSE_UNKNOWN_PATH = 4000
CLOSE_MISSING_HOST = 4001
CLOSE_CONNECT_FAILED = 4002


class SessionKind(str, Enum):
    """Relay session types."""
    TUNNEL = "tunnel"
    STREAM = "stream"


class Bridge(ABC):
    """
    One WebSocket connection bridged to one outbound resource.

    Subclasses define their state enum, the terminal states, and ``run()``.
    """

    kind: SessionKind
    terminal_states: frozenset = frozenset()

    def __init__(self, websocket: WebSocket, initial_state: Enum):
        self.websocket = websocket
        self.session_id: UUID = uuid4()
        self.opened_at = datetime.now(timezone.utc)
        self.state = initial_state
        self._client_closed = False

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{str(self.session_id)[:8]}"

    @property
    def age_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.opened_at).total_seconds()

    @property
    def is_terminal(self) -> bool:
        return self.state in self.terminal_states

    def transition(self, new_state: Enum) -> bool:
        """
        Move to a new state.

        Returns:
            True if the state changed, False if the session is already terminal
        """
        if self.is_terminal:
            logger.debug(f"[{self.label}] ignoring {new_state.value}, already {self.state.value}")
            return False
        logger.debug(f"[{self.label}] {self.state.value} -> {new_state.value}")
        self.state = new_state
        return True

    @property
    def client_writable(self) -> bool:
        return (
            not self._client_closed
            and self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> bool:
        """Best-effort text send; returns False if the client is gone."""
        if not self.client_writable:
            return False
        try:
            await self.websocket.send_text(text)
            return True
        except Exception as e:
            logger.debug(f"[{self.label}] text send failed: {e}")
            return False

    async def close_client(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close the WebSocket once; later calls are no-ops."""
        if self._client_closed:
            return
        self._client_closed = True
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            # Client already went away
            logger.debug(f"[{self.label}] close failed: {e}")

    def mark_client_closed(self) -> None:
        """Record that the client side disconnected on its own."""
        self._client_closed = True

    @abstractmethod
    async def run(self) -> None:
        """
        Drive the session to a terminal state.

        Must release the outbound resource on every exit path.
        """


class SessionRegistry:
    """
    Live sessions of one application instance, for health reporting.

    Sessions are added and removed by the dispatcher; they never look each
    other up through it.
    """

    def __init__(self):
        self._sessions: dict[UUID, Bridge] = {}

    def add(self, session: Bridge) -> None:
        self._sessions[session.session_id] = session

    def remove(self, session: Bridge) -> None:
        self._sessions.pop(session.session_id, None)

    def count(self, kind: SessionKind | None = None) -> int:
        if kind is None:
            return len(self._sessions)
        return sum(1 for s in self._sessions.values() if s.kind == kind)

    def summary(self) -> dict[str, int]:
        return {kind.value: self.count(kind) for kind in SessionKind}
