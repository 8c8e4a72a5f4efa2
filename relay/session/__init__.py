# Relay Sessions
# One WebSocket bridged to one outbound TCP socket or HTTP exchange

from relay.session.bridge import Bridge, SessionKind, SessionRegistry
from relay.session.tunnel import TunnelSession, TunnelState
from relay.session.stream import StreamSession, StreamState

__all__ = [
    "Bridge",
    "SessionKind",
    "SessionRegistry",
    "TunnelSession",
    "TunnelState",
    "StreamSession",
    "StreamState",
]
