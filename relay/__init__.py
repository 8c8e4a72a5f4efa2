# WebSocket Relay
# Raw TCP tunnel and streaming HTTP proxy for browser clients, over WebSocket

__version__ = "0.1.0"

from relay.protocol import (
    ControlType,
    RequestMeta,
    RequestEnd,
    ResponseMeta,
    TUNNEL_READY,
)
from relay.session import (
    SessionKind,
    TunnelSession,
    TunnelState,
    StreamSession,
    StreamState,
)
from relay.outbound import OutboundRequest, parse_curl_command

__all__ = [
    "__version__",
    # Frame codec
    "ControlType",
    "RequestMeta",
    "RequestEnd",
    "ResponseMeta",
    "TUNNEL_READY",
    # Sessions
    "SessionKind",
    "TunnelSession",
    "TunnelState",
    "StreamSession",
    "StreamState",
    # Outbound requests
    "OutboundRequest",
    "parse_curl_command",
]
