# Frame Codec
# Control messages (JSON text) and body frames (binary) on one WebSocket

from relay.protocol.frames import (
    ControlType,
    ControlMessage,
    RequestMeta,
    RequestEnd,
    ResponseMeta,
    TUNNEL_READY,
    TUNNEL_ERROR_PREFIX,
    tunnel_error,
    classify,
    encode_control,
    body_bytes,
)

__all__ = [
    "ControlType",
    "ControlMessage",
    "RequestMeta",
    "RequestEnd",
    "ResponseMeta",
    "TUNNEL_READY",
    "TUNNEL_ERROR_PREFIX",
    "tunnel_error",
    "classify",
    "encode_control",
    "body_bytes",
]
