"""
Relay Frame Codec

Every WebSocket message carried by the relay is either a control message
or body data. The transport framing decides which one it can be:

- Binary messages are always body data, passed through untouched.
- Text messages are control messages only when they parse as a JSON object
  whose "type" is one of the names the receiving side currently expects,
  and the object validates as that message. Any other text is body data
  (UTF-8 encoded), since captured request bodies are often valid text.

Tunnel sessions never parse JSON. Their only control signal is a literal
handshake token sent by the relay: "tunnel-ready" or "tunnel-error:<reason>".

Known edge case: a body frame that happens to be a JSON object with a
matching "type" is read as control. The protocol has a single channel for
both kinds of message, so this cannot be detected here.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

TUNNEL_READY = "tunnel-ready"
TUNNEL_ERROR_PREFIX = "tunnel-error:"


class ControlType(str, Enum):
    """Control message names, by direction."""
    # client -> relay
    REQUEST_META = "request-meta"
    REQUEST_END = "request-end"
    # relay -> client
    RESPONSE_META = "response-meta"


class RequestMeta(BaseModel):
    """Describes the outbound request. First message of a stream session."""
    type: Literal["request-meta"] = "request-meta"
    method: str = Field(
        default="GET",
        description="HTTP method of the outbound request"
    )
    url: str = Field(
        ...,
        description="Absolute target URL"
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Headers as captured by the client"
    )

    @field_validator("headers", mode="before")
    @classmethod
    def _stringify_headers(cls, value: Any) -> Any:
        # Captured headers may carry numbers or null
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in value.items()}
        return value


class RequestEnd(BaseModel):
    """Marks the end of the request body."""
    type: Literal["request-end"] = "request-end"


class ResponseMeta(BaseModel):
    """Status and headers of the upstream response, sent before any body frame."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["response-meta"] = "response-meta"
    status_code: int = Field(
        ...,
        alias="statusCode",
        description="Upstream HTTP status"
    )
    headers: dict[str, Union[str, list[str]]] = Field(
        default_factory=dict,
        description="Upstream headers; repeated headers become lists"
    )


ControlMessage = Union[RequestMeta, RequestEnd, ResponseMeta]

_MODELS: dict[ControlType, type[BaseModel]] = {
    ControlType.REQUEST_META: RequestMeta,
    ControlType.REQUEST_END: RequestEnd,
    ControlType.RESPONSE_META: ResponseMeta,
}


def tunnel_error(reason: str) -> str:
    """Build the tunnel failure token."""
    return f"{TUNNEL_ERROR_PREFIX}{reason}"


def is_disconnect(message: dict[str, Any]) -> bool:
    return message.get("type") == "websocket.disconnect"


def body_bytes(message: dict[str, Any]) -> bytes:
    """Raw payload of a receive event, whether it arrived as text or binary."""
    data = message.get("bytes")
    if data is not None:
        return data
    text = message.get("text")
    if text is not None:
        return text.encode("utf-8")
    return b""


def parse_control(text: str, expected: Iterable[ControlType]) -> ControlMessage | None:
    """
    Try to read a text frame as one of the expected control messages.

    Returns:
        The validated message, or None when the text is body data
    """
    try:
        obj = json.loads(text)
    except ValueError:
        return None

    if not isinstance(obj, dict):
        return None

    try:
        control_type = ControlType(obj.get("type"))
    except ValueError:
        return None

    if control_type not in set(expected):
        return None

    try:
        return _MODELS[control_type].model_validate(obj)
    except ValidationError as e:
        logger.debug(f"Malformed {control_type.value} treated as body data: {e}")
        return None


def classify(
    message: dict[str, Any],
    expected: Iterable[ControlType],
) -> ControlMessage | bytes | None:
    """
    Classify one ASGI WebSocket receive event.

    Args:
        message: Event returned by ``WebSocket.receive()``
        expected: Control messages the receiving side accepts right now

    Returns:
        None for a disconnect, a control model, or body bytes
    """
    if is_disconnect(message):
        return None

    text = message.get("text")
    if text is None:
        return message.get("bytes") or b""

    control = parse_control(text, expected)
    if control is not None:
        return control
    return text.encode("utf-8")


def encode_control(message: ControlMessage) -> str:
    """Serialize a control message as compact JSON with wire key names."""
    return message.model_dump_json(by_alias=True)
