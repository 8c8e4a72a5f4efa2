"""
Relay Settings

Environment-based configuration for the relay server.

Supported variables:
- RELAY_HOST: Interface to bind (default "0.0.0.0")
- RELAY_PORT: Port to bind (default 8000)
- RELAY_LOG_LEVEL: Logging level name (default "INFO")
- RELAY_CONNECT_TIMEOUT: Seconds allowed for a tunnel TCP connect (default 10)
- RELAY_READ_CHUNK_SIZE: Max bytes per TCP read in a tunnel (default 65536)
- RELAY_STREAM_QUEUE_SIZE: Request-body frames buffered per stream session (default 16)
- RELAY_UPSTREAM_TIMEOUT: Timeout for single-shot proxy fetches (default 30)
- RELAY_PATH_PREFIX: Public path prefix of the WebSocket endpoints (default "/vpn")

Variables can be loaded from a .env file in the project root.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class RelaySettings:
    """
    Configuration for the relay.

    Attributes:
        host: Interface the server binds to
        port: Port the server binds to
        log_level: Root logging level
        connect_timeout: Seconds to wait for an outbound TCP connect
        read_chunk_size: Max bytes read from a tunnel socket per iteration
        stream_queue_size: Request-body frames buffered before the relay
            stops reading from the client
        upstream_timeout: Timeout for single-shot proxy requests
        path_prefix: Prefix the WebSocket endpoints are published under
    """
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    connect_timeout: float = 10.0
    read_chunk_size: int = 65536
    stream_queue_size: int = 16
    upstream_timeout: float = 30.0
    path_prefix: str = "/vpn"


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive, using {default}")
        return default
    return value


def load_settings() -> RelaySettings:
    """
    Build settings from environment variables.

    Unparsable or non-positive numbers fall back to their defaults.
    """
    defaults = RelaySettings()
    return RelaySettings(
        host=os.getenv("RELAY_HOST", defaults.host),
        port=_env_number("RELAY_PORT", defaults.port, int),
        log_level=os.getenv("RELAY_LOG_LEVEL", defaults.log_level).upper(),
        connect_timeout=_env_number("RELAY_CONNECT_TIMEOUT", defaults.connect_timeout, float),
        read_chunk_size=_env_number("RELAY_READ_CHUNK_SIZE", defaults.read_chunk_size, int),
        stream_queue_size=_env_number("RELAY_STREAM_QUEUE_SIZE", defaults.stream_queue_size, int),
        upstream_timeout=_env_number("RELAY_UPSTREAM_TIMEOUT", defaults.upstream_timeout, float),
        path_prefix=os.getenv("RELAY_PATH_PREFIX", defaults.path_prefix).rstrip("/"),
    )
