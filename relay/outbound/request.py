"""
Outbound Request Descriptor

The single description of an HTTP request the relay issues on behalf of a
client. Produced by the curl translator, by the /proxy endpoint, and by a
stream session's request-meta message.
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import SplitResult, urlsplit

from pydantic import BaseModel, Field

DEFAULT_PORTS = {"http": 80, "https": 443}

# Hop-by-hop or proxy-only headers that must not be re-issued by the relay
STRIPPED_HEADERS = frozenset({
    "proxy-connection",
    "proxy-authorization",
    "transfer-encoding",
})

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


class OutboundRequestError(ValueError):
    """Raised when a request descriptor cannot be issued."""


def _split(url: str) -> SplitResult:
    parts = urlsplit(url)
    if parts.scheme.lower() not in DEFAULT_PORTS:
        raise OutboundRequestError(f"Unsupported URL scheme: {url!r}")
    if not parts.hostname:
        raise OutboundRequestError(f"URL has no host: {url!r}")
    try:
        parts.port
    except ValueError as e:
        raise OutboundRequestError(f"Invalid port in URL {url!r}: {e}") from e
    return parts


def target_port(url: str) -> int:
    """Explicit port of the URL, else 443 for https and 80 for http."""
    parts = _split(url)
    return parts.port or DEFAULT_PORTS[parts.scheme.lower()]


def authority(url: str) -> str:
    """
    Host header value for a URL.

    The port is included only when it differs from the scheme default.
    """
    parts = _split(url)
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    port = target_port(url)
    if port != DEFAULT_PORTS[parts.scheme.lower()]:
        return f"{host}:{port}"
    return host


def sanitize_headers(headers: dict[str, str] | None, url: str) -> dict[str, str]:
    """
    Prepare client headers for re-issue by the relay.

    Proxy-only headers are dropped and Host is rewritten to the target's
    authority, whatever the client sent.
    """
    clean: dict[str, str] = {}
    for name, value in (headers or {}).items():
        lowered = name.lower()
        if lowered in STRIPPED_HEADERS or lowered == "host":
            continue
        clean[name] = value
    clean["host"] = authority(url)
    return clean


class OutboundRequest(BaseModel):
    """
    Structured outbound HTTP request.

    Matches the descriptor produced from a captured curl command:
    url, method, headers, data, cookies, auth and insecure.
    """
    url: str = Field(
        ...,
        description="Absolute target URL"
    )
    method: str = Field(
        default="GET",
        description="HTTP method"
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Request headers"
    )
    data: Any = Field(
        default=None,
        description="Request body; non-string values are sent as JSON"
    )
    cookies: dict[str, str] | None = Field(
        default=None,
        description="Cookies to send in a Cookie header"
    )
    auth: str | None = Field(
        default=None,
        description="Basic auth credentials as user:password"
    )
    insecure: bool = Field(
        default=False,
        description="Skip TLS certificate verification"
    )

    @property
    def normalized_method(self) -> str:
        return (self.method or "GET").upper()

    def body(self) -> bytes | None:
        """Encoded request body, or None when nothing should be sent."""
        if self.data is None:
            return None
        if isinstance(self.data, bytes):
            return self.data
        if isinstance(self.data, str):
            return self.data.encode("utf-8")
        return json.dumps(self.data).encode("utf-8")

    def basic_auth(self) -> tuple[str, str] | None:
        if not self.auth:
            return None
        user, _, password = self.auth.partition(":")
        return user, password

    def prepared_headers(self, sanitize: bool = True) -> dict[str, str]:
        """Headers to put on the wire, with cookies folded into a Cookie header."""
        if sanitize:
            headers = sanitize_headers(self.headers, self.url)
        else:
            _split(self.url)
            headers = dict(self.headers)
        if self.cookies:
            cookie = "; ".join(f"{name}={value}" for name, value in self.cookies.items())
            existing = next((k for k in headers if k.lower() == "cookie"), None)
            if existing:
                headers[existing] = f"{headers[existing]}; {cookie}"
            else:
                headers["cookie"] = cookie
        return headers

    def to_httpx_kwargs(self, sanitize: bool = True, only_body_methods: bool = False) -> dict[str, Any]:
        """
        Keyword arguments for ``httpx.AsyncClient.request``/``build_request``.

        Args:
            sanitize: Strip proxy headers and rewrite Host
            only_body_methods: Send the body only for POST, PUT and PATCH
        """
        method = self.normalized_method
        kwargs: dict[str, Any] = {
            "method": method,
            "url": self.url,
            "headers": self.prepared_headers(sanitize=sanitize),
        }
        body = self.body()
        if body is not None and (not only_body_methods or method in BODY_METHODS):
            kwargs["content"] = body
        return kwargs
