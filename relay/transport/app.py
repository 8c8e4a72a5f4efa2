"""
Relay Application

FastAPI application exposing the WebSocket relay and its HTTP helpers.
This is the main entry point for running the relay.

WebSocket endpoints (any prefix, routed by suffix):
- /vpn/tunnel?host=<host>&port=<port>: raw TCP tunnel
- /vpn/http-stream: streaming HTTP proxy

HTTP endpoints:
- POST /proxy: single-shot fetch of {url, method, headers, data}
- POST /curl: translate a captured curl command and fetch it
- GET /vpn/test: tunnel diagnostics
- GET /health: status and live session counts

Configuration is read from RELAY_* environment variables, optionally from
a .env file in the project root (see relay.config).
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field, ValidationError

# Load environment variables from .env file
load_dotenv()

from relay import __version__
from relay.config import RelaySettings, load_settings
from relay.outbound.curl import CurlParseError, parse_curl_command
from relay.outbound.proxy import fetch, single_shot_client_factory
from relay.outbound.request import OutboundRequest
from relay.session.bridge import SessionRegistry
from relay.session.stream import ClientFactory
from relay.transport.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class ProxyPayload(BaseModel):
    """Body of POST /proxy."""
    url: str | None = None
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_app(
    settings: RelaySettings | None = None,
    stream_client_factory: ClientFactory | None = None,
    fetch_client_factory: ClientFactory | None = None,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Relay settings; read from the environment if omitted
        stream_client_factory: httpx client factory for stream sessions
        fetch_client_factory: httpx client factory for /proxy and /curl
    """
    settings = settings or load_settings()
    registry = SessionRegistry()
    dispatcher = Dispatcher(
        settings=settings,
        registry=registry,
        client_factory=stream_client_factory,
    )
    fetch_clients = fetch_client_factory or single_shot_client_factory(settings.upstream_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting relay...")
        logger.info(
            f"Tunnel connect timeout {settings.connect_timeout}s, "
            f"stream queue {settings.stream_queue_size} frames"
        )
        yield
        logger.info(f"Relay stopped ({registry.count()} sessions still open)")

    app = FastAPI(
        title="WebSocket Relay",
        description="TCP tunnel and streaming HTTP proxy over WebSocket",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.registry = registry

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        logger.info(f"{request.method} {request.url.path}")
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}: {e}")
            response = JSONResponse(
                status_code=500,
                content={
                    "error": str(e) or "Internal Server Error",
                    "status": 500,
                    "path": request.url.path,
                    "method": request.method,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Response-Time"] = f"{elapsed_ms}ms"
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms)")
        return response

    # Added last so it wraps the logging middleware and answers preflights
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.post("/proxy")
    async def proxy_endpoint(request: Request):
        """Fetch {url, method, headers, data} and return the body verbatim."""
        try:
            payload = ProxyPayload.model_validate(await _json_body(request))
        except ValidationError as e:
            return PlainTextResponse(f"Invalid request body: {e}", status_code=400)

        if not payload.url:
            return PlainTextResponse('Missing "url" field in request body.', status_code=400)

        try:
            outbound = OutboundRequest(
                url=payload.url,
                method=payload.method or "GET",
                headers=payload.headers,
                data=payload.data,
            )
            response = await fetch(outbound, fetch_clients, only_body_methods=True)
        except Exception as e:
            logger.warning(f"Proxy error for {payload.url}: {e}")
            return PlainTextResponse(f"Proxy error: {e}", status_code=500)

        return Response(
            content=response.content,
            status_code=response.status_code,
            media_type=response.headers.get("content-type"),
        )

    @app.post("/curl")
    async def curl_endpoint(request: Request):
        """Translate a curl command (body or query "curl") and fetch it."""
        params = await _json_body(request)
        params.update(request.query_params)
        command = params.get("curl")

        outbound: OutboundRequest | None = None
        try:
            if not isinstance(command, str):
                raise CurlParseError('Missing "curl" command')
            outbound = parse_curl_command(command)
            response = await fetch(outbound, fetch_clients)
        except Exception as e:
            logger.warning(f"curl proxy error: {e}")
            return JSONResponse(
                status_code=500,
                content={
                    "code": 500,
                    "message": str(e),
                    "request": outbound.model_dump() if outbound else None,
                },
            )

        return Response(
            content=response.content,
            status_code=200,
            media_type=response.headers.get("content-type"),
            headers={"X-Upstream-Status": str(response.status_code)},
        )

    @app.get(f"{settings.path_prefix}/test")
    async def tunnel_test(host: str = "github.com", port: str = "443"):
        """Diagnostics for clients configuring the tunnel."""
        try:
            port_number = int(port)
        except ValueError:
            port_number = 443
        return {
            "host": host,
            "port": port_number,
            "message": f"Use WebSocket {settings.path_prefix}/tunnel for proxy. "
                       f"GET {settings.path_prefix}/test is OK.",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "sessions": registry.summary(),
        }

    @app.websocket("/{path:path}")
    async def websocket_endpoint(websocket: WebSocket, path: str):
        """
        WebSocket endpoint for both relay protocols.

        The dispatcher picks the session type from the path suffix.
        """
        await dispatcher.handle(websocket)

    return app


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


settings = load_settings()
configure_logging(settings.log_level)
app = create_app(settings)
