"""Async HTTP proxy handler for IPGate.

Forwards every request that the access gate let through to the configured
upstream application.

Key design properties:
  - Shared httpx.AsyncClient at app.state.http_client — never instantiated per-request
  - Request body forwarded as raw bytes; response streamed back as raw bytes
  - Redirects are passed through to the client, never followed
  - No blocking I/O anywhere — async/await throughout

Failure modes:
  - httpx.ConnectError / TimeoutException / RemoteProtocolError → HTTP 502
  - httpx.InvalidURL (bad upstream.url) → HTTP 500, logged at ERROR
  - Upstream HTTP 4xx/5xx → passed through as-is
"""

from __future__ import annotations

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from ipgate.access.gate import normalize_path
from ipgate.config import Config
from ipgate.proxy.headers import build_client_response_headers, build_upstream_headers
from ipgate.utils.logger import clear_request_id, get_logger, set_request_id
from ipgate.utils.ulid import generate_ulid

logger = get_logger(__name__)

router = APIRouter(tags=["proxy"])

# ─── Constants ────────────────────────────────────────────────────────────────

POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 100
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds
PROXY_TIMEOUT: float = 30.0  # total request timeout


# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client() -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient with connection pooling configured.

    Created once at lifespan startup and stored in app.state.http_client.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(PROXY_TIMEOUT),
        follow_redirects=False,
    )


def upstream_url_for(path: str, config: Config) -> str:
    """Join the configured upstream base URL and the normalised request path."""
    return config.upstream.url.rstrip("/") + normalize_path("/" + path)


# ─── Proxy handler ────────────────────────────────────────────────────────────


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"],
)
async def proxy_handler(request: Request, path: str) -> Response:
    """Transparent HTTP proxy handler.

    Readiness gate is enforced as a router-level dependency (`require_ready`)
    registered in create_app(). The access gate has already run by the time
    this handler is reached.
    """
    request_id = generate_ulid()
    set_request_id(request_id)
    try:
        return await _forward(request, path, request_id)
    finally:
        clear_request_id()


async def _forward(request: Request, path: str, request_id: str) -> Response:
    config: Config = request.app.state.config
    http_client: httpx.AsyncClient = request.app.state.http_client

    upstream_url = upstream_url_for(path, config)
    body: bytes = await request.body()

    upstream_request = http_client.build_request(
        method=request.method,
        url=upstream_url,
        headers=build_upstream_headers(request.headers.items(), request_id),
        content=body,
        params=request.query_params.multi_items(),
    )

    try:
        upstream_response = await http_client.send(upstream_request, stream=True)
    except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError) as exc:
        logger.warning(
            "upstream_unavailable",
            upstream_url=upstream_url,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(
            status_code=502,
            content={
                "error": {
                    "message": "Upstream application unavailable",
                    "code": "upstream_unavailable",
                    "request_id": request_id,
                }
            },
        )
    except httpx.InvalidURL as exc:
        logger.error("invalid_upstream_url", upstream_url=upstream_url, error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal configuration error", "code": "config_error"}},
        )

    logger.info(
        "request_proxied",
        method=request.method,
        path=request.url.path,
        upstream=upstream_url,
        status_code=upstream_response.status_code,
    )

    response = StreamingResponse(
        content=upstream_response.aiter_raw(),
        status_code=upstream_response.status_code,
        background=BackgroundTask(upstream_response.aclose),
    )
    # Raw pairs keep repeated headers (Set-Cookie) and the upstream content-type
    response.raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in build_client_response_headers(upstream_response.headers)
    ]
    return response
