"""IPGate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()          → app.state.config
  2. RuleStore.load()       → app.state.rule_store (+ watchfiles hot-reload task)
  3. ChallengeBook()        → app.state.challenges
  4. create_http_client()   → app.state.http_client
  5. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → stop watcher → close HTTP client

Middleware order (Starlette: last added runs first):
  AccessGateMiddleware → SlowAPIMiddleware → routes
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from ipgate.access.gate import AccessGateMiddleware
from ipgate.access.store import RuleStore
from ipgate.admin.challenge import ChallengeBook
from ipgate.admin.limiter import limiter
from ipgate.admin.router import router as admin_router
from ipgate.config import Config, load_config
from ipgate.constants import ADMIN_API_PREFIX
from ipgate.health import router as health_router
from ipgate.proxy.engine import create_http_client, router as engine_router
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "IPGate is starting up."},
        )


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("IPGate starting up...")

    # ── Step 1: Load configuration ────────────────────────────────────────────
    # load_config() raises SystemExit on an invalid file, before ready=True.
    config: Config = load_config()
    app.state.config = config

    # ── Step 2: Allow-list store + hot-reload watcher ─────────────────────────
    rules_path = os.path.expanduser(config.guard.rules_path)
    rule_store = RuleStore(rules_path)
    loaded = rule_store.load()
    app.state.rule_store = rule_store
    if loaded > 0:
        logger.info("Allow-list loaded — gate enabled", path=rules_path, count=loaded)
    else:
        logger.warning(
            "Allow-list empty — login and admin paths are NOT restricted",
            path=rules_path,
        )

    watcher_task: asyncio.Task[None] | None = None
    if config.guard.watch_rules and os.path.isdir(os.path.dirname(os.path.abspath(rules_path))):
        watcher_task = asyncio.create_task(rule_store.start_watcher())
    else:
        logger.debug("Rules file watcher disabled", path=rules_path)

    # ── Step 3: Verification challenges for admin saves ──────────────────────
    app.state.challenges = ChallengeBook()

    # ── Step 4: Shared HTTP client for the upstream ───────────────────────────
    http_client: httpx.AsyncClient = create_http_client()
    app.state.http_client = http_client

    # ── Step 5: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "IPGate ready",
        upstream=config.upstream.url,
        client_ip_mode=config.guard.client_ip_mode,
        rule_count=len(rule_store),
    )

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("IPGate shutting down...")
    app.state.ready = False

    if watcher_task is not None and not watcher_task.done():
        watcher_task.cancel()
        try:
            await watcher_task
        except asyncio.CancelledError:
            pass

    try:
        await http_client.aclose()
    except Exception as exc:
        logger.warning("HTTP client close error (non-fatal)", error=str(exc))

    logger.info("IPGate shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the IPGate FastAPI application.

    Call this function directly in tests to get an isolated app instance.
    The module-level `app` is created at import time for uvicorn.
    """
    # OpenAPI docs would shadow upstream paths and expose the admin schema.
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="IPGate",
        description="IP allow-list gateway for login and administrative surfaces",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/ipgate/docs" if _debug else None,
        redoc_url=None,
        openapi_url="/ipgate/openapi.json" if _debug else None,
    )

    application.state.ready = False

    # Rate limiter, attached to app state as required by slowapi.
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    application.add_middleware(SlowAPIMiddleware)

    # Access gate. Registered LAST so it runs FIRST: a denied request never
    # reaches rate limiting, routing, body reads or the upstream.
    application.add_middleware(AccessGateMiddleware)

    # IPGate's own routes first; the catch-all proxy route must come last.
    application.include_router(health_router)
    application.include_router(admin_router, prefix=ADMIN_API_PREFIX)
    application.include_router(engine_router, dependencies=[Depends(require_ready)])

    # Global exception handlers
    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
