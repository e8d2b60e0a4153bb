"""Admin token authentication for the IPGate admin API.

Provides ``require_admin_token()``: a FastAPI Depends()-compatible dependency
that checks ``X-IPGate-Admin-Token`` against the ``IPGATE_ADMIN_TOKEN``
environment variable.

  - IPGATE_ADMIN_TOKEN unset or empty → admin API disabled, HTTP 403
  - header missing or wrong            → HTTP 401

The env var is read per request so tests can override it via monkeypatch.
This check runs after the access gate: a caller must be on the allow-list
(or the allow-list must be empty) AND hold the token.
"""

from __future__ import annotations

import os
import secrets

from fastapi import HTTPException, Request

from ipgate.constants import ADMIN_TOKEN_HEADER
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)


def _configured_token() -> str:
    return os.environ.get("IPGATE_ADMIN_TOKEN", "").strip()


async def require_admin_token(request: Request) -> None:
    """FastAPI dependency: authenticate an admin API call.

    Raises:
        HTTPException(403): Admin API disabled (no token configured).
        HTTPException(401): Token header missing or not matching.
    """
    expected = _configured_token()
    if not expected:
        raise HTTPException(
            status_code=403,
            detail={
                "message": "Admin API is disabled. Set IPGATE_ADMIN_TOKEN to enable it.",
                "code": "admin_disabled",
            },
        )

    presented = request.headers.get(ADMIN_TOKEN_HEADER, "")
    if not presented or not secrets.compare_digest(presented.encode(), expected.encode()):
        logger.warning(
            "Admin authentication failed",
            path=str(request.url.path),
            method=request.method,
        )
        raise HTTPException(
            status_code=401,
            detail={"message": "Missing or invalid admin token", "code": "unauthorized"},
        )
