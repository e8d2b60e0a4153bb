"""Health endpoint for IPGate.

  GET /ipgate/health — 503 before ready, 200 with gate status after

Polled by container/cloud health probes. Lives under /ipgate/ so the
catch-all proxy route keeps every other path for the upstream application.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from ipgate.config import Config

router = APIRouter(tags=["health"])


@router.get("/ipgate/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok",
          "guard": "enabled" | "disabled",
          "rule_count": 3,
          "client_ip_mode": "strict" | "permissive",
          "upstream": "http://127.0.0.1:8080"
        }

    ``guard`` is "disabled" while the allow-list is empty.
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "IPGate is starting up."},
        )

    config: Config = request.app.state.config
    rule_count = len(request.app.state.rule_store)
    return {
        "status": "ok",
        "guard": "enabled" if rule_count else "disabled",
        "rule_count": rule_count,
        "client_ip_mode": config.guard.client_ip_mode,
        "upstream": config.upstream.url,
    }
