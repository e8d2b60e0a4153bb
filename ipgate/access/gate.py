"""Access enforcement gate for IPGate.

Restricts the login endpoint and the administrative area to the configured
allow-list. Per request:

    START → skip? ─────────────────────→ SKIPPED  (pass through)
          → EVALUATE → match ─────────→ ALLOWED  (pass through)
                     → no match ──────→ DENIED   (403, request ends)

A request is SKIPPED when it targets an exempt background endpoint (task
runner, polling), when the allow-list is empty (the gate is disabled, not
deny-all), or when its path is neither a login nor an admin path.

The middleware is registered outermost in create_app() so a denial happens
before any handler, body read or upstream connection. Nothing has been sent
on the response at that point, so the denial is always a complete 403.
"""

from __future__ import annotations

import enum
import html
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response

from ipgate.access.client_ip import resolve_client_ip
from ipgate.access.matcher import is_allowed
from ipgate.access.rules import AllowRule
from ipgate.config import GuardConfig
from ipgate.constants import DENY_CACHE_CONTROL, DENY_STATUS_CODE
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)

_DENIAL_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>Security Checkpoint</title></head>
<body>
<h1>Access Denied</h1>
<p>Your IP address (<strong>{client_ip}</strong>) is not on the authorised list.</p>
<hr>
<p style="font-size:12px; color:#666;">Connection address: {peer}.<br>
If you are an administrator, connect from an authorised network.</p>
</body>
</html>
"""


class Decision(str, enum.Enum):
    SKIPPED = "skipped"
    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass(frozen=True)
class AccessDecision:
    decision: Decision
    client_ip: Optional[str] = None
    surface: Optional[str] = None  # "login" | "admin" when evaluated

    @property
    def denied(self) -> bool:
        return self.decision is Decision.DENIED


# ─── Path classification ──────────────────────────────────────────────────────


def normalize_path(path: str) -> str:
    """Collapse repeated slashes and resolve ``.`` and ``..`` segments.

    A trailing slash is kept and ``..`` never climbs above the root. The gate
    classifies this value and the proxy forwards it.
    """
    segments: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if segments:
                segments.pop()
            continue
        segments.append(segment)
    normalized = "/" + "/".join(segments)
    if segments and path.endswith("/"):
        normalized += "/"
    return normalized


def is_exempt_path(path: str, guard: GuardConfig) -> bool:
    return path in guard.exempt_paths


def protected_surface(path: str, guard: GuardConfig) -> Optional[str]:
    """Return "login" or "admin" for protected paths, else None."""
    lowered = path.lower()
    if any(name.lower() in lowered for name in guard.login_paths if name):
        return "login"
    if any(_under_prefix(path, prefix) for prefix in guard.protected_prefixes):
        return "admin"
    return None


def _under_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    if not prefix:
        return False
    return path == prefix or path.startswith(prefix + "/")


# ─── Decision ─────────────────────────────────────────────────────────────────


def decide_access(
    path: str,
    headers: Mapping[str, str],
    peer: Optional[str],
    rules: Sequence[AllowRule],
    guard: GuardConfig,
) -> AccessDecision:
    """Decide whether one request may proceed. Pure; never raises."""
    if is_exempt_path(path, guard):
        return AccessDecision(Decision.SKIPPED)
    if not rules:
        return AccessDecision(Decision.SKIPPED)
    surface = protected_surface(path, guard)
    if surface is None:
        return AccessDecision(Decision.SKIPPED)

    client_ip = resolve_client_ip(headers, peer, guard.client_ip_mode)
    if is_allowed(client_ip, rules):
        return AccessDecision(Decision.ALLOWED, client_ip=client_ip, surface=surface)
    return AccessDecision(Decision.DENIED, client_ip=client_ip, surface=surface)


def build_denial_response(client_ip: str, peer: Optional[str]) -> HTMLResponse:
    """403 page naming the resolved client IP. Both addresses are HTML-escaped."""
    body = _DENIAL_PAGE.format(
        client_ip=html.escape(client_ip),
        peer=html.escape(peer or "unknown"),
    )
    return HTMLResponse(
        content=body,
        status_code=DENY_STATUS_CODE,
        headers={"Cache-Control": DENY_CACHE_CONTROL},
    )


# ─── Middleware ───────────────────────────────────────────────────────────────


class AccessGateMiddleware(BaseHTTPMiddleware):
    """Enforce the allow-list on login and admin paths.

    Reads ``app.state.config`` and ``app.state.rule_store`` per request, so a
    saved or hot-reloaded allow-list applies to the next request. Before the
    lifespan has populated state the gate passes everything through, matching
    the empty-allow-list behaviour.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        # Routing and the proxy see the same path the gate classifies
        path = normalize_path(request.scope["path"])
        request.scope["path"] = path

        store = getattr(request.app.state, "rule_store", None)
        config = getattr(request.app.state, "config", None)
        if store is None or config is None:
            return await call_next(request)

        peer = request.client.host if request.client else None
        result = decide_access(
            path=path,
            headers=request.headers,
            peer=peer,
            rules=store.get_rules(),
            guard=config.guard,
        )

        if result.denied:
            logger.warning(
                "Access denied: client not on allow-list",
                client_ip=result.client_ip,
                peer=peer,
                surface=result.surface,
                path=path,
                method=request.method,
            )
            return build_denial_response(result.client_ip or "", peer)

        if result.decision is Decision.ALLOWED:
            logger.debug(
                "Access granted",
                client_ip=result.client_ip,
                surface=result.surface,
                path=path,
            )
        return await call_next(request)
