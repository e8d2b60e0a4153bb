"""HTTP header processing for the IPGate proxy.

  - build_upstream_headers(): strips hop-by-hop headers and the admin token,
    injects X-IPGate-Request-ID, forwards all remaining request headers unchanged.

  - build_client_response_headers(): strips hop-by-hop headers from upstream
    responses, forwards everything else unchanged.

RFC 7230 §6.1 — hop-by-hop headers MUST NOT be forwarded by intermediaries.
"""

from __future__ import annotations

from typing import Iterable

import httpx

from ipgate.constants import ADMIN_TOKEN_HEADER, REQUEST_ID_HEADER

# ─── Constants ────────────────────────────────────────────────────────────────

# httpx sets content-length from content=, and host comes from the upstream URL.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# Consumed at the gate, never forwarded to the upstream application.
_GATE_ONLY_HEADERS: frozenset[str] = frozenset(
    {ADMIN_TOKEN_HEADER.lower(), REQUEST_ID_HEADER.lower()}
)

# ─── Public API ───────────────────────────────────────────────────────────────


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
    request_id: str,
) -> dict[str, str]:
    """Build the header dict to send to the upstream application.

    Args:
        request_headers: (name, value) pairs from the incoming request,
                         typically ``request.headers.items()``.
        request_id:      ULID generated at proxy handler entry.

    Returns:
        Headers for the upstream request, with ``X-IPGate-Request-ID`` set.
    """
    headers: dict[str, str] = {}

    for name, value in request_headers:
        lower_name = name.lower()
        if lower_name in HOP_BY_HOP_HEADERS or lower_name in _GATE_ONLY_HEADERS:
            continue
        headers[name] = value

    headers[REQUEST_ID_HEADER] = request_id
    return headers


def build_client_response_headers(
    upstream_headers: httpx.Headers,
) -> list[tuple[str, str]]:
    """Build the header list returned to the client from the upstream response.

    A list of pairs, not a dict, so repeated headers such as ``Set-Cookie``
    survive intact.
    """
    return [
        (name, value)
        for name, value in upstream_headers.multi_items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]
