"""Client IP resolution for the access gate.

Produces the single address evaluated against the allow-list, under one of
two trust policies for proxy headers:

  strict      CF-Connecting-IP if present, else the transport peer address.
              X-Forwarded-For and other client-settable headers are ignored.
  permissive  First public address among CF-Connecting-IP, X-Forwarded-For,
              X-Forwarded, X-Cluster-Client-IP, Forwarded-For, Forwarded and
              the transport peer. UNRESOLVED_CLIENT_IP if none qualifies.

resolve_client_ip() is pure: it reads only its arguments and never raises.
"""

from __future__ import annotations

from typing import Mapping, Optional

from ipgate.access.rules import parse_ip
from ipgate.constants import (
    CLIENT_IP_MODE_PERMISSIVE,
    EDGE_CLIENT_IP_HEADER,
    PERMISSIVE_CLIENT_IP_HEADERS,
    PRIVATE_NETWORKS,
    RESERVED_NETWORKS,
    UNRESOLVED_CLIENT_IP,
)


def resolve_client_ip(
    headers: Mapping[str, str],
    peer: Optional[str],
    mode: str,
) -> str:
    """Resolve the client address for one request.

    Args:
        headers: Request headers. Names are matched case-insensitively.
        peer:    Transport-layer peer address (``request.client.host``), or None.
        mode:    ``"strict"`` or ``"permissive"``. Anything else is strict.

    Returns:
        The resolved address string, or ``UNRESOLVED_CLIENT_IP``.
    """
    lowered = {name.lower(): value for name, value in headers.items()}

    if mode == CLIENT_IP_MODE_PERMISSIVE:
        return _resolve_permissive(lowered, peer)
    return _resolve_strict(lowered, peer)


def is_public_ip(text: str) -> bool:
    """True for an IP literal outside the private and reserved ranges."""
    address = parse_ip(text)
    if address is None:
        return False
    for network in PRIVATE_NETWORKS + RESERVED_NETWORKS:
        if address.version == network.version and address in network:
            return False
    return True


def _resolve_strict(headers: dict[str, str], peer: Optional[str]) -> str:
    edge = headers.get(EDGE_CLIENT_IP_HEADER, "").strip()
    if edge:
        return edge
    return peer if peer else UNRESOLVED_CLIENT_IP


def _resolve_permissive(headers: dict[str, str], peer: Optional[str]) -> str:
    candidates = [headers.get(name) for name in PERMISSIVE_CLIENT_IP_HEADERS]
    candidates.append(peer)

    for raw in candidates:
        if not raw:
            continue
        first = raw.split(",")[0].strip()
        if is_public_ip(first):
            return first
    return UNRESOLVED_CLIENT_IP
