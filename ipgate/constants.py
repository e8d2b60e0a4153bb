"""Shared constants for IPGate.

Header names, address ranges and numeric caps used across modules are defined
here. No magic values in other modules — import from here.
"""

from __future__ import annotations

import ipaddress

# ─── Client identity ──────────────────────────────────────────────────────────

# Returned when no usable client address can be resolved. Flows through the
# ordinary match path like any other address.
UNRESOLVED_CLIENT_IP: str = "0.0.0.0"

# Header set by a managed edge proxy (Cloudflare). Trusted in both modes.
EDGE_CLIENT_IP_HEADER: str = "cf-connecting-ip"

# Forwarding headers consulted in permissive mode, highest priority first.
# The transport peer address is tried after all of these.
PERMISSIVE_CLIENT_IP_HEADERS: tuple[str, ...] = (
    "cf-connecting-ip",
    "x-forwarded-for",
    "x-forwarded",
    "x-cluster-client-ip",
    "forwarded-for",
    "forwarded",
)

CLIENT_IP_MODE_STRICT: str = "strict"
CLIENT_IP_MODE_PERMISSIVE: str = "permissive"
VALID_CLIENT_IP_MODES: frozenset[str] = frozenset(
    {CLIENT_IP_MODE_STRICT, CLIENT_IP_MODE_PERMISSIVE}
)

# ─── Address ranges rejected by permissive resolution ────────────────────────

PRIVATE_NETWORKS: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)

RESERVED_NETWORKS: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] = (
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("240.0.0.0/4"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("::ffff:0:0/96"),
    ipaddress.ip_network("fe80::/10"),
)

# ─── Rule format ──────────────────────────────────────────────────────────────

# Prefix widths. Validation bounds a prefix by its address family; evaluation
# only implements IPv4 CIDR.
MAX_PREFIX_LENGTH: int = 128
IPV4_PREFIX_LENGTH: int = 32
IPV4_ALL_ONES: int = 0xFFFFFFFF

# ─── Denial response ──────────────────────────────────────────────────────────

DENY_STATUS_CODE: int = 403
DENY_CACHE_CONTROL: str = "no-cache, must-revalidate"

# ─── Admin API ────────────────────────────────────────────────────────────────

ADMIN_API_PREFIX: str = "/ipgate/api"
ADMIN_TOKEN_HEADER: str = "X-IPGate-Admin-Token"
ADMIN_RATE_LIMIT: str = "20/minute"

# Human-verification challenge: operands are drawn from these inclusive ranges.
CHALLENGE_LEFT_RANGE: tuple[int, int] = (3, 9)
CHALLENGE_RIGHT_RANGE: tuple[int, int] = (2, 9)
CHALLENGE_TTL_S: float = 600.0
# Outstanding challenges kept in memory; oldest evicted beyond this.
CHALLENGE_MAX_OUTSTANDING: int = 1000

# ─── Proxy ────────────────────────────────────────────────────────────────────

REQUEST_ID_HEADER: str = "X-IPGate-Request-ID"
