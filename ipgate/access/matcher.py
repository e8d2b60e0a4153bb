"""IP match evaluation against allow rules.

is_allowed() is the ONLY function the gate calls. It ORs ip_matches_rule()
across the list and short-circuits on the first match.

INVARIANT: never raises. Anything that does not parse is a non-match.

Supported rule shapes:
  - ``203.0.113.5``   exact string equality with the client IP
  - ``10.0.0.0/8``    IPv4 client inside an IPv4 subnet
  - ``2001:db8::/32`` IPv6 CIDR: accepted by validation, never matches here
"""

from __future__ import annotations

import ipaddress
from typing import Iterable, Optional

from ipgate.access.rules import AllowRule, is_prefix_digits
from ipgate.constants import IPV4_ALL_ONES, IPV4_PREFIX_LENGTH


def ip_matches_rule(client_ip: str, pattern: str) -> bool:
    """Return True if ``client_ip`` satisfies the single rule ``pattern``.

    Exact patterns compare as strings: no case folding, no trimming.
    CIDR patterns compare the top ``prefix`` bits of both addresses as
    unsigned 32-bit integers.
    """
    if "/" not in pattern:
        return client_ip == pattern

    parts = pattern.split("/")
    if len(parts) != 2:
        return False
    subnet, prefix = parts

    client_value = _ipv4_value(client_ip)
    subnet_value = _ipv4_value(subnet)
    if client_value is None or subnet_value is None:
        return False
    if not is_prefix_digits(prefix):
        return False
    bits = int(prefix)
    if bits > IPV4_PREFIX_LENGTH:
        return False

    mask = ipv4_mask(bits)
    return (client_value & mask) == (subnet_value & mask)


def is_allowed(client_ip: str, rules: Iterable[AllowRule]) -> bool:
    """Return True if any rule admits ``client_ip``. An empty iterable denies."""
    return any(ip_matches_rule(client_ip, rule.pattern) for rule in rules)


def ipv4_mask(bits: int) -> int:
    """32-bit mask with the top ``bits`` set; 0 → 0x00000000, 32 → 0xFFFFFFFF."""
    return (IPV4_ALL_ONES << (IPV4_PREFIX_LENGTH - bits)) & IPV4_ALL_ONES


def _ipv4_value(text: str) -> Optional[int]:
    try:
        return int(ipaddress.IPv4Address(text))
    except ValueError:
        return None
