"""ULID generation utility for IPGate.

Provides `generate_ulid()`, a 26-character ULID used as:
  - X-IPGate-Request-ID header value (injected on every proxied request)
  - request_id field in structured log entries

Uses the `python-ulid` library — do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Returns:
        str: Crockford Base32 ULID, e.g. ``"01KJ0JRVHYA7KX32VPN5ZSCTMV"``.
    """
    return str(ULID())
