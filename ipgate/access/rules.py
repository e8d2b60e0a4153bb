"""Allow-rule model and rule format validation.

An allow rule is an IPv4/IPv6 literal or a CIDR expression ``address/prefix``.
Validation here is format-only: it decides whether a string may enter the
persisted allow-list. It never canonicalises, trims or deduplicates.

filter_rules() is the ONLY path by which user input becomes stored rules.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import asdict, dataclass
from typing import Iterable, Mapping, Optional

from ipgate.constants import IPV4_PREFIX_LENGTH, MAX_PREFIX_LENGTH
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")


# ─── AllowRule dataclass ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class AllowRule:
    """A single allow-list entry.

    Fields:
        pattern: IP literal or ``address/prefix``. Already format-validated
                 when the rule comes out of filter_rules() or the rule store.
        note:    Free-text label shown to administrators. Never evaluated.
    """

    pattern: str
    note: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


# ─── Format validation ────────────────────────────────────────────────────────


def parse_ip(text: str) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    """Parse a plain IPv4 or IPv6 literal (no zone ID); None if it is not one."""
    if "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def is_prefix_digits(text: str) -> bool:
    return text.isascii() and text.isdigit()


def validate_rule_format(text: str) -> bool:
    """Decide whether ``text`` is a legal allow-rule pattern.

    - With ``/``: exactly two parts, an IPv4/IPv6 address and a non-negative
      integer prefix no wider than the address (32 for IPv4, 128 for IPv6).
    - Without ``/``: a plain IPv4 or IPv6 literal.
    """
    if "/" in text:
        parts = text.split("/")
        if len(parts) != 2:
            return False
        address, prefix = parts
        parsed = parse_ip(address)
        if parsed is None or not is_prefix_digits(prefix):
            return False
        width = IPV4_PREFIX_LENGTH if parsed.version == 4 else MAX_PREFIX_LENGTH
        return int(prefix) <= width
    return parse_ip(text) is not None


def sanitize_note(value: object) -> str:
    """Strip markup and control characters from a note, collapsing whitespace."""
    if value is None:
        return ""
    text = _TAG_RE.sub("", str(value))
    text = _CONTROL_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


# ─── Save-time filtering ──────────────────────────────────────────────────────


def filter_rules(
    entries: Iterable[Mapping[str, object]],
    *,
    pattern_keys: tuple[str, ...] = ("pattern",),
) -> tuple[list[AllowRule], int]:
    """Turn raw ``{pattern, note}`` mappings into validated AllowRules.

    Patterns are trimmed before validation. Entries with a blank pattern are
    skipped without counting (empty form rows). Entries failing
    validate_rule_format() are dropped and counted.

    Args:
        entries:      Raw mappings (request bodies or parsed YAML).
        pattern_keys: Keys tried in order for the pattern value. The rule file
                      loader also accepts the legacy ``ip`` key.

    Returns:
        ``(valid_rules, rejected_count)``
    """
    valid: list[AllowRule] = []
    rejected = 0

    for index, entry in enumerate(entries):
        raw_pattern = _first_present(entry, pattern_keys)
        if raw_pattern is None:
            continue
        pattern = str(raw_pattern).strip()
        if not pattern:
            continue

        if not validate_rule_format(pattern):
            rejected += 1
            logger.warning("Rejected malformed allow rule", index=index, pattern=pattern)
            continue

        valid.append(AllowRule(pattern=pattern, note=sanitize_note(entry.get("note"))))

    return valid, rejected


def _first_present(entry: Mapping[str, object], keys: tuple[str, ...]) -> Optional[object]:
    for key in keys:
        if entry.get(key) is not None:
            return entry[key]
    return None
