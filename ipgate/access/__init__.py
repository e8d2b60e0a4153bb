"""IPGate access control — allow-list decision engine and enforcement gate.

Public API:
    AllowRule            — single allow-list entry dataclass
    validate_rule_format — format check applied before a rule is stored
    ip_matches_rule      — one rule vs one client IP
    is_allowed           — OR across an allow-list
    resolve_client_ip    — strict / permissive client address resolution
    RuleStore            — YAML-backed allow-list with hot-reload
    AccessGateMiddleware — Starlette middleware enforcing the allow-list
"""
from ipgate.access.client_ip import resolve_client_ip
from ipgate.access.gate import AccessGateMiddleware, decide_access
from ipgate.access.matcher import ip_matches_rule, is_allowed
from ipgate.access.rules import AllowRule, filter_rules, validate_rule_format
from ipgate.access.store import RuleStore

__all__ = [
    "AccessGateMiddleware",
    "AllowRule",
    "RuleStore",
    "decide_access",
    "filter_rules",
    "ip_matches_rule",
    "is_allowed",
    "resolve_client_ip",
    "validate_rule_format",
]
