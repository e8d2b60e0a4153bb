"""Tests for the access gate — decide_access() and AccessGateMiddleware.

The middleware tests mount the gate on a bare FastAPI app with
``app.state`` populated by hand, and drive it through ASGITransport with an
explicit client address.
"""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from ipgate.access.gate import (
    AccessGateMiddleware,
    Decision,
    build_denial_response,
    decide_access,
    normalize_path,
    protected_surface,
)
from ipgate.access.rules import AllowRule
from ipgate.access.store import RuleStore
from ipgate.config import Config, GuardConfig

# ─── Helpers ──────────────────────────────────────────────────────────────────


def _rules(*patterns: str) -> list[AllowRule]:
    return [AllowRule(pattern=p) for p in patterns]


def _make_app(patterns: tuple[str, ...] = ("10.0.0.0/8",), mode: str = "strict") -> FastAPI:
    app = FastAPI()
    app.add_middleware(AccessGateMiddleware)

    config = Config.defaults()
    config.guard.client_ip_mode = mode
    store = RuleStore()
    store.replace_rules(_rules(*patterns))
    app.state.config = config
    app.state.rule_store = store

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    async def passthrough(path: str):
        return {"reached": path}

    return app


async def _get(app: FastAPI, path: str, peer: str, headers: dict | None = None):
    transport = ASGITransport(app=app, client=(peer, 50000))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path, headers=headers or {})


async def _get_raw(app: FastAPI, path: str, peer: str) -> tuple[int, bytes]:
    """Send a GET with ``path`` placed in the ASGI scope untouched.

    HTTP clients resolve dot segments and empty authorities before sending,
    so those request targets only reach the app through a hand-built scope.
    """
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [(b"host", b"test")],
        "client": (peer, 50000),
        "server": ("test", 80),
    }
    done = asyncio.Event()
    sent = False
    status = 0
    body = b""

    async def receive() -> dict:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await done.wait()
        return {"type": "http.disconnect"}

    async def send(message: dict) -> None:
        nonlocal status, body
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body += message.get("body", b"")
            if not message.get("more_body", False):
                done.set()

    await app(scope, receive, send)
    return status, body


# ─── normalize_path() ─────────────────────────────────────────────────────────


class TestNormalizePath:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("/", "/"),
            ("", "/"),
            ("/wp-admin/", "/wp-admin/"),
            ("//wp-admin/", "/wp-admin/"),
            ("//wp-admin//options.php", "/wp-admin/options.php"),
            ("/x/../wp-admin/", "/wp-admin/"),
            ("/./wp-admin/./options.php", "/wp-admin/options.php"),
            ("/../../wp-login.php", "/wp-login.php"),
            ("//wp-login.php", "/wp-login.php"),
            ("/wp-admin/..", "/"),
        ],
    )
    def test_normalized_form(self, raw: str, expected: str) -> None:
        assert normalize_path(raw) == expected

    def test_trailing_slash_kept(self) -> None:
        assert normalize_path("/blog/2024/") == "/blog/2024/"
        assert normalize_path("/blog/2024") == "/blog/2024"

    @pytest.mark.parametrize("raw", ["//wp-admin/", "/x/../wp-admin/", "//wp-login.php"])
    def test_disguised_paths_are_protected(self, raw: str) -> None:
        assert protected_surface(normalize_path(raw), GuardConfig()) is not None


# ─── protected_surface() ──────────────────────────────────────────────────────


class TestProtectedSurface:
    def test_login_substring(self) -> None:
        guard = GuardConfig()
        assert protected_surface("/wp-login.php", guard) == "login"
        assert protected_surface("/blog/wp-login.php", guard) == "login"

    def test_login_case_insensitive(self) -> None:
        assert protected_surface("/WP-LOGIN.PHP", GuardConfig()) == "login"

    def test_admin_prefix(self) -> None:
        guard = GuardConfig()
        assert protected_surface("/wp-admin", guard) == "admin"
        assert protected_surface("/wp-admin/options.php", guard) == "admin"

    def test_prefix_requires_segment_boundary(self) -> None:
        assert protected_surface("/wp-administrator", GuardConfig()) is None

    def test_admin_api_always_protected(self) -> None:
        guard = GuardConfig(admin_prefixes=[])
        assert protected_surface("/ipgate/api/rules", guard) == "admin"

    def test_public_path(self) -> None:
        assert protected_surface("/2024/01/hello-world/", GuardConfig()) is None


# ─── decide_access() ──────────────────────────────────────────────────────────


class TestDecideAccess:
    def test_empty_rules_skip(self) -> None:
        result = decide_access("/wp-admin/", {}, "203.0.113.5", [], GuardConfig())
        assert result.decision is Decision.SKIPPED
        assert result.client_ip is None

    def test_exempt_path_skips(self) -> None:
        result = decide_access(
            "/wp-admin/admin-ajax.php", {}, "203.0.113.5", _rules("10.0.0.0/8"), GuardConfig()
        )
        assert result.decision is Decision.SKIPPED

    def test_cron_path_skips(self) -> None:
        result = decide_access(
            "/wp-cron.php", {}, "203.0.113.5", _rules("10.0.0.0/8"), GuardConfig()
        )
        assert result.decision is Decision.SKIPPED

    def test_unprotected_path_skips(self) -> None:
        result = decide_access("/", {}, "203.0.113.5", _rules("10.0.0.0/8"), GuardConfig())
        assert result.decision is Decision.SKIPPED

    def test_matching_client_allowed(self) -> None:
        result = decide_access(
            "/wp-login.php", {}, "10.1.1.1", _rules("10.0.0.0/8"), GuardConfig()
        )
        assert result.decision is Decision.ALLOWED
        assert result.client_ip == "10.1.1.1"
        assert result.surface == "login"

    def test_non_matching_client_denied(self) -> None:
        result = decide_access(
            "/wp-admin/", {}, "203.0.113.5", _rules("10.0.0.0/8"), GuardConfig()
        )
        assert result.denied
        assert result.client_ip == "203.0.113.5"
        assert result.surface == "admin"

    def test_strict_mode_ignores_forwarded_for(self) -> None:
        result = decide_access(
            "/wp-admin/",
            {"x-forwarded-for": "10.0.0.1"},
            "203.0.113.5",
            _rules("10.0.0.0/8"),
            GuardConfig(),
        )
        assert result.denied

    def test_permissive_mode_reads_forwarded_for(self) -> None:
        result = decide_access(
            "/wp-admin/",
            {"x-forwarded-for": "198.51.100.1"},
            "10.0.0.9",
            _rules("198.51.100.1"),
            GuardConfig(client_ip_mode="permissive"),
        )
        assert result.decision is Decision.ALLOWED


# ─── build_denial_response() ──────────────────────────────────────────────────


class TestDenialResponse:
    def test_status_and_cache_header(self) -> None:
        response = build_denial_response("203.0.113.5", "203.0.113.5")
        assert response.status_code == 403
        assert response.headers["cache-control"] == "no-cache, must-revalidate"
        assert response.headers["content-type"].startswith("text/html")

    def test_addresses_escaped(self) -> None:
        body = build_denial_response("<script>alert(1)</script>", None).body.decode()
        assert "<script>" not in body
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in body
        assert "unknown" in body


# ─── AccessGateMiddleware ─────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestAccessGateMiddleware:
    async def test_denied_client_gets_403_page(self) -> None:
        response = await _get(_make_app(), "/wp-admin/", "203.0.113.5")
        assert response.status_code == 403
        assert "Access Denied" in response.text
        assert "203.0.113.5" in response.text
        assert response.headers["cache-control"] == "no-cache, must-revalidate"

    async def test_allowed_client_passes(self) -> None:
        response = await _get(_make_app(), "/wp-admin/", "10.2.3.4")
        assert response.status_code == 200
        assert response.json() == {"reached": "wp-admin/"}

    async def test_login_path_denied(self) -> None:
        response = await _get(_make_app(), "/wp-login.php?action=lostpassword", "203.0.113.5")
        assert response.status_code == 403

    async def test_public_path_unaffected(self) -> None:
        response = await _get(_make_app(), "/about/", "203.0.113.5")
        assert response.status_code == 200

    async def test_exempt_path_unaffected(self) -> None:
        response = await _get(_make_app(), "/wp-admin/admin-ajax.php", "203.0.113.5")
        assert response.status_code == 200

    async def test_empty_allow_list_disables_gate(self) -> None:
        response = await _get(_make_app(patterns=()), "/wp-admin/", "203.0.113.5")
        assert response.status_code == 200

    async def test_edge_header_value_escaped_in_page(self) -> None:
        response = await _get(
            _make_app(),
            "/wp-admin/",
            "203.0.113.5",
            headers={"CF-Connecting-IP": "<script>x</script>"},
        )
        assert response.status_code == 403
        assert "<script>x</script>" not in response.text
        assert "&lt;script&gt;" in response.text

    async def test_saved_rules_apply_to_next_request(self) -> None:
        app = _make_app()
        assert (await _get(app, "/wp-admin/", "203.0.113.5")).status_code == 403
        app.state.rule_store.replace_rules(_rules("203.0.113.5"))
        assert (await _get(app, "/wp-admin/", "203.0.113.5")).status_code == 200

    @pytest.mark.parametrize(
        "path", ["//wp-admin/options.php", "/x/../wp-admin/", "//wp-login.php"]
    )
    async def test_disguised_protected_paths_denied(self, path: str) -> None:
        status, body = await _get_raw(_make_app(), path, "203.0.113.5")
        assert status == 403
        assert b"Access Denied" in body

    async def test_handler_sees_normalized_path(self) -> None:
        status, body = await _get_raw(_make_app(), "//wp-admin/./x/../options.php", "10.2.3.4")
        assert status == 200
        assert json.loads(body) == {"reached": "wp-admin/options.php"}

    async def test_passes_through_before_state_is_populated(self) -> None:
        app = _make_app()
        del app.state.rule_store
        response = await _get(app, "/wp-admin/", "203.0.113.5")
        assert response.status_code == 200
