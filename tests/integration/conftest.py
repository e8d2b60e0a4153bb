"""Shared fixtures for full-application tests.

``make_gate`` builds the real IPGate app (create_app + lifespan) against a
MockTransport upstream, with config and rules file under tmp_path. Tests
drive it through starlette's TestClient, whose transport peer is the string
"testclient"; the gate sees a real address via CF-Connecting-IP, which
strict mode trusts.
"""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import httpx
import pytest
import yaml
from starlette.testclient import TestClient

from ipgate.config import Config
from ipgate.main import create_app

ADMIN_TOKEN = "test-admin-token"


class UpstreamBody(httpx.AsyncByteStream):
    """Response body httpx leaves unread, so the proxy streams it with aiter_raw()."""

    def __init__(self, body: bytes) -> None:
        self._body = body

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self._body


class MockUpstream:
    """In-process upstream that records requests and returns a fixed response."""

    def __init__(
        self,
        *,
        status_code: int = 200,
        body: bytes = b"<html>upstream</html>",
        headers: Optional[list[tuple[str, str]]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.received_requests: list[httpx.Request] = []
        self._status_code = status_code
        self._body = body
        self._headers = headers or [("content-type", "text/html; charset=utf-8")]
        self._error = error

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.received_requests.append(request)
        if self._error is not None:
            raise self._error
        return httpx.Response(
            self._status_code, stream=UpstreamBody(self._body), headers=self._headers
        )

    @property
    def last_request(self) -> httpx.Request:
        assert self.received_requests, "No requests received by mock upstream"
        return self.received_requests[-1]


def write_rules(path: Path, patterns: list[str]) -> None:
    path.write_text(
        yaml.safe_dump({"version": 1, "rules": [{"pattern": p} for p in patterns]})
    )


@pytest.fixture
def rules_path(tmp_path: Path) -> Path:
    return tmp_path / "rules.yaml"


@pytest.fixture
def rewrite_rules(rules_path: Path) -> Callable[[list[str]], None]:
    """Return a function replacing the rules file contents on disk."""
    return lambda patterns: write_rules(rules_path, patterns)


@pytest.fixture
def make_gate(
    monkeypatch: pytest.MonkeyPatch, rules_path: Path
) -> Callable[..., tuple[TestClient, MockUpstream]]:
    """Return a factory: make_gate(rules=[...], mode="strict", **upstream_options).

    ``upstream_options`` are passed to MockUpstream (status_code, body,
    headers, error).
    """

    def factory(
        rules: Optional[list[str]] = None,
        mode: str = "strict",
        **upstream_options,
    ) -> tuple[TestClient, MockUpstream]:
        if rules is not None:
            write_rules(rules_path, rules)
        mock = MockUpstream(**upstream_options)

        config = Config.defaults()
        config.guard.client_ip_mode = mode
        config.guard.rules_path = str(rules_path)
        config.guard.watch_rules = False

        monkeypatch.setattr("ipgate.main.load_config", lambda: config)
        monkeypatch.setattr(
            "ipgate.main.create_http_client",
            lambda: httpx.AsyncClient(transport=httpx.MockTransport(mock.handler)),
        )
        monkeypatch.setenv("IPGATE_ADMIN_TOKEN", ADMIN_TOKEN)
        return TestClient(create_app()), mock

    return factory
