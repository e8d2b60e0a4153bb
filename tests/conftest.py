"""Root test configuration for IPGate.

Clears IPGate environment overrides so a developer's shell never leaks into
the suite, and resets the shared rate limiter between tests.

Admin API tests set IPGATE_ADMIN_TOKEN through their own fixtures.
"""

import pytest


@pytest.fixture(autouse=True)
def clean_ipgate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "IPGATE_CONFIG",
        "IPGATE_PORT",
        "IPGATE_CLIENT_IP_MODE",
        "IPGATE_ADMIN_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Prevents test-to-test bleed where several tests hitting the admin API from
    the same client address within a minute would trigger a 429.
    """
    from ipgate.admin.limiter import limiter
    try:
        limiter._storage.reset()
    except Exception:
        pass  # Storage may not support reset in all backends
