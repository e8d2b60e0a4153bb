"""Programmatic uvicorn entry point for IPGate.

Reads host and port from the loaded config (127.0.0.1:8088 by default) and
starts uvicorn with hardened connection defaults.

Usage:
    python -m ipgate.run
    ipgate                 # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from ipgate.config import load_config

# ─── Uvicorn hardened defaults ────────────────────────────────────────────────

# Max concurrent connections; HTTP 503 beyond this.
# Matches the httpx pool size (POOL_MAX_CONNECTIONS in proxy/engine.py).
UVICORN_LIMIT_CONCURRENCY: int = 100

# OS-level TCP accept queue.
UVICORN_BACKLOG: int = 50

# Keep-alive timeout in seconds; a low value narrows the Slow Loris window.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start IPGate with hardened uvicorn defaults.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "ipgate.main:app",
        host=config.proxy.host,
        port=config.proxy.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
