"""Config loading for IPGate.

Reads `.ipgate/config.yaml` (or `~/.ipgate/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. IPGATE_CONFIG environment variable (if set)
  3. `.ipgate/config.yaml` (working directory — for development)
  4. `~/.ipgate/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  IPGATE_PORT           — overrides proxy.port
  IPGATE_CLIENT_IP_MODE — overrides guard.client_ip_mode
  IPGATE_CONFIG         — sets an explicit config file path to try first
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import NoReturn, Optional

import yaml

from ipgate.constants import (
    ADMIN_API_PREFIX,
    CLIENT_IP_MODE_PERMISSIVE,
    CLIENT_IP_MODE_STRICT,
    VALID_CLIENT_IP_MODES,
)
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (IPGATE_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".ipgate/config.yaml",
    os.path.expanduser("~/.ipgate/config.yaml"),
]

DEFAULT_RULES_PATH = ".ipgate/rules.yaml"


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class GuardConfig:
    """Access gate configuration.

    client_ip_mode: "strict" trusts only CF-Connecting-IP and the transport peer;
                    "permissive" also reads X-Forwarded-For and friends.
    login_paths:    Login endpoint names, matched case-insensitively anywhere in
                    the request path.
    admin_prefixes: Path prefixes of the administrative area.
    exempt_paths:   Background task runner / polling endpoints that are never
                    evaluated, even under an admin prefix.
    rules_path:     YAML file holding the allow-list.
    watch_rules:    Hot-reload the rules file on change (watchfiles).
    """

    client_ip_mode: str = CLIENT_IP_MODE_STRICT
    login_paths: list[str] = field(default_factory=lambda: ["wp-login.php"])
    admin_prefixes: list[str] = field(default_factory=lambda: ["/wp-admin"])
    exempt_paths: list[str] = field(
        default_factory=lambda: ["/wp-cron.php", "/wp-admin/admin-ajax.php"]
    )
    rules_path: str = DEFAULT_RULES_PATH
    watch_rules: bool = True

    @property
    def protected_prefixes(self) -> list[str]:
        """Admin prefixes plus the IPGate admin API, which is always protected."""
        prefixes = list(self.admin_prefixes)
        if ADMIN_API_PREFIX not in prefixes:
            prefixes.append(ADMIN_API_PREFIX)
        return prefixes


@dataclass
class UpstreamConfig:
    """The application IPGate sits in front of."""

    url: str = "http://127.0.0.1:8080"


@dataclass
class ProxyConfig:
    """Listener binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8088


@dataclass
class Config:
    """Root configuration object populated from .ipgate/config.yaml.

    All fields have safe defaults — IPGate can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    guard: GuardConfig = field(default_factory=GuardConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On invalid guard.client_ip_mode or a non-list path setting.
        """
        # ── Guard ─────────────────────────────────────────────────────────────
        guard_raw = raw.get("guard") or {}
        defaults = GuardConfig()
        mode = guard_raw.get("client_ip_mode", defaults.client_ip_mode)
        _require_valid_mode(mode, source="guard.client_ip_mode")
        guard = GuardConfig(
            client_ip_mode=mode,
            login_paths=_string_list(guard_raw, "login_paths", defaults.login_paths),
            admin_prefixes=_string_list(guard_raw, "admin_prefixes", defaults.admin_prefixes),
            exempt_paths=_string_list(guard_raw, "exempt_paths", defaults.exempt_paths),
            rules_path=guard_raw.get("rules_path", defaults.rules_path),
            watch_rules=bool(guard_raw.get("watch_rules", defaults.watch_rules)),
        )

        # ── Upstream ──────────────────────────────────────────────────────────
        upstream_raw = raw.get("upstream") or {}
        upstream = UpstreamConfig(
            url=str(upstream_raw.get("url", UpstreamConfig.url)).rstrip("/"),
        )

        # ── Proxy ─────────────────────────────────────────────────────────────
        proxy_raw = raw.get("proxy") or {}
        proxy = ProxyConfig(
            host=proxy_raw.get("host", ProxyConfig.host),
            port=proxy_raw.get("port", ProxyConfig.port),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            guard=guard,
            upstream=upstream,
            proxy=proxy,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate IPGate configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       invalid ``guard.client_ip_mode``, or invalid env overrides.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("IPGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "IPGate refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    # ── Security warnings ─────────────────────────────────────────────────────
    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: IPGate is configured to bind on 0.0.0.0 (all interfaces). "
            "Make sure the upstream application is not reachable around the gate."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        client_ip_mode=config.guard.client_ip_mode,
        upstream=config.upstream.url,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Handles:
      IPGATE_PORT           — integer; SystemExit(1) if invalid
      IPGATE_CLIENT_IP_MODE — "strict" | "permissive"; SystemExit(1) otherwise
    """
    env_port = os.environ.get("IPGATE_PORT")
    if env_port is not None:
        try:
            config.proxy.port = int(env_port)
        except ValueError:
            _fail(
                f"CONFIG ERROR: IPGATE_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    env_mode = os.environ.get("IPGATE_CLIENT_IP_MODE")
    if env_mode is not None:
        mode = env_mode.strip().lower()
        _require_valid_mode(mode, source="IPGATE_CLIENT_IP_MODE")
        config.guard.client_ip_mode = mode

    if config.guard.client_ip_mode == CLIENT_IP_MODE_PERMISSIVE:
        logger.warning(
            "Permissive client IP mode enabled: X-Forwarded-For and similar headers "
            "are client-settable. Use only behind a proxy that overwrites them."
        )


def _require_valid_mode(mode: object, source: str) -> None:
    if mode not in VALID_CLIENT_IP_MODES:
        _fail(
            f"CONFIG ERROR: Invalid {source}: '{mode}'. "
            f"Supported values: {sorted(VALID_CLIENT_IP_MODES)}."
        )


def _string_list(section: dict, key: str, default: list[str]) -> list[str]:
    value = section.get(key)
    if value is None:
        return list(default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        _fail(f"CONFIG ERROR: guard.{key} must be a list of strings.")
    return list(value)


def _fail(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)
