"""Allow-list rule store for IPGate.

Holds the current allow-list in memory and persists it to a YAML file
(``.ipgate/rules.yaml`` by default). Provides async watchfiles hot-reload so
hand edits apply without restarting the gate.

File format::

    version: 1
    rules:
      - pattern: 10.0.0.0/8
        note: office VPN
      - pattern: 203.0.113.5
        note: home

A bare list of entries is also accepted, and ``ip`` is read as an alias for
``pattern``. Entries are validated on load exactly as on save, so the
in-memory list only ever holds well-formed rules. A file declaring an
unsupported ``version`` is refused and the prior list kept.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import threading
from typing import Optional

import yaml

from ipgate.access.matcher import ip_matches_rule
from ipgate.access.rules import AllowRule, filter_rules
from ipgate.constants import UNRESOLVED_CLIENT_IP
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)

RULES_FILE_VERSION = 1
SUPPORTED_RULES_VERSIONS = frozenset({RULES_FILE_VERSION})

# Keys read for a rule's pattern when loading from disk
_FILE_PATTERN_KEYS: tuple[str, ...] = ("pattern", "ip")


class RuleStore:
    """Thread-safe allow-list holder with YAML persistence and hot-reload.

    Usage (in lifespan):
        store = RuleStore(path)
        store.load()
        app.state.rule_store = store
        asyncio.create_task(store.start_watcher())

    Readers get a copy from get_rules(); writers swap the whole list under the
    same lock. No partial updates.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._rules: list[AllowRule] = []
        self._lock = threading.Lock()

    # ── Public read API ───────────────────────────────────────────────────────

    def get_rules(self) -> list[AllowRule]:
        """Return a snapshot of the current rules (thread-safe, no I/O)."""
        with self._lock:
            return list(self._rules)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    # ── Load from file ────────────────────────────────────────────────────────

    def load(self, path: Optional[str] = None) -> int:
        """Load the allow-list from a YAML file.

        Returns the number of loaded rules (≥ 0).
        Returns 0 if the file does not exist (empty allow-list, gate disabled).
        Returns -1 on YAML parse / read error or an unsupported ``version``
        (prior allow-list unchanged).

        Never raises.
        """
        path = path or self.path
        if path is None:
            return 0
        try:
            with open(path) as fh:
                raw = yaml.safe_load(fh)
        except FileNotFoundError:
            logger.debug("Rules file not found — empty allow-list", path=path)
            with self._lock:
                self._rules = []
            return 0
        except yaml.YAMLError as exc:
            logger.error(
                "Rules reload failed: YAML parse error — keeping prior allow-list",
                path=path,
                error=str(exc),
            )
            return -1
        except OSError as exc:
            logger.error(
                "Rules reload failed: could not read file — keeping prior allow-list",
                path=path,
                error=str(exc),
            )
            return -1

        # A bare list carries no version and is read as the current format
        version = RULES_FILE_VERSION
        if isinstance(raw, dict):
            version = raw.get("version", RULES_FILE_VERSION)
        if not isinstance(version, int) or version not in SUPPORTED_RULES_VERSIONS:
            logger.error(
                "Rules reload failed: unsupported rules file version — keeping prior allow-list",
                path=path,
                version=version,
                supported=sorted(SUPPORTED_RULES_VERSIONS),
            )
            return -1

        rules, rejected = _parse_rules_raw(raw)
        _warn_unresolved_admitted(rules, path)
        if rejected:
            logger.warning(
                "Rules file contained malformed entries — skipped",
                path=path,
                rejected=rejected,
            )
        with self._lock:
            self._rules = rules
        logger.debug("Allow-list loaded", count=len(rules), path=path)
        return len(rules)

    # ── Save ──────────────────────────────────────────────────────────────────

    def replace_rules(self, rules: list[AllowRule]) -> None:
        """Persist ``rules`` and make them current, replacing the whole list.

        The file is written to a temporary sibling and renamed into place, so a
        concurrent reader sees either the old or the new file, never a partial
        one. When the store has no path the rules are kept in memory only.

        Raises:
            OSError: If the file cannot be written. The prior list stays current.
        """
        snapshot = list(rules)
        _warn_unresolved_admitted(snapshot, self.path)
        with self._lock:
            if self.path is not None:
                _write_rules_file(self.path, snapshot)
            self._rules = snapshot
        logger.info("Allow-list replaced", count=len(snapshot), path=self.path)

    # ── Hot-reload watcher ────────────────────────────────────────────────────

    async def start_watcher(self, path: Optional[str] = None) -> None:
        """Async watchfiles watcher — reloads the allow-list on file change.

        Designed to run as an asyncio.Task, cancelled on shutdown. Invalid YAML
        is logged and the prior allow-list kept.

        The parent directory is watched rather than the file itself: saves
        rename a new file into place, and the rules file may not exist yet.
        """
        path = path or self.path
        if path is None:
            return
        target = os.path.abspath(path)
        try:
            import watchfiles

            logger.info("Rules file watcher started", path=path)
            async for _ in watchfiles.awatch(
                os.path.dirname(target),
                watch_filter=lambda _change, changed: os.path.abspath(changed) == target,
            ):
                try:
                    count = self.load(path)
                    if count >= 0:
                        logger.info("Allow-list hot-reloaded", count=count, path=path)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "Hot-reload handler error (non-fatal)",
                        error=str(exc),
                        path=path,
                    )
        except asyncio.CancelledError:
            logger.debug("Rules file watcher cancelled", path=path)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Rules file watcher error (watcher stopped)",
                error=str(exc),
                path=path,
            )


# ─── Parsing / writing helpers ────────────────────────────────────────────────


def _parse_rules_raw(raw: object) -> tuple[list[AllowRule], int]:
    """Parse a top-level YAML object into ``(rules, rejected_count)``.

    Handles two YAML structures:
      1. Direct list: [{pattern: ..., note: ...}, ...]
      2. Mapping with rules key: {version: 1, rules: [...]}
    """
    if raw is None:
        return [], 0

    if isinstance(raw, dict):
        raw = raw.get("rules", [])
        if raw is None:
            return [], 0

    if not isinstance(raw, list):
        logger.warning(
            "Rules YAML is neither a list nor a mapping with a rules list — empty allow-list",
            actual_type=type(raw).__name__,
        )
        return [], 0

    entries = []
    for index, item in enumerate(raw):
        if isinstance(item, dict):
            entries.append(item)
        elif isinstance(item, str):
            entries.append({"pattern": item})
        else:
            logger.warning(
                "Rule entry is not a mapping — skipping",
                index=index,
                actual_type=type(item).__name__,
            )
    return filter_rules(entries, pattern_keys=_FILE_PATTERN_KEYS)


def admits_unresolved_client(rule: AllowRule) -> bool:
    return ip_matches_rule(UNRESOLVED_CLIENT_IP, rule.pattern)


def _warn_unresolved_admitted(rules: list[AllowRule], path: Optional[str]) -> None:
    for rule in rules:
        if admits_unresolved_client(rule):
            logger.warning(
                "Allow rule also admits clients whose address could not be resolved",
                pattern=rule.pattern,
                unresolved=UNRESOLVED_CLIENT_IP,
                path=path,
            )


def _write_rules_file(path: str, rules: list[AllowRule]) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    document = {
        "version": RULES_FILE_VERSION,
        "rules": [rule.to_dict() for rule in rules],
    }
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".rules-", suffix=".yaml")
    try:
        with os.fdopen(fd, "w") as fh:
            yaml.safe_dump(document, fh, sort_keys=False, allow_unicode=True)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
