"""Human-verification challenges for the admin save endpoint.

Each challenge is a small multiplication question bound to a random token.
The token doubles as the anti-CSRF nonce for the save request: it is issued
only to a caller that already passed the gate and the admin token check, and
it is consumed on the first verification attempt whether or not the answer
is right.

Challenges live in memory. A restart invalidates all outstanding tokens.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from ipgate.constants import (
    CHALLENGE_LEFT_RANGE,
    CHALLENGE_MAX_OUTSTANDING,
    CHALLENGE_RIGHT_RANGE,
    CHALLENGE_TTL_S,
)
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Challenge:
    token: str
    question: str
    expires_in: float


class ChallengeBook:
    """Issues and verifies one-shot math challenges (thread-safe)."""

    def __init__(
        self,
        ttl_s: float = CHALLENGE_TTL_S,
        max_outstanding: int = CHALLENGE_MAX_OUTSTANDING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._max_outstanding = max_outstanding
        self._clock = clock
        # token -> (expected answer, expiry)
        self._pending: OrderedDict[str, tuple[int, float]] = OrderedDict()
        self._lock = threading.Lock()

    def issue(self) -> Challenge:
        left = _draw(CHALLENGE_LEFT_RANGE)
        right = _draw(CHALLENGE_RIGHT_RANGE)
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._purge_expired()
            self._pending[token] = (left * right, self._clock() + self._ttl_s)
            while len(self._pending) > self._max_outstanding:
                self._pending.popitem(last=False)
        return Challenge(token=token, question=f"{left} × {right} = ?", expires_in=self._ttl_s)

    def verify(self, token: str, answer: int) -> bool:
        """Consume ``token`` and report whether ``answer`` was correct."""
        with self._lock:
            entry = self._pending.pop(token, None)
        if entry is None:
            logger.info("Challenge token unknown or already used")
            return False
        expected, expires_at = entry
        if self._clock() > expires_at:
            logger.info("Challenge token expired")
            return False
        return secrets.compare_digest(str(expected), str(answer))

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [token for token, (_, expires_at) in self._pending.items() if expires_at < now]
        for token in expired:
            del self._pending[token]


def _draw(bounds: tuple[int, int]) -> int:
    low, high = bounds
    return low + secrets.randbelow(high - low + 1)
