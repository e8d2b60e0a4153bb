"""Shared rate limiter for the IPGate admin API.

Uses slowapi (Starlette-compatible rate limiting). Limits are keyed on the
transport peer address and apply to calls that passed the admin token check.

The Limiter instance is created here and shared between:
  - ipgate/admin/router.py (route decorators)
  - ipgate/main.py         (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
