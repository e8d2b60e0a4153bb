"""IPGate admin API — allow-list read/replace endpoints.

Public API:
    router        — FastAPI router, mounted at /ipgate/api by create_app()
    ChallengeBook — one-shot verification challenges for saves
"""
from ipgate.admin.challenge import ChallengeBook
from ipgate.admin.router import router

__all__ = ["ChallengeBook", "router"]
