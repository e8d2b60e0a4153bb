"""Admin API for the IPGate allow-list.

Provides (mounted under /ipgate/api):
  GET /rules      — current allow-list plus the caller's resolved client IP
  GET /challenge  — issue a one-shot verification challenge (token + question)
  PUT /rules      — replace the allow-list; requires a valid challenge answer

All endpoints require Depends(require_admin_token). The /ipgate/api prefix is
always a protected surface for AccessGateMiddleware, so a non-empty allow-list
also applies here.

Saving filters the submitted rules through filter_rules(): malformed patterns
are dropped and counted, blank rows are ignored, and the remaining rules
replace the whole list.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ipgate.access.client_ip import resolve_client_ip
from ipgate.access.rules import filter_rules
from ipgate.access.store import RuleStore
from ipgate.admin.auth import require_admin_token
from ipgate.admin.challenge import ChallengeBook
from ipgate.admin.limiter import limiter
from ipgate.config import Config
from ipgate.constants import ADMIN_RATE_LIMIT
from ipgate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin_token)])


# ─── Request Models ───────────────────────────────────────────────────────────


class RuleIn(BaseModel):
    """One submitted row. Blank patterns are ignored on save."""

    pattern: str = ""
    note: str = ""


class SaveRulesRequest(BaseModel):
    """Request body for PUT /ipgate/api/rules."""

    rules: list[RuleIn] = Field(default_factory=list)
    token: str
    """Token from GET /challenge. Single use."""
    answer: int
    """Answer to the challenge question."""


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _state(request: Request) -> tuple[Config, RuleStore, ChallengeBook]:
    state = request.app.state
    store = getattr(state, "rule_store", None)
    if store is None:
        raise HTTPException(
            status_code=503,
            detail={"message": "IPGate is starting up", "code": "not_ready"},
        )
    return state.config, store, state.challenges


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/rules")
@limiter.limit(ADMIN_RATE_LIMIT)
async def get_rules(request: Request) -> dict:
    """Return the current allow-list.

    ``client_ip`` is the caller's address as the gate resolves it under the
    active mode, so an administrator can add it before saving a list that
    would otherwise lock them out.
    """
    config, store, _ = _state(request)
    peer = request.client.host if request.client else None
    return {
        "rules": [rule.to_dict() for rule in store.get_rules()],
        "client_ip": resolve_client_ip(request.headers, peer, config.guard.client_ip_mode),
        "client_ip_mode": config.guard.client_ip_mode,
    }


@router.get("/challenge")
@limiter.limit(ADMIN_RATE_LIMIT)
async def get_challenge(request: Request) -> dict:
    """Issue a verification challenge for the next save."""
    _, _, challenges = _state(request)
    challenge = challenges.issue()
    return {
        "token": challenge.token,
        "question": challenge.question,
        "expires_in": challenge.expires_in,
    }


@router.put("/rules")
@limiter.limit(ADMIN_RATE_LIMIT)
async def save_rules(body: SaveRulesRequest, request: Request) -> dict:
    """Replace the allow-list with the valid subset of the submitted rules.

    Returns:
        JSON: {status, saved, rejected, message}
        - status:   "ok" when every non-blank row was valid, else "partial"
        - saved:    number of rules now in force
        - rejected: number of rows dropped for malformed patterns

    Raises:
        HTTP 400: Challenge token unknown, expired, already used, or answer wrong.
                  Nothing is saved.
        HTTP 500: The rules file could not be written. The prior list stays in force.
    """
    _, store, challenges = _state(request)

    if not challenges.verify(body.token, body.answer):
        logger.warning("Allow-list save refused: verification failed")
        raise HTTPException(
            status_code=400,
            detail={
                "message": "Verification failed. Request a new challenge and try again.",
                "code": "verification_failed",
            },
        )

    valid, rejected = filter_rules(rule.model_dump() for rule in body.rules)

    try:
        await asyncio.to_thread(store.replace_rules, valid)
    except OSError as exc:
        logger.error("Allow-list save failed", error=str(exc), path=store.path)
        raise HTTPException(
            status_code=500,
            detail={"message": "Could not persist the allow-list", "code": "store_error"},
        ) from exc

    logger.info("Allow-list saved via admin API", saved=len(valid), rejected=rejected)

    if rejected:
        message = f"Saved, but {rejected} malformed entr{'y' if rejected == 1 else 'ies'} dropped."
    elif valid:
        message = "Allow-list updated. Protection is active."
    else:
        message = "Allow-list cleared. Protection is disabled."

    return {
        "status": "partial" if rejected else "ok",
        "saved": len(valid),
        "rejected": rejected,
        "message": message,
    }
