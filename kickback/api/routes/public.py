"""
kickback.api.routes.public — Read-only endpoints
================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import Engine

from kickback.api.deps import get_engine, get_worker_config
from kickback.config import WorkerConfig
from kickback.services.job_store import ChatJobStore
from kickback.services.reward_service import (
    LedgerItem,
    get_award_for_message,
    get_balance,
    get_ledger,
)

router = APIRouter(tags=["public"])


def _ledger_dict(item: LedgerItem) -> dict:
    return {
        "message_id": item.source_message_id,
        "stream_session_id": item.stream_session_id,
        "amount": item.amount_earned,
        "earned_at": item.earned_at.isoformat() if item.earned_at else None,
    }


# ---------------------------------------------------------------------------
# GET /users/{kick_user_id}/balance
# ---------------------------------------------------------------------------
@router.get("/users/{kick_user_id}/balance")
def user_balance(kick_user_id: int, engine: Engine = Depends(get_engine)):
    summary = get_balance(engine, kick_user_id)
    if summary is None:
        raise HTTPException(404, "User not found")
    return {
        "kick_user_id": summary.kick_user_id,
        "username": summary.username,
        "coins": summary.total_coins,
        "emotes": summary.total_emotes,
        "is_subscriber": summary.is_subscriber,
        "last_awarded_at": (
            summary.last_awarded_at.isoformat() if summary.last_awarded_at else None
        ),
    }


# ---------------------------------------------------------------------------
# GET /users/{kick_user_id}/ledger
# ---------------------------------------------------------------------------
@router.get("/users/{kick_user_id}/ledger")
def user_ledger(
    kick_user_id: int,
    limit: int = Query(50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
):
    """Most recent awards for a user, newest first."""
    return {"entries": [_ledger_dict(e) for e in get_ledger(engine, kick_user_id, limit)]}


# ---------------------------------------------------------------------------
# GET /messages/{message_id}/award
# ---------------------------------------------------------------------------
@router.get("/messages/{message_id}/award")
def message_award(message_id: str, engine: Engine = Depends(get_engine)):
    item = get_award_for_message(engine, message_id)
    if item is None:
        return {"message_id": message_id, "awarded": False, "amount": 0}
    return {"awarded": True, **_ledger_dict(item)}


# ---------------------------------------------------------------------------
# GET /queue/stats
# ---------------------------------------------------------------------------
@router.get("/queue/stats")
def queue_stats(
    engine: Engine = Depends(get_engine),
    cfg: WorkerConfig = Depends(get_worker_config),
):
    """Job counts per status plus stale processing locks."""
    store = ChatJobStore(engine, max_attempts=cfg.max_attempts)
    return store.stats(cfg.stale_lock_seconds).as_dict()
