"""
Midnight Protocol — Matches API

Read-only access to match records and their conversation transcripts.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.match import MatchDetail, MatchList
from app.services.query_service import MAX_LIMIT, QueryService

logger = structlog.get_logger("midnight.api.matches")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET / — List matches
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=MatchList,
    summary="List matches",
)
async def list_matches(
    run_date: Optional[date] = Query(None, description="Only matches from this run"),
    user_id: Optional[uuid.UUID] = Query(None, description="Matches involving this user"),
    outcome: Optional[str] = Query(None, description="e.g. STRONG_MATCH, NO_MATCH"),
    match_status: Optional[str] = Query(None, alias="status", description="completed / failed"),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    db: AsyncSession = Depends(get_db),
) -> MatchList:
    result = await QueryService(db).get_matches(
        run_date=run_date, user_id=user_id, outcome=outcome, status=match_status, limit=limit
    )
    logger.info(
        "list_matches",
        run_date=str(run_date) if run_date else None,
        user_id=str(user_id) if user_id else None,
        count=result.count,
    )
    return result


# ──────────────────────────────────────────────────────────────────────────────
# GET /{match_id} — One match with its transcript
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{match_id}",
    response_model=MatchDetail,
    summary="Get a match and its conversation transcript",
)
async def get_match(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> MatchDetail:
    match = await QueryService(db).get_match(match_id)
    if match is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Match {match_id} not found.",
        )
    return match
