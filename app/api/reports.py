"""
Midnight Protocol — Morning Reports API

Read-only access to the morning reports produced by the nightly batch.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.report import MorningReportList
from app.services.query_service import MAX_LIMIT, QueryService

logger = structlog.get_logger("midnight.api.reports")

router = APIRouter()


@router.get(
    "",
    response_model=MorningReportList,
    summary="List morning reports",
)
async def list_morning_reports(
    user_id: Optional[uuid.UUID] = Query(None, description="Only this user's reports"),
    date_from: Optional[date] = Query(None, description="Earliest report date (inclusive)"),
    date_to: Optional[date] = Query(None, description="Latest report date (inclusive)"),
    limit: int = Query(50, ge=1, le=MAX_LIMIT),
    db: AsyncSession = Depends(get_db),
) -> MorningReportList:
    """Newest reports first."""
    if date_from and date_to and date_from > date_to:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from must not be after date_to.",
        )
    result = await QueryService(db).get_morning_reports(
        user_id=user_id, date_from=date_from, date_to=date_to, limit=limit
    )
    logger.info(
        "list_morning_reports",
        user_id=str(user_id) if user_id else None,
        count=result.count,
    )
    return result
