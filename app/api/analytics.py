"""
Midnight Protocol — Analytics & Audit API

Aggregate pipeline metrics and the processing-log audit trail.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.analytics import AnalyticsResponse, ProcessingLogsResponse
from app.services.query_service import MAX_LIMIT, QueryService

logger = structlog.get_logger("midnight.api.analytics")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET /analytics — Pipeline metrics over a date range
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/analytics",
    response_model=AnalyticsResponse,
    summary="Pipeline analytics",
)
async def get_analytics(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> AnalyticsResponse:
    if date_from and date_to and date_from > date_to:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from must not be after date_to.",
        )
    return await QueryService(db).get_analytics(date_from=date_from, date_to=date_to)


# ──────────────────────────────────────────────────────────────────────────────
# GET /processing-logs — Audit trail with summary statistics
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/processing-logs",
    response_model=ProcessingLogsResponse,
    summary="Processing logs",
)
async def get_processing_logs(
    process_type: Optional[str] = Query(None, description="batch, pairing, conversation, ..."),
    status_filter: Optional[str] = Query(None, alias="status"),
    run_date: Optional[date] = Query(None),
    limit: int = Query(100, ge=1, le=MAX_LIMIT),
    db: AsyncSession = Depends(get_db),
) -> ProcessingLogsResponse:
    return await QueryService(db).get_processing_logs(
        process_type=process_type,
        status=status_filter,
        run_date=run_date,
        limit=limit,
    )
