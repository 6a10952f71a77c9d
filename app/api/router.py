"""
Midnight Protocol — Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import analytics, matches, pipeline, reports

router = APIRouter()

router.include_router(pipeline.router, prefix="/pipeline", tags=["Pipeline"])
router.include_router(matches.router, prefix="/matches", tags=["Matches"])
router.include_router(reports.router, prefix="/reports", tags=["Morning Reports"])
router.include_router(analytics.router, tags=["Analytics"])
