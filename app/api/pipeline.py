"""
Midnight Protocol — Pipeline API

Operator endpoints for the nightly pipeline: trigger a run for a date,
inspect a run, run one chosen pair outside the plan (manual match), and
(re)send morning-report emails.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.pipeline import get_scheduler
from app.schemas.match import ManualMatchRequest, ManualMatchResult
from app.schemas.pipeline import (
    BatchRunRead,
    EmailDispatchSummary,
    RunBatchRequest,
    RunSummary,
    SendEmailsRequest,
)
from app.services.query_service import QueryService
from app.services.scheduler_service import BatchScheduler, RunAlreadyInProgressError

logger = structlog.get_logger("midnight.api.pipeline")

router = APIRouter()

# Strong references to fire-and-forget runs so they are not garbage collected.
_background_runs: set[asyncio.Task] = set()


def _today() -> date:
    return datetime.now(timezone.utc).date()


async def _run_in_background(scheduler: BatchScheduler, run_date: date, force_regenerate: bool) -> None:
    try:
        await scheduler.run_nightly_batch(run_date, force_regenerate=force_regenerate)
    except RunAlreadyInProgressError:
        logger.warning("background_run_conflict", run_date=str(run_date))
    except Exception:
        logger.exception("background_run_failed", run_date=str(run_date))


async def shutdown_background_runs(timeout: float = 30.0) -> None:
    """Let background runs finish within ``timeout``, then cancel the rest.

    A cancelled run releases its lock with status ``partial`` so the next
    invocation resumes it.
    """
    if not _background_runs:
        return
    _, pending = await asyncio.wait(list(_background_runs), timeout=timeout)
    if not pending:
        return
    logger.warning("background_runs_cancelled", count=len(pending))
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


# ──────────────────────────────────────────────────────────────────────────────
# POST /runs — Trigger the nightly batch for a date
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/runs",
    response_model=RunSummary,
    summary="Run the nightly batch for a date",
    responses={202: {"description": "Run accepted and started in the background"}},
)
async def trigger_run(
    body: RunBatchRequest,
    wait: bool = Query(False, description="Block until the run finishes"),
    db: AsyncSession = Depends(get_db),
    scheduler: BatchScheduler = Depends(get_scheduler),
):
    """Start pairing, conversations, evaluation and reports for ``run_date``.

    With ``wait=true`` the run summary is returned when the batch finishes;
    otherwise the run starts in the background and 202 is returned.  A run
    already holding the lock for the date yields 409.
    """
    run_date = body.run_date or _today()
    log = logger.bind(run_date=str(run_date), force_regenerate=body.force_regenerate, wait=wait)
    log.info("trigger_run_request")

    if wait:
        try:
            return await scheduler.run_nightly_batch(
                run_date, force_regenerate=body.force_regenerate
            )
        except RunAlreadyInProgressError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    existing = await QueryService(db).get_run(run_date)
    if (
        existing is not None
        and existing.status == "running"
        and existing.lock_expires_at is not None
        and _aware(existing.lock_expires_at) > datetime.now(timezone.utc)
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A nightly run for {run_date} is already in progress",
        )

    task = asyncio.create_task(_run_in_background(scheduler, run_date, body.force_regenerate))
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"run_date": str(run_date), "status": "accepted"},
    )


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────────────────────
# GET /runs/{run_date} — Run status and summary
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/runs/{run_date}",
    response_model=BatchRunRead,
    summary="Get the status of a nightly run",
)
async def get_run(
    run_date: date,
    db: AsyncSession = Depends(get_db),
) -> BatchRunRead:
    run = await QueryService(db).get_run(run_date)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No run recorded for {run_date}.",
        )
    return run


# ──────────────────────────────────────────────────────────────────────────────
# POST /manual-match — Run one chosen pair outside the nightly plan
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/manual-match",
    response_model=ManualMatchResult,
    summary="Hold a conversation for one chosen pair",
    responses={201: {"description": "Conversation held and match recorded"}},
)
async def manual_match(
    body: ManualMatchRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    scheduler: BatchScheduler = Depends(get_scheduler),
) -> ManualMatchResult:
    """Converse, evaluate and record a match for two users.

    Returns 201 with the new match, or 200 with the existing one when the
    pair already has a match for ``run_date``.  Users without an agent
    profile or story yield 422.
    """
    log = logger.bind(user_a_id=str(body.user_a_id), user_b_id=str(body.user_b_id))
    log.info("manual_match_request", run_date=str(body.run_date) if body.run_date else None)
    try:
        created, match_id = await scheduler.run_manual_match(
            body.user_a_id, body.user_b_id, run_date=body.run_date
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return ManualMatchResult(created=created, match=await QueryService(db).get_match(match_id))


# ──────────────────────────────────────────────────────────────────────────────
# POST /emails — Send (or preview) morning-report emails
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/emails",
    response_model=EmailDispatchSummary,
    summary="Send morning-report emails for a date",
)
async def send_emails(
    body: SendEmailsRequest,
    scheduler: BatchScheduler = Depends(get_scheduler),
) -> EmailDispatchSummary:
    """Deliver unsent reports for ``report_date``.

    ``dry_run`` renders without sending; ``email_override`` redirects every
    message to one address; ``report_id`` targets a single report and
    requires ``email_override``.
    """
    report_date = body.report_date or _today()
    logger.info(
        "send_emails_request",
        report_date=str(report_date),
        dry_run=body.dry_run,
        force_resend=body.force_resend,
        email_override=body.email_override,
    )
    try:
        return await scheduler.send_emails(
            report_date,
            force_resend=body.force_resend,
            dry_run=body.dry_run,
            email_override=body.email_override,
            user_ids=body.user_ids,
            report_id=body.report_id,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
