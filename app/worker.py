"""
Midnight Protocol — Nightly worker entry point

Invoked by the Cloud Scheduler job (or by hand)::

    python -m app.worker run-nightly
    python -m app.worker run-batch --date 2025-06-01 --force-regenerate
    python -m app.worker send-emails --date 2025-06-01 --dry-run
    python -m app.worker send-emails --report-id <uuid> --email-override me@example.com
    python -m app.worker manual-match --user-a <uuid> --user-b <uuid>

The job name may also come from the ``WORKER_JOB`` environment variable.
Prints the run or dispatch summary as JSON and exits non-zero when the run
was aborted, failed, or blocked by another live run.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import uuid
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from typing import Sequence

import structlog

from app.config import get_settings
from app.database import dispose_engine
from app.logging_config import configure_logging
from app.pipeline import build_scheduler, connect_redis
from app.services.scheduler_service import BatchScheduler, RunAlreadyInProgressError

logger = structlog.get_logger("midnight.worker")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2
EXIT_CONFLICT = 3

JobCoroutine = Callable[[BatchScheduler, argparse.Namespace], Awaitable[int]]


def _run_date(args: argparse.Namespace) -> date:
    return args.date or datetime.now(timezone.utc).date()


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _exit_code_for(status: str) -> int:
    if status == "completed":
        return EXIT_OK
    if status == "partial":
        return EXIT_PARTIAL
    return EXIT_FAILED


async def _run_nightly(scheduler: BatchScheduler, args: argparse.Namespace) -> int:
    summary = await scheduler.run_nightly(_run_date(args), force_regenerate=args.force_regenerate)
    _print(summary.model_dump(mode="json"))
    return _exit_code_for(summary.status)


async def _run_batch(scheduler: BatchScheduler, args: argparse.Namespace) -> int:
    summary = await scheduler.run_nightly_batch(
        _run_date(args), force_regenerate=args.force_regenerate
    )
    _print(summary.model_dump(mode="json"))
    return _exit_code_for(summary.status)


async def _send_emails(scheduler: BatchScheduler, args: argparse.Namespace) -> int:
    result = await scheduler.send_emails(
        _run_date(args),
        force_resend=args.force_resend,
        dry_run=args.dry_run,
        email_override=args.email_override,
        user_ids=args.user_ids or None,
        report_id=args.report_id,
    )
    _print(result.model_dump(mode="json"))
    return EXIT_FAILED if result.failed else EXIT_OK


async def _manual_match(scheduler: BatchScheduler, args: argparse.Namespace) -> int:
    created, match_id = await scheduler.run_manual_match(args.user_a, args.user_b, run_date=args.date)
    _print({"created": created, "match_id": str(match_id)})
    return EXIT_OK


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "run-nightly": _run_nightly,
    "run-batch": _run_batch,
    "send-emails": _send_emails,
    "manual-match": _manual_match,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="midnight-worker", description=__doc__.split("\n\n")[0])
    sub = parser.add_subparsers(dest="job")

    def _date_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument("--date", type=date.fromisoformat, default=None, help="Run date (YYYY-MM-DD), default today UTC")

    for name in ("run-nightly", "run-batch"):
        p = sub.add_parser(name)
        _date_arg(p)
        p.add_argument("--force-regenerate", action="store_true", help="Rebuild morning reports from scratch")

    p = sub.add_parser("send-emails")
    _date_arg(p)
    p.add_argument("--force-resend", action="store_true")
    p.add_argument("--dry-run", action="store_true", help="Render and log only")
    p.add_argument("--email-override", default=None, help="Send every email to this address")
    p.add_argument("--user-id", dest="user_ids", action="append", type=uuid.UUID, default=[])
    p.add_argument("--report-id", type=uuid.UUID, default=None, help="Single report (needs --email-override)")

    p = sub.add_parser("manual-match")
    _date_arg(p)
    p.add_argument("--user-a", type=uuid.UUID, required=True)
    p.add_argument("--user-b", type=uuid.UUID, required=True)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        argv = [os.getenv("WORKER_JOB", "run-nightly").strip().lower()]
    args = build_parser().parse_args(argv)
    if args.job not in JOB_REGISTRY:
        raise SystemExit(
            f"Unknown worker job {args.job!r}. Available jobs: {', '.join(sorted(JOB_REGISTRY))}"
        )
    return args


async def run_worker(args: argparse.Namespace, scheduler: BatchScheduler | None = None) -> int:
    """Run the requested job and return the process exit code.

    Without an injected scheduler, builds one the way the API process does,
    including the Redis-backed rate limiter when ``REDIS_URL`` is set.
    """
    redis_client = None
    logger.info("worker_start", job=args.job)
    try:
        if scheduler is None:
            settings = get_settings()
            redis_client = await connect_redis(settings.REDIS_URL)
            scheduler = build_scheduler(settings, redis_client=redis_client)
        return await JOB_REGISTRY[args.job](scheduler, args)
    except RunAlreadyInProgressError as exc:
        logger.warning("worker_run_conflict", job=args.job, error=str(exc))
        return EXIT_CONFLICT
    except ValueError as exc:
        logger.error("worker_invalid_arguments", job=args.job, error=str(exc))
        return EXIT_FAILED
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        await dispose_engine()


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entrypoint."""
    configure_logging(get_settings().LOG_LEVEL)
    args = parse_args(argv)
    sys.exit(asyncio.run(run_worker(args)))


if __name__ == "__main__":
    main()
