"""
Midnight Protocol — Batch Scheduler (the nightly control loop)

One logical run per date:

  1. Acquire the run lock (BatchRun row; conditional insert/update with a TTL
     so a crashed run can be resumed, but two live runs cannot overlap).
  2. Load the typed run configuration once (Settings + system_config rows).
  3. Fatal checks: no approved agents, invalid config override, generation
     capability unreachable -> abort with one summary log entry.
  4. Pairing: computed on the first attempt and persisted as the run's pair
     plan; resumed attempts reuse the same plan.
  5. Conversations + evaluation: a fixed pool of ``concurrency_cap`` workers
     drains a queue of pairs that have no progress marker yet.  Each pair's
     Match row and its marker commit in one transaction.
  6. Reports (Report Aggregator), then optionally emails (Notification
     Dispatcher) for ``run_nightly``.
  7. Release the lock and write the run summary to BatchRun.summary and the
     ProcessingLog.

Deadline: once passed, no new pair or report starts; in-flight work finishes
and the run ends ``partial``.  The next invocation resumes from the markers.
A cancelled run (process shutdown) ends the same way and releases its lock.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Sequence

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import ConfigurationError, PipelineConfig
from app.models.batch_run import BatchRun, RunProgress
from app.models.match import Match
from app.models.system_config import SystemConfig
from app.schemas.pipeline import EmailDispatchSummary, RunSummary
from app.services.compatibility_service import ParticipantProfile, score_compatibility
from app.services.conversation_service import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    ConversationOrchestrator,
    ConversationResult,
)
from app.services.email_service import EmailSender
from app.services.evaluation_service import Evaluation, OutcomeEvaluator
from app.services.generation_service import GenerationError, GenerationService
from app.services.notification_service import NotificationDispatcher
from app.services.pairing_service import MatchCandidate, PairingEngine, canonical_pair, pair_key
from app.services.processing_log_service import (
    PROCESS_BATCH,
    PROCESS_CONVERSATION,
    PROCESS_EVALUATION,
    PROCESS_PAIRING,
    STATUS_ANOMALY,
    STATUS_SKIPPED,
    ProcessingLogService,
)
from app.services.processing_log_service import STATUS_COMPLETED as LOG_COMPLETED
from app.services.processing_log_service import STATUS_FAILED as LOG_FAILED
from app.services.report_service import ReportAggregator

logger = structlog.get_logger("midnight.scheduler_service")

UNIT_PAIR = "pair"

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"
RUN_ABORTED = "aborted"


class RunAlreadyInProgressError(Exception):
    """Another live run holds the lock for this date."""

    def __init__(self, run_date: date) -> None:
        super().__init__(f"A nightly run for {run_date} is already in progress")
        self.run_date = run_date


class FatalRunError(Exception):
    """The run cannot proceed at all (configuration or capability)."""


class BatchScheduler:
    """Top-level nightly pipeline coordinator.

    Parameters
    ----------
    session_factory:
        Async session factory; every unit of work opens its own session.
    generation:
        Shared generation facade (re-bound to the run config per run).
    email_sender:
        Backend used by the Notification Dispatcher.
    rate_limiter:
        Process-scoped limiter shared by generation and email.
    base_config:
        Defaults from Settings; system_config rows are layered on per run.
    app_url:
        Public URL for links in emails.
    clock:
        Returns the current UTC time.  Injectable for deadline tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generation: GenerationService,
        email_sender: EmailSender,
        rate_limiter: Any,
        base_config: PipelineConfig,
        app_url: str,
        log_service: ProcessingLogService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.generation = generation
        self.email_sender = email_sender
        self.rate_limiter = rate_limiter
        self.base_config = base_config
        self.app_url = app_url
        self.log_service = log_service or ProcessingLogService(session_factory)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ══════════════════════════════════════════════════════════════════
    # Public API
    # ══════════════════════════════════════════════════════════════════

    async def run_nightly_batch(
        self,
        run_date: date,
        *,
        force_regenerate: bool = False,
        deadline: datetime | None = None,
    ) -> RunSummary:
        """Pairing, conversations, evaluation and reports for ``run_date``.

        Idempotent per date: a second call without ``force_regenerate``
        creates no new Match or MorningReport rows.

        Raises
        ------
        RunAlreadyInProgressError
            If a live run already holds the lock for the date.
        """
        return await self._run(
            run_date, force_regenerate=force_regenerate, deadline=deadline, send_emails=False
        )

    async def run_nightly(
        self,
        run_date: date,
        *,
        force_regenerate: bool = False,
        deadline: datetime | None = None,
    ) -> RunSummary:
        """The full nightly job: ``run_nightly_batch`` followed by email delivery."""
        return await self._run(
            run_date, force_regenerate=force_regenerate, deadline=deadline, send_emails=True
        )

    async def send_emails(
        self,
        report_date: date,
        *,
        force_resend: bool = False,
        dry_run: bool = False,
        email_override: str | None = None,
        user_ids: Sequence[uuid.UUID] | None = None,
        report_id: uuid.UUID | None = None,
    ) -> EmailDispatchSummary:
        """Deliver morning reports outside a nightly run (manual / retry).

        Does not take the run lock: delivery is guarded per report by the
        conditional ``email_sent`` update.
        """
        config = await self.load_run_config()
        return await self._dispatcher(config).send_morning_report_emails(
            report_date,
            force_resend=force_resend,
            dry_run=dry_run,
            email_override=email_override,
            user_ids=user_ids,
            report_id=report_id,
        )

    async def run_manual_match(
        self,
        user_x_id: uuid.UUID,
        user_y_id: uuid.UUID,
        run_date: date | None = None,
    ) -> tuple[bool, uuid.UUID]:
        """Run one operator-chosen pair outside the nightly plan.

        The conversation, evaluation and persistence are those of a planned
        pair, including the progress marker, so a nightly run for the same
        date will not hold the conversation again.  No run lock is taken.

        Returns ``(created, match_id)``; ``created`` is False when the pair
        already has a Match for the date.

        Raises
        ------
        ValueError
            If both ids are the same user, or either user has no agent
            profile or personal story.
        """
        if user_x_id == user_y_id:
            raise ValueError("A manual match needs two different users")
        run_date = run_date or self._clock().date()
        config = await self.load_run_config()
        generation = self.generation.with_config(config)
        pairing = PairingEngine(config)

        async with self._session_factory() as session:
            profiles = await pairing.load_profiles_by_id(session, [user_x_id, user_y_id])
        missing = [str(uid) for uid in (user_x_id, user_y_id) if uid not in profiles]
        if missing:
            raise ValueError(f"No agent profile and story for user(s): {', '.join(missing)}")

        a_id, b_id = canonical_pair(user_x_id, user_y_id)
        log = logger.bind(run_date=str(run_date), pair=pair_key(a_id, b_id))
        existing = await self._find_match_id(run_date, a_id, b_id)
        if existing is not None:
            log.info("manual_match_exists", match_id=str(existing))
            return False, existing

        compatibility = score_compatibility(profiles[a_id], profiles[b_id])
        candidate = MatchCandidate(
            user_a_id=a_id,
            user_b_id=b_id,
            match_type=compatibility.match_type,
            score=compatibility.score,
            raw_score=compatibility.score,
        )
        log.info("manual_match_started", compatibility_score=candidate.score)

        summary = RunSummary(run_date=run_date, status=RUN_RUNNING, pairs_planned=1)
        await self._process_pair(
            run_date,
            candidate,
            profiles,
            ConversationOrchestrator(generation, config),
            OutcomeEvaluator(generation),
            summary,
        )

        match_id = await self._find_match_id(run_date, a_id, b_id)
        if match_id is None:
            raise RuntimeError(summary.error or f"Manual match {candidate.key} was not recorded")

        # A concurrent request may have recorded the pair first.
        created = bool(summary.matches_created or summary.pairs_failed)
        log.info("manual_match_finished", created=created, match_id=str(match_id))
        return created, match_id

    async def _find_match_id(
        self, run_date: date, user_a_id: uuid.UUID, user_b_id: uuid.UUID
    ) -> uuid.UUID | None:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(Match.id).where(
                        Match.run_date == run_date,
                        Match.user_a_id == user_a_id,
                        Match.user_b_id == user_b_id,
                    )
                )
            ).scalar_one_or_none()

    async def load_run_config(self) -> PipelineConfig:
        async with self._session_factory() as session:
            rows = (await session.execute(select(SystemConfig))).scalars().all()
        return self.base_config.with_overrides({r.config_key: r.config_value for r in rows})

    def _dispatcher(self, config: PipelineConfig) -> NotificationDispatcher:
        return NotificationDispatcher(
            self._session_factory,
            self.email_sender,
            self.rate_limiter,
            config,
            self.app_url,
            self.log_service,
            clock=self._clock,
        )

    # ══════════════════════════════════════════════════════════════════
    # Run lifecycle
    # ══════════════════════════════════════════════════════════════════

    async def _run(
        self,
        run_date: date,
        *,
        force_regenerate: bool,
        deadline: datetime | None,
        send_emails: bool,
    ) -> RunSummary:
        started = time.monotonic()
        token = await self._acquire_lock(run_date, self.base_config.run_lock_ttl_minutes)
        log = logger.bind(run_date=str(run_date), lock_token=token)
        log.info("batch_run_started", force_regenerate=force_regenerate, send_emails=send_emails)

        summary = RunSummary(run_date=run_date, status=RUN_RUNNING)
        try:
            try:
                config = await self.load_run_config()
            except ConfigurationError as exc:
                raise FatalRunError(str(exc)) from exc

            if deadline is None:
                deadline = self._clock() + timedelta(minutes=config.run_max_duration_minutes)

            await self._execute(run_date, config, summary, force_regenerate, deadline, send_emails)
            # Failed conversations are normal outcomes; only unmarked units
            # (summary.error) or the deadline leave work for a resume.
            summary.status = (
                RUN_PARTIAL if summary.deadline_reached or summary.error else RUN_COMPLETED
            )
        except FatalRunError as exc:
            summary.status = RUN_ABORTED
            summary.error = str(exc)
            log.error("batch_run_aborted", error=str(exc))
        except asyncio.CancelledError:
            # Markers already written stay; the next invocation resumes.
            summary.status = RUN_PARTIAL
            summary.error = summary.error or "cancelled"
            log.warning("batch_run_cancelled", **summary.model_dump(mode="json"))
            await self._release_lock(run_date, token, summary)
            await self._record_summary(summary, started)
            raise
        except Exception as exc:
            summary.status = RUN_FAILED
            summary.error = str(exc)
            log.error("batch_run_failed", error=str(exc), exc_info=True)
            await self._release_lock(run_date, token, summary)
            await self._record_summary(summary, started)
            raise
        await self._release_lock(run_date, token, summary)
        await self._record_summary(summary, started)
        log.info("batch_run_finished", **summary.model_dump(mode="json"))
        return summary

    async def _execute(
        self,
        run_date: date,
        config: PipelineConfig,
        summary: RunSummary,
        force_regenerate: bool,
        deadline: datetime,
        send_emails: bool,
    ) -> None:
        generation = self.generation.with_config(config)
        pairing = PairingEngine(config)

        plan, profiles = await self._prepare_plan(run_date, pairing, summary)

        done_keys = await self._completed_units(run_date, UNIT_PAIR)
        pending = [c for c in plan if c.key not in done_keys]
        summary.pairs_planned = len(plan)

        if pending and not await generation.health_check():
            raise FatalRunError("Generation capability unreachable")

        orchestrator = ConversationOrchestrator(generation, config)
        evaluator = OutcomeEvaluator(generation)
        await self._process_pairs(run_date, pending, profiles, orchestrator, evaluator, config, summary, deadline)

        if self._clock() >= deadline:
            summary.deadline_reached = True
            logger.warning("batch_deadline_before_reports", run_date=str(run_date))
            return

        aggregator = ReportAggregator(
            self._session_factory, generation, config, self.log_service, clock=self._clock
        )
        report_result = await aggregator.generate_reports(
            run_date, force_regenerate=force_regenerate, deadline=deadline
        )
        summary.reports_generated = report_result.reports_generated
        if report_result.deadline_reached:
            summary.deadline_reached = True
        if report_result.failed_components:
            summary.error = f"{report_result.failed_components} report components failed"

        if send_emails and not summary.deadline_reached:
            dispatch = await self._dispatcher(config).send_morning_report_emails(run_date)
            summary.emails_sent = dispatch.sent
            summary.emails_failed = dispatch.failed

    # ── Lock ──────────────────────────────────────────────────────────

    async def _acquire_lock(self, run_date: date, ttl_minutes: int) -> str:
        token = uuid.uuid4().hex
        now = self._clock()
        expires = now + timedelta(minutes=ttl_minutes)

        async with self._session_factory() as session:
            existing = (
                await session.execute(select(BatchRun.id).where(BatchRun.run_date == run_date))
            ).scalar_one_or_none()

            if existing is None:
                session.add(
                    BatchRun(
                        run_date=run_date,
                        status=RUN_RUNNING,
                        lock_token=token,
                        lock_expires_at=expires,
                        started_at=now,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise RunAlreadyInProgressError(run_date) from exc
                return token

            result = await session.execute(
                update(BatchRun)
                .where(
                    BatchRun.run_date == run_date,
                    or_(
                        BatchRun.status != RUN_RUNNING,
                        BatchRun.lock_expires_at.is_(None),
                        BatchRun.lock_expires_at < now,
                    ),
                )
                .values(
                    status=RUN_RUNNING,
                    lock_token=token,
                    lock_expires_at=expires,
                    started_at=now,
                    finished_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                raise RunAlreadyInProgressError(run_date)
        logger.info("batch_lock_reacquired", run_date=str(run_date))
        return token

    async def _release_lock(self, run_date: date, token: str, summary: RunSummary) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(BatchRun)
                    .where(BatchRun.run_date == run_date, BatchRun.lock_token == token)
                    .values(
                        status=summary.status,
                        lock_token=None,
                        lock_expires_at=None,
                        finished_at=self._clock(),
                        summary=summary.model_dump(mode="json"),
                    )
                    .execution_options(synchronize_session=False)
                )

    # ── Pair plan ─────────────────────────────────────────────────────

    async def _prepare_plan(
        self, run_date: date, pairing: PairingEngine, summary: RunSummary
    ) -> tuple[list[MatchCandidate], dict[uuid.UUID, ParticipantProfile]]:
        async with self._session_factory() as session:
            batch_run = (
                await session.execute(select(BatchRun).where(BatchRun.run_date == run_date))
            ).scalar_one()
            pool = await pairing.load_participants(session)

            if pool.approved_count == 0:
                raise FatalRunError("No active (approved) agents")

            if batch_run.pair_plan is not None:
                plan = [MatchCandidate.from_dict(d) for d in batch_run.pair_plan]
                profiles = await pairing.load_profiles_by_id(
                    session, [uid for c in plan for uid in (c.user_a_id, c.user_b_id)]
                )
                logger.info("pair_plan_reused", run_date=str(run_date), pairs=len(plan))
                return plan, profiles

            history = await pairing.load_history(session, run_date)

        result = pairing.select_pairs(pool.profiles, history, run_date)
        result.skipped = pool.skipped + result.skipped
        summary.skipped_users = result.summary()["skipped"]

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(BatchRun)
                    .where(BatchRun.run_date == run_date)
                    .values(pair_plan=[c.to_dict() for c in result.pairs])
                    .execution_options(synchronize_session=False)
                )

        await self.log_service.record(
            PROCESS_PAIRING,
            "select_pairs",
            LOG_COMPLETED if result.pairs else STATUS_SKIPPED,
            run_date=run_date,
            details={
                **result.summary(),
                "pairs_detail": [c.to_dict() for c in result.pairs],
                "skipped_detail": [
                    {"user_id": str(s.user_id), "reason": s.reason} for s in result.skipped
                ],
            },
        )
        profiles = {p.user_id: p for p in pool.profiles}
        return result.pairs, profiles

    async def _completed_units(self, run_date: date, unit_type: str) -> set[str]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(RunProgress.unit_key).where(
                    RunProgress.run_date == run_date,
                    RunProgress.unit_type == unit_type,
                )
            )
            return set(rows.scalars().all())

    # ── Worker pool ───────────────────────────────────────────────────

    async def _process_pairs(
        self,
        run_date: date,
        pending: list[MatchCandidate],
        profiles: dict[uuid.UUID, ParticipantProfile],
        orchestrator: ConversationOrchestrator,
        evaluator: OutcomeEvaluator,
        config: PipelineConfig,
        summary: RunSummary,
        deadline: datetime,
    ) -> None:
        if not pending:
            return

        queue: asyncio.Queue[MatchCandidate] = asyncio.Queue()
        for candidate in pending:
            queue.put_nowait(candidate)

        async def _worker(worker_id: int) -> None:
            while True:
                try:
                    candidate = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    if self._clock() >= deadline:
                        summary.deadline_reached = True
                        summary.pairs_skipped_deadline += 1
                        continue
                    await self._process_pair(
                        run_date, candidate, profiles, orchestrator, evaluator, summary
                    )
                finally:
                    queue.task_done()

        workers = min(config.concurrency_cap, len(pending))
        await asyncio.gather(*(_worker(i) for i in range(workers)))

    async def _process_pair(
        self,
        run_date: date,
        candidate: MatchCandidate,
        profiles: dict[uuid.UUID, ParticipantProfile],
        orchestrator: ConversationOrchestrator,
        evaluator: OutcomeEvaluator,
        summary: RunSummary,
    ) -> None:
        context = {"run_date": str(run_date), "pair": candidate.key}
        log = logger.bind(**context)

        profile_a = profiles.get(candidate.user_a_id)
        profile_b = profiles.get(candidate.user_b_id)
        if profile_a is None or profile_b is None:
            log.warning("pair_profile_missing")
            await self._write_marker_only(run_date, candidate.key, "failed")
            summary.pairs_failed += 1
            summary.pairs_processed += 1
            await self.log_service.record(
                PROCESS_CONVERSATION, "run_conversation", STATUS_SKIPPED,
                run_date=run_date, error_message="missing_story", details=context,
            )
            return

        try:
            conversation = await orchestrator.run(profile_a, profile_b, context)
            evaluation: Evaluation | None = None
            status = conversation.status
            error = conversation.error
            if status == STATUS_COMPLETED:
                try:
                    evaluation = await evaluator.evaluate(
                        conversation.transcript,
                        {**context, "handle_a": profile_a.handle, "handle_b": profile_b.handle},
                    )
                except GenerationError as exc:
                    status = STATUS_FAILED
                    error = f"classification: {exc}"
                    log.warning("evaluation_failed", error=str(exc))

            match = self._build_match(run_date, candidate, conversation, evaluation, status, error)
            created = await self._persist_unit(run_date, candidate.key, match)
        except Exception as exc:
            # No marker: the pair is retried when the run resumes.
            summary.pairs_failed += 1
            summary.error = summary.error or f"pair {candidate.key}: {exc}"
            log.error("pair_unit_failed", error=str(exc), exc_info=True)
            await self.log_service.record(
                PROCESS_CONVERSATION, "run_conversation", LOG_FAILED,
                run_date=run_date, error_message=str(exc), details=context,
            )
            return

        summary.pairs_processed += 1
        if not created:
            log.info("pair_already_recorded")
            return
        if status == STATUS_COMPLETED:
            summary.matches_created += 1
        else:
            summary.pairs_failed += 1

        await self.log_service.record(
            PROCESS_CONVERSATION,
            "run_conversation",
            LOG_COMPLETED if conversation.status == STATUS_COMPLETED else LOG_FAILED,
            run_date=run_date,
            processing_time_ms=conversation.duration_ms,
            tokens_used=conversation.tokens_used,
            error_message=conversation.error,
            details={
                **context,
                "match_id": str(match.id),
                "turns": conversation.turn_count,
                "early_stopped": conversation.early_stopped,
                "match_type": candidate.match_type,
                "compatibility_score": candidate.score,
            },
        )
        if evaluation is not None:
            await self.log_service.record(
                PROCESS_EVALUATION,
                "classify_outcome",
                STATUS_ANOMALY if evaluation.anomalies else LOG_COMPLETED,
                run_date=run_date,
                tokens_used=evaluation.tokens_used,
                details={
                    **context,
                    "match_id": str(match.id),
                    "outcome": evaluation.outcome.value,
                    "opportunity_score": evaluation.opportunity_score,
                    "anomalies": evaluation.anomalies,
                    "raw_output": evaluation.raw_text if evaluation.anomalies else None,
                },
            )
        elif status == STATUS_FAILED and conversation.status == STATUS_COMPLETED:
            await self.log_service.record(
                PROCESS_EVALUATION, "classify_outcome", LOG_FAILED,
                run_date=run_date, error_message=error, details={**context, "match_id": str(match.id)},
            )

    def _build_match(
        self,
        run_date: date,
        candidate: MatchCandidate,
        conversation: ConversationResult,
        evaluation: Evaluation | None,
        status: str,
        error: str | None,
    ) -> Match:
        tokens = conversation.tokens_used + (evaluation.tokens_used if evaluation else 0)
        now = self._clock()
        return Match(
            id=uuid.uuid4(),
            run_date=run_date,
            user_a_id=candidate.user_a_id,
            user_b_id=candidate.user_b_id,
            match_type=candidate.match_type,
            compatibility_score=candidate.score,
            status=status,
            transcript=conversation.transcript_json(),
            turn_count=conversation.turn_count,
            early_stopped=conversation.early_stopped,
            outcome=evaluation.outcome.value if evaluation else None,
            opportunity_score=evaluation.opportunity_score if evaluation else 0.0,
            synergies=list(evaluation.synergies) if evaluation else [],
            reasoning=evaluation.reasoning if evaluation else None,
            introduction_rationale_a=evaluation.introduction_rationale_a if evaluation else None,
            introduction_rationale_b=evaluation.introduction_rationale_b if evaluation else None,
            tokens_used=tokens,
            error_message=error,
            reported=False,
            evaluated_at=now if evaluation else None,
            created_at=now,
        )

    async def _persist_unit(self, run_date: date, key: str, match: Match) -> bool:
        """Insert the Match and its progress marker atomically.

        Returns False if a concurrent attempt already recorded this pair.
        """
        marker_status = "done" if match.status == STATUS_COMPLETED else "failed"
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    session.add(match)
                    session.add(
                        RunProgress(
                            run_date=run_date,
                            unit_type=UNIT_PAIR,
                            unit_key=key,
                            status=marker_status,
                        )
                    )
            except IntegrityError:
                return False
        return True

    async def _write_marker_only(self, run_date: date, key: str, status: str) -> None:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    session.add(
                        RunProgress(run_date=run_date, unit_type=UNIT_PAIR, unit_key=key, status=status)
                    )
            except IntegrityError:
                logger.info("pair_marker_exists", run_date=str(run_date), pair=key)

    # ── Summary ───────────────────────────────────────────────────────

    async def _record_summary(self, summary: RunSummary, started: float) -> None:
        status = {
            RUN_COMPLETED: LOG_COMPLETED,
            RUN_PARTIAL: LOG_COMPLETED,
        }.get(summary.status, LOG_FAILED)
        await self.log_service.record(
            PROCESS_BATCH,
            "run_nightly_batch",
            status,
            run_date=summary.run_date,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            error_message=summary.error,
            details=summary.model_dump(mode="json"),
        )
