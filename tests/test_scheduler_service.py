"""End-to-end tests for the BatchScheduler nightly run on SQLite."""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.models.batch_run import BatchRun, RunProgress
from app.models.match import Match
from app.models.processing_log import ProcessingLog
from app.models.report import MorningReport
from app.models.system_config import SystemConfig
from app.schemas.pipeline import RunSummary
from app.services.conversation_service import ConversationOrchestrator
from app.services.evaluation_service import OutcomeEvaluator
from app.services.generation_service import GenerationService
from app.services.pairing_service import MatchCandidate, PairingEngine, canonical_pair, pair_key
from app.services.scheduler_service import (
    RUN_ABORTED,
    RUN_COMPLETED,
    RUN_PARTIAL,
    UNIT_PAIR,
    BatchScheduler,
    RunAlreadyInProgressError,
)
from tests.conftest import (
    FOUNDER_STORY,
    INVESTOR_STORY,
    RUN_DATE,
    BlockingBackend,
    RecordingSender,
    ScriptedBackend,
    add_match,
    add_user,
)


def _scheduler(session_factory, backend, rate_limiter, pipeline_config, sender=None):
    return BatchScheduler(
        session_factory,
        GenerationService(backend, rate_limiter, pipeline_config),
        sender or RecordingSender(),
        rate_limiter,
        pipeline_config,
        app_url="https://midnight.example",
    )


async def _count(session_factory, model, *criteria):
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return (await session.execute(stmt)).scalar_one()


async def _all(session_factory, model):
    async with session_factory() as session:
        return list((await session.execute(select(model))).scalars().all())


async def _batch_run(session_factory):
    async with session_factory() as session:
        return (
            await session.execute(select(BatchRun).where(BatchRun.run_date == RUN_DATE))
        ).scalar_one()


async def _set_config(session_factory, **values):
    async with session_factory() as session:
        async with session.begin():
            for key, value in values.items():
                session.add(SystemConfig(config_key=key, config_value=value))


async def _add_batch_run(session_factory, *, expires_in):
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        async with session.begin():
            session.add(
                BatchRun(
                    run_date=RUN_DATE,
                    status="running",
                    lock_token="another-worker",
                    lock_expires_at=now + expires_in,
                    started_at=now - timedelta(hours=1),
                )
            )


class TestNightlyRun:
    """The two-user nightly scenario from pairing through email."""

    @pytest.mark.asyncio
    async def test_two_complementary_users_full_night(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        founder, investor = founder_and_investor
        sender = RecordingSender()

        summary = await _scheduler(session_factory, backend, rate_limiter, pipeline_config, sender).run_nightly(RUN_DATE)

        assert summary.status == RUN_COMPLETED
        assert (summary.pairs_planned, summary.matches_created, summary.reports_generated) == (1, 1, 2)
        assert summary.emails_sent == 2

        [match] = await _all(session_factory, Match)
        assert match.status == "completed"
        assert match.turn_count == pipeline_config.turn_cap == 6
        assert [t["speaker"] for t in match.transcript] == ["agent_a", "agent_b"] * 3
        assert match.outcome == "STRONG_MATCH"
        assert match.opportunity_score >= 0.7
        assert match.reported

        reports = {r.user_id: r for r in await _all(session_factory, MorningReport)}
        assert set(reports) == {founder, investor}
        assert all(r.notification_count == 1 for r in reports.values())
        assert all(r.email_sent for r in reports.values())
        assert sorted(m.to for m in sender.sent) == ["founder@example.com", "investor@example.com"]

        assert backend.kinds().count("health") == 1
        assert backend.kinds().count("turn") == 6
        assert backend.kinds().count("classify") == 1

        batch_run = await _batch_run(session_factory)
        assert batch_run.status == RUN_COMPLETED
        assert batch_run.lock_token is None
        assert batch_run.summary["matches_created"] == 1
        assert len(batch_run.pair_plan) == 1

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing_new(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        scheduler = _scheduler(session_factory, backend, rate_limiter, pipeline_config)
        await scheduler.run_nightly_batch(RUN_DATE)
        calls_after_first = len(backend.calls)

        again = await scheduler.run_nightly_batch(RUN_DATE)

        assert again.status == RUN_COMPLETED
        assert (again.matches_created, again.reports_generated) == (0, 0)
        assert await _count(session_factory, Match) == 1
        assert await _count(session_factory, MorningReport) == 2
        assert len(backend.calls) == calls_after_first

    @pytest.mark.asyncio
    async def test_batch_only_does_not_send_email(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        sender = RecordingSender()
        summary = await _scheduler(
            session_factory, backend, rate_limiter, pipeline_config, sender
        ).run_nightly_batch(RUN_DATE)
        assert summary.emails_sent == 0
        assert sender.attempts == 0

    @pytest.mark.asyncio
    async def test_system_config_override_applies(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        await _set_config(session_factory, conversation_turn_cap="2")
        await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)
        [match] = await _all(session_factory, Match)
        assert match.turn_count == 2

    @pytest.mark.asyncio
    async def test_failed_conversation_is_recorded_not_reported(
        self, session_factory, founder_and_investor, rate_limiter, pipeline_config
    ):
        backend = ScriptedBackend(fail_turns=100)
        summary = await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)

        assert summary.status == RUN_COMPLETED
        assert (summary.pairs_failed, summary.matches_created, summary.reports_generated) == (1, 0, 0)
        [match] = await _all(session_factory, Match)
        assert match.status == "failed"
        assert match.turn_count == 0
        assert match.error_message.startswith("turn 0:")
        assert await _count(session_factory, RunProgress, RunProgress.status == "failed") == 1

    @pytest.mark.asyncio
    async def test_classification_failure_keeps_transcript(
        self, session_factory, founder_and_investor, rate_limiter, pipeline_config
    ):
        backend = ScriptedBackend(fail_classification=True)
        await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)
        [match] = await _all(session_factory, Match)
        assert match.status == "failed"
        assert match.turn_count == 6
        assert match.outcome is None
        assert match.error_message.startswith("classification:")

    @pytest.mark.asyncio
    async def test_anomalous_classification_is_logged(
        self, session_factory, founder_and_investor, rate_limiter, pipeline_config
    ):
        backend = ScriptedBackend(classification={"outcome": "PERHAPS", "opportunity_score": 0.9})
        await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)

        [match] = await _all(session_factory, Match)
        assert match.outcome == "NO_MATCH"
        assert match.opportunity_score == 0.0
        logs = [log for log in await _all(session_factory, ProcessingLog) if log.process_type == "evaluation"]
        assert [log.status for log in logs] == ["anomaly"]
        assert "PERHAPS" in logs[0].details["raw_output"]


class TestRunLock:
    """Tests for lock conflicts and resuming after a crash."""

    @pytest.mark.asyncio
    async def test_live_lock_rejects_second_run(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        await _add_batch_run(session_factory, expires_in=timedelta(hours=2))
        with pytest.raises(RunAlreadyInProgressError):
            await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)
        assert await _count(session_factory, Match) == 0
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        await _add_batch_run(session_factory, expires_in=timedelta(minutes=-5))
        summary = await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)
        assert summary.status == RUN_COMPLETED
        assert summary.matches_created == 1
        assert (await _batch_run(session_factory)).lock_token is None


class TestDeadlineAndAbort:
    @pytest.mark.asyncio
    async def test_past_deadline_gives_partial_then_resumes(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        scheduler = _scheduler(session_factory, backend, rate_limiter, pipeline_config)
        past = datetime.now(timezone.utc) - timedelta(seconds=1)

        partial = await scheduler.run_nightly_batch(RUN_DATE, deadline=past)

        assert partial.status == RUN_PARTIAL
        assert partial.deadline_reached
        assert partial.pairs_skipped_deadline == 1
        assert await _count(session_factory, Match) == 0
        assert await _count(session_factory, MorningReport) == 0

        resumed = await scheduler.run_nightly_batch(RUN_DATE)

        assert resumed.status == RUN_COMPLETED
        assert resumed.matches_created == 1
        assert resumed.reports_generated == 2
        assert await _count(session_factory, RunProgress, RunProgress.unit_type == UNIT_PAIR) == 1

    @pytest.mark.asyncio
    async def test_no_approved_agents_aborts(self, session_factory, backend, rate_limiter, pipeline_config):
        await add_user(session_factory, "pending", agent_status="pending")

        summary = await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)

        assert summary.status == RUN_ABORTED
        assert "approved" in summary.error
        batch_logs = [
            log for log in await _all(session_factory, ProcessingLog) if log.process_type == "batch"
        ]
        assert [(log.action, log.status) for log in batch_logs] == [("run_nightly_batch", "failed")]
        assert (await _batch_run(session_factory)).status == RUN_ABORTED

    @pytest.mark.asyncio
    async def test_unreachable_generation_aborts(
        self, session_factory, founder_and_investor, rate_limiter, pipeline_config
    ):
        backend = ScriptedBackend(health_ok=False)
        summary = await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)
        assert summary.status == RUN_ABORTED
        assert backend.kinds() == ["health"]
        assert await _count(session_factory, Match) == 0

    @pytest.mark.asyncio
    async def test_invalid_system_config_aborts(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        await _set_config(session_factory, conversation_turn_cap="zero")
        summary = await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)
        assert summary.status == RUN_ABORTED
        assert "system_config" in summary.error
        assert backend.calls == []


class TestSendEmails:
    @pytest.mark.asyncio
    async def test_manual_dispatch_after_batch(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        sender = RecordingSender()
        scheduler = _scheduler(session_factory, backend, rate_limiter, pipeline_config, sender)
        await scheduler.run_nightly_batch(RUN_DATE)

        dry = await scheduler.send_emails(RUN_DATE, dry_run=True)
        sent = await scheduler.send_emails(RUN_DATE)

        assert dry.rendered == 2
        assert sent.sent == 2
        assert len(sender.sent) == 2


class ConcurrencyTrackingBackend(ScriptedBackend):
    """Records the peak number of conversation and classification calls in flight."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.peak = 0

    async def complete(self, prompt, *, json_output=False):
        if prompt.startswith("Reply with the single word OK") or "Summarise the night" in prompt:
            return await super().complete(prompt, json_output=json_output)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().complete(prompt, json_output=json_output)
        finally:
            self.in_flight -= 1


class TestWorkerPool:
    """Tests for the bounded pair pool and the one-match-per-pair write."""

    @pytest.mark.asyncio
    async def test_in_flight_conversations_never_exceed_cap(
        self, session_factory, rate_limiter, pipeline_config
    ):
        for i in range(6):
            await add_user(session_factory, f"founder{i}", story=FOUNDER_STORY)
            await add_user(session_factory, f"investor{i}", story=INVESTOR_STORY)
        config = pipeline_config.model_copy(update={"concurrency_cap": 2, "turn_cap": 2})
        backend = ConcurrencyTrackingBackend()

        summary = await _scheduler(session_factory, backend, rate_limiter, config).run_nightly_batch(RUN_DATE)

        assert summary.status == RUN_COMPLETED
        assert summary.pairs_planned == 6
        assert summary.matches_created == 6
        assert backend.peak == 2

    @pytest.mark.asyncio
    async def test_already_recorded_pair_is_not_written_twice(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        founder, investor = founder_and_investor
        await add_match(session_factory, founder, investor)
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    RunProgress(
                        run_date=RUN_DATE,
                        unit_type=UNIT_PAIR,
                        unit_key=pair_key(founder, investor),
                        status="done",
                    )
                )
        async with session_factory() as session:
            profiles = await PairingEngine(pipeline_config).load_profiles_by_id(session, [founder, investor])

        ua, ub = canonical_pair(founder, investor)
        generation = GenerationService(backend, rate_limiter, pipeline_config)
        summary = RunSummary(run_date=RUN_DATE, status="running")

        await _scheduler(session_factory, backend, rate_limiter, pipeline_config)._process_pair(
            RUN_DATE,
            MatchCandidate(ua, ub, "targeted", 0.8, 0.8),
            profiles,
            ConversationOrchestrator(generation, pipeline_config),
            OutcomeEvaluator(generation),
            summary,
        )

        assert backend.kinds().count("turn") == pipeline_config.turn_cap
        assert summary.pairs_processed == 1
        assert summary.matches_created == 0
        assert summary.pairs_failed == 0
        assert await _count(session_factory, Match) == 1
        assert await _count(session_factory, RunProgress) == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_run_releases_lock_and_resumes(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        blocking = BlockingBackend()
        task = asyncio.create_task(
            _scheduler(session_factory, blocking, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)
        )
        await asyncio.wait_for(blocking.started.wait(), timeout=5)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        batch_run = await _batch_run(session_factory)
        assert batch_run.status == RUN_PARTIAL
        assert batch_run.lock_token is None
        assert batch_run.summary["error"] == "cancelled"
        assert await _count(session_factory, Match) == 0

        resumed = await _scheduler(session_factory, backend, rate_limiter, pipeline_config).run_nightly_batch(RUN_DATE)

        assert resumed.status == RUN_COMPLETED
        assert resumed.matches_created == 1


class TestManualMatch:
    """Tests for running one chosen pair outside the nightly plan."""

    @pytest.mark.asyncio
    async def test_manual_match_records_pair_and_nightly_run_skips_it(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        founder, investor = founder_and_investor
        scheduler = _scheduler(session_factory, backend, rate_limiter, pipeline_config)

        created, match_id = await scheduler.run_manual_match(investor, founder, run_date=RUN_DATE)

        assert created
        [match] = await _all(session_factory, Match)
        assert match.id == match_id
        assert (match.user_a_id, match.user_b_id) == canonical_pair(founder, investor)
        assert match.status == "completed"
        assert match.outcome == "STRONG_MATCH"
        assert await _count(session_factory, RunProgress, RunProgress.unit_type == UNIT_PAIR) == 1
        turns_after_manual = backend.kinds().count("turn")

        summary = await scheduler.run_nightly_batch(RUN_DATE)

        assert summary.pairs_planned == 1
        assert summary.matches_created == 0
        assert summary.reports_generated == 2
        assert backend.kinds().count("turn") == turns_after_manual
        assert await _count(session_factory, Match) == 1

    @pytest.mark.asyncio
    async def test_repeat_manual_match_returns_existing(
        self, session_factory, founder_and_investor, backend, rate_limiter, pipeline_config
    ):
        founder, investor = founder_and_investor
        scheduler = _scheduler(session_factory, backend, rate_limiter, pipeline_config)
        _, first_id = await scheduler.run_manual_match(founder, investor, run_date=RUN_DATE)
        calls = len(backend.calls)

        created, second_id = await scheduler.run_manual_match(investor, founder, run_date=RUN_DATE)

        assert not created
        assert second_id == first_id
        assert len(backend.calls) == calls

    @pytest.mark.asyncio
    async def test_user_without_story_is_rejected(
        self, session_factory, backend, rate_limiter, pipeline_config
    ):
        founder = await add_user(session_factory, "founder", story=FOUNDER_STORY)
        nostory = await add_user(session_factory, "nostory", story=None)
        scheduler = _scheduler(session_factory, backend, rate_limiter, pipeline_config)

        with pytest.raises(ValueError, match=str(nostory)):
            await scheduler.run_manual_match(founder, nostory, run_date=RUN_DATE)
        with pytest.raises(ValueError):
            await scheduler.run_manual_match(founder, founder, run_date=RUN_DATE)
        with pytest.raises(ValueError):
            await scheduler.run_manual_match(founder, uuid.uuid4(), run_date=RUN_DATE)

        assert backend.calls == []
        assert await _count(session_factory, Match) == 0
