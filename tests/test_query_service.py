"""Unit tests for the read-side QueryService."""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.models.batch_run import BatchRun
from app.models.match import Match
from app.models.report import MorningReport
from app.services.processing_log_service import ProcessingLogService
from app.services.query_service import QueryService
from tests.conftest import RUN_DATE, add_match, add_user


async def _add_report(session_factory, user_id, report_date=RUN_DATE, email_sent=False):
    async with session_factory() as session:
        async with session.begin():
            session.add(
                MorningReport(
                    user_id=user_id,
                    report_date=report_date,
                    notification_count=1,
                    total_opportunity_score=0.5,
                    match_notifications=[],
                    email_sent=email_sent,
                )
            )


class TestMorningReports:
    @pytest.mark.asyncio
    async def test_filters_by_user_and_date(self, session_factory):
        maya = await add_user(session_factory, "maya")
        leo = await add_user(session_factory, "leo")
        await _add_report(session_factory, maya)
        await _add_report(session_factory, maya, report_date=RUN_DATE - timedelta(days=1))
        await _add_report(session_factory, leo)

        async with session_factory() as session:
            service = QueryService(session)
            mine = await service.get_morning_reports(user_id=maya)
            today = await service.get_morning_reports(date_from=RUN_DATE, date_to=RUN_DATE)
            limited = await service.get_morning_reports(limit=1)

        assert mine.count == 2
        assert [r.report_date for r in mine.reports] == [RUN_DATE, RUN_DATE - timedelta(days=1)]
        assert today.count == 2
        assert limited.count == 1


class TestMatches:
    """Tests for the match list and the single-match transcript read."""

    @pytest.mark.asyncio
    async def test_filters_and_ordering(self, session_factory):
        maya = await add_user(session_factory, "maya")
        leo = await add_user(session_factory, "leo")
        ana = await add_user(session_factory, "ana")
        await add_match(session_factory, maya, leo, opportunity_score=0.4)
        await add_match(session_factory, maya, ana, opportunity_score=0.9)
        await add_match(session_factory, leo, ana, run_date=RUN_DATE - timedelta(days=1))
        await add_match(session_factory, ana, leo, status="failed", opportunity_score=0.0)

        async with session_factory() as session:
            service = QueryService(session)
            everything = await service.get_matches()
            mayas = await service.get_matches(user_id=maya)
            tonight = await service.get_matches(run_date=RUN_DATE, status="completed")
            failed = await service.get_matches(status="failed")
            no_match = await service.get_matches(outcome="NO_MATCH")

        assert everything.count == 4
        assert [m.run_date for m in everything.matches][-1] == RUN_DATE - timedelta(days=1)
        assert [m.opportunity_score for m in mayas.matches] == [0.9, 0.4]
        assert all("maya" in (m.handle_a, m.handle_b) for m in mayas.matches)
        assert tonight.count == 2
        assert failed.count == 1 and failed.matches[0].outcome is None
        assert no_match.count == 0

    @pytest.mark.asyncio
    async def test_get_match_returns_typed_transcript(self, session_factory):
        maya = await add_user(session_factory, "maya")
        leo = await add_user(session_factory, "leo")
        match_id = await add_match(session_factory, maya, leo)
        transcript = [
            {"turn_index": 0, "speaker": "agent_a", "speaker_user_id": str(maya), "content": "Hello"},
            {"turn_index": 1, "speaker": "agent_b", "speaker_user_id": str(leo), "content": "Hi there"},
        ]
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Match)
                    .where(Match.id == match_id)
                    .values(transcript=transcript, turn_count=2)
                    .execution_options(synchronize_session=False)
                )

        async with session_factory() as session:
            service = QueryService(session)
            detail = await service.get_match(match_id)
            missing = await service.get_match(uuid.uuid4())

        assert missing is None
        assert detail.turn_count == 2
        assert [(t.speaker, t.speaker_user_id, t.content) for t in detail.transcript] == [
            ("agent_a", maya, "Hello"),
            ("agent_b", leo, "Hi there"),
        ]
        assert {detail.handle_a, detail.handle_b} == {"maya", "leo"}


class TestRunStatus:
    @pytest.mark.asyncio
    async def test_missing_run_is_none(self, session_factory):
        async with session_factory() as session:
            assert await QueryService(session).get_run(RUN_DATE) is None

    @pytest.mark.asyncio
    async def test_run_includes_pair_count(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                session.add(BatchRun(run_date=RUN_DATE, status="completed", pair_plan=[{}, {}]))
        async with session_factory() as session:
            run = await QueryService(session).get_run(RUN_DATE)
        assert run.status == "completed"
        assert run.pair_count == 2


class TestAnalytics:
    """Tests for aggregate metrics and the audit-log view."""

    @pytest.mark.asyncio
    async def test_analytics_counts(self, session_factory):
        users = [await add_user(session_factory, f"user{i}") for i in range(4)]
        await add_match(session_factory, users[0], users[1], reported=True, opportunity_score=0.8)
        await add_match(session_factory, users[2], users[3], outcome="FUTURE_POTENTIAL", opportunity_score=0.4)
        await add_match(session_factory, users[0], users[2], outcome="NO_MATCH", opportunity_score=0.0)
        await add_match(session_factory, users[1], users[3], status="failed")
        await add_match(
            session_factory, users[0], users[3], run_date=RUN_DATE - timedelta(days=10), reported=True
        )
        await _add_report(session_factory, users[0], email_sent=True)
        await _add_report(session_factory, users[1])
        logs = ProcessingLogService(session_factory)
        await logs.record("conversation", "run_conversation", "completed", run_date=RUN_DATE, processing_time_ms=100)
        await logs.record("conversation", "run_conversation", "failed", run_date=RUN_DATE, processing_time_ms=300)

        async with session_factory() as session:
            analytics = await QueryService(session).get_analytics(date_from=RUN_DATE, date_to=RUN_DATE)

        assert analytics.total_matches == 4
        assert (analytics.completed_matches, analytics.failed_matches) == (3, 1)
        assert analytics.outcome_distribution == {"STRONG_MATCH": 1, "FUTURE_POTENTIAL": 1, "NO_MATCH": 1}
        assert analytics.reported_matches == 1
        assert analytics.conversion_rate == 0.5
        assert analytics.average_opportunity_score == pytest.approx(0.4)
        assert (analytics.reports_generated, analytics.emails_sent) == (2, 1)
        assert analytics.system_health.processing_backlog == 1
        assert analytics.system_health.error_rate == 0.5
        assert analytics.system_health.average_processing_time_ms == 200.0

    @pytest.mark.asyncio
    async def test_empty_database(self, session_factory):
        async with session_factory() as session:
            analytics = await QueryService(session).get_analytics()
        assert analytics.total_matches == 0
        assert analytics.conversion_rate == 0.0

    @pytest.mark.asyncio
    async def test_processing_logs_filters_and_stats(self, session_factory):
        logs = ProcessingLogService(session_factory)
        await logs.record("pairing", "select_pairs", "completed", run_date=RUN_DATE, details={"pairs": 1})
        await logs.record("email", "send_report", "failed", run_date=RUN_DATE, error_message="400")
        await logs.record("email", "send_report", "completed", run_date=RUN_DATE, tokens_used=0)

        async with session_factory() as session:
            service = QueryService(session)
            emails = await service.get_processing_logs(process_type="email")
            failures = await service.get_processing_logs(status="failed")

        assert len(emails.logs) == 2
        assert emails.stats.status_distribution == {"failed": 1, "completed": 1}
        assert emails.stats.error_count == 1
        assert [log.error_message for log in failures.logs] == ["400"]
        assert failures.stats.process_type_distribution == {"email": 1}
