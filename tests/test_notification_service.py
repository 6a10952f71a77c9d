"""Unit tests for the NotificationDispatcher (morning-report emails)."""
import uuid
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import select

from app.models.report import MorningReport
from app.services.notification_service import (
    MAX_DISCOVERIES_IN_EMAIL,
    NotificationDispatcher,
    email_subject,
    render_morning_report_email,
)
from tests.conftest import RUN_DATE, RecordingSender, add_user

OVERRIDE = "qa@midnight.example"

NOTIFICATION = {
    "match_id": str(uuid.UUID(int=7)),
    "counterpart_handle": "investor",
    "outcome": "STRONG_MATCH",
    "opportunity_score": 0.86,
    "notification_score": 0.86,
    "introduction_rationale": "They invest in early-stage climate hardware.",
    "synergies": ["seed funding"],
}


async def _add_report(session_factory, user_id, *, count=1, email_sent=False, report_date=RUN_DATE):
    report = MorningReport(
        user_id=user_id,
        report_date=report_date,
        notification_count=count,
        total_opportunity_score=0.86 * count,
        match_notifications=[NOTIFICATION] * count,
        agent_insights={"patterns_observed": [], "top_opportunities": [], "recommended_actions": ["Reply today"]},
        email_sent=email_sent,
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(report)
    return report.id


async def _report_rows(session_factory):
    async with session_factory() as session:
        rows = (await session.execute(select(MorningReport))).scalars().all()
    return {r.user_id: r for r in rows}


def _dispatcher(session_factory, sender, rate_limiter, pipeline_config):
    return NotificationDispatcher(
        session_factory, sender, rate_limiter, pipeline_config, app_url="https://midnight.example/"
    )


@pytest_asyncio.fixture
async def two_reports(session_factory):
    founder = await add_user(session_factory, "founder")
    investor = await add_user(session_factory, "investor")
    await _add_report(session_factory, founder)
    await _add_report(session_factory, investor)
    return founder, investor


class TestSend:
    """Tests for normal delivery and the email_sent flag."""

    @pytest.mark.asyncio
    async def test_sends_and_flags_unsent_reports(self, session_factory, rate_limiter, pipeline_config):
        founder = await add_user(session_factory, "founder")
        await _add_report(session_factory, founder)
        sender = RecordingSender()

        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE
        )

        assert (summary.total, summary.sent, summary.failed) == (1, 1, 0)
        message = sender.sent[0]
        assert message.to == "founder@example.com"
        assert message.subject == email_subject(1)
        assert "1 new opportunity" in message.subject
        assert "https://midnight.example/matches/" in message.html
        row = (await _report_rows(session_factory))[founder]
        assert row.email_sent and row.sent_at is not None
        assert row.delivered_to == "founder@example.com"

    @pytest.mark.asyncio
    async def test_already_sent_and_empty_reports_are_skipped(self, session_factory, rate_limiter, pipeline_config):
        sent_user = await add_user(session_factory, "sent")
        empty_user = await add_user(session_factory, "empty")
        await _add_report(session_factory, sent_user, email_sent=True)
        await _add_report(session_factory, empty_user, count=0)
        sender = RecordingSender()

        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE
        )

        assert summary.total == 0
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_force_resend_includes_sent_reports(self, session_factory, rate_limiter, pipeline_config):
        user = await add_user(session_factory, "sent")
        await _add_report(session_factory, user, email_sent=True)
        sender = RecordingSender()

        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE, force_resend=True
        )

        assert summary.sent == 1
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_second_invocation_sends_nothing(self, session_factory, two_reports, rate_limiter, pipeline_config):
        sender = RecordingSender()
        dispatcher = _dispatcher(session_factory, sender, rate_limiter, pipeline_config)
        await dispatcher.send_morning_report_emails(RUN_DATE)
        again = await dispatcher.send_morning_report_emails(RUN_DATE)
        assert again.total == 0
        assert len(sender.sent) == 2

    @pytest.mark.asyncio
    async def test_user_filter(self, session_factory, two_reports, rate_limiter, pipeline_config):
        founder, _investor = two_reports
        sender = RecordingSender()
        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE, user_ids=[founder]
        )
        assert summary.sent == 1
        assert [m.to for m in sender.sent] == ["founder@example.com"]

    @pytest.mark.asyncio
    async def test_missing_address_is_skipped(self, session_factory, rate_limiter, pipeline_config):
        user = await add_user(session_factory, "ghost", email=None)
        await _add_report(session_factory, user)
        summary = await _dispatcher(
            session_factory, RecordingSender(), rate_limiter, pipeline_config
        ).send_morning_report_emails(RUN_DATE)
        assert summary.skipped == 1
        assert summary.results[0].error == "no_email_address"


class TestSafetyModes:
    """Tests for dry-run, override and single-report mode."""

    @pytest.mark.asyncio
    async def test_dry_run_never_sends_or_flags(self, session_factory, two_reports, rate_limiter, pipeline_config):
        sender = RecordingSender()
        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE, dry_run=True
        )
        assert summary.dry_run
        assert summary.rendered == 2
        assert sender.attempts == 0
        assert not any(r.email_sent for r in (await _report_rows(session_factory)).values())

    @pytest.mark.asyncio
    async def test_override_redirects_every_message(self, session_factory, two_reports, rate_limiter, pipeline_config):
        sender = RecordingSender()
        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE, email_override=OVERRIDE
        )
        assert [m.to for m in sender.sent] == [OVERRIDE, OVERRIDE]
        assert all("Testing mode" in m.html for m in sender.sent)
        assert {item.recipient for item in summary.results} == {"founder@example.com", "investor@example.com"}
        rows = await _report_rows(session_factory)
        assert {r.delivered_to for r in rows.values()} == {OVERRIDE}

    @pytest.mark.asyncio
    async def test_single_report_requires_override(self, session_factory, rate_limiter, pipeline_config):
        dispatcher = _dispatcher(session_factory, RecordingSender(), rate_limiter, pipeline_config)
        with pytest.raises(ValueError):
            await dispatcher.send_morning_report_emails(RUN_DATE, report_id=uuid.uuid4())

    @pytest.mark.asyncio
    async def test_single_report_ignores_sent_flag(self, session_factory, rate_limiter, pipeline_config):
        user = await add_user(session_factory, "founder")
        report_id = await _add_report(session_factory, user, email_sent=True)
        other = await add_user(session_factory, "investor")
        await _add_report(session_factory, other)
        sender = RecordingSender()

        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE, report_id=report_id, email_override=OVERRIDE
        )

        assert summary.sent == 1
        assert summary.results[0].report_id == report_id
        assert [m.to for m in sender.sent] == [OVERRIDE]


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, session_factory, two_reports, rate_limiter, pipeline_config):
        sender = RecordingSender(transient_failures=2)
        config = pipeline_config.model_copy(update={"email_retry_attempts": 3})
        summary = await _dispatcher(session_factory, sender, rate_limiter, config).send_morning_report_emails(RUN_DATE)
        assert summary.sent == 2
        assert sender.attempts == 4

    @pytest.mark.asyncio
    async def test_permanent_failure_leaves_flag_false(self, session_factory, two_reports, rate_limiter, pipeline_config):
        founder, investor = two_reports
        sender = RecordingSender(fail_for=["founder@example.com"])

        summary = await _dispatcher(session_factory, sender, rate_limiter, pipeline_config).send_morning_report_emails(
            RUN_DATE
        )

        assert (summary.sent, summary.failed) == (1, 1)
        rows = await _report_rows(session_factory)
        assert rows[founder].email_sent is False
        assert rows[investor].email_sent is True

    @pytest.mark.asyncio
    async def test_exhausted_transient_failure_is_reported(self, session_factory, rate_limiter, pipeline_config):
        user = await add_user(session_factory, "founder")
        await _add_report(session_factory, user)
        sender = RecordingSender(transient_failures=10)
        config = pipeline_config.model_copy(update={"email_retry_attempts": 2})

        summary = await _dispatcher(session_factory, sender, rate_limiter, config).send_morning_report_emails(RUN_DATE)

        assert summary.failed == 1
        assert sender.attempts == 2
        assert (await _report_rows(session_factory))[user].email_sent is False


class TestRendering:
    def test_long_reports_link_to_dashboard(self):
        report = SimpleNamespace(
            notification_count=MAX_DISCOVERIES_IN_EMAIL + 2,
            total_opportunity_score=1.0,
            match_notifications=[NOTIFICATION] * (MAX_DISCOVERIES_IN_EMAIL + 2),
            agent_insights=None,
        )
        user = SimpleNamespace(full_name=None, handle="maya", email="maya@example.com")
        message = render_morning_report_email(report, user, "https://app", recipient="maya@example.com")
        assert "Good morning, @maya." in message.text
        assert "See 2 more on your dashboard" in message.html
        assert message.html.count("Request introduction") == MAX_DISCOVERIES_IN_EMAIL

    def test_subject_pluralises(self):
        assert email_subject(3).endswith("3 new opportunities")
