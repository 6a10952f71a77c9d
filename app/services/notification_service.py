"""
Midnight Protocol — Notification Dispatcher (morning-report emails)

Selects the reports to deliver for a date, renders them, and sends them one
at a time through the ``email`` rate-limit bucket.

Selection:
    report_date == date, notification_count > 0, email_sent = false
    (all reports with ``force_resend``), optionally restricted to ``user_ids``.
    Single-report mode (``report_id``) targets one report and requires
    ``email_override`` so it can only ever reach a tester's inbox.

Modes:
    dry_run         render and log only; never sends, never flags
    email_override  every message goes to one address with a testing banner;
                    the original recipient is kept in the logs and results

Delivery:
    transient failures retried with exponential backoff (tenacity); success
    flips ``email_sent`` with a conditional update; failure leaves the flag
    false so the report is retried on the next invocation.
"""

from __future__ import annotations

import html
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.config import PipelineConfig
from app.models.report import MorningReport
from app.models.user import User
from app.schemas.pipeline import EmailDispatchItem, EmailDispatchSummary
from app.services.email_service import EmailDeliveryError, EmailMessage, EmailSender
from app.services.processing_log_service import (
    PROCESS_EMAIL,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_SKIPPED,
    ProcessingLogService,
)
from app.services.rate_limiter import EMAIL_BUCKET

logger = structlog.get_logger("midnight.notification_service")

MAX_DISCOVERIES_IN_EMAIL = 5

OUTCOME_LABELS: dict[str, str] = {
    "STRONG_MATCH": "Strong match",
    "EXPLORATORY_VALUE": "Worth exploring",
    "FUTURE_POTENTIAL": "Future potential",
    "NO_MATCH": "No match",
}

_OUTCOME_COLOURS: dict[str, str] = {
    "STRONG_MATCH": "#22ef5e",
    "EXPLORATORY_VALUE": "#40c4ff",
    "FUTURE_POTENTIAL": "#ff9800",
}


def _is_transient_delivery_error(exc: BaseException) -> bool:
    return isinstance(exc, EmailDeliveryError) and exc.transient


# ──────────────────────────────────────────────────────────────────────────────
# Rendering
# ──────────────────────────────────────────────────────────────────────────────


def email_subject(notification_count: int) -> str:
    noun = "opportunity" if notification_count == 1 else "opportunities"
    return f"🌅 Your Morning Report - {notification_count} new {noun}"


def render_morning_report_email(
    report: MorningReport,
    user: User,
    app_url: str,
    *,
    recipient: str,
    email_override: str | None = None,
) -> EmailMessage:
    """Build the HTML and plain-text morning report for ``user``."""
    esc = html.escape
    notifications: list[dict[str, Any]] = list(report.match_notifications or [])
    insights: dict[str, Any] = report.agent_insights or {}
    name = user.full_name or f"@{user.handle}"
    average = (
        report.total_opportunity_score / report.notification_count
        if report.notification_count
        else 0.0
    )
    strong = sum(1 for n in notifications if n.get("outcome") == "STRONG_MATCH")

    banner = ""
    if email_override:
        banner = (
            '<div style="background:#fff3cd;border:1px solid #ffeaa7;padding:10px;'
            'margin-bottom:20px;border-radius:5px;color:#856404;">'
            f"<strong>Testing mode:</strong> this email was meant for {esc(user.email or 'no address')} "
            f"(@{esc(user.handle)}) and was redirected to {esc(email_override)}.</div>"
        )

    discoveries = []
    for n in notifications[:MAX_DISCOVERIES_IN_EMAIL]:
        outcome = str(n.get("outcome", ""))
        synergies = "".join(
            f'<div style="background:#f0f8ff;padding:8px 12px;border-radius:4px;margin-bottom:8px;font-size:14px;">{esc(str(s))}</div>'
            for s in (n.get("synergies") or [])[:3]
        )
        rationale = n.get("introduction_rationale") or n.get("reasoning") or ""
        discoveries.append(
            '<div style="border:1px solid #e0e0e0;border-radius:8px;padding:20px;margin-bottom:20px;">'
            f'<div style="font-weight:600;font-size:16px;">@{esc(str(n.get("counterpart_handle", "")))}'
            f' <span style="font-size:12px;padding:4px 8px;border-radius:4px;background:{_OUTCOME_COLOURS.get(outcome, "#ccc")};">'
            f"{esc(OUTCOME_LABELS.get(outcome, outcome))}</span></div>"
            f'<p style="color:#555;">{esc(str(rationale))}</p>'
            f"{synergies}"
            f'<a href="{esc(app_url)}/matches/{esc(str(n.get("match_id", "")))}" '
            'style="display:inline-block;background:#22ef5e;color:#0a0a0a;text-decoration:none;'
            'padding:10px 20px;border-radius:6px;font-weight:600;">Request introduction</a>'
            "</div>"
        )
    if len(notifications) > MAX_DISCOVERIES_IN_EMAIL:
        more = len(notifications) - MAX_DISCOVERIES_IN_EMAIL
        discoveries.append(
            f'<p><a href="{esc(app_url)}/dashboard">See {more} more on your dashboard</a></p>'
        )

    insight_blocks = []
    for title, key in (
        ("Patterns observed", "patterns_observed"),
        ("Top opportunities", "top_opportunities"),
        ("Recommended actions", "recommended_actions"),
    ):
        items = insights.get(key) or []
        if items:
            insight_blocks.append(
                f"<h4>{title}</h4><ul>" + "".join(f"<li>{esc(str(i))}</li>" for i in items) + "</ul>"
            )
    insights_html = (
        '<div style="background:#fafafa;border-radius:8px;padding:20px;margin-top:30px;">'
        "<h3>Your agent's insights</h3>" + "".join(insight_blocks) + "</div>"
        if insight_blocks
        else ""
    )

    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Your Midnight Protocol Morning Report</title></head>
<body style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;line-height:1.6;color:#333;margin:0;background:#f5f5f5;">
<div style="max-width:600px;margin:0 auto;background:white;">
  <div style="background:#0a0a0a;color:#22ef5e;padding:30px;text-align:center;">
    <h1 style="margin:0;font-size:24px;">Midnight Protocol</h1>
    <div style="margin-top:10px;opacity:0.8;font-size:14px;">While you slept, your agent was networking.</div>
  </div>
  <div style="padding:30px;">
    {banner}
    <p style="font-size:18px;">Good morning, {esc(name)}.</p>
    <div style="background:#f8f9fa;border-radius:8px;padding:20px;margin-bottom:30px;">
      <strong>{report.notification_count}</strong> new opportunities &middot;
      <strong>{strong}</strong> strong matches &middot;
      average score <strong>{average:.2f}</strong>
    </div>
    {''.join(discoveries)}
    {insights_html}
  </div>
  <div style="background:#f5f5f5;padding:30px;text-align:center;font-size:12px;color:#666;">
    <a href="{esc(app_url)}/dashboard">Dashboard</a> &middot;
    <a href="{esc(app_url)}/settings">Agent settings</a> &middot;
    <a href="{esc(app_url)}/settings/notifications">Unsubscribe</a>
  </div>
</div>
</body>
</html>"""

    text_lines = [f"Good morning, {name}.", ""]
    if email_override:
        text_lines += [f"[TESTING] Originally for {user.email or 'no address'} (@{user.handle}).", ""]
    text_lines.append(f"{report.notification_count} new opportunities from last night:")
    for n in notifications[:MAX_DISCOVERIES_IN_EMAIL]:
        text_lines.append(
            f"- @{n.get('counterpart_handle', '')}: "
            f"{OUTCOME_LABELS.get(str(n.get('outcome')), n.get('outcome'))} "
            f"({float(n.get('opportunity_score', 0.0)):.2f})"
        )
    text_lines += ["", f"Dashboard: {app_url}/dashboard"]

    return EmailMessage(
        to=recipient,
        subject=email_subject(report.notification_count),
        html=body,
        text="\n".join(text_lines),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Dispatcher
# ──────────────────────────────────────────────────────────────────────────────


class NotificationDispatcher:
    """Delivers morning reports.

    Parameters
    ----------
    session_factory:
        Session factory for reads and the per-report flag update.
    sender:
        Email backend.
    rate_limiter:
        Shared limiter; one ``email`` slot per send attempt.
    config:
        Supplies retry attempts and backoff bounds.
    app_url:
        Public URL used for links in the email.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender: EmailSender,
        rate_limiter: Any,
        config: PipelineConfig,
        app_url: str,
        log_service: ProcessingLogService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.sender = sender
        self._rate_limiter = rate_limiter
        self.config = config
        self.app_url = app_url.rstrip("/")
        self._log_service = log_service
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def send_morning_report_emails(
        self,
        report_date: date,
        *,
        force_resend: bool = False,
        dry_run: bool = False,
        email_override: str | None = None,
        user_ids: Sequence[uuid.UUID] | None = None,
        report_id: uuid.UUID | None = None,
    ) -> EmailDispatchSummary:
        if report_id is not None and not email_override:
            raise ValueError("email_override is required in single-report mode")

        log = logger.bind(
            run_date=str(report_date),
            force_resend=force_resend,
            dry_run=dry_run,
            email_override=email_override,
        )
        summary = EmailDispatchSummary(report_date=report_date, dry_run=dry_run)

        async with self._session_factory() as session:
            reports = await self._select_reports(
                session,
                report_date,
                force_resend=force_resend,
                user_ids=user_ids,
                report_id=report_id,
            )
        summary.total = len(reports)
        log.info("email_dispatch_start", reports=len(reports))

        for report in reports:
            item = await self._deliver(
                report,
                force_resend=force_resend or report_id is not None,
                dry_run=dry_run,
                email_override=email_override,
            )
            summary.results.append(item)
            if item.status == "sent":
                summary.sent += 1
            elif item.status == "dry_run":
                summary.rendered += 1
            elif item.status == "failed":
                summary.failed += 1
            else:
                summary.skipped += 1

        log.info(
            "email_dispatch_complete",
            total=summary.total,
            sent=summary.sent,
            rendered=summary.rendered,
            failed=summary.failed,
            skipped=summary.skipped,
        )
        await self._audit(
            report_date,
            "dispatch",
            STATUS_COMPLETED,
            total=summary.total,
            sent=summary.sent,
            rendered=summary.rendered,
            failed=summary.failed,
            skipped=summary.skipped,
            dry_run=dry_run,
            force_resend=force_resend,
            email_override=email_override,
        )
        return summary

    async def _select_reports(
        self,
        session: AsyncSession,
        report_date: date,
        *,
        force_resend: bool,
        user_ids: Sequence[uuid.UUID] | None,
        report_id: uuid.UUID | None,
    ) -> list[MorningReport]:
        stmt = select(MorningReport).where(MorningReport.notification_count > 0)
        if report_id is not None:
            stmt = stmt.where(MorningReport.id == report_id)
        else:
            stmt = stmt.where(MorningReport.report_date == report_date)
            if not force_resend:
                stmt = stmt.where(MorningReport.email_sent.is_(False))
            if user_ids:
                stmt = stmt.where(MorningReport.user_id.in_(list(user_ids)))
        rows = (await session.execute(stmt)).scalars().all()
        return sorted(rows, key=lambda r: str(r.user_id))

    async def _deliver(
        self,
        report: MorningReport,
        *,
        force_resend: bool,
        dry_run: bool,
        email_override: str | None,
    ) -> EmailDispatchItem:
        user = report.user
        original = user.email if user is not None else None
        recipient = email_override or original
        log = logger.bind(report_id=str(report.id), user_id=str(report.user_id))

        if user is None or not recipient:
            log.warning("email_skipped_no_address")
            await self._audit(
                report.report_date, "send_report", STATUS_SKIPPED,
                error="no_email_address", report_id=report.id, user_id=report.user_id,
            )
            return EmailDispatchItem(
                report_id=report.id, user_id=report.user_id, status="skipped", error="no_email_address"
            )

        message = render_morning_report_email(
            report, user, self.app_url, recipient=recipient, email_override=email_override
        )

        if dry_run:
            log.info(
                "email_dry_run",
                recipient=recipient,
                original_recipient=original,
                subject=message.subject,
                notification_count=report.notification_count,
            )
            return EmailDispatchItem(
                report_id=report.id, user_id=report.user_id,
                recipient=original, delivered_to=recipient, status="dry_run",
            )

        try:
            await self._send_with_retry(message)
        except EmailDeliveryError as exc:
            log.error("email_send_failed", recipient=recipient, error=str(exc), transient=exc.transient)
            await self._audit(
                report.report_date, "send_report", STATUS_FAILED, error=str(exc),
                report_id=report.id, user_id=report.user_id, delivered_to=recipient,
            )
            return EmailDispatchItem(
                report_id=report.id, user_id=report.user_id,
                recipient=original, delivered_to=recipient, status="failed", error=str(exc),
            )

        flagged = await self._mark_sent(report.id, recipient, force_resend=force_resend)
        if not flagged:
            log.warning("email_flag_conflict", detail="report already marked sent by another attempt")
        log.info("email_sent", recipient=recipient, original_recipient=original)
        await self._audit(
            report.report_date, "send_report", STATUS_COMPLETED,
            report_id=report.id, user_id=report.user_id,
            original_recipient=original, delivered_to=recipient,
            notification_count=report.notification_count,
        )
        return EmailDispatchItem(
            report_id=report.id, user_id=report.user_id,
            recipient=original, delivered_to=recipient, status="sent",
        )

    async def _send_with_retry(self, message: EmailMessage) -> str | None:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient_delivery_error),
            stop=stop_after_attempt(self.config.email_retry_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self.config.retry_backoff_min_seconds,
                max=self.config.retry_backoff_max_seconds,
            ),
            reraise=True,
        ):
            with attempt:
                await self._rate_limiter.acquire(EMAIL_BUCKET)
                try:
                    return await self.sender.send(message)
                except EmailDeliveryError:
                    raise
                except Exception as exc:
                    raise EmailDeliveryError(str(exc), transient=False) from exc
        return None

    async def _mark_sent(self, report_id: uuid.UUID, delivered_to: str, *, force_resend: bool) -> bool:
        stmt = (
            update(MorningReport)
            .where(MorningReport.id == report_id)
            .values(email_sent=True, sent_at=self._clock(), delivered_to=delivered_to)
            .execution_options(synchronize_session=False)
        )
        if not force_resend:
            stmt = stmt.where(MorningReport.email_sent.is_(False))
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def _audit(self, run_date: date, action: str, status: str, *, error: str | None = None, **details: Any) -> None:
        if self._log_service is None:
            return
        await self._log_service.record(
            PROCESS_EMAIL, action, status, run_date=run_date, error_message=error, details=details
        )
