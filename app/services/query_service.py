"""
Midnight Protocol — Query Service

Read side of the pipeline: matches with their transcripts, morning reports,
run status, analytics and the processing-log audit trail.  Nothing here writes.
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

import structlog
from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.batch_run import BatchRun
from app.models.match import Match
from app.models.processing_log import ProcessingLog
from app.models.report import MorningReport
from app.schemas.analytics import (
    AnalyticsResponse,
    ProcessingLogRead,
    ProcessingLogsResponse,
    ProcessingLogStats,
    SystemHealth,
)
from app.schemas.match import MatchDetail, MatchList, MatchRead
from app.schemas.pipeline import BatchRunRead
from app.schemas.report import MorningReportList, MorningReportRead
from app.services.evaluation_service import REPORTABLE_OUTCOMES

logger = structlog.get_logger("midnight.query_service")

MAX_LIMIT = 500


def _clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), MAX_LIMIT))


def _with_handles(read: MatchRead, match: Match) -> MatchRead:
    read.handle_a = match.user_a.handle if match.user_a else None
    read.handle_b = match.user_b.handle if match.user_b else None
    return read


class QueryService:
    """Read-only queries over an externally managed session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_matches(
        self,
        run_date: date | None = None,
        user_id: uuid.UUID | None = None,
        outcome: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> MatchList:
        """Matches newest date first, best opportunity first within a date.

        ``user_id`` matches either side of the pair.  Transcripts are left
        out; ``get_match`` returns one match with its transcript.
        """
        stmt = select(Match)
        if run_date is not None:
            stmt = stmt.where(Match.run_date == run_date)
        if user_id is not None:
            stmt = stmt.where(or_(Match.user_a_id == user_id, Match.user_b_id == user_id))
        if outcome:
            stmt = stmt.where(Match.outcome == outcome)
        if status:
            stmt = stmt.where(Match.status == status)
        stmt = stmt.order_by(
            Match.run_date.desc(), Match.opportunity_score.desc(), Match.id
        ).limit(_clamp_limit(limit))

        rows = (await self.session.execute(stmt)).scalars().all()
        matches = [_with_handles(MatchRead.model_validate(m), m) for m in rows]
        return MatchList(matches=matches, count=len(matches))

    async def get_match(self, match_id: uuid.UUID) -> MatchDetail | None:
        match = await self.session.get(Match, match_id)
        if match is None:
            return None
        return _with_handles(MatchDetail.model_validate(match), match)

    async def get_morning_reports(
        self,
        user_id: uuid.UUID | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        limit: int = 50,
    ) -> MorningReportList:
        stmt = select(MorningReport)
        if user_id is not None:
            stmt = stmt.where(MorningReport.user_id == user_id)
        if date_from is not None:
            stmt = stmt.where(MorningReport.report_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(MorningReport.report_date <= date_to)
        stmt = stmt.order_by(
            MorningReport.report_date.desc(), MorningReport.created_at.desc()
        ).limit(_clamp_limit(limit))

        rows = (await self.session.execute(stmt)).scalars().all()
        reports = [MorningReportRead.model_validate(r) for r in rows]
        return MorningReportList(reports=reports, count=len(reports))

    async def get_run(self, run_date: date) -> BatchRunRead | None:
        run = (
            await self.session.execute(select(BatchRun).where(BatchRun.run_date == run_date))
        ).scalar_one_or_none()
        if run is None:
            return None
        read = BatchRunRead.model_validate(run)
        read.pair_count = len(run.pair_plan or [])
        return read

    async def get_analytics(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> AnalyticsResponse:
        """Aggregate pipeline metrics over ``[date_from, date_to]`` (inclusive).

        ``conversion_rate`` is the share of completed, reportable matches that
        have been folded into a morning report; ``processing_backlog`` counts
        those still waiting.
        """
        match_filters = []
        report_filters = []
        log_filters = []
        if date_from is not None:
            match_filters.append(Match.run_date >= date_from)
            report_filters.append(MorningReport.report_date >= date_from)
            log_filters.append(ProcessingLog.run_date >= date_from)
        if date_to is not None:
            match_filters.append(Match.run_date <= date_to)
            report_filters.append(MorningReport.report_date <= date_to)
            log_filters.append(ProcessingLog.run_date <= date_to)

        status_rows = await self.session.execute(
            select(Match.status, func.count(Match.id)).where(*match_filters).group_by(Match.status)
        )
        by_status = {status: count for status, count in status_rows.all()}

        outcome_rows = await self.session.execute(
            select(Match.outcome, func.count(Match.id))
            .where(*match_filters, Match.status == "completed")
            .group_by(Match.outcome)
        )
        outcomes = {outcome: count for outcome, count in outcome_rows.all() if outcome}

        avg_score, total_tokens = (
            await self.session.execute(
                select(
                    func.avg(Match.opportunity_score),
                    func.coalesce(func.sum(Match.tokens_used), 0),
                ).where(*match_filters, Match.status == "completed")
            )
        ).one()

        reportable = select(func.count(Match.id)).where(
            *match_filters,
            Match.status == "completed",
            Match.outcome.in_(sorted(REPORTABLE_OUTCOMES)),
        )
        reportable_total = (await self.session.execute(reportable)).scalar_one()
        reported_total = (
            await self.session.execute(reportable.where(Match.reported.is_(True)))
        ).scalar_one()

        reports_generated, emails_sent = (
            await self.session.execute(
                select(
                    func.count(MorningReport.id),
                    func.coalesce(
                        func.sum(case((MorningReport.email_sent.is_(True), 1), else_=0)), 0
                    ),
                ).where(*report_filters)
            )
        ).one()

        log_stats = await self._log_stats(log_filters)
        error_rate = (
            log_stats.error_count / log_stats.total_logs if log_stats.total_logs else 0.0
        )

        return AnalyticsResponse(
            date_from=date_from,
            date_to=date_to,
            total_matches=sum(by_status.values()),
            completed_matches=by_status.get("completed", 0),
            failed_matches=by_status.get("failed", 0),
            reported_matches=reported_total,
            outcome_distribution=outcomes,
            average_opportunity_score=round(float(avg_score or 0.0), 4),
            conversion_rate=round(reported_total / reportable_total, 4) if reportable_total else 0.0,
            reports_generated=reports_generated,
            emails_sent=int(emails_sent or 0),
            total_tokens_used=int(total_tokens or 0),
            system_health=SystemHealth(
                processing_backlog=reportable_total - reported_total,
                average_processing_time_ms=log_stats.average_processing_time_ms,
                error_rate=round(error_rate, 4),
            ),
        )

    async def get_processing_logs(
        self,
        process_type: str | None = None,
        status: str | None = None,
        run_date: date | None = None,
        limit: int = 100,
    ) -> ProcessingLogsResponse:
        filters = []
        if process_type:
            filters.append(ProcessingLog.process_type == process_type)
        if status:
            filters.append(ProcessingLog.status == status)
        if run_date is not None:
            filters.append(ProcessingLog.run_date == run_date)

        rows = (
            await self.session.execute(
                select(ProcessingLog)
                .where(*filters)
                .order_by(ProcessingLog.created_at.desc())
                .limit(_clamp_limit(limit))
            )
        ).scalars().all()

        return ProcessingLogsResponse(
            logs=[ProcessingLogRead.model_validate(r) for r in rows],
            stats=await self._log_stats(filters),
        )

    async def _log_stats(self, filters: list[Any]) -> ProcessingLogStats:
        status_rows = (
            await self.session.execute(
                select(ProcessingLog.status, func.count(ProcessingLog.id))
                .where(*filters)
                .group_by(ProcessingLog.status)
            )
        ).all()
        type_rows = (
            await self.session.execute(
                select(ProcessingLog.process_type, func.count(ProcessingLog.id))
                .where(*filters)
                .group_by(ProcessingLog.process_type)
            )
        ).all()
        avg_time, total_tokens = (
            await self.session.execute(
                select(
                    func.avg(ProcessingLog.processing_time_ms),
                    func.coalesce(func.sum(ProcessingLog.tokens_used), 0),
                ).where(*filters)
            )
        ).one()

        statuses = {s: c for s, c in status_rows}
        return ProcessingLogStats(
            total_logs=sum(statuses.values()),
            status_distribution=statuses,
            process_type_distribution={t: c for t, c in type_rows},
            average_processing_time_ms=round(float(avg_time or 0.0), 2),
            total_tokens_used=int(total_tokens or 0),
            error_count=statuses.get("failed", 0),
        )
