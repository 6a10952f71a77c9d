"""
Midnight Protocol — Report Aggregator (morning reports)

Folds the night's evaluated matches into one MorningReport per participating
user and date.

Eligible matches:
    run_date == report date, status completed, reported = false,
    outcome != NO_MATCH, opportunity_score >= report_min_opportunity_score

Idempotence:
    Matches are grouped into connected components over their users.  For each
    component, every affected report row, the ``reported`` flags of the
    component's matches and the per-user progress markers are written in ONE
    transaction.  The flag flip is a conditional
    ``UPDATE ... WHERE reported = false``; if fewer rows change than expected,
    another attempt already folded some of them and the whole component is
    rolled back.  Re-running the aggregator therefore never double-counts.

Modes:
    incremental       merge new matches into an existing (user, date) report,
                      de-duplicated by match id, keeping ``email_sent``
    force_regenerate  reset ``reported`` for the affected matches first, then
                      rebuild each report from scratch (``email_sent`` reset)

Agent insights come from one generation call per user over that user's whole
notification set.  If the call fails or returns unusable output a
deterministic summary is used instead; report generation never fails on it.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Sequence

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import PipelineConfig
from app.models.batch_run import RunProgress
from app.models.match import Match
from app.models.report import MorningReport
from app.services.evaluation_service import REPORTABLE_OUTCOMES
from app.services.generation_service import GenerationError, GenerationService
from app.services.processing_log_service import (
    PROCESS_REPORT,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_SKIPPED,
    ProcessingLogService,
)
from app.utils.json_parsing import parse_json_object

logger = structlog.get_logger("midnight.report_service")

UNIT_REPORT = "report"
HIGH_PRIORITY_SCORE = 0.8
MAX_INSIGHT_ITEMS = 3

FALLBACK_RECOMMENDED_ACTIONS: tuple[str, ...] = (
    "Review top-scoring matches first for immediate opportunities",
    "Schedule follow-up conversations with strong matches",
    "Update your profile to attract more high-quality matches",
)

INSIGHTS_PROMPT = """You are the AI agent for @{handle}. Overnight you held conversations with other agents and found these opportunities:

{matches}

Summarise the night for @{handle}. Respond with JSON only:
{{
  "patterns_observed": ["<pattern across the matches>", ...],
  "top_opportunities": ["<the most promising opportunity, naming the @handle>", ...],
  "recommended_actions": ["<concrete next step>", ...]
}}
At most three items per list."""


class _ComponentConflict(Exception):
    """Another attempt already folded part of this component."""


@dataclass
class ReportRunResult:
    report_date: date
    force_regenerate: bool = False
    eligible_matches: int = 0
    reports_generated: int = 0
    matches_reported: int = 0
    reports_deleted: int = 0
    conflicts: int = 0
    failed_components: int = 0
    insight_fallbacks: int = 0
    tokens_used: int = 0
    deadline_reached: bool = False
    user_ids: list[uuid.UUID] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "report_date": str(self.report_date),
            "force_regenerate": self.force_regenerate,
            "eligible_matches": self.eligible_matches,
            "reports_generated": self.reports_generated,
            "matches_reported": self.matches_reported,
            "reports_deleted": self.reports_deleted,
            "conflicts": self.conflicts,
            "failed_components": self.failed_components,
            "insight_fallbacks": self.insight_fallbacks,
            "tokens_used": self.tokens_used,
            "deadline_reached": self.deadline_reached,
        }


# ──────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────────────────────────────────────


def connected_components(matches: Sequence[Match]) -> list[list[Match]]:
    """Group matches so that no user appears in two groups (union-find)."""
    parent: dict[uuid.UUID, uuid.UUID] = {}

    def find(x: uuid.UUID) -> uuid.UUID:
        parent.setdefault(x, x)
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for m in matches:
        ra, rb = find(m.user_a_id), find(m.user_b_id)
        if ra != rb:
            # Deterministic root choice keeps component order stable.
            if str(ra) < str(rb):
                parent[rb] = ra
            else:
                parent[ra] = rb

    groups: dict[uuid.UUID, list[Match]] = defaultdict(list)
    for m in matches:
        groups[find(m.user_a_id)].append(m)
    components = [sorted(g, key=lambda m: str(m.id)) for g in groups.values()]
    components.sort(key=lambda g: str(g[0].id))
    return components


def component_users(component: Iterable[Match]) -> list[uuid.UUID]:
    users = {m.user_a_id for m in component} | {m.user_b_id for m in component}
    return sorted(users, key=str)


def build_notification(match: Match, for_user_id: uuid.UUID) -> dict[str, Any]:
    """The entry ``for_user_id`` sees for ``match``; JSON-ready."""
    is_a = match.user_a_id == for_user_id
    counterpart = match.user_b if is_a else match.user_a
    counterpart_id = match.user_b_id if is_a else match.user_a_id
    rationale = match.introduction_rationale_a if is_a else match.introduction_rationale_b
    return {
        "match_id": str(match.id),
        "counterpart_user_id": str(counterpart_id),
        "counterpart_handle": counterpart.handle if counterpart is not None else "",
        "match_type": match.match_type,
        "outcome": match.outcome,
        "opportunity_score": float(match.opportunity_score),
        "notification_score": float(match.opportunity_score),
        "reasoning": match.reasoning or "",
        "introduction_rationale": rationale or "",
        "synergies": list(match.synergies or []),
    }


def merge_notifications(
    existing: Sequence[dict[str, Any]], new: Sequence[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Existing entries win; new entries are added once per match id."""
    merged: dict[str, dict[str, Any]] = {}
    for entry in list(existing) + list(new):
        merged.setdefault(str(entry["match_id"]), entry)
    return sort_notifications(merged.values())


def sort_notifications(entries: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(
        entries,
        key=lambda n: (-float(n.get("notification_score", 0.0)), str(n["match_id"])),
    )


def summarise_notifications(notifications: Sequence[dict[str, Any]]) -> dict[str, Any]:
    count = len(notifications)
    total = sum(float(n.get("opportunity_score", 0.0)) for n in notifications)
    return {
        "total_matches": count,
        "average_opportunity_score": round(total / count, 4) if count else 0.0,
        "top_outcomes": dict(Counter(n.get("outcome") for n in notifications)),
        "highest_scoring_match": (
            float(notifications[0].get("notification_score", 0.0)) if count else 0.0
        ),
    }


def fallback_insights(notifications: Sequence[dict[str, Any]]) -> dict[str, list[str]]:
    """Deterministic agent insights used when generation is unavailable."""
    if not notifications:
        return {"patterns_observed": [], "top_opportunities": [], "recommended_actions": []}

    patterns: list[str] = []
    outcomes = sorted({str(n.get("outcome")) for n in notifications})
    if len(outcomes) > 1:
        patterns.append(
            "Diverse match types detected: " + ", ".join(outcomes).lower()
        )
    high = [n for n in notifications if float(n.get("notification_score", 0.0)) > HIGH_PRIORITY_SCORE]
    if high:
        patterns.append(f"{len(high)} high-priority matches identified")

    opportunities = [
        f"Explore collaboration with @{n.get('counterpart_handle', '')}"
        for n in notifications[:MAX_INSIGHT_ITEMS]
    ]
    return {
        "patterns_observed": patterns[:MAX_INSIGHT_ITEMS],
        "top_opportunities": opportunities,
        "recommended_actions": list(FALLBACK_RECOMMENDED_ACTIONS[:MAX_INSIGHT_ITEMS]),
    }


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    items = [str(v).strip() for v in value if v is not None and str(v).strip()]
    return items[:MAX_INSIGHT_ITEMS]


def validate_insights(payload: dict[str, Any]) -> dict[str, list[str]] | None:
    keys = ("patterns_observed", "top_opportunities", "recommended_actions")
    result: dict[str, list[str]] = {}
    for key in keys:
        items = _string_list(payload.get(key))
        if items is None:
            return None
        result[key] = items
    if not any(result.values()):
        return None
    return result


# ──────────────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────────────


class ReportAggregator:
    """Builds morning reports for a date.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each component gets its own.
    generation:
        Used for agent insights.  ``None`` means always use the fallback.
    config:
        Run configuration (score threshold, concurrency cap).
    log_service:
        Optional ProcessingLog writer.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generation: GenerationService | None,
        config: PipelineConfig,
        log_service: ProcessingLogService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.generation = generation
        self.config = config
        self._log_service = log_service
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Public API ────────────────────────────────────────────────────

    async def generate_reports(
        self,
        report_date: date,
        *,
        force_regenerate: bool = False,
        user_id: uuid.UUID | None = None,
        deadline: datetime | None = None,
    ) -> ReportRunResult:
        """Fold eligible matches for ``report_date`` into morning reports.

        Parameters
        ----------
        report_date:
            The run date whose matches are aggregated.
        force_regenerate:
            Reset ``reported`` on the affected matches and rebuild from
            scratch instead of merging.
        user_id:
            Restrict to the components containing this user.
        deadline:
            No new component starts once this instant has passed.
        """
        log = logger.bind(run_date=str(report_date), force_regenerate=force_regenerate)
        result = ReportRunResult(report_date=report_date, force_regenerate=force_regenerate)

        async with self._session_factory() as session:
            matches = await self._load_eligible(
                session, report_date, include_reported=force_regenerate
            )

        components = connected_components(matches)
        if user_id is not None:
            components = [c for c in components if user_id in component_users(c)]

        if force_regenerate:
            await self._reset_for_regeneration(report_date, components, user_id, result)

        result.eligible_matches = sum(len(c) for c in components)
        if not components:
            log.info("report_generation_noop")
            return result

        semaphore = asyncio.Semaphore(self.config.concurrency_cap)

        async def _worker(component: list[Match]) -> None:
            async with semaphore:
                if deadline is not None and self._clock() >= deadline:
                    result.deadline_reached = True
                    return
                await self._process_component(report_date, component, force_regenerate, result)

        await asyncio.gather(*(_worker(c) for c in components))

        log.info("report_generation_complete", **result.as_dict())
        return result

    # ── Loading ───────────────────────────────────────────────────────

    async def _load_eligible(
        self, session: AsyncSession, report_date: date, *, include_reported: bool
    ) -> list[Match]:
        stmt = select(Match).where(
            Match.run_date == report_date,
            Match.status == "completed",
            Match.outcome.in_(sorted(REPORTABLE_OUTCOMES)),
            Match.opportunity_score >= self.config.report_min_opportunity_score,
        )
        if not include_reported:
            stmt = stmt.where(Match.reported.is_(False))
        return list((await session.execute(stmt)).scalars().all())

    async def _reset_for_regeneration(
        self,
        report_date: date,
        components: list[list[Match]],
        user_id: uuid.UUID | None,
        result: ReportRunResult,
    ) -> None:
        match_ids = [m.id for c in components for m in c]
        users_in_scope = {u for c in components for u in component_users(c)}

        async with self._session_factory() as session:
            async with session.begin():
                if match_ids:
                    await session.execute(
                        update(Match)
                        .where(Match.id.in_(match_ids))
                        .values(reported=False, reported_at=None)
                        .execution_options(synchronize_session=False)
                    )
                # Reports left with nothing eligible are stale after a rebuild.
                stale = delete(MorningReport).where(MorningReport.report_date == report_date)
                if users_in_scope:
                    stale = stale.where(MorningReport.user_id.not_in(list(users_in_scope)))
                if user_id is not None:
                    stale = stale.where(MorningReport.user_id == user_id)
                deleted = await session.execute(stale.execution_options(synchronize_session=False))
                result.reports_deleted = deleted.rowcount or 0

    # ── Per-component transaction ─────────────────────────────────────

    async def _process_component(
        self,
        report_date: date,
        component: list[Match],
        force_regenerate: bool,
        result: ReportRunResult,
    ) -> None:
        users = component_users(component)
        match_ids = [m.id for m in component]
        log = logger.bind(run_date=str(report_date), users=[str(u) for u in users])

        try:
            async with self._session_factory() as session:
                existing = await self._load_reports(session, report_date, users)

            # Insights are generated outside the write transaction.
            planned: dict[uuid.UUID, tuple[list[dict[str, Any]], dict[str, list[str]]]] = {}
            tokens = 0
            for uid in users:
                new_entries = [build_notification(m, uid) for m in component if uid in (m.user_a_id, m.user_b_id)]
                prior = existing.get(uid)
                if prior is not None and not force_regenerate:
                    notifications = merge_notifications(prior.match_notifications or [], new_entries)
                else:
                    notifications = sort_notifications(new_entries)
                handle = self._handle_for(component, uid)
                insights, used_tokens, fell_back = await self._insights(handle, notifications, report_date)
                tokens += used_tokens
                if fell_back:
                    result.insight_fallbacks += 1
                planned[uid] = (notifications, insights)

            now = self._clock()
            async with self._session_factory() as session:
                async with session.begin():
                    flipped = await session.execute(
                        update(Match)
                        .where(Match.id.in_(match_ids), Match.reported.is_(False))
                        .values(reported=True, reported_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if flipped.rowcount != len(match_ids):
                        raise _ComponentConflict(
                            f"expected {len(match_ids)} unreported matches, flipped {flipped.rowcount}"
                        )

                    current = await self._load_reports(session, report_date, users)
                    for uid, (notifications, insights) in planned.items():
                        report = current.get(uid)
                        if report is not None and not force_regenerate:
                            # Re-merge against the row as it is now.
                            notifications = merge_notifications(
                                report.match_notifications or [], notifications
                            )
                        self._apply_report(session, report, uid, report_date, notifications, insights, force_regenerate)
                        await self._mark_progress(session, report_date, uid)

        except _ComponentConflict as exc:
            result.conflicts += 1
            log.warning("report_component_conflict", error=str(exc))
            await self._audit(report_date, "fold_component", STATUS_SKIPPED, error=str(exc), users=users)
            return
        except Exception as exc:
            result.failed_components += 1
            log.error("report_component_failed", error=str(exc), exc_info=True)
            await self._audit(report_date, "fold_component", STATUS_FAILED, error=str(exc), users=users)
            return

        result.reports_generated += len(users)
        result.matches_reported += len(match_ids)
        result.tokens_used += tokens
        result.user_ids.extend(users)
        log.info("report_component_folded", matches=len(match_ids))
        await self._audit(
            report_date,
            "fold_component",
            STATUS_COMPLETED,
            users=users,
            matches=[str(m) for m in match_ids],
            tokens=tokens,
        )

    async def _load_reports(
        self, session: AsyncSession, report_date: date, users: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, MorningReport]:
        stmt = select(MorningReport).where(
            MorningReport.report_date == report_date,
            MorningReport.user_id.in_(list(users)),
        )
        return {r.user_id: r for r in (await session.execute(stmt)).scalars().all()}

    def _apply_report(
        self,
        session: AsyncSession,
        report: MorningReport | None,
        user_id: uuid.UUID,
        report_date: date,
        notifications: list[dict[str, Any]],
        insights: dict[str, list[str]],
        force_regenerate: bool,
    ) -> None:
        total = round(sum(float(n["opportunity_score"]) for n in notifications), 4)
        if report is None:
            session.add(
                MorningReport(
                    user_id=user_id,
                    report_date=report_date,
                    notification_count=len(notifications),
                    total_opportunity_score=total,
                    match_notifications=notifications,
                    match_summaries=summarise_notifications(notifications),
                    agent_insights=insights,
                    email_sent=False,
                )
            )
            return

        # JSON columns are reassigned, never mutated in place.
        report.match_notifications = list(notifications)
        report.notification_count = len(notifications)
        report.total_opportunity_score = total
        report.match_summaries = summarise_notifications(notifications)
        report.agent_insights = insights
        if force_regenerate:
            report.email_sent = False
            report.sent_at = None
            report.delivered_to = None

    async def _mark_progress(self, session: AsyncSession, run_date: date, user_id: uuid.UUID) -> None:
        stmt = select(RunProgress).where(
            RunProgress.run_date == run_date,
            RunProgress.unit_type == UNIT_REPORT,
            RunProgress.unit_key == str(user_id),
        )
        marker = (await session.execute(stmt)).scalar_one_or_none()
        if marker is None:
            session.add(
                RunProgress(
                    run_date=run_date,
                    unit_type=UNIT_REPORT,
                    unit_key=str(user_id),
                    status="done",
                )
            )
        else:
            marker.status = "done"
            marker.updated_at = self._clock()

    # ── Insights ──────────────────────────────────────────────────────

    @staticmethod
    def _handle_for(component: Sequence[Match], user_id: uuid.UUID) -> str:
        for m in component:
            if m.user_a_id == user_id and m.user_a is not None:
                return m.user_a.handle
            if m.user_b_id == user_id and m.user_b is not None:
                return m.user_b.handle
        return str(user_id)

    async def _insights(
        self,
        handle: str,
        notifications: list[dict[str, Any]],
        report_date: date,
    ) -> tuple[dict[str, list[str]], int, bool]:
        """Returns (insights, tokens_used, used_fallback)."""
        if self.generation is None or not notifications:
            return fallback_insights(notifications), 0, True

        lines = []
        for n in notifications:
            synergies = ", ".join(n.get("synergies") or []) or "none listed"
            lines.append(
                f"- @{n['counterpart_handle']} ({n['outcome']}, score {n['opportunity_score']:.2f}): "
                f"{n.get('reasoning') or 'no reasoning recorded'} Synergies: {synergies}"
            )
        prompt = INSIGHTS_PROMPT.format(handle=handle, matches="\n".join(lines))

        try:
            generated = await self.generation.generate(
                prompt,
                {"purpose": "agent_insights", "handle": handle, "run_date": str(report_date)},
                json_output=True,
            )
        except GenerationError as exc:
            logger.warning("agent_insights_generation_failed", handle=handle, error=str(exc))
            return fallback_insights(notifications), 0, True

        try:
            insights = validate_insights(parse_json_object(generated.text))
        except ValueError:
            insights = None
        if insights is None:
            logger.warning("agent_insights_invalid", handle=handle, raw_preview=generated.text[:200])
            return fallback_insights(notifications), generated.tokens, True
        return insights, generated.tokens, False

    async def _audit(self, run_date: date, action: str, status: str, *, error: str | None = None, **details: Any) -> None:
        if self._log_service is None:
            return
        await self._log_service.record(
            PROCESS_REPORT,
            action,
            status,
            run_date=run_date,
            tokens_used=int(details.get("tokens", 0) or 0),
            error_message=error,
            details=details,
        )
