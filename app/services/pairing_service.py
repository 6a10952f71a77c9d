"""
Midnight Protocol — Pairing Engine

Selects tonight's conversation pairs from the active-user pool.

Pipeline:
  1. Load approved agents with their personal stories.
  2. Skip users with no story (``missing_story``) or an empty one
     (``empty_story``).
  3. Score every remaining pair with the Compatibility Scorer.
  4. Apply the cool-down rule to pairs with a completed match in the last
     ``cooldown_days`` (exclude, or down-weight by a factor).  A pair whose
     most recent attempt *failed* is requeued: exempt from cool-down and
     sorted ahead of everything else, for at most ``max_requeue_attempts``
     consecutive failures.  After that the last failure counts as an
     attempt for cool-down purposes.
  5. Drop candidates below ``min_compatibility_score``.
  6. Greedy maximum-weight matching: take candidates in order, skipping any
     that would push a user past ``max_conversations_per_user``, until
     ``max_pairs_per_run`` pairs are chosen.

Greedy matching is not optimal, but its output on a fixed input is easy to
predict and to explain, and every tie is broken by user id.
"""

from __future__ import annotations

import itertools
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import CooldownMode, PipelineConfig
from app.models.match import Match
from app.models.user import AgentProfile, PersonalStory, User
from app.services.compatibility_service import (
    ParticipantProfile,
    score_compatibility,
    story_is_empty,
)

logger = structlog.get_logger("midnight.pairing_service")

SKIP_MISSING_STORY = "missing_story"
SKIP_EMPTY_STORY = "empty_story"

# How far back a failed attempt still earns a requeue.
REQUEUE_LOOKBACK_DAYS = 30


def canonical_pair(user_x: uuid.UUID, user_y: uuid.UUID) -> tuple[uuid.UUID, uuid.UUID]:
    """Order two user ids so a pair always has the same (a, b) form."""
    return (user_x, user_y) if str(user_x) <= str(user_y) else (user_y, user_x)


def pair_key(user_a_id: uuid.UUID, user_b_id: uuid.UUID) -> str:
    a, b = canonical_pair(user_a_id, user_b_id)
    return f"{a}:{b}"


@dataclass(frozen=True)
class MatchCandidate:
    """Ephemeral pairing decision for one run date."""

    user_a_id: uuid.UUID
    user_b_id: uuid.UUID
    match_type: str
    score: float
    raw_score: float
    requeued: bool = False
    cooled_down: bool = False

    @property
    def key(self) -> str:
        return pair_key(self.user_a_id, self.user_b_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_a_id": str(self.user_a_id),
            "user_b_id": str(self.user_b_id),
            "match_type": self.match_type,
            "score": self.score,
            "raw_score": self.raw_score,
            "requeued": self.requeued,
            "cooled_down": self.cooled_down,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchCandidate":
        return cls(
            user_a_id=uuid.UUID(str(data["user_a_id"])),
            user_b_id=uuid.UUID(str(data["user_b_id"])),
            match_type=data["match_type"],
            score=float(data["score"]),
            raw_score=float(data.get("raw_score", data["score"])),
            requeued=bool(data.get("requeued", False)),
            cooled_down=bool(data.get("cooled_down", False)),
        )


@dataclass(frozen=True)
class SkippedUser:
    user_id: uuid.UUID
    reason: str


@dataclass
class ParticipantPool:
    profiles: list[ParticipantProfile] = field(default_factory=list)
    skipped: list[SkippedUser] = field(default_factory=list)
    approved_count: int = 0


@dataclass
class PairHistory:
    """Prior attempts keyed by canonical pair, dates strictly before the run."""

    last_completed: dict[str, date] = field(default_factory=dict)
    last_attempt: dict[str, date] = field(default_factory=dict)
    last_attempt_status: dict[str, str] = field(default_factory=dict)
    # Failed attempts since the pair's most recent completed one.
    consecutive_failures: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: Iterable[tuple[uuid.UUID, uuid.UUID, date, str]]) -> "PairHistory":
        history = cls()
        for user_a_id, user_b_id, run_date, status in sorted(rows, key=lambda r: r[2]):
            key = pair_key(user_a_id, user_b_id)
            history.last_attempt[key] = run_date
            history.last_attempt_status[key] = status
            if status == "completed":
                history.last_completed[key] = run_date
                history.consecutive_failures[key] = 0
            else:
                history.consecutive_failures[key] = history.consecutive_failures.get(key, 0) + 1
        return history


@dataclass
class PairingResult:
    pairs: list[MatchCandidate] = field(default_factory=list)
    skipped: list[SkippedUser] = field(default_factory=list)
    active_user_count: int = 0

    def summary(self) -> dict[str, Any]:
        reasons: dict[str, int] = defaultdict(int)
        for skip in self.skipped:
            reasons[skip.reason] += 1
        return {
            "pairs": len(self.pairs),
            "active_users": self.active_user_count,
            "skipped": dict(reasons),
            "requeued": sum(1 for p in self.pairs if p.requeued),
        }


class PairingEngine:
    """Greedy, deterministic pair selection.

    ``select_pairs`` is pure (profiles + history in, pairs out) so it can be
    tested for exact output; the ``load_*`` coroutines fetch its inputs.
    """

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    # ── Data loading ──────────────────────────────────────────────────

    async def load_participants(self, session: AsyncSession) -> ParticipantPool:
        """Approved agents joined to their stories, ordered by user id."""
        stmt = (
            select(User, AgentProfile, PersonalStory)
            .join(AgentProfile, AgentProfile.user_id == User.id)
            .outerjoin(PersonalStory, PersonalStory.user_id == User.id)
            .where(AgentProfile.status == "approved")
        )
        rows = (await session.execute(stmt)).all()

        pool = ParticipantPool(approved_count=len(rows))
        for user, agent, story in sorted(rows, key=lambda r: str(r[0].id)):
            if story is None:
                pool.skipped.append(SkippedUser(user.id, SKIP_MISSING_STORY))
                continue
            pool.profiles.append(ParticipantProfile.from_rows(user, agent, story))
        return pool

    async def load_profiles_by_id(
        self, session: AsyncSession, user_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, ParticipantProfile]:
        """Profiles for a persisted pair plan, regardless of current status."""
        ids = list(set(user_ids))
        if not ids:
            return {}
        stmt = (
            select(User, AgentProfile, PersonalStory)
            .join(AgentProfile, AgentProfile.user_id == User.id)
            .join(PersonalStory, PersonalStory.user_id == User.id)
            .where(User.id.in_(ids))
        )
        rows = (await session.execute(stmt)).all()
        return {
            user.id: ParticipantProfile.from_rows(user, agent, story)
            for user, agent, story in rows
        }

    async def load_history(self, session: AsyncSession, run_date: date) -> PairHistory:
        lookback = max(self.config.cooldown_days, REQUEUE_LOOKBACK_DAYS)
        stmt = select(
            Match.user_a_id, Match.user_b_id, Match.run_date, Match.status
        ).where(
            Match.run_date < run_date,
            Match.run_date >= run_date - timedelta(days=lookback),
        )
        rows = (await session.execute(stmt)).all()
        return PairHistory.from_rows(tuple(r) for r in rows)

    async def compute_pairs(self, session: AsyncSession, run_date: date) -> PairingResult:
        pool = await self.load_participants(session)
        history = await self.load_history(session, run_date)
        result = self.select_pairs(pool.profiles, history, run_date)
        result.skipped = pool.skipped + result.skipped
        return result

    # ── Selection ─────────────────────────────────────────────────────

    def select_pairs(
        self,
        profiles: Sequence[ParticipantProfile],
        history: PairHistory | None,
        run_date: date,
    ) -> PairingResult:
        history = history or PairHistory()
        log = logger.bind(run_date=str(run_date))

        skipped: list[SkippedUser] = []
        eligible: list[ParticipantProfile] = []
        for profile in sorted(profiles, key=lambda p: str(p.user_id)):
            if story_is_empty(profile):
                skipped.append(SkippedUser(profile.user_id, SKIP_EMPTY_STORY))
                log.info("pairing_user_skipped", user_id=str(profile.user_id), reason=SKIP_EMPTY_STORY)
            else:
                eligible.append(profile)

        active_count = len(profiles)
        if len(eligible) < 2:
            log.info("pairing_noop", eligible_users=len(eligible))
            return PairingResult(pairs=[], skipped=skipped, active_user_count=active_count)

        candidates = [
            c for c in (
                self._score_pair(x, y, history, run_date)
                for x, y in itertools.combinations(eligible, 2)
            )
            if c is not None
        ]
        candidates.sort(
            key=lambda c: (not c.requeued, -c.score, str(c.user_a_id), str(c.user_b_id))
        )

        assigned: dict[uuid.UUID, int] = defaultdict(int)
        cap = self.config.max_conversations_per_user
        pairs: list[MatchCandidate] = []
        for candidate in candidates:
            if len(pairs) >= self.config.max_pairs_per_run:
                break
            if assigned[candidate.user_a_id] >= cap or assigned[candidate.user_b_id] >= cap:
                continue
            assigned[candidate.user_a_id] += 1
            assigned[candidate.user_b_id] += 1
            pairs.append(candidate)

        log.info(
            "pairing_complete",
            eligible_users=len(eligible),
            candidates=len(candidates),
            pairs=len(pairs),
            requeued=sum(1 for p in pairs if p.requeued),
        )
        return PairingResult(pairs=pairs, skipped=skipped, active_user_count=active_count)

    def _score_pair(
        self,
        x: ParticipantProfile,
        y: ParticipantProfile,
        history: PairHistory,
        run_date: date,
    ) -> MatchCandidate | None:
        a_id, b_id = canonical_pair(x.user_id, y.user_id)
        first, second = (x, y) if a_id == x.user_id else (y, x)
        result = score_compatibility(first, second)
        key = pair_key(a_id, b_id)

        failures = history.consecutive_failures.get(key, 0)
        requeued = 0 < failures <= self.config.max_requeue_attempts
        score = result.score
        cooled_down = False

        # Once requeues are used up, the last failed attempt starts a cool-down.
        last_seen = (
            history.last_attempt.get(key) if failures else history.last_completed.get(key)
        )
        in_cooldown = (
            not requeued
            and self.config.cooldown_days > 0
            and last_seen is not None
            and (run_date - last_seen).days <= self.config.cooldown_days
        )
        if in_cooldown:
            if self.config.cooldown_mode == CooldownMode.EXCLUDE:
                return None
            score = round(score * self.config.cooldown_downweight_factor, 4)
            cooled_down = True

        if score < self.config.min_compatibility_score or score <= 0.0:
            return None

        return MatchCandidate(
            user_a_id=a_id,
            user_b_id=b_id,
            match_type=result.match_type,
            score=score,
            raw_score=result.score,
            requeued=requeued,
            cooled_down=cooled_down,
        )
