"""
Midnight Protocol — Compatibility Scorer

Pure, deterministic scoring of two participants for match potential.  No I/O
and no generation calls, so re-running pairing for a date on unchanged data
reproduces the same pairs.

Calculation:
  1. Normalise every phrase to a set of lowercase content words (stop words
     and tokens shorter than three characters dropped).
  2. Directional coverage A -> B: for each of A's ``seeking_connections``
     phrases take the best token coverage against B's ``offering_expertise``
     (weight 1.0) or B's ``current_focus`` (weight 0.6); average over A's
     seeking phrases.
  3. Complementarity = mean of both directions.
  4. Topical overlap = Jaccard similarity of all tokens in both stories.
  5. Score = min(1, 0.8 * complementarity + 0.2 * topical), 4 decimals.

Tag:
  targeted       either direction >= 0.5
  exploratory    some complementarity, below the targeted bar
  serendipitous  only topical overlap (or none)
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import Iterable

# ── Weights & thresholds ────────────────────────────────────────────
OFFERING_WEIGHT: float = 1.0
FOCUS_WEIGHT: float = 0.6
COMPLEMENTARITY_WEIGHT: float = 0.8
TOPICAL_WEIGHT: float = 0.2
TARGETED_THRESHOLD: float = 0.5
MIN_TOKEN_LENGTH: int = 3

MATCH_TYPE_TARGETED = "targeted"
MATCH_TYPE_EXPLORATORY = "exploratory"
MATCH_TYPE_SERENDIPITOUS = "serendipitous"

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")

_STOP_WORDS: frozenset[str] = frozenset({
    "and", "the", "for", "with", "who", "that", "this", "from", "into",
    "are", "our", "your", "their", "them", "they", "have", "has", "had",
    "will", "can", "but", "not", "all", "any", "its", "was", "were",
    "been", "being", "about", "over", "more", "most", "some", "such",
    "other", "people", "someone", "looking", "seeking", "help", "helping",
    "work", "working", "new", "via", "out", "per", "also", "like",
})


@dataclass(frozen=True)
class ParticipantProfile:
    """Snapshot of one user's agent and story for a single run.

    Built once from the AgentProfile / PersonalStory rows and shared by the
    scorer, the pairing engine and the conversation orchestrator.
    """

    user_id: uuid.UUID
    handle: str
    agent_name: str
    communication_style: str = "professional_focused"
    narrative: str = ""
    current_focus: tuple[str, ...] = ()
    seeking_connections: tuple[str, ...] = ()
    offering_expertise: tuple[str, ...] = ()
    sharing_preferences: dict[str, bool] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_rows(cls, user, agent_profile, story) -> "ParticipantProfile":
        return cls(
            user_id=user.id,
            handle=user.handle,
            agent_name=agent_profile.agent_name,
            communication_style=agent_profile.communication_style,
            narrative=story.narrative or "",
            current_focus=tuple(_as_phrases(story.current_focus)),
            seeking_connections=tuple(_as_phrases(story.seeking_connections)),
            offering_expertise=tuple(_as_phrases(story.offering_expertise)),
            sharing_preferences=dict(story.sharing_preferences or {}),
        )


@dataclass(frozen=True)
class CompatibilityResult:
    score: float
    match_type: str
    forward_coverage: float
    backward_coverage: float
    topical_overlap: float


def _as_phrases(values: Iterable | None) -> list[str]:
    if not values:
        return []
    return [str(v).strip() for v in values if v is not None and str(v).strip()]


def tokenize(phrase: str) -> frozenset[str]:
    """Lowercase content-word set for one phrase."""
    return frozenset(
        tok
        for tok in _TOKEN_PATTERN.findall(phrase.lower())
        if len(tok) >= MIN_TOKEN_LENGTH and tok not in _STOP_WORDS
    )


def _phrase_tokens(phrases: Iterable[str]) -> list[frozenset[str]]:
    return [t for t in (tokenize(p) for p in phrases) if t]


def _all_tokens(profile: ParticipantProfile) -> frozenset[str]:
    tokens: set[str] = set(tokenize(profile.narrative))
    for phrases in (
        profile.current_focus,
        profile.seeking_connections,
        profile.offering_expertise,
    ):
        for phrase in phrases:
            tokens |= tokenize(phrase)
    return frozenset(tokens)


def story_is_empty(profile: ParticipantProfile) -> bool:
    """True when the story carries no content words at all."""
    return not _all_tokens(profile)


def directional_coverage(seeker: ParticipantProfile, provider: ParticipantProfile) -> float:
    """How well ``provider`` covers what ``seeker`` is looking for, in [0, 1]."""
    seeking = _phrase_tokens(seeker.seeking_connections)
    if not seeking:
        return 0.0

    offering = _phrase_tokens(provider.offering_expertise)
    focus = _phrase_tokens(provider.current_focus)

    total = 0.0
    for wanted in seeking:
        best = 0.0
        for offered in offering:
            best = max(best, OFFERING_WEIGHT * len(wanted & offered) / len(wanted))
        for focused in focus:
            best = max(best, FOCUS_WEIGHT * len(wanted & focused) / len(wanted))
        total += best
    return total / len(seeking)


def score_compatibility(a: ParticipantProfile, b: ParticipantProfile) -> CompatibilityResult:
    """Score two participants.  Symmetric in its ``score`` and ``match_type``."""
    tokens_a = _all_tokens(a)
    tokens_b = _all_tokens(b)
    if not tokens_a or not tokens_b:
        return CompatibilityResult(0.0, MATCH_TYPE_SERENDIPITOUS, 0.0, 0.0, 0.0)

    forward = directional_coverage(a, b)
    backward = directional_coverage(b, a)
    complementarity = (forward + backward) / 2.0
    topical = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)

    score = min(1.0, COMPLEMENTARITY_WEIGHT * complementarity + TOPICAL_WEIGHT * topical)

    if max(forward, backward) >= TARGETED_THRESHOLD:
        match_type = MATCH_TYPE_TARGETED
    elif complementarity > 0.0:
        match_type = MATCH_TYPE_EXPLORATORY
    else:
        match_type = MATCH_TYPE_SERENDIPITOUS

    return CompatibilityResult(
        score=round(score, 4),
        match_type=match_type,
        forward_coverage=round(forward, 4),
        backward_coverage=round(backward, 4),
        topical_overlap=round(topical, 4),
    )
