"""
Midnight Protocol — Outcome Evaluator

One ``classify`` call per finished transcript, then strict validation of the
model's answer against the closed outcome enum.  Malformed output never
raises: it degrades to the safest reading (NO_MATCH, score 0) and the raw
text plus a list of anomalies are handed back for the audit log.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

import structlog

from app.schemas.pipeline import TranscriptTurn
from app.services.generation_service import GenerationService

logger = structlog.get_logger("midnight.evaluation_service")

MAX_SYNERGIES = 10


class Outcome(str, Enum):
    STRONG_MATCH = "STRONG_MATCH"
    EXPLORATORY_VALUE = "EXPLORATORY_VALUE"
    FUTURE_POTENTIAL = "FUTURE_POTENTIAL"
    NO_MATCH = "NO_MATCH"


REPORTABLE_OUTCOMES: frozenset[str] = frozenset(
    o.value for o in Outcome if o is not Outcome.NO_MATCH
)


@dataclass
class Evaluation:
    outcome: Outcome
    opportunity_score: float
    synergies: list[str] = field(default_factory=list)
    reasoning: str = ""
    introduction_rationale_a: str = ""
    introduction_rationale_b: str = ""
    tokens_used: int = 0
    anomalies: list[str] = field(default_factory=list)
    raw_text: str = ""

    @property
    def is_reportable(self) -> bool:
        return self.outcome.value in REPORTABLE_OUTCOMES


def normalise_outcome(value: Any) -> Outcome | None:
    if not isinstance(value, str):
        return None
    key = value.strip().upper().replace(" ", "_").replace("-", "_")
    try:
        return Outcome(key)
    except ValueError:
        return None


def _coerce_score(value: Any, anomalies: list[str]) -> float:
    if isinstance(value, bool) or value is None:
        anomalies.append("missing_score" if value is None else "non_numeric_score")
        return 0.0
    try:
        score = float(value)
    except (TypeError, ValueError):
        anomalies.append("non_numeric_score")
        return 0.0
    if math.isnan(score) or math.isinf(score):
        anomalies.append("non_numeric_score")
        return 0.0
    if score < 0.0 or score > 1.0:
        anomalies.append("score_clamped")
        score = min(1.0, max(0.0, score))
    return round(score, 4)


def _coerce_synergies(value: Any, anomalies: list[str]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        anomalies.append("synergies_not_list")
        value = [value]
    if not isinstance(value, (list, tuple)):
        anomalies.append("synergies_not_list")
        return []
    synergies = [str(item).strip() for item in value if item is not None and str(item).strip()]
    return synergies[:MAX_SYNERGIES]


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def validate_classification(payload: Mapping[str, Any] | None, raw_text: str = "") -> Evaluation:
    """Turn a classifier payload into an ``Evaluation``.

    * outcome missing or outside the enum -> NO_MATCH with score 0
    * non-numeric score -> 0; out-of-range score clamped into [0, 1]
    * synergies coerced to a list of non-empty strings
    """
    anomalies: list[str] = []
    if payload is None:
        anomalies.append("unparseable_output")
        return Evaluation(
            outcome=Outcome.NO_MATCH,
            opportunity_score=0.0,
            anomalies=anomalies,
            raw_text=raw_text,
        )

    raw_outcome = payload.get("outcome")
    outcome = normalise_outcome(raw_outcome)
    if outcome is None:
        anomalies.append("missing_outcome" if raw_outcome is None else "invalid_outcome")
        score = 0.0
        outcome = Outcome.NO_MATCH
    else:
        score = _coerce_score(
            payload.get("opportunity_score", payload.get("score")), anomalies
        )

    return Evaluation(
        outcome=outcome,
        opportunity_score=score,
        synergies=_coerce_synergies(payload.get("synergies"), anomalies),
        reasoning=_text(payload.get("reasoning")),
        introduction_rationale_a=_text(payload.get("introduction_rationale_a")),
        introduction_rationale_b=_text(payload.get("introduction_rationale_b")),
        anomalies=anomalies,
        raw_text=raw_text,
    )


class OutcomeEvaluator:
    """Classifies finished transcripts.

    ``GenerationError`` from the classify call propagates: the caller marks
    the match failed so the pair is retried on a later night.
    """

    def __init__(self, generation: GenerationService) -> None:
        self.generation = generation

    async def evaluate(
        self,
        transcript: Sequence[TranscriptTurn],
        context: Mapping[str, Any] | None = None,
    ) -> Evaluation:
        context = dict(context or {})
        classification = await self.generation.classify(transcript, context)
        evaluation = validate_classification(classification.payload, classification.raw_text)
        evaluation.tokens_used = classification.tokens

        if evaluation.anomalies:
            logger.warning(
                "classification_anomaly",
                anomalies=evaluation.anomalies,
                parse_error=classification.parse_error,
                raw_preview=classification.raw_text[:200],
                **{k: str(v) for k, v in context.items()},
            )
        return evaluation
