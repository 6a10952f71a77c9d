"""Shared pytest fixtures for Midnight Protocol tests."""
import asyncio
import json
import os
import uuid
from datetime import date

import pytest
import pytest_asyncio

os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./midnight-test.db")
os.environ.setdefault("EMAIL_BACKEND", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

import app.models  # noqa: E402,F401  (registers every table on Base.metadata)
from app.config import PipelineConfig  # noqa: E402
from app.database import Base  # noqa: E402
from app.models.match import Match  # noqa: E402
from app.models.user import AgentProfile, PersonalStory, User  # noqa: E402
from app.services.email_service import EmailDeliveryError, EmailSender  # noqa: E402
from app.services.generation_service import (  # noqa: E402
    GenerationError,
    GenerationResult,
    TransientGenerationError,
)
from app.services.pairing_service import canonical_pair  # noqa: E402
from app.services.rate_limiter import (  # noqa: E402
    EMAIL_BUCKET,
    GENERATION_BUCKET,
    Quota,
    RateLimiter,
)

RUN_DATE = date(2025, 6, 1)


# ── Database ────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'midnight.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


# ── Configuration & quotas ──────────────────────────────────────────


@pytest.fixture
def pipeline_config():
    """Defaults with zero backoff so retry tests do not sleep."""
    return PipelineConfig(
        retry_backoff_min_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        generation_timeout_seconds=5.0,
        min_compatibility_score=0.05,
    )


@pytest.fixture
def rate_limiter():
    return RateLimiter(
        {
            GENERATION_BUCKET: Quota(10_000, 60.0),
            EMAIL_BUCKET: Quota(10_000, 1.0),
        }
    )


# ── Generation stub ─────────────────────────────────────────────────


STRONG_MATCH_PAYLOAD = {
    "outcome": "STRONG_MATCH",
    "opportunity_score": 0.86,
    "synergies": ["seed funding for climate hardware", "pilot customers"],
    "reasoning": "One side is raising for a battery startup, the other invests in exactly that.",
    "introduction_rationale_a": "They invest in early-stage climate hardware.",
    "introduction_rationale_b": "Their battery startup fits your thesis.",
}

INSIGHTS_PAYLOAD = {
    "patterns_observed": ["Investors keep surfacing for your climate work"],
    "top_opportunities": ["Intro to the climate investor"],
    "recommended_actions": ["Reply to the introduction today"],
}


class ScriptedBackend:
    """Deterministic stand-in for the Gemini backend.

    Routes on the prompt: health check, classification, morning-report
    insights, otherwise a conversation turn.  ``turn_replies`` is consumed
    in order and then repeats its last element.
    """

    def __init__(
        self,
        *,
        turn_replies=None,
        classification=None,
        classification_text=None,
        insights=None,
        health_ok=True,
        fail_turns=0,
        fail_turn_error=None,
        fail_classification=False,
        tokens=10,
    ):
        self.turn_replies = list(turn_replies or ["Our humans should meet about climate hardware."])
        self.classification = classification if classification is not None else STRONG_MATCH_PAYLOAD
        self.classification_text = classification_text
        self.insights = insights if insights is not None else INSIGHTS_PAYLOAD
        self.health_ok = health_ok
        self.fail_turns = fail_turns
        self.fail_turn_error = fail_turn_error or TransientGenerationError("503 unavailable")
        self.fail_classification = fail_classification
        self.tokens = tokens
        self.calls = []
        self._turns_served = 0

    def kinds(self):
        return [kind for kind, _prompt in self.calls]

    async def complete(self, prompt, *, json_output=False):
        if prompt.startswith("Reply with the single word OK"):
            self.calls.append(("health", prompt))
            if not self.health_ok:
                raise GenerationError("API key rejected")
            return GenerationResult(text="OK", tokens=1, model="stub")

        if prompt.startswith("You are evaluating a conversation"):
            self.calls.append(("classify", prompt))
            if self.fail_classification:
                raise GenerationError("prompt blocked")
            text = self.classification_text
            if text is None:
                text = json.dumps(self.classification)
            return GenerationResult(text=text, tokens=self.tokens, model="stub")

        if "Summarise the night" in prompt:
            self.calls.append(("insights", prompt))
            return GenerationResult(text=json.dumps(self.insights), tokens=self.tokens, model="stub")

        self.calls.append(("turn", prompt))
        if self.fail_turns:
            self.fail_turns -= 1
            raise self.fail_turn_error
        index = min(self._turns_served, len(self.turn_replies) - 1)
        self._turns_served += 1
        return GenerationResult(text=self.turn_replies[index], tokens=self.tokens, model="stub")


class BlockingBackend(ScriptedBackend):
    """Holds every non-health call until ``release`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, prompt, *, json_output=False):
        if not prompt.startswith("Reply with the single word OK"):
            self.started.set()
            await self.release.wait()
        return await super().complete(prompt, json_output=json_output)


@pytest.fixture
def backend():
    return ScriptedBackend()


# ── Email stub ──────────────────────────────────────────────────────


class RecordingSender(EmailSender):
    """Collects messages instead of sending; can fail for chosen recipients."""

    def __init__(self, fail_for=(), transient_failures=0):
        self.sent = []
        self.attempts = 0
        self.fail_for = set(fail_for)
        self.transient_failures = transient_failures

    async def send(self, message):
        self.attempts += 1
        if self.transient_failures:
            self.transient_failures -= 1
            raise EmailDeliveryError("429 Too Many Requests", transient=True, status_code=429)
        if message.to in self.fail_for:
            raise EmailDeliveryError("400 Bad Request", transient=False, status_code=400)
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


@pytest.fixture
def sender():
    return RecordingSender()


# ── Seed data ───────────────────────────────────────────────────────


FOUNDER_STORY = {
    "narrative": "I am building a grid-scale battery startup.",
    "current_focus": ["battery storage pilots"],
    "seeking_connections": ["climate hardware investors"],
    "offering_expertise": ["battery chemistry engineering"],
}

INVESTOR_STORY = {
    "narrative": "I write first cheques into energy companies.",
    "current_focus": ["energy transition deals"],
    "seeking_connections": ["battery chemistry founders"],
    "offering_expertise": ["climate hardware investors network", "seed funding"],
}


async def add_user(
    session_factory,
    handle,
    *,
    story=None,
    agent_status="approved",
    email="default",
    style="professional_focused",
    user_id=None,
):
    """Insert a user with an agent profile and (optionally) a story."""
    uid = user_id or uuid.uuid4()
    async with session_factory() as session:
        async with session.begin():
            session.add(
                User(
                    id=uid,
                    handle=handle,
                    email=f"{handle}@example.com" if email == "default" else email,
                    full_name=handle.title(),
                )
            )
            session.add(
                AgentProfile(
                    user_id=uid,
                    agent_name=f"{handle.title()} Agent",
                    communication_style=style,
                    status=agent_status,
                )
            )
            if story is not None:
                session.add(
                    PersonalStory(
                        user_id=uid,
                        narrative=story.get("narrative", ""),
                        current_focus=story.get("current_focus", []),
                        seeking_connections=story.get("seeking_connections", []),
                        offering_expertise=story.get("offering_expertise", []),
                        sharing_preferences=story.get("sharing_preferences"),
                    )
                )
    return uid


@pytest_asyncio.fixture
async def founder_and_investor(session_factory):
    """Two approved users with fully complementary stories."""
    founder = await add_user(session_factory, "founder", story=FOUNDER_STORY)
    investor = await add_user(session_factory, "investor", story=INVESTOR_STORY)
    return founder, investor


async def add_match(
    session_factory,
    user_a,
    user_b,
    *,
    run_date=RUN_DATE,
    outcome="STRONG_MATCH",
    opportunity_score=0.86,
    status="completed",
    reported=False,
):
    """Insert an evaluated match between two existing users."""
    ua, ub = canonical_pair(user_a, user_b)
    match = Match(
        run_date=run_date,
        user_a_id=ua,
        user_b_id=ub,
        match_type="targeted",
        compatibility_score=0.7,
        status=status,
        outcome=outcome if status == "completed" else None,
        opportunity_score=opportunity_score,
        synergies=["seed funding"],
        reasoning="Complementary needs.",
        introduction_rationale_a="Worth meeting B.",
        introduction_rationale_b="Worth meeting A.",
        reported=reported,
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(match)
    return match.id
