"""
Midnight Protocol — Conversation Orchestrator

Runs one bounded dialogue between two agents.  Per pair, turns are strictly
sequential: turn k+1 is prompted with the transcript through turn k.

State machine:
    turn 0 (agent_a) -> turn 1 (agent_b) -> ... -> turn N-1
Terminal when:
    * the turn cap N is reached, or
    * two consecutive turns (one from each side) both emit
      ``[NO_FURTHER_SYNERGY]``, or
    * a turn's generation call exhausts its retries -> FAILED, partial
      transcript kept, pair requeued by the pairing engine next night.

Prompt per turn:
    framing + speaker's communication style + speaker's own full story +
    counterpart's *shareable* view + prior turns + phase guidance
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import structlog

from app.config import PipelineConfig
from app.schemas.pipeline import TranscriptTurn
from app.services.compatibility_service import ParticipantProfile
from app.services.generation_service import GenerationError, GenerationService
from app.services.privacy import full_view, render_view, shareable_view

logger = structlog.get_logger("midnight.conversation_service")

NO_FURTHER_SYNERGY = "[NO_FURTHER_SYNERGY]"

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

SPEAKER_A = "agent_a"
SPEAKER_B = "agent_b"

COMMUNICATION_STYLES: dict[str, str] = {
    "professional_focused": (
        "Polished and businesslike. Lead with credentials and concrete outcomes."
    ),
    "warm_conversational": (
        "Friendly and curious. Build rapport, ask follow-up questions, share context."
    ),
    "direct_efficient": (
        "Brief and to the point. One or two sentences, no pleasantries."
    ),
}

CONVERSATION_FRAMING = """You are {agent_name}, the AI agent representing @{handle} on Midnight Protocol, a network where agents meet overnight to discover collaboration opportunities for their humans.

Tonight you are talking with the agent representing @{other_handle}.

Rules:
- Speak only as {agent_name}, in the first person, on behalf of @{handle}.
- Use only the information below. Never invent facts about either person.
- Do not reveal anything about @{other_handle} beyond what their agent shares.
- Keep your reply under 120 words.
- If you are convinced there is no further synergy to explore, end your reply with {signal}.

Communication style: {style}

About the person you represent:
{own_story}

What @{other_handle}'s agent has shared:
{other_story}
"""

TURN_GUIDANCE: dict[str, str] = {
    "opening": "Introduce your human briefly and name the overlap you noticed.",
    "exploring": (
        "Dig into specific ways the two of them could help each other. "
        "Ask or answer one concrete question."
    ),
    "closing": (
        "Wrap up: state the most promising opportunity, or say plainly that "
        "there is none."
    ),
}


@dataclass
class ConversationResult:
    status: str
    transcript: list[TranscriptTurn] = field(default_factory=list)
    tokens_used: int = 0
    early_stopped: bool = False
    error: str | None = None
    duration_ms: int = 0

    @property
    def turn_count(self) -> int:
        return len(self.transcript)

    def transcript_json(self) -> list[dict[str, Any]]:
        return [turn.model_dump(mode="json") for turn in self.transcript]


def strip_signal(text: str) -> tuple[str, bool]:
    """Remove the early-stop token; report whether it was present."""
    signalled = NO_FURTHER_SYNERGY in text
    content = text.replace(NO_FURTHER_SYNERGY, "").strip()
    if signalled and not content:
        content = "I don't see further synergy to explore."
    return content, signalled


def turn_phase(turn_index: int, turn_cap: int) -> str:
    if turn_index == 0:
        return "opening"
    if turn_index >= turn_cap - 2:
        return "closing"
    return "exploring"


class ConversationOrchestrator:
    """Drives the turn loop for one pair through the ``GenerationService``."""

    def __init__(self, generation: GenerationService, config: PipelineConfig) -> None:
        self.generation = generation
        self.config = config

    def build_prompt(
        self,
        speaker: ParticipantProfile,
        counterpart: ParticipantProfile,
        transcript: list[TranscriptTurn],
        turn_index: int,
    ) -> str:
        framing = CONVERSATION_FRAMING.format(
            agent_name=speaker.agent_name,
            handle=speaker.handle,
            other_handle=counterpart.handle,
            signal=NO_FURTHER_SYNERGY,
            style=COMMUNICATION_STYLES.get(
                speaker.communication_style,
                COMMUNICATION_STYLES["professional_focused"],
            ),
            own_story=render_view(full_view(speaker)),
            other_story=render_view(shareable_view(counterpart)),
        )

        if transcript:
            history = "\n".join(f"{t.speaker}: {t.content}" for t in transcript)
        else:
            history = "No history yet. You speak first."

        guidance = TURN_GUIDANCE[turn_phase(turn_index, self.config.turn_cap)]
        you = SPEAKER_A if turn_index % 2 == 0 else SPEAKER_B
        return (
            f"{framing}\n"
            f"Conversation so far:\n{history}\n\n"
            f"This is turn {turn_index + 1} of {self.config.turn_cap}. You are {you}.\n"
            f"{guidance}\n"
            f"Reply with your next message only."
        )

    async def run(
        self,
        profile_a: ParticipantProfile,
        profile_b: ParticipantProfile,
        context: Mapping[str, Any] | None = None,
    ) -> ConversationResult:
        """Run the dialogue; ``profile_a`` always speaks first.

        Never raises for generation failures: they end the conversation with
        ``status="failed"`` and the transcript produced so far.
        """
        context = dict(context or {})
        log = logger.bind(**{k: str(v) for k, v in context.items()})
        started = time.monotonic()

        transcript: list[TranscriptTurn] = []
        tokens = 0
        previous_signalled = False

        for turn_index in range(self.config.turn_cap):
            speaker, counterpart, tag = (
                (profile_a, profile_b, SPEAKER_A)
                if turn_index % 2 == 0
                else (profile_b, profile_a, SPEAKER_B)
            )
            prompt = self.build_prompt(speaker, counterpart, transcript, turn_index)

            try:
                result = await self.generation.generate(
                    prompt, {**context, "turn_index": turn_index, "speaker": tag}
                )
            except GenerationError as exc:
                log.warning(
                    "conversation_turn_failed",
                    turn_index=turn_index,
                    completed_turns=len(transcript),
                    error=str(exc),
                )
                return ConversationResult(
                    status=STATUS_FAILED,
                    transcript=transcript,
                    tokens_used=tokens,
                    error=f"turn {turn_index}: {exc}",
                    duration_ms=_elapsed_ms(started),
                )

            tokens += result.tokens
            content, signalled = strip_signal(result.text)
            transcript.append(
                TranscriptTurn(
                    turn_index=turn_index,
                    speaker=tag,
                    speaker_user_id=speaker.user_id,
                    content=content,
                )
            )

            if signalled and previous_signalled:
                log.info("conversation_early_stop", turns=len(transcript))
                return ConversationResult(
                    status=STATUS_COMPLETED,
                    transcript=transcript,
                    tokens_used=tokens,
                    early_stopped=True,
                    duration_ms=_elapsed_ms(started),
                )
            previous_signalled = signalled

        log.info("conversation_complete", turns=len(transcript), tokens=tokens)
        return ConversationResult(
            status=STATUS_COMPLETED,
            transcript=transcript,
            tokens_used=tokens,
            duration_ms=_elapsed_ms(started),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
