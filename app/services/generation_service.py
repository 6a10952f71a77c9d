"""
Midnight Protocol — Generation Service: the single LLM call contract

Every call the pipeline makes to the external generation capability goes
through ``GenerationService``:

- ``generate(prompt, context)``   free text (conversation turns, insights)
- ``classify(transcript, context)`` structured outcome JSON for a transcript

Each *attempt* first takes a slot from the shared ``generation`` rate-limit
bucket, then runs under a timeout.  Transient failures (timeouts, 429, 5xx,
empty responses) are retried with exponential backoff via tenacity; once the
attempts are spent ``GenerationExhaustedError`` is raised so the caller can
degrade its unit of work.  Calls have no side effects beyond the response, so
retrying them is always safe.

The concrete model sits behind ``GenerationBackend``.  ``GeminiBackend``
walks a model fallback chain, e.g.:
    gemini-2.5-pro -> gemini-2.5-flash -> gemini-2.0-flash
Tests substitute a scripted backend.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import google.generativeai as genai
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import PipelineConfig
from app.schemas.pipeline import TranscriptTurn
from app.services.rate_limiter import GENERATION_BUCKET
from app.utils.json_parsing import parse_json_object

logger = structlog.get_logger("midnight.generation_service")


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class GenerationError(Exception):
    """Non-retryable generation failure (bad request, blocked prompt)."""


class TransientGenerationError(GenerationError):
    """A failure worth retrying: timeout, rate limit, server error."""


class GenerationExhaustedError(GenerationError):
    """Retries exhausted on transient failures."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def _is_retryable_error(exc: BaseException) -> bool:
    """Return True if the exception signals a transient generation failure.

    The google-generativeai SDK surfaces HTTP failures as assorted
    google.api_core exception types, so both the type name and the message
    are inspected.
    """
    if isinstance(exc, GenerationExhaustedError):
        return False
    if isinstance(exc, (TransientGenerationError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, GenerationError):
        return False

    exc_str = str(exc).lower()
    exc_type = type(exc).__name__.lower()

    if "429" in exc_str or "resource_exhausted" in exc_str or "rate limit" in exc_str:
        return True
    if "500" in exc_str or "502" in exc_str or "503" in exc_str or "internal" in exc_str:
        return True
    if "deadline" in exc_str or "timed out" in exc_str or "unavailable" in exc_str:
        return True
    if (
        "resourceexhausted" in exc_type
        or "serviceunavailable" in exc_type
        or "deadlineexceeded" in exc_type
        or "internalservererror" in exc_type
    ):
        return True
    return False


# ──────────────────────────────────────────────────────────────────────────────
# Results & backend contract
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GenerationResult:
    text: str
    tokens: int = 0
    model: str | None = None


@dataclass(frozen=True)
class ClassificationResult:
    """Parsed classifier output, or ``payload=None`` with the raw text."""

    payload: dict[str, Any] | None
    raw_text: str
    tokens: int = 0
    parse_error: str | None = None


class GenerationBackend(Protocol):
    async def complete(self, prompt: str, *, json_output: bool = False) -> GenerationResult:
        ...


class GeminiBackend:
    """google-generativeai backend with a model fallback chain."""

    def __init__(
        self,
        api_key: str,
        model_chain: Sequence[str],
        max_output_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> None:
        if not model_chain:
            raise ValueError("model_chain must name at least one model")
        genai.configure(api_key=api_key)
        self._model_chain = list(model_chain)
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature
        logger.info("gemini_backend_initialised", model_chain=self._model_chain)

    def with_model_chain(self, model_chain: Sequence[str]) -> "GeminiBackend":
        if list(model_chain) == self._model_chain:
            return self
        clone = copy.copy(self)
        clone._model_chain = list(model_chain)
        return clone

    def _generation_config(self, json_output: bool) -> Any:
        kwargs: dict[str, Any] = {
            "max_output_tokens": self._max_output_tokens,
            "temperature": 0.2 if json_output else self._temperature,
        }
        if json_output:
            kwargs["response_mime_type"] = "application/json"
        return genai.GenerationConfig(**kwargs)

    async def complete(self, prompt: str, *, json_output: bool = False) -> GenerationResult:
        last_exception: BaseException | None = None

        for model_name in self._model_chain:
            model = genai.GenerativeModel(model_name)
            try:
                response = await model.generate_content_async(
                    prompt,
                    generation_config=self._generation_config(json_output),
                )
                if not response.candidates:
                    raise TransientGenerationError(
                        f"Gemini returned no candidates for model {model_name}. "
                        f"Prompt feedback: {response.prompt_feedback}"
                    )
                text = response.text
                usage = getattr(response, "usage_metadata", None)
                tokens = int(getattr(usage, "total_token_count", 0) or 0)
                return GenerationResult(text=text or "", tokens=tokens, model=model_name)
            except Exception as exc:
                last_exception = exc
                logger.warning(
                    "model_fallback",
                    failed_model=model_name,
                    error=str(exc),
                )
                continue

        if last_exception is None:
            raise GenerationError("No generation models configured")
        if _is_retryable_error(last_exception):
            raise TransientGenerationError(
                f"All models in chain failed. Last error: {last_exception}"
            ) from last_exception
        raise GenerationError(
            f"All models in chain failed. Last error: {last_exception}"
        ) from last_exception


# ──────────────────────────────────────────────────────────────────────────────
# Classification contract
# ──────────────────────────────────────────────────────────────────────────────

CLASSIFICATION_PROMPT = """You are evaluating a conversation between two AI agents, each representing a professional, to decide whether their humans should be introduced.

Participants: agent_a represents @{handle_a}; agent_b represents @{handle_b}.

Transcript:
{transcript}

Classify the outcome as exactly one of:
- STRONG_MATCH: clear, concrete, mutual value; an introduction is warranted now
- EXPLORATORY_VALUE: promising overlap worth a conversation, not yet concrete
- FUTURE_POTENTIAL: little value today, plausible value later
- NO_MATCH: no meaningful synergy

Respond with JSON only:
{{
  "outcome": "STRONG_MATCH | EXPLORATORY_VALUE | FUTURE_POTENTIAL | NO_MATCH",
  "opportunity_score": <number between 0 and 1>,
  "synergies": ["<short phrase>", ...],
  "reasoning": "<two or three sentences>",
  "introduction_rationale_a": "<why @{handle_a} should meet @{handle_b}>",
  "introduction_rationale_b": "<why @{handle_b} should meet @{handle_a}>"
}}"""


def format_transcript(transcript: Sequence[TranscriptTurn]) -> str:
    if not transcript:
        return "(no turns)"
    return "\n\n".join(f"{turn.speaker}: {turn.content}" for turn in transcript)


# ──────────────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────────────


class GenerationService:
    """Rate-limited, retrying facade over a ``GenerationBackend``.

    Parameters
    ----------
    backend:
        The model adapter (``GeminiBackend`` in production).
    rate_limiter:
        Shared limiter; one ``generation`` slot is taken per attempt.
    config:
        Run configuration supplying attempts, timeout and backoff bounds.
    """

    def __init__(self, backend: GenerationBackend, rate_limiter: Any, config: PipelineConfig) -> None:
        self._backend = backend
        self._rate_limiter = rate_limiter
        self.config = config

    def with_config(self, config: PipelineConfig) -> "GenerationService":
        backend = self._backend
        rebind = getattr(backend, "with_model_chain", None)
        if rebind is not None:
            backend = rebind(config.model_chain)
        return GenerationService(backend, self._rate_limiter, config)

    async def generate(
        self,
        prompt: str,
        context: Mapping[str, Any] | None = None,
        *,
        json_output: bool = False,
    ) -> GenerationResult:
        return await self._call(prompt, context or {}, json_output=json_output)

    async def classify(
        self,
        transcript: Sequence[TranscriptTurn],
        context: Mapping[str, Any] | None = None,
    ) -> ClassificationResult:
        """Ask the model for the structured outcome of ``transcript``.

        ``context`` may carry ``handle_a`` / ``handle_b`` for the prompt; the
        whole mapping is bound to the log context.  A response that is not a
        JSON object yields ``payload=None`` rather than an exception; the
        evaluator decides the safe default.
        """
        context = dict(context or {})
        prompt = CLASSIFICATION_PROMPT.format(
            handle_a=context.get("handle_a", "user_a"),
            handle_b=context.get("handle_b", "user_b"),
            transcript=format_transcript(transcript),
        )
        result = await self._call(prompt, context, json_output=True)
        try:
            payload = parse_json_object(result.text)
        except ValueError as exc:
            return ClassificationResult(
                payload=None,
                raw_text=result.text,
                tokens=result.tokens,
                parse_error=str(exc),
            )
        return ClassificationResult(payload=payload, raw_text=result.text, tokens=result.tokens)

    async def health_check(self) -> bool:
        """One cheap call; False when the capability is unreachable."""
        try:
            await self._call(
                "Reply with the single word OK.",
                {"purpose": "health_check"},
                json_output=False,
            )
        except GenerationError as exc:
            logger.error("generation_health_check_failed", error=str(exc))
            return False
        return True

    async def _call(
        self,
        prompt: str,
        context: Mapping[str, Any],
        *,
        json_output: bool,
    ) -> GenerationResult:
        log = logger.bind(**{k: str(v) for k, v in context.items()})
        attempts = self.config.generation_retry_attempts

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable_error),
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(
                    multiplier=1,
                    min=self.config.retry_backoff_min_seconds,
                    max=self.config.retry_backoff_max_seconds,
                ),
                reraise=True,
            ):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    await self._rate_limiter.acquire(GENERATION_BUCKET)
                    try:
                        result = await asyncio.wait_for(
                            self._backend.complete(prompt, json_output=json_output),
                            timeout=self.config.generation_timeout_seconds,
                        )
                    except asyncio.TimeoutError as exc:
                        log.warning("generation_timeout", attempt_number=attempt_number)
                        raise TransientGenerationError(
                            f"Generation timed out after {self.config.generation_timeout_seconds}s"
                        ) from exc
                    except Exception as exc:
                        log.warning(
                            "generation_attempt_failed",
                            attempt_number=attempt_number,
                            error=str(exc),
                            retryable=_is_retryable_error(exc),
                        )
                        raise

                    if not result.text or not result.text.strip():
                        log.warning("generation_empty_response", attempt_number=attempt_number)
                        raise TransientGenerationError("Generation returned empty text")
                    return result
        except GenerationExhaustedError:
            raise
        except Exception as exc:
            if _is_retryable_error(exc):
                log.error("generation_retry_exhausted", attempts=attempts, last_error=str(exc))
                raise GenerationExhaustedError(
                    f"Generation failed after {attempts} attempts: {exc}", attempts
                ) from exc
            if isinstance(exc, GenerationError):
                raise
            raise GenerationError(str(exc)) from exc

        # AsyncRetrying with reraise=True never falls through.
        raise GenerationError("Generation retry loop ended without a result")
