"""Unit tests for the GenerationService call contract."""
import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest

from app.config import PipelineConfig
from app.schemas.pipeline import TranscriptTurn
from app.services.generation_service import (
    GeminiBackend,
    GenerationError,
    GenerationExhaustedError,
    GenerationResult,
    GenerationService,
    TransientGenerationError,
    _is_retryable_error,
    format_transcript,
)
from app.services.rate_limiter import GENERATION_BUCKET
from tests.conftest import ScriptedBackend


class SlowBackend:
    async def complete(self, prompt, *, json_output=False):
        await asyncio.sleep(1.0)
        return GenerationResult(text="too late")


class EmptyBackend:
    async def complete(self, prompt, *, json_output=False):
        return GenerationResult(text="   ")


class ChainAwareBackend(ScriptedBackend):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.model_chain = None

    def with_model_chain(self, model_chain):
        self.model_chain = tuple(model_chain)
        return self


def _service(backend, rate_limiter, pipeline_config, **overrides):
    config = pipeline_config.model_copy(update=overrides) if overrides else pipeline_config
    return GenerationService(backend, rate_limiter, config)


class TestRetryPolicy:
    """Tests for retry, exhaustion and non-retryable failures."""

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, rate_limiter, pipeline_config):
        backend = ScriptedBackend(turn_replies=["hello"], fail_turns=2)
        service = _service(backend, rate_limiter, pipeline_config, generation_retry_attempts=3)
        result = await service.generate("turn prompt")
        assert result.text == "hello"
        assert backend.kinds() == ["turn", "turn", "turn"]

    @pytest.mark.asyncio
    async def test_exhausted_after_configured_attempts(self, rate_limiter, pipeline_config):
        backend = ScriptedBackend(fail_turns=10)
        service = _service(backend, rate_limiter, pipeline_config, generation_retry_attempts=3)
        with pytest.raises(GenerationExhaustedError) as exc_info:
            await service.generate("turn prompt")
        assert exc_info.value.attempts == 3
        assert len(backend.calls) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, rate_limiter, pipeline_config):
        backend = ScriptedBackend(fail_turns=5, fail_turn_error=GenerationError("400 bad request"))
        service = _service(backend, rate_limiter, pipeline_config)
        with pytest.raises(GenerationError) as exc_info:
            await service.generate("turn prompt")
        assert not isinstance(exc_info.value, GenerationExhaustedError)
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_is_retried_then_exhausted(self, rate_limiter, pipeline_config):
        service = _service(
            SlowBackend(),
            rate_limiter,
            pipeline_config,
            generation_timeout_seconds=0.01,
            generation_retry_attempts=2,
        )
        with pytest.raises(GenerationExhaustedError):
            await service.generate("turn prompt")

    @pytest.mark.asyncio
    async def test_empty_text_counts_as_transient(self, rate_limiter, pipeline_config):
        service = _service(EmptyBackend(), rate_limiter, pipeline_config, generation_retry_attempts=2)
        with pytest.raises(GenerationExhaustedError):
            await service.generate("turn prompt")

    @pytest.mark.asyncio
    async def test_each_attempt_takes_a_rate_limit_slot(self, pipeline_config):
        limiter = AsyncMock()
        backend = ScriptedBackend(fail_turns=1)
        service = GenerationService(backend, limiter, pipeline_config)
        await service.generate("turn prompt")
        assert limiter.acquire.await_count == 2
        limiter.acquire.assert_awaited_with(GENERATION_BUCKET)


class TestRetryableClassification:
    @pytest.mark.parametrize(
        "exc",
        [
            Exception("429 Resource exhausted"),
            Exception("503 Service Unavailable"),
            TimeoutError(),
            TransientGenerationError("flaky"),
        ],
    )
    def test_retryable(self, exc):
        assert _is_retryable_error(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            Exception("400 invalid argument"),
            GenerationError("blocked"),
            GenerationExhaustedError("done", 3),
        ],
    )
    def test_not_retryable(self, exc):
        assert not _is_retryable_error(exc)


class TestClassify:
    """Tests for classify and the health check."""

    @pytest.mark.asyncio
    async def test_classify_parses_fenced_json(self, rate_limiter, pipeline_config):
        backend = ScriptedBackend(
            classification_text='Here you go:\n```json\n{"outcome": "NO_MATCH", "opportunity_score": 0.1}\n```'
        )
        service = _service(backend, rate_limiter, pipeline_config)
        result = await service.classify([], {"handle_a": "maya", "handle_b": "leo"})
        assert result.payload == {"outcome": "NO_MATCH", "opportunity_score": 0.1}
        assert "@maya" in backend.calls[0][1]

    @pytest.mark.asyncio
    async def test_classify_unparseable_returns_raw_text(self, rate_limiter, pipeline_config):
        backend = ScriptedBackend(classification_text="I would rather not say.")
        service = _service(backend, rate_limiter, pipeline_config)
        result = await service.classify([])
        assert result.payload is None
        assert result.raw_text == "I would rather not say."
        assert result.parse_error

    @pytest.mark.asyncio
    async def test_health_check(self, rate_limiter, pipeline_config):
        assert await _service(ScriptedBackend(), rate_limiter, pipeline_config).health_check()
        failing = _service(ScriptedBackend(health_ok=False), rate_limiter, pipeline_config)
        assert not await failing.health_check()

    def test_with_config_rebinds_model_chain(self, rate_limiter, pipeline_config):
        backend = ChainAwareBackend()
        service = _service(backend, rate_limiter, pipeline_config)
        rebound = service.with_config(PipelineConfig(model_chain="gemini-2.5-flash"))
        assert backend.model_chain == ("gemini-2.5-flash",)
        assert rebound.config.model_chain == ("gemini-2.5-flash",)

    def test_format_transcript(self):
        turns = [
            TranscriptTurn(turn_index=0, speaker="agent_a", speaker_user_id=uuid.uuid4(), content="Hi"),
            TranscriptTurn(turn_index=1, speaker="agent_b", speaker_user_id=uuid.uuid4(), content="Hello"),
        ]
        assert format_transcript(turns) == "agent_a: Hi\n\nagent_b: Hello"
        assert format_transcript([]) == "(no turns)"


class TestGeminiBackend:
    """Construction and chain handling; no request reaches the network."""

    def test_empty_chain_rejected_at_construction(self):
        with pytest.raises(ValueError):
            GeminiBackend(api_key="test-key", model_chain=[])

    @pytest.mark.asyncio
    async def test_complete_with_empty_chain_raises_generation_error(self):
        backend = GeminiBackend(api_key="test-key", model_chain=["gemini-2.5-flash"])
        emptied = backend.with_model_chain([])

        with pytest.raises(GenerationError) as exc_info:
            await emptied.complete("hello")

        assert not isinstance(exc_info.value, TransientGenerationError)
        assert "No generation models configured" in str(exc_info.value)
