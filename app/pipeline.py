"""
Midnight Protocol — Service Wiring

Builds the process-scoped objects the nightly pipeline shares: one rate
limiter (in-memory, or Redis-backed when ``REDIS_URL`` is set), one
generation facade, one email sender, and the ``BatchScheduler`` on top.

The API process and the worker CLI both wire through ``connect_redis()`` and
``build_scheduler()``, so with ``REDIS_URL`` set every process draws on the
same shared quota windows.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import PipelineConfig, Settings, get_settings
from app.database import get_session_factory
from app.services.email_service import EmailSender, get_email_sender
from app.services.generation_service import GeminiBackend, GenerationBackend, GenerationService
from app.services.processing_log_service import ProcessingLogService
from app.services.rate_limiter import RateLimiter, RedisRateLimiter, quotas_from_settings
from app.services.scheduler_service import BatchScheduler

logger = structlog.get_logger("midnight.pipeline")

_scheduler: BatchScheduler | None = None


async def connect_redis(redis_url: str) -> Any:
    """Open and ping a Redis client; None when no URL is configured."""
    if not redis_url:
        logger.info("redis_skip", reason="REDIS_URL not configured")
        return None
    client = aioredis.from_url(redis_url, decode_responses=True, socket_connect_timeout=5)
    await client.ping()
    logger.info("redis_connected", url=redis_url)
    return client


def build_rate_limiter(settings: Settings, redis_client: Any = None) -> Any:
    quotas = quotas_from_settings(settings)
    if redis_client is not None:
        logger.info("rate_limiter_backend", backend="redis")
        return RedisRateLimiter(redis_client, quotas)
    logger.info("rate_limiter_backend", backend="memory")
    return RateLimiter(quotas)


def build_scheduler(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    backend: GenerationBackend | None = None,
    email_sender: EmailSender | None = None,
    rate_limiter: Any = None,
    redis_client: Any = None,
) -> BatchScheduler:
    """Assemble a ``BatchScheduler``; every collaborator can be injected."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    base_config = PipelineConfig.from_settings(settings)

    if rate_limiter is None:
        rate_limiter = build_rate_limiter(settings, redis_client)
    if backend is None:
        backend = GeminiBackend(
            api_key=settings.GEMINI_API_KEY,
            model_chain=base_config.model_chain,
        )
    if email_sender is None:
        email_sender = get_email_sender(settings)

    return BatchScheduler(
        session_factory=session_factory,
        generation=GenerationService(backend, rate_limiter, base_config),
        email_sender=email_sender,
        rate_limiter=rate_limiter,
        base_config=base_config,
        app_url=settings.APP_PUBLIC_URL,
        log_service=ProcessingLogService(session_factory),
    )


def get_scheduler() -> BatchScheduler:
    """Return the process-wide scheduler, creating it on first use.

    Also the FastAPI dependency for the pipeline routes.
    """
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler()
    return _scheduler


def set_scheduler(scheduler: BatchScheduler | None) -> None:
    """Replace the process-wide scheduler (application startup and tests)."""
    global _scheduler
    _scheduler = scheduler
