"""Unit tests for process wiring: the Redis connection and scheduler assembly."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.config import get_settings
from app.pipeline import build_scheduler, connect_redis
from app.services.rate_limiter import RateLimiter, RedisRateLimiter
from tests.conftest import RecordingSender, ScriptedBackend


class TestConnectRedis:
    @pytest.mark.asyncio
    async def test_no_url_means_no_client(self):
        with patch("app.pipeline.aioredis.from_url") as from_url:
            assert await connect_redis("") is None
        from_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_is_pinged(self):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        with patch("app.pipeline.aioredis.from_url", return_value=client) as from_url:
            assert await connect_redis("redis://cache:6379/0") is client
        from_url.assert_called_once_with(
            "redis://cache:6379/0", decode_responses=True, socket_connect_timeout=5
        )
        client.ping.assert_awaited_once()


class TestBuildScheduler:
    def test_redis_client_selects_shared_limiter(self, session_factory):
        scheduler = build_scheduler(
            get_settings(),
            session_factory=session_factory,
            backend=ScriptedBackend(),
            email_sender=RecordingSender(),
            redis_client=MagicMock(),
        )
        assert isinstance(scheduler.rate_limiter, RedisRateLimiter)

    def test_without_redis_limiter_is_in_memory(self, session_factory):
        scheduler = build_scheduler(
            get_settings(),
            session_factory=session_factory,
            backend=ScriptedBackend(),
            email_sender=RecordingSender(),
        )
        assert isinstance(scheduler.rate_limiter, RateLimiter)
