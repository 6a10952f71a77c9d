"""
Midnight Protocol — FastAPI Application Entry Point

Operator API in front of the nightly pipeline:
- Async lifespan management (DB pool, optional Redis, pipeline services)
- CORS, timeout, and structured-logging middleware
- Health-check endpoints (liveness + deep readiness)
- Graceful shutdown: drain requests, then settle background runs
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.api.pipeline import shutdown_background_runs
from app.config import get_settings
from app.database import dispose_engine, get_engine, get_session_factory
from app.logging_config import configure_logging
from app.pipeline import build_scheduler, connect_redis, get_scheduler, set_scheduler

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

logger: structlog.stdlib.BoundLogger = structlog.get_logger("midnight")

DRAIN_TIMEOUT_SECONDS = 15
BACKGROUND_RUN_GRACE_SECONDS = 30

# In-flight HTTP requests; only touched from the event loop.
_active_requests: int = 0


async def _drain_active_requests() -> None:
    deadline = time.monotonic() + DRAIN_TIMEOUT_SECONDS
    while _active_requests > 0:
        if time.monotonic() >= deadline:
            logger.warning("drain_timeout_exceeded", remaining_requests=_active_requests)
            return
        await asyncio.sleep(0.25)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of long-lived resources."""
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
    )

    async with get_engine().begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("database_pool_initialised")

    # One rate limiter for the process lifetime, Redis-backed when configured.
    app.state.redis = await connect_redis(settings.REDIS_URL)
    set_scheduler(build_scheduler(settings, redis_client=app.state.redis))

    logger.info("startup_complete")

    yield

    logger.info("shutdown_begin")
    await _drain_active_requests()

    # Runs started with POST /pipeline/runs must release their locks before
    # the engine goes away.
    await shutdown_background_runs(timeout=BACKGROUND_RUN_GRACE_SECONDS)
    set_scheduler(None)

    if app.state.redis is not None:
        await app.state.redis.aclose()
        app.state.redis = None
        logger.info("redis_closed")

    await dispose_engine()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware classes
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Abort requests that exceed a configurable wall-clock timeout.

    Paths under ``exempt_prefixes`` (blocking pipeline runs and manual
    matches) are never cut off mid-conversation.
    """

    def __init__(
        self,
        app,
        timeout_seconds: float = 70.0,
        exempt_prefixes: tuple[str, ...] = (),
    ) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds
        self.exempt_prefixes = exempt_prefixes

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path.startswith(self.exempt_prefixes):
            return await call_next(request)
        try:
            return await asyncio.wait_for(
                call_next(request),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "request_timeout",
                method=request.method,
                path=request.url.path,
                timeout=self.timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={"detail": "Request timed out"},
            )


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        global _active_requests
        start = time.perf_counter()

        _active_requests += 1
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
            )
            raise
        finally:
            _active_requests -= 1

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Midnight Protocol",
    description="Nightly agent-to-agent conversation pipeline and morning reports",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- Middleware (applied in reverse order — last added runs first) ---------- #

app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(
    TimeoutMiddleware,
    timeout_seconds=70.0,
    exempt_prefixes=("/api/v1/pipeline/",),
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -- Health-check endpoints ------------------------------------------------ #


@app.get("/health", tags=["health"])
async def health_liveness() -> dict:
    """Lightweight liveness check — always returns healthy if the process is
    running."""
    return {"status": "healthy"}


@app.get("/health/deep", tags=["health"])
async def health_deep(request: Request) -> dict:
    """Deep readiness check — verifies database, Redis, and rate-limit state."""
    result: dict = {
        "status": "healthy",
        "database": "connected",
        "redis": "not_configured",
        "rate_limits": {},
    }

    # Database
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_db_failure", error=str(exc))
        result["database"] = f"error: {exc}"
        result["status"] = "degraded"

    # Redis
    redis = getattr(request.app.state, "redis", None)
    if redis is not None:
        try:
            await redis.ping()
            result["redis"] = "connected"
        except Exception as exc:
            logger.error("health_redis_failure", error=str(exc))
            result["redis"] = f"error: {exc}"
            result["status"] = "degraded"

    # Shared quotas
    try:
        result["rate_limits"] = get_scheduler().rate_limiter.snapshot()
    except Exception as exc:
        logger.error("health_rate_limiter_failure", error=str(exc))
        result["rate_limits"] = f"error: {exc}"
        result["status"] = "degraded"

    return result


# -- API router ------------------------------------------------------------ #

from app.api.router import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
