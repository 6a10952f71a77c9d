"""
Midnight Protocol — Application Configuration

Two layers of configuration live here:

* ``Settings`` loads process-wide configuration from environment variables
  (and an optional .env file) using Pydantic Settings.  A cached
  ``get_settings()`` helper returns the same validated instance everywhere.

* ``PipelineConfig`` is the typed configuration for a single nightly run.  It
  is built from ``Settings`` and then overridden by rows of the
  ``system_config`` table whose key appears in ``RECOGNIZED_CONFIG_KEYS``.
  It is loaded once at the start of a run and never re-read mid-run.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger("midnight.config")


class ConfigurationError(Exception):
    """Raised when run configuration cannot be assembled."""


class Settings(BaseSettings):
    """Central configuration for the Midnight Protocol pipeline."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Gemini LLM
    # ------------------------------------------------------------------ #
    GEMINI_API_KEY: str
    GEMINI_MODEL_PRIMARY: str = "gemini-2.5-pro"
    GEMINI_MODEL_FALLBACK: str = "gemini-2.5-flash"
    GEMINI_MODEL_STABLE: str = "gemini-2.0-flash"

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or private IP
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "midnight_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "midnight"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True

    # ------------------------------------------------------------------ #
    # Redis – optional shared rate-limit backend
    # ------------------------------------------------------------------ #
    REDIS_URL: str = ""

    # ------------------------------------------------------------------ #
    # Email delivery
    # ------------------------------------------------------------------ #
    EMAIL_BACKEND: str = "console"  # console | sendgrid
    SENDGRID_API_KEY: str = ""
    EMAIL_FROM_ADDRESS: str = "noreply@midnightprotocol.org"
    EMAIL_FROM_NAME: str = "Midnight Protocol"
    APP_PUBLIC_URL: str = "https://midnightprotocol.org"

    # ------------------------------------------------------------------ #
    # Nightly pipeline defaults (overridable per run via system_config)
    # ------------------------------------------------------------------ #
    CONVERSATION_TURN_CAP: int = 6
    CONVERSATION_CONCURRENCY: int = 4
    PAIR_COOLDOWN_DAYS: int = 14
    COOLDOWN_MODE: str = "exclude"
    COOLDOWN_DOWNWEIGHT_FACTOR: float = 0.5
    MAX_CONVERSATIONS_PER_USER: int = 1
    MAX_REQUEUE_ATTEMPTS: int = 3
    MIN_COMPATIBILITY_SCORE: float = 0.05
    MAX_PAIRS_PER_RUN: int = 50
    REPORT_MIN_OPPORTUNITY_SCORE: float = 0.0
    GENERATION_RETRY_ATTEMPTS: int = 3
    GENERATION_TIMEOUT_SECONDS: float = 60.0
    EMAIL_RETRY_ATTEMPTS: int = 3
    RETRY_BACKOFF_MIN_SECONDS: float = 1.0
    RETRY_BACKOFF_MAX_SECONDS: float = 30.0
    RUN_MAX_DURATION_MINUTES: int = 360
    RUN_LOCK_TTL_MINUTES: int = 420

    # ------------------------------------------------------------------ #
    # Shared quotas (process-scoped rate limiter)
    # ------------------------------------------------------------------ #
    GENERATION_RATE_LIMIT: int = 60
    GENERATION_RATE_WINDOW_SECONDS: float = 60.0
    EMAIL_RATE_LIMIT: int = 2
    EMAIL_RATE_WINDOW_SECONDS: float = 1.0

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def model_chain(self) -> list[str]:
        return [
            self.GEMINI_MODEL_PRIMARY,
            self.GEMINI_MODEL_FALLBACK,
            self.GEMINI_MODEL_STABLE,
        ]

    @field_validator("COOLDOWN_DOWNWEIGHT_FACTOR", "MIN_COMPATIBILITY_SCORE")
    @classmethod
    def _must_be_between_0_and_1(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Value must be between 0 and 1, got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]


# ---------------------------------------------------------------------- #
# Per-run typed configuration
# ---------------------------------------------------------------------- #


class CooldownMode(str, Enum):
    EXCLUDE = "exclude"
    DOWNWEIGHT = "downweight"


class PipelineConfig(BaseModel):
    """Typed, immutable configuration for one nightly run."""

    model_config = ConfigDict(frozen=True)

    turn_cap: int = Field(default=6, ge=1, le=40)
    concurrency_cap: int = Field(default=4, ge=1, le=32)
    cooldown_days: int = Field(default=14, ge=0)
    cooldown_mode: CooldownMode = CooldownMode.EXCLUDE
    cooldown_downweight_factor: float = Field(default=0.5, ge=0.0, le=1.0)
    max_conversations_per_user: int = Field(default=1, ge=1)
    max_requeue_attempts: int = Field(default=3, ge=0)
    min_compatibility_score: float = Field(default=0.05, ge=0.0, le=1.0)
    max_pairs_per_run: int = Field(default=50, ge=1)
    report_min_opportunity_score: float = Field(default=0.0, ge=0.0, le=1.0)
    generation_retry_attempts: int = Field(default=3, ge=1, le=10)
    generation_timeout_seconds: float = Field(default=60.0, gt=0)
    email_retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_min_seconds: float = Field(default=1.0, ge=0.0)
    retry_backoff_max_seconds: float = Field(default=30.0, ge=0.0)
    run_max_duration_minutes: int = Field(default=360, ge=1)
    run_lock_ttl_minutes: int = Field(default=420, ge=1)
    model_chain: tuple[str, ...] = ("gemini-2.5-pro", "gemini-2.5-flash")

    @field_validator("model_chain", mode="before")
    @classmethod
    def _split_model_chain(cls, v):
        if isinstance(v, str):
            v = [m.strip() for m in v.split(",") if m.strip()]
        if not v:
            raise ValueError("model_chain must name at least one model")
        return tuple(v)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        return cls(
            turn_cap=settings.CONVERSATION_TURN_CAP,
            concurrency_cap=settings.CONVERSATION_CONCURRENCY,
            cooldown_days=settings.PAIR_COOLDOWN_DAYS,
            cooldown_mode=settings.COOLDOWN_MODE,
            cooldown_downweight_factor=settings.COOLDOWN_DOWNWEIGHT_FACTOR,
            max_conversations_per_user=settings.MAX_CONVERSATIONS_PER_USER,
            max_requeue_attempts=settings.MAX_REQUEUE_ATTEMPTS,
            min_compatibility_score=settings.MIN_COMPATIBILITY_SCORE,
            max_pairs_per_run=settings.MAX_PAIRS_PER_RUN,
            report_min_opportunity_score=settings.REPORT_MIN_OPPORTUNITY_SCORE,
            generation_retry_attempts=settings.GENERATION_RETRY_ATTEMPTS,
            generation_timeout_seconds=settings.GENERATION_TIMEOUT_SECONDS,
            email_retry_attempts=settings.EMAIL_RETRY_ATTEMPTS,
            retry_backoff_min_seconds=settings.RETRY_BACKOFF_MIN_SECONDS,
            retry_backoff_max_seconds=settings.RETRY_BACKOFF_MAX_SECONDS,
            run_max_duration_minutes=settings.RUN_MAX_DURATION_MINUTES,
            run_lock_ttl_minutes=settings.RUN_LOCK_TTL_MINUTES,
            model_chain=settings.model_chain,
        )

    def with_overrides(self, rows: Mapping[str, str]) -> "PipelineConfig":
        """Apply ``system_config`` key/value rows on top of this config.

        Only keys in ``RECOGNIZED_CONFIG_KEYS`` are honoured; values are
        validated by the model, so a bad override raises
        ``ConfigurationError`` instead of silently running with garbage.
        """
        overrides: dict[str, object] = {}
        for key, raw_value in rows.items():
            field_name = RECOGNIZED_CONFIG_KEYS.get(key)
            if field_name is None:
                logger.warning("system_config_key_ignored", key=key)
                continue
            overrides[field_name] = _strip_quotes(raw_value)

        if not overrides:
            return self

        try:
            return type(self).model_validate({**self.model_dump(), **overrides})
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid system_config override: {exc}"
            ) from exc


# system_config key -> PipelineConfig field
RECOGNIZED_CONFIG_KEYS: dict[str, str] = {
    "conversation_turn_cap": "turn_cap",
    "conversation_concurrency": "concurrency_cap",
    "pair_cooldown_days": "cooldown_days",
    "cooldown_mode": "cooldown_mode",
    "cooldown_downweight_factor": "cooldown_downweight_factor",
    "max_conversations_per_user": "max_conversations_per_user",
    "max_requeue_attempts": "max_requeue_attempts",
    "min_compatibility_score": "min_compatibility_score",
    "max_pairs_per_run": "max_pairs_per_run",
    "report_min_opportunity_score": "report_min_opportunity_score",
    "generation_retry_attempts": "generation_retry_attempts",
    "generation_timeout_seconds": "generation_timeout_seconds",
    "email_retry_attempts": "email_retry_attempts",
    "run_max_duration_minutes": "run_max_duration_minutes",
    "llm_model_chain": "model_chain",
}


def _strip_quotes(value: str) -> str:
    # Values written by the admin panel are sometimes JSON-encoded strings.
    if isinstance(value, str) and len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value
