"""
Midnight Protocol — ProcessingLog writer (append-only audit trail).

Every pipeline stage records what it did here, in addition to its structured
log lines.  Each entry is written in its own short session so an audit row
survives a rollback of the unit of work it describes.

Writing an audit row never fails the caller: errors are logged and
``record`` returns False.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.processing_log import ProcessingLog

logger = structlog.get_logger("midnight.processing_log")

# process_type values
PROCESS_BATCH = "batch"
PROCESS_PAIRING = "pairing"
PROCESS_CONVERSATION = "conversation"
PROCESS_EVALUATION = "evaluation"
PROCESS_REPORT = "report"
PROCESS_EMAIL = "email"

# status values
STATUS_STARTED = "started"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"
STATUS_ANOMALY = "anomaly"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class ProcessingLogService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        process_type: str,
        action: str,
        status: str,
        *,
        run_date: date | None = None,
        processing_time_ms: int | None = None,
        tokens_used: int = 0,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Append one audit row.  Returns False (never raises) on failure."""
        try:
            async with self._session_factory() as session:
                session.add(
                    ProcessingLog(
                        run_date=run_date,
                        process_type=process_type,
                        action=action,
                        status=status,
                        processing_time_ms=processing_time_ms,
                        tokens_used=tokens_used or 0,
                        error_message=error_message,
                        details=_jsonable(details) if details is not None else None,
                    )
                )
                await session.commit()
            return True
        except Exception as exc:
            logger.error(
                "processing_log_write_failed",
                process_type=process_type,
                action=action,
                status=status,
                error=str(exc),
            )
            return False
