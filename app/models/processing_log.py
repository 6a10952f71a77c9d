"""
Midnight Protocol — ProcessingLog model (append-only audit trail).
"""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingLog(Base):
    __tablename__ = "processing_logs"
    __table_args__ = (
        Index("ix_processing_logs_type_status", "process_type", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    process_type: Mapped[str] = mapped_column(
        String, nullable=False,
        comment="batch / pairing / conversation / evaluation / report / email",
    )
    action: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, comment="started / completed / failed / skipped / anomaly"
    )
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<ProcessingLog {self.process_type}/{self.action} {self.status}>"
