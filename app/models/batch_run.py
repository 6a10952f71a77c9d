"""
Midnight Protocol — BatchRun (run lock + pair plan) and RunProgress markers.
"""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchRun(Base):
    """One row per run date.

    Doubles as the run-level lock: a run holds the lock while ``status`` is
    ``running`` and ``lock_expires_at`` lies in the future.
    """

    __tablename__ = "batch_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_date: Mapped[date] = mapped_column(Date, unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, comment="running / completed / partial / failed / aborted"
    )
    lock_token: Mapped[str | None] = mapped_column(String, nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pair_plan: Mapped[list | None] = mapped_column(
        JSONType, nullable=True, comment="Candidate pairs chosen on the first attempt"
    )
    summary: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<BatchRun {self.run_date} status={self.status!r}>"


class RunProgress(Base):
    """Resume marker for one completed unit (pair or report) of a run."""

    __tablename__ = "run_progress"
    __table_args__ = (
        UniqueConstraint("run_date", "unit_type", "unit_key", name="uq_run_progress_unit"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    unit_type: Mapped[str] = mapped_column(String, nullable=False, comment="pair / report")
    unit_key: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, comment="done / failed")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<RunProgress {self.run_date} {self.unit_type}:{self.unit_key} {self.status}>"
