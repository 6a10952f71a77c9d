"""
Midnight Protocol — Match model (one simulated agent conversation).
"""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Match(Base):
    """Durable record of one conversation between two agents.

    Written once by the worker that owns the pair.  After evaluation the row
    is immutable except for ``reported`` / ``reported_at``, which the report
    aggregator flips exactly once.
    """

    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("run_date", "user_a_id", "user_b_id", name="uq_match_run_pair"),
        Index("ix_matches_run_date_reported", "run_date", "reported"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    run_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    user_a_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    user_b_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    match_type: Mapped[str] = mapped_column(
        String, nullable=False, comment="targeted / exploratory / serendipitous"
    )
    compatibility_score: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, comment="completed / failed"
    )
    transcript: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False,
        comment="Ordered [{turn_index, speaker, speaker_user_id, content}]",
    )
    turn_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    early_stopped: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    outcome: Mapped[str | None] = mapped_column(
        String, nullable=True,
        comment="STRONG_MATCH / EXPLORATORY_VALUE / FUTURE_POTENTIAL / NO_MATCH",
    )
    opportunity_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    synergies: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    introduction_rationale_a: Mapped[str | None] = mapped_column(Text, nullable=True)
    introduction_rationale_b: Mapped[str | None] = mapped_column(Text, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    reported: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    reported_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    evaluated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    user_a: Mapped["User"] = relationship(
        "User", foreign_keys=[user_a_id], lazy="selectin"
    )
    user_b: Mapped["User"] = relationship(
        "User", foreign_keys=[user_b_id], lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<Match {self.user_a_id} <-> {self.user_b_id} "
            f"date={self.run_date} outcome={self.outcome!r}>"
        )
