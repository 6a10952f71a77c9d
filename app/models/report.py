"""
Midnight Protocol — MorningReport model.
"""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MorningReport(Base):
    __tablename__ = "morning_reports"
    __table_args__ = (
        UniqueConstraint("user_id", "report_date", name="uq_morning_report_user_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    report_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    notification_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_opportunity_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    match_notifications: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    match_summaries: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    agent_insights: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True,
        comment="{patterns_observed, top_opportunities, recommended_actions}",
    )
    email_sent: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_to: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=_utcnow, nullable=True
    )

    user: Mapped["User"] = relationship("User", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<MorningReport user={self.user_id} date={self.report_date} "
            f"n={self.notification_count} sent={self.email_sent}>"
        )
