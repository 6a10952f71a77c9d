"""
Midnight Protocol — User, AgentProfile and PersonalStory models.

These rows are owned by the onboarding and profile-editing flows; the nightly
pipeline only ever reads them.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    handle: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_test_user: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    agent_profile: Mapped["AgentProfile"] = relationship(
        "AgentProfile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    personal_story: Mapped["PersonalStory"] = relationship(
        "PersonalStory", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User {self.handle!r} id={self.id}>"


class AgentProfile(Base):
    __tablename__ = "agent_profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    agent_name: Mapped[str] = mapped_column(String, nullable=False)
    communication_style: Mapped[str] = mapped_column(
        String,
        default="professional_focused",
        nullable=False,
        comment="professional_focused / warm_conversational / direct_efficient",
    )
    status: Mapped[str] = mapped_column(
        String, default="pending", nullable=False, comment="pending / approved / rejected"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="agent_profile")

    def __repr__(self) -> str:
        return f"<AgentProfile {self.agent_name!r} user={self.user_id} status={self.status!r}>"


class PersonalStory(Base):
    """The user's "professional essence": narrative plus structured fields.

    ``user_id`` is unique, so there is at most one current story per user;
    onboarding replaces the row rather than merging into it.
    """

    __tablename__ = "personal_stories"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    narrative: Mapped[str] = mapped_column(Text, default="", nullable=False)
    current_focus: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    seeking_connections: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    offering_expertise: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    sharing_preferences: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="field -> shareable with counterpart agents"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="personal_story")

    def __repr__(self) -> str:
        return f"<PersonalStory user={self.user_id}>"
