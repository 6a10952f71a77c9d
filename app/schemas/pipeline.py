from datetime import date, datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class TranscriptTurn(BaseModel):
    """One line of an agent conversation, as stored in Match.transcript."""

    model_config = ConfigDict(frozen=True)

    turn_index: int = Field(ge=0)
    speaker: Literal["agent_a", "agent_b"]
    speaker_user_id: UUID
    content: str


class RunBatchRequest(BaseModel):
    run_date: Optional[date] = None  # defaults to today (UTC)
    force_regenerate: bool = False


class RunSummary(BaseModel):
    run_date: date
    status: str
    pairs_planned: int = 0
    pairs_processed: int = 0
    pairs_failed: int = 0
    pairs_skipped_deadline: int = 0
    matches_created: int = 0
    reports_generated: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    skipped_users: dict[str, int] = Field(default_factory=dict)
    deadline_reached: bool = False
    error: Optional[str] = None


class BatchRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_date: date
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    summary: Optional[dict[str, Any]] = None
    pair_count: int = 0


class SendEmailsRequest(BaseModel):
    report_date: Optional[date] = None
    force_resend: bool = False
    dry_run: bool = False
    email_override: Optional[EmailStr] = None
    user_ids: Optional[list[UUID]] = None
    report_id: Optional[UUID] = None


class EmailDispatchItem(BaseModel):
    report_id: UUID
    user_id: UUID
    recipient: Optional[str] = None
    delivered_to: Optional[str] = None
    status: str  # sent / dry_run / failed / skipped
    error: Optional[str] = None


class EmailDispatchSummary(BaseModel):
    report_date: date
    total: int = 0
    sent: int = 0
    rendered: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: bool = False
    results: list[EmailDispatchItem] = Field(default_factory=list)
