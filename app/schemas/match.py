from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.schemas.pipeline import TranscriptTurn


class MatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_date: date
    user_a_id: UUID
    user_b_id: UUID
    handle_a: Optional[str] = None
    handle_b: Optional[str] = None
    match_type: str
    compatibility_score: float
    status: str
    turn_count: int
    early_stopped: bool
    outcome: Optional[str] = None
    opportunity_score: float
    synergies: list[str] = Field(default_factory=list)
    reasoning: Optional[str] = None
    introduction_rationale_a: Optional[str] = None
    introduction_rationale_b: Optional[str] = None
    tokens_used: int = 0
    error_message: Optional[str] = None
    reported: bool
    reported_at: Optional[datetime] = None
    evaluated_at: Optional[datetime] = None
    created_at: datetime


class MatchDetail(MatchRead):
    """A match with its full conversation transcript."""

    transcript: list[TranscriptTurn] = Field(default_factory=list)


class MatchList(BaseModel):
    matches: list[MatchRead]
    count: int


class ManualMatchRequest(BaseModel):
    user_a_id: UUID
    user_b_id: UUID
    run_date: Optional[date] = None  # defaults to today (UTC)

    @model_validator(mode="after")
    def _distinct_users(self) -> "ManualMatchRequest":
        if self.user_a_id == self.user_b_id:
            raise ValueError("user_a_id and user_b_id must differ")
        return self


class ManualMatchResult(BaseModel):
    created: bool
    match: Optional[MatchDetail] = None
