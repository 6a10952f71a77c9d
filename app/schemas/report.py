from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MatchNotification(BaseModel):
    match_id: UUID
    counterpart_user_id: UUID
    counterpart_handle: str
    match_type: str
    outcome: str
    opportunity_score: float
    notification_score: float
    reasoning: str = ""
    introduction_rationale: str = ""
    synergies: list[str] = Field(default_factory=list)


class AgentInsights(BaseModel):
    patterns_observed: list[str] = Field(default_factory=list)
    top_opportunities: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)


class MorningReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    report_date: date
    notification_count: int
    total_opportunity_score: float
    match_notifications: list[dict[str, Any]]
    match_summaries: Optional[dict[str, Any]] = None
    agent_insights: Optional[dict[str, Any]] = None
    email_sent: bool
    sent_at: Optional[datetime] = None
    delivered_to: Optional[str] = None
    created_at: datetime


class MorningReportList(BaseModel):
    reports: list[MorningReportRead]
    count: int
