from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SystemHealth(BaseModel):
    processing_backlog: int = 0
    average_processing_time_ms: float = 0.0
    error_rate: float = 0.0


class AnalyticsResponse(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    total_matches: int = 0
    completed_matches: int = 0
    failed_matches: int = 0
    reported_matches: int = 0
    outcome_distribution: dict[str, int] = Field(default_factory=dict)
    average_opportunity_score: float = 0.0
    conversion_rate: float = 0.0
    reports_generated: int = 0
    emails_sent: int = 0
    total_tokens_used: int = 0
    system_health: SystemHealth = Field(default_factory=SystemHealth)


class ProcessingLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_date: Optional[date] = None
    process_type: str
    action: str
    status: str
    processing_time_ms: Optional[int] = None
    tokens_used: int = 0
    error_message: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: datetime


class ProcessingLogStats(BaseModel):
    total_logs: int = 0
    status_distribution: dict[str, int] = Field(default_factory=dict)
    process_type_distribution: dict[str, int] = Field(default_factory=dict)
    average_processing_time_ms: float = 0.0
    total_tokens_used: int = 0
    error_count: int = 0


class ProcessingLogsResponse(BaseModel):
    logs: list[ProcessingLogRead]
    stats: ProcessingLogStats
