"""
Midnight Protocol — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from app.models.user import User, AgentProfile, PersonalStory
from app.models.match import Match
from app.models.report import MorningReport
from app.models.processing_log import ProcessingLog
from app.models.batch_run import BatchRun, RunProgress
from app.models.system_config import SystemConfig

__all__ = [
    "User",
    "AgentProfile",
    "PersonalStory",
    "Match",
    "MorningReport",
    "ProcessingLog",
    "BatchRun",
    "RunProgress",
    "SystemConfig",
]
