"""
Database Models
"""
from app.db.models.event import Event, EventType
from app.db.models.recovery_case import RecoveryCase, CaseStatus
from app.db.models.recovery_action import RecoveryAction, ActionType
from app.db.models.rate_limit_bucket import RateLimitBucket
from app.db.models.job import Job, JobStatus, JobType
from app.db.models.creator_settings import CreatorSettings

__all__ = [
    "Event",
    "EventType",
    "RecoveryCase",
    "CaseStatus",
    "RecoveryAction",
    "ActionType",
    "RateLimitBucket",
    "Job",
    "JobStatus",
    "JobType",
    "CreatorSettings",
]
