"""
Domain Services
"""
from app.domain.services.rate_limiter import RateLimiter
from app.domain.services.job_queue import JobQueue
from app.domain.services.webhook_ingestor import WebhookIngestor
from app.domain.services.whop_client import WhopClient
from app.domain.services.settings_service import SettingsService
from app.domain.services.incentive_service import IncentiveService
from app.domain.services.nudge_service import NudgeService
from app.domain.services.case_service import CaseService
from app.domain.services.event_processor import EventProcessor
from app.domain.services.reminder_scheduler import ReminderScheduler

__all__ = [
    "RateLimiter",
    "JobQueue",
    "WebhookIngestor",
    "WhopClient",
    "SettingsService",
    "IncentiveService",
    "NudgeService",
    "CaseService",
    "EventProcessor",
    "ReminderScheduler",
]
