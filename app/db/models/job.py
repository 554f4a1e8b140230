"""
Job Model — יחידת עבודה דחויה ועמידה (durable) במקום תור בזיכרון.

קריסה בין enqueue לעיבוד לא מאבדת עבודה: ה-job נשאר בטבלה.
כל כשלון מעלה את attempts; אחרי max_attempts ה-job עובר ל-FAILED
(dead-letter) ולא מנוסה שוב.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index

from app.core.time_utils import utc_now
from app.db.database import Base


class JobType(str, enum.Enum):
    WEBHOOK_PROCESSING = "webhook-processing"
    REMINDER_PROCESSING = "reminder-processing"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(SQLEnum(JobType), nullable=False)
    payload = Column(JSON, nullable=False)
    company_id = Column(String(255), nullable=True, index=True)

    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    run_at = Column(DateTime, nullable=False, default=utc_now)

    # מפתח ייחודי אופציונלי — job אחד בלבד לכל מפתח (למשל whop_event_id)
    singleton_key = Column(String(255), nullable=True, unique=True)

    last_error = Column(String(1000), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_jobs_status_run_at", "status", "run_at"),
    )
