"""
RecoveryAction Model — audit trail לפעולות על תיקים
(nudges, תמריצים, ביטולים, סיום membership, שחזור).
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, ForeignKey

from app.core.time_utils import utc_now
from app.db.database import Base


class ActionType(str, enum.Enum):
    NUDGE_PUSH = "nudge_push"
    NUDGE_DM = "nudge_dm"
    INCENTIVE_APPLIED = "incentive_applied"
    INCENTIVE_FAILED = "incentive_failed"
    CASE_CANCELLED = "case_cancelled"
    MEMBERSHIP_TERMINATED = "membership_terminated"
    CASE_RECOVERED = "case_recovered"


class RecoveryAction(Base):
    __tablename__ = "recovery_actions"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(String(255), nullable=False, index=True)
    case_id = Column(
        String(64),
        ForeignKey("recovery_cases.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    membership_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False)
    type = Column(SQLEnum(ActionType), nullable=False)
    channel = Column(String(10), nullable=True)  # push / dm, רק ל-nudges
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utc_now)
