"""
Event Model — רשומה בלתי ניתנת לשינוי של כל webhook שהתקבל.

whop_event_id ייחודי גלובלית: משלוח חוזר של אותו אירוע הוא no-op
(insert-ignore-on-conflict). השדה היחיד שמשתנה אחרי ההכנסה הוא processed
(ו-error / processed_at שמלווים אותו). רשומות לא נמחקות — audit trail.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Index

from app.core.time_utils import utc_now
from app.db.database import Base


# שמות אירועים כפי ש-Whop שולח אותם → שם קנוני
_EVENT_TYPE_ALIASES = {
    "membership_went_invalid": "membership_invalid",
    "membership_went_valid": "membership_valid",
}


class EventType(str, enum.Enum):
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    MEMBERSHIP_INVALID = "membership_invalid"
    MEMBERSHIP_VALID = "membership_valid"

    @classmethod
    def parse(cls, raw: str | None) -> "EventType | None":
        """Canonical type for a wire name, None for types we do not route"""
        if not raw:
            return None
        try:
            return cls(_EVENT_TYPE_ALIASES.get(raw, raw))
        except ValueError:
            return None


class Event(Base):
    """Inbound webhook delivery, keyed on the external event id"""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    whop_event_id = Column(String(255), nullable=False, unique=True)
    type = Column(String(100), nullable=False)
    membership_id = Column(String(255), nullable=False)
    company_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=False)

    # מתי האירוע קרה (created_at מה-payload) מול מתי התקבל אצלנו
    occurred_at = Column(DateTime, nullable=False, default=utc_now)
    received_at = Column(DateTime, nullable=False, default=utc_now)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    error = Column(String(1000), nullable=True)

    __table_args__ = (
        Index("ix_events_processed_received", "processed", "received_at"),
    )
