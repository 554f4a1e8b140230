"""
RecoveryCase Model — יחידת עבודת השחזור לכשלון תשלום של membership אחד.

מעברי סטטוס חד-כיווניים: open → recovered, open → closed.
לכל היותר תיק open אחד לכל (company_id, membership_id) — נאכף גם
באינדקס ייחודי חלקי כדי ששתי יצירות מקבילות לא ייצרו כפילות.
"""
import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Index, text

from app.core.time_utils import utc_now
from app.db.database import Base


class CaseStatus(str, enum.Enum):
    OPEN = "open"
    RECOVERED = "recovered"
    CLOSED = "closed"


def generate_case_id() -> str:
    return f"case_{uuid.uuid4().hex}"


class RecoveryCase(Base):
    """Tracked recovery episode for one membership's payment failure"""

    __tablename__ = "recovery_cases"

    id = Column(String(64), primary_key=True, default=generate_case_id)
    company_id = Column(String(255), nullable=False)
    membership_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=False)

    status = Column(SQLEnum(CaseStatus), nullable=False, default=CaseStatus.OPEN)

    first_failure_at = Column(DateTime, nullable=False, default=utc_now)
    last_nudge_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    failure_reason = Column(String(255), nullable=True)

    # 0 עד שהתמריץ הוחל בפועל — נכתב פעם אחת בלבד לכל תיק
    incentive_days = Column(Integer, nullable=False, default=0)

    recovered_amount_cents = Column(Integer, nullable=True)
    recovered_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_recovery_cases_company_status", "company_id", "status"),
        Index("ix_recovery_cases_first_failure", "first_failure_at"),
        Index(
            "uq_recovery_cases_open_membership",
            "company_id",
            "membership_id",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status == CaseStatus.OPEN
