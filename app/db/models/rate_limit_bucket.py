"""
RateLimitBucket Model — מונה לכל (identifier, תחילת חלון קבוע).

window_start_ms הוא תמיד floor(now / window) * window באלפיות שנייה,
לעולם לא ערך "מחליק".
"""
from sqlalchemy import Column, Integer, String, BigInteger, Index

from app.db.database import Base


class RateLimitBucket(Base):
    __tablename__ = "rate_limit_buckets"

    identifier = Column(String(255), primary_key=True)
    window_start_ms = Column(BigInteger, primary_key=True, autoincrement=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_rate_limit_buckets_window_start", "window_start_ms"),
    )
