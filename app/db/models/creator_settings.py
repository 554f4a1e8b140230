"""
CreatorSettings Model — הגדרות שחזור לכל חברה (ערוצים, תמריץ, offsets).

שורה חסרה = ברירות מחדל מהסביבה.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON

from app.core.time_utils import utc_now
from app.db.database import Base


class CreatorSettings(Base):
    __tablename__ = "creator_settings"

    company_id = Column(String(255), primary_key=True)
    enable_push = Column(Boolean, nullable=False, default=True)
    enable_dm = Column(Boolean, nullable=False, default=True)
    incentive_days = Column(Integer, nullable=False, default=0)
    reminder_offsets_days = Column(JSON, nullable=False, default=lambda: [0, 2, 4])
    attribution_window_days = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
