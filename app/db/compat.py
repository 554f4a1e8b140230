"""
בניית INSERT תואם דיאלקט — PostgreSQL + SQLite.

insert-ignore ו-increment-on-conflict נבנים עם ה-insert של הדיאלקט
(PostgreSQL בפרודקשן, SQLite בבדיקות). לשניהם אותו ממשק
on_conflict_do_nothing / on_conflict_do_update.
"""
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(db: AsyncSession, model: Any):
    """מחזיר insert() של הדיאלקט הפעיל עבור המודל"""
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT not supported for dialect {dialect_name}")
