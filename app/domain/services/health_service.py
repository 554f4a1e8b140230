"""
שירות בדיקת בריאות — בדיקות תלויות (DB, Redis, תור העבודות).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: DB ו-Redis זמינים; מספר העבודות ב-dead-letter מדווח
  אך לא מוריד את השירות ל-degraded
"""
import asyncio
from typing import Any

from sqlalchemy import func, select, text

from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal
from app.db.models.job import Job, JobStatus

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות — ללא חשיפת פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"


async def _check_db() -> tuple[str, int | None]:
    """SELECT 1 + ספירת dead-letter באותו חיבור"""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            dead_letter = await session.scalar(
                select(func.count(Job.id)).where(Job.status == JobStatus.FAILED)
            )
        return _CHECK_OK, dead_letter or 0
    except Exception as e:
        logger.warning("בדיקת בריאות DB נכשלה", extra_data={"error": str(e)})
        return _ERROR_DB, None


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("בדיקת בריאות Redis נכשלה", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def check_readiness() -> dict[str, Any]:
    (db_status, dead_letter), redis_status = await asyncio.gather(_check_db(), _check_redis())

    checks = {"db": db_status, "redis": redis_status}
    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("בדיקת מוכנות — המערכת במצב degraded", extra_data=checks)
    if dead_letter:
        logger.warning("יש עבודות ב-dead-letter", extra_data={"dead_letter_jobs": dead_letter})

    return {"status": overall_status, **checks, "dead_letter_jobs": dead_letter}
