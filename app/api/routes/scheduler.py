"""
Scheduler API Routes

הפעלה ידנית של ריצת התזכורות: job אחד לכל חברה בתור העבודות.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.rate_limit import enforce_rate_limit
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.job_queue import JobQueue
from app.domain.services.reminder_scheduler import ReminderScheduler

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class ReminderTriggerResponse(BaseModel):
    success: bool
    jobs_enqueued: int
    job_ids: list[int]


@router.post(
    "/reminders",
    response_model=ReminderTriggerResponse,
    summary="הפעלת ריצת תזכורות",
    description=(
        "יוצר job תזכורות לכל חברה מוגדרת (או לכל חברה עם תיקים). "
        "העיבוד עצמו רץ ב-worker."
    ),
)
async def trigger_reminders(
    db: AsyncSession = Depends(get_db),
) -> ReminderTriggerResponse:
    await enforce_rate_limit(db, "scheduler", "scheduler:control")
    job_ids = await ReminderScheduler(db).enqueue_reminder_jobs(once_per_day=False)
    logger.info("Manual reminder run requested", extra_data={"jobs": len(job_ids)})
    return ReminderTriggerResponse(success=True, jobs_enqueued=len(job_ids), job_ids=job_ids)


@router.get(
    "/jobs/stats",
    summary="סטטיסטיקת תור העבודות",
    description="מספר עבודות לפי סוג וסטטוס, וסה\"כ עבודות ב-dead-letter.",
)
async def job_stats(db: AsyncSession = Depends(get_db)) -> dict:
    return await JobQueue(db).get_stats()


@router.post(
    "/jobs/{job_id}/retry",
    summary="החזרת job מ-dead-letter לתור",
)
async def retry_job(job_id: int, db: AsyncSession = Depends(get_db)) -> dict:
    requeued = await JobQueue(db).retry_dead_letter(job_id)
    return {"success": requeued, "job_id": job_id}
