"""
Celery Tasks

ה-tasks הם עטיפות sync דקות: כל אחת מריצה coroutine על event loop חדש
עם session חדש. הלוגיקה עצמה בפונקציות async שמקבלות session, כדי
שאפשר לבדוק אותן ישירות מול DB של בדיקות.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.db.database import get_task_session, task_session_factory
from app.domain.services import job_handlers  # noqa: F401  רישום handlers בתור העבודות
from app.domain.services.event_processor import EventProcessor
from app.domain.services.job_queue import JobQueue
from app.domain.services.rate_limiter import RateLimiter
from app.domain.services.reminder_scheduler import ReminderScheduler

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop — מונע שימוש חוזר
            # ב-client שמחובר ל-event loop סגור בהרצה הבאה
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


# ── לוגיקה (async, מקבלת session) ──


async def _process_due_jobs(
    db: AsyncSession,
    session_factory: async_sessionmaker | None = None,
    limit: int = 50,
) -> dict[str, int]:
    return await JobQueue(db, session_factory=session_factory).run_due_jobs(limit)


async def _run_single_job(
    db: AsyncSession,
    job_id: int,
    session_factory: async_sessionmaker | None = None,
) -> dict:
    status = await JobQueue(db, session_factory=session_factory).run_job(job_id)
    return {"job_id": job_id, "status": status.value if status else None}


async def _requeue_stale_jobs(db: AsyncSession, stale_after_seconds: int | None = None) -> dict[str, int]:
    requeued = await JobQueue(db).requeue_stale(stale_after_seconds)
    return {"requeued": requeued}


async def _enqueue_reminder_jobs(db: AsyncSession, *, once_per_day: bool = True) -> dict:
    job_ids = await ReminderScheduler(db).enqueue_reminder_jobs(once_per_day=once_per_day)
    return {"enqueued": len(job_ids), "job_ids": job_ids}


async def _sweep_unprocessed_events(db: AsyncSession, older_than_seconds: int = 300) -> dict[str, int]:
    enqueued = await EventProcessor(db).enqueue_orphaned_events(older_than_seconds)
    return {"enqueued": enqueued}


async def _cleanup_completed_jobs(db: AsyncSession, days: int = 7) -> dict[str, int]:
    deleted = await JobQueue(db).cleanup_completed(days)
    logger.info(
        "Cleaned up completed jobs",
        extra_data={"deleted": deleted, "cutoff_days": days},
    )
    return {"deleted": deleted}


async def _cleanup_rate_limit_buckets(db: AsyncSession) -> dict[str, int]:
    deleted = await RateLimiter(db).cleanup_expired()
    logger.info("Cleaned up expired rate limit buckets", extra_data={"deleted": deleted})
    return {"deleted": deleted}


# ── Celery tasks ──


@celery_app.task(name="app.workers.tasks.process_due_jobs")
def process_due_jobs(limit: int = 50):
    """
    עיבוד עבודות שהגיע זמנן מטבלת jobs.
    ה-session factory מועבר ל-handlers שצריכים sessions מקבילים (תזכורות).
    """

    async def _process():
        async with task_session_factory() as session_factory:
            async with session_factory() as db:
                return await _process_due_jobs(db, session_factory, limit)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.run_job")
def run_job(job_id: int):
    """Run a specific job by ID"""

    async def _run():
        async with task_session_factory() as session_factory:
            async with session_factory() as db:
                return await _run_single_job(db, job_id, session_factory)

    return run_async(_run())


@celery_app.task(name="app.workers.tasks.requeue_stale_jobs")
def requeue_stale_jobs():
    """עבודות ACTIVE שה-worker שלהן נפל חוזרות לתור"""

    async def _requeue():
        async with get_task_session() as db:
            return await _requeue_stale_jobs(db, settings.JOB_STALE_AFTER_SECONDS)

    return run_async(_requeue())


@celery_app.task(name="app.workers.tasks.enqueue_reminder_jobs")
def enqueue_reminder_jobs():
    """job תזכורות יומי לכל חברה"""

    async def _enqueue():
        async with get_task_session() as db:
            return await _enqueue_reminder_jobs(db)

    return run_async(_enqueue())


@celery_app.task(name="app.workers.tasks.sweep_unprocessed_events")
def sweep_unprocessed_events(older_than_seconds: int = 300):
    async def _sweep():
        async with get_task_session() as db:
            return await _sweep_unprocessed_events(db, older_than_seconds)

    return run_async(_sweep())


@celery_app.task(name="app.workers.tasks.cleanup_completed_jobs")
def cleanup_completed_jobs(days: int = 7):
    """Clean up completed jobs (dead-letter rows are kept)"""

    async def _cleanup():
        async with get_task_session() as db:
            return await _cleanup_completed_jobs(db, days)

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_rate_limit_buckets")
def cleanup_rate_limit_buckets():
    async def _cleanup():
        async with get_task_session() as db:
            return await _cleanup_rate_limit_buckets(db)

    return run_async(_cleanup())
