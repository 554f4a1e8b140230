"""
Job Queue — תור עבודות עמיד (durable) מעל טבלת jobs.

enqueue כותב שורה בתוך הטרנזקציה של הקורא; worker של Celery שולף
עבודות שהגיע זמנן, תופס כל אחת ב-UPDATE מותנה (status=QUEUED) כך ששני
workers לא יריצו את אותה עבודה, ומריץ את ה-handler הרשום לסוג.

כשלון מחזיר את העבודה לתור עם backoff אקספוננציאלי. אחרי max_attempts
העבודה עוברת ל-FAILED (dead-letter) ונשארת שם לבדיקה ידנית.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.logging import company_context, get_logger
from app.core.time_utils import utc_now
from app.db.compat import dialect_insert
from app.db.models.job import Job, JobStatus, JobType

logger = get_logger(__name__)


@dataclass
class JobContext:
    """מה ש-handler מקבל: ה-session של ה-worker, העבודה, ו-factory ל-sessions נוספים"""

    db: AsyncSession
    job: Job
    session_factory: async_sessionmaker | None = None


JobHandler = Callable[[JobContext], Awaitable[Any]]

_MAX_ERROR_LENGTH = 1000


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound.

        backoff = base_seconds * (2 ** retry_count)

    The result is capped at max_backoff_seconds and avoids computing huge
    powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # האם 2**retry_count >= ceil(max/base), בלי לחשב את החזקה עצמה
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


def _default_max_attempts(job_type: JobType) -> int:
    if job_type == JobType.WEBHOOK_PROCESSING:
        return settings.WEBHOOK_JOB_MAX_ATTEMPTS
    return settings.REMINDER_JOB_MAX_ATTEMPTS


class JobQueue:
    """
    Durable job queue.

    Handlers are registered per job type with ``JobQueue.process`` (or the
    ``job_handler`` decorator) and shared by every queue instance.
    """

    _handlers: dict[JobType, JobHandler] = {}

    def __init__(self, db: AsyncSession, *, session_factory: async_sessionmaker | None = None):
        self.db = db
        self.session_factory = session_factory

    @classmethod
    def process(cls, job_type: JobType, handler: JobHandler) -> None:
        """רישום handler לסוג עבודה (רישום חוזר מחליף את הקודם)"""
        cls._handlers[job_type] = handler

    @classmethod
    def get_handler(cls, job_type: JobType) -> JobHandler | None:
        return cls._handlers.get(job_type)

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict,
        company_id: str | None = None,
        *,
        singleton_key: str | None = None,
        run_at=None,
        max_attempts: int | None = None,
    ) -> int | None:
        """
        הוספת עבודה לתור. לא מבצע commit — העבודה נשמרת יחד עם
        הטרנזקציה של הקורא.

        עם singleton_key: אם כבר קיימת עבודה עם אותו מפתח לא נוצרת חדשה,
        ומוחזר ה-id של הקיימת.
        """
        values = {
            "job_type": job_type,
            "payload": payload,
            "company_id": company_id,
            "status": JobStatus.QUEUED,
            "attempts": 0,
            "max_attempts": max_attempts or _default_max_attempts(job_type),
            "run_at": run_at or utc_now(),
            "singleton_key": singleton_key,
        }

        if singleton_key is None:
            job = Job(**values)
            self.db.add(job)
            await self.db.flush()
            return job.id

        stmt = (
            dialect_insert(self.db, Job)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["singleton_key"])
            .returning(Job.id)
        )
        job_id = (await self.db.execute(stmt)).scalar_one_or_none()
        if job_id is not None:
            return job_id

        logger.debug(
            "Job with singleton key already exists",
            extra_data={"job_type": job_type.value, "singleton_key": singleton_key}
        )
        return await self.db.scalar(
            select(Job.id).where(Job.singleton_key == singleton_key)
        )

    async def fetch_due(self, limit: int = 50, job_type: JobType | None = None) -> list[Job]:
        query = select(Job).where(
            Job.status == JobStatus.QUEUED,
            Job.run_at <= utc_now(),
        )
        if job_type is not None:
            query = query.where(Job.job_type == job_type)
        query = query.order_by(Job.run_at, Job.id).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def claim(self, job_id: int) -> bool:
        """תפיסת עבודה — מצליח רק אם היא עדיין QUEUED"""
        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.QUEUED)
            .values(
                status=JobStatus.ACTIVE,
                attempts=Job.attempts + 1,
                started_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_completed(self, job_id: int) -> None:
        await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.ACTIVE)
            .values(status=JobStatus.COMPLETED, completed_at=utc_now(), last_error=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def mark_failed(self, job_id: int, error: str) -> JobStatus | None:
        """
        רישום כשלון. מחזיר QUEUED אם העבודה תנוסה שוב, FAILED אם עברה
        ל-dead-letter, None אם העבודה כבר לא ACTIVE.
        """
        row = (await self.db.execute(
            select(Job.attempts, Job.max_attempts, Job.job_type, Job.status)
            .where(Job.id == job_id)
        )).one_or_none()
        if row is None or row.status != JobStatus.ACTIVE:
            return None

        error = error[:_MAX_ERROR_LENGTH]
        if row.attempts >= row.max_attempts:
            values = {"status": JobStatus.FAILED, "last_error": error, "completed_at": utc_now()}
            new_status = JobStatus.FAILED
            logger.error(
                "Job moved to dead-letter",
                extra_data={
                    "job_id": job_id,
                    "job_type": row.job_type.value,
                    "attempts": row.attempts,
                    "error": error,
                }
            )
        else:
            delay = _calculate_backoff_seconds(
                row.attempts - 1,
                base_seconds=settings.JOB_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.JOB_MAX_BACKOFF_SECONDS,
            )
            values = {
                "status": JobStatus.QUEUED,
                "last_error": error,
                "run_at": utc_now() + timedelta(seconds=delay),
            }
            new_status = JobStatus.QUEUED
            logger.warning(
                "Job failed, scheduled for retry",
                extra_data={
                    "job_id": job_id,
                    "job_type": row.job_type.value,
                    "attempts": row.attempts,
                    "retry_in_seconds": delay,
                    "error": error,
                }
            )

        await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.ACTIVE)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return new_status

    async def run_job(self, job_id: int) -> JobStatus | None:
        """
        הרצת עבודה אחת: claim → handler → completed / retry / dead-letter.

        מחזיר את הסטטוס הסופי, או None אם העבודה נתפסה ע"י worker אחר.
        """
        if not await self.claim(job_id):
            return None

        job = await self.db.get(Job, job_id)
        await self.db.refresh(job)
        job_type = job.job_type
        company_id = job.company_id

        handler = self.get_handler(job_type)
        if handler is None:
            # אין מי שיטפל בזה — ניסיון חוזר לא יעזור
            await self.db.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(
                    status=JobStatus.FAILED,
                    last_error=f"No handler registered for {job_type.value}",
                    completed_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            logger.error(
                "No handler registered for job type",
                extra_data={"job_id": job_id, "job_type": job_type.value}
            )
            return JobStatus.FAILED

        with company_context(company_id):
            try:
                await handler(JobContext(self.db, job, self.session_factory))
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Job handler raised",
                    extra_data={"job_id": job_id, "job_type": job_type.value, "error": str(e)},
                    exc_info=True
                )
                return await self.mark_failed(job_id, str(e) or type(e).__name__)

            await self.mark_completed(job_id)
            return JobStatus.COMPLETED

    async def run_due_jobs(
        self,
        limit: int = 50,
        job_type: JobType | None = None,
    ) -> dict[str, int]:
        """עיבוד כל העבודות שהגיע זמנן (עד limit). מחזיר סיכום."""
        job_ids = [job.id for job in await self.fetch_due(limit, job_type)]
        summary = {"processed": 0, "completed": 0, "retried": 0, "failed": 0, "skipped": 0}

        for job_id in job_ids:
            outcome = await self.run_job(job_id)
            if outcome is None:
                summary["skipped"] += 1
                continue
            summary["processed"] += 1
            if outcome == JobStatus.COMPLETED:
                summary["completed"] += 1
            elif outcome == JobStatus.QUEUED:
                summary["retried"] += 1
            else:
                summary["failed"] += 1

        if summary["processed"]:
            logger.info("Job batch processed", extra_data=summary)
        return summary

    async def requeue_stale(self, stale_after_seconds: int | None = None) -> int:
        """
        עבודות ACTIVE שה-worker שלהן מת באמצע. מוחזרות לתור, או
        ל-dead-letter אם מיצו את הניסיונות.
        """
        seconds = stale_after_seconds or settings.JOB_STALE_AFTER_SECONDS
        cutoff = utc_now() - timedelta(seconds=seconds)
        stale = (Job.status == JobStatus.ACTIVE, Job.started_at < cutoff)

        exhausted = await self.db.execute(
            update(Job)
            .where(*stale, Job.attempts >= Job.max_attempts)
            .values(status=JobStatus.FAILED, last_error="Worker lost while job was active")
            .execution_options(synchronize_session=False)
        )
        requeued = await self.db.execute(
            update(Job)
            .where(*stale)
            .values(status=JobStatus.QUEUED, run_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if exhausted.rowcount or requeued.rowcount:
            logger.warning(
                "Recovered stale jobs",
                extra_data={
                    "requeued": requeued.rowcount,
                    "dead_lettered": exhausted.rowcount,
                }
            )
        return requeued.rowcount or 0

    async def retry_dead_letter(self, job_id: int) -> bool:
        """החזרה ידנית של עבודה מ-dead-letter לתור עם מונה ניסיונות מאופס"""
        result = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.FAILED)
            .values(status=JobStatus.QUEUED, attempts=0, run_at=utc_now(), completed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def get_stats(self) -> dict[str, Any]:
        result = await self.db.execute(
            select(Job.job_type, Job.status, func.count(Job.id))
            .group_by(Job.job_type, Job.status)
        )
        queues: dict[str, dict[str, int]] = {
            job_type.value: {status.value: 0 for status in JobStatus}
            for job_type in JobType
        }
        for job_type, status, count in result.all():
            queues[job_type.value][status.value] = count

        dead_letter = sum(q[JobStatus.FAILED.value] for q in queues.values())
        return {"queues": queues, "dead_letter": dead_letter}

    async def cleanup_completed(self, older_than_days: int = 7) -> int:
        cutoff = utc_now() - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(Job).where(
                Job.status == JobStatus.COMPLETED,
                Job.completed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0


def job_handler(job_type: JobType) -> Callable[[JobHandler], JobHandler]:
    """דקורטור לרישום handler"""

    def decorator(func: JobHandler) -> JobHandler:
        JobQueue.process(job_type, func)
        return func

    return decorator
