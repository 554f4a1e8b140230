"""
Reminder Scheduler — בחירת תיקים פתוחים שהגיע זמן התזכורת שלהם ושליחה במקביל מוגבל.

לכל offset (למשל 0/2/4 ימים מהכשלון הראשון) נשלחת תזכורת אחת:
תיק שגילו (בימים שלמים) עבר k offsets ושקיבל פחות מ-k ניסיונות
מקבל את ניסיון attempts + 1.

ריצה לכל חברה מוגנת בנעילת Redis כך ששתי ריצות חופפות של ה-scheduler
לא יעבדו את אותה חברה במקביל.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import case, distinct, literal, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.logging import company_context, get_logger
from app.core.redis_client import acquire_lock, release_lock
from app.core.time_utils import utc_now
from app.db.models.job import JobType
from app.db.models.recovery_case import CaseStatus, RecoveryCase
from app.domain.services.job_queue import JobQueue
from app.domain.services.nudge_service import NudgeService
from app.domain.services.settings_service import CompanySettings, SettingsService
from app.domain.services.whop_client import WhopClient

logger = get_logger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class ReminderDecision:
    should_send: bool
    attempt_number: int = 0


def should_send_reminder(
    first_failure_at: datetime,
    attempts: int,
    offsets_days: list[int],
    now: datetime,
) -> ReminderDecision:
    days_since_failure = math.floor((now - first_failure_at).total_seconds() / _SECONDS_PER_DAY)
    expected_attempts = sum(1 for offset in offsets_days if days_since_failure >= offset)
    if attempts < expected_attempts:
        return ReminderDecision(True, attempts + 1)
    return ReminderDecision(False)


@dataclass(frozen=True)
class DueCase:
    """Snapshot of an open case selected for a reminder"""

    case_id: str
    company_id: str
    membership_id: str
    first_failure_at: datetime
    attempts: int
    attempt_number: int


@dataclass
class BatchResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    locked: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


ReminderSender = Callable[[DueCase], Awaitable[bool]]


async def dispatch_batch(
    cases: list[DueCase],
    offsets_days: list[int],
    sender: ReminderSender,
    *,
    max_concurrency: int | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """
    שליחה במקביל מוגבל. כשלון (False או חריגה) של תיק אחד לא עוצר
    את השאר. תיק שכבר לא בשל נספר כ-skipped ולא כ-processed.
    """
    now = now or utc_now()
    semaphore = asyncio.Semaphore(max_concurrency or settings.MAX_CONCURRENT_REMINDER_SENDS)
    result = BatchResult()

    async def run_one(due: DueCase) -> None:
        decision = should_send_reminder(due.first_failure_at, due.attempts, offsets_days, now)
        if not decision.should_send:
            result.skipped += 1
            return

        async with semaphore:
            try:
                sent = await sender(due)
            except Exception as e:
                logger.error(
                    "Reminder dispatch raised",
                    extra_data={"case_id": due.case_id, "error": str(e)},
                    exc_info=True
                )
                sent = False

        result.processed += 1
        if sent:
            result.successful += 1
        else:
            result.failed += 1

    await asyncio.gather(*(run_one(due) for due in cases))
    return result


class ReminderScheduler:

    def __init__(
        self,
        db: AsyncSession,
        *,
        session_factory: async_sessionmaker | None = None,
        whop_client: WhopClient | None = None,
        settings_service: SettingsService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.session_factory = session_factory
        self.whop = whop_client or WhopClient()
        self.settings_service = settings_service or SettingsService(db)
        self._clock = clock

    async def collect_due(
        self,
        company_id: str,
        offsets_days: list[int],
        limit: int | None = None,
    ) -> list[DueCase]:
        """
        תיקים פתוחים של החברה, הוותיקים קודם, שהגיע זמן התזכורת שלהם.

        הסינון לפי offsets נעשה ב-SQL לפני ה-LIMIT: תיק שקיבל כבר את כל
        התזכורות נשאר פתוח ולא יתפוס מקום של תיקים בשלים.
        """
        if not offsets_days:
            return []

        now = self._clock()
        # מספר ה-offsets שגיל התיק (בימים שלמים) כבר עבר
        expected_attempts = literal(0)
        for offset in offsets_days:
            expected_attempts = expected_attempts + case(
                (RecoveryCase.first_failure_at <= now - timedelta(days=offset), 1),
                else_=0,
            )

        result = await self.db.execute(
            select(
                RecoveryCase.id,
                RecoveryCase.membership_id,
                RecoveryCase.first_failure_at,
                RecoveryCase.attempts,
            )
            .where(
                RecoveryCase.company_id == company_id,
                RecoveryCase.status == CaseStatus.OPEN,
                RecoveryCase.attempts < expected_attempts,
            )
            .order_by(RecoveryCase.first_failure_at, RecoveryCase.id)
            .limit(limit or settings.MAX_REMINDER_CASES_PER_RUN)
        )

        due = []
        for row in result.all():
            decision = should_send_reminder(row.first_failure_at, row.attempts, offsets_days, now)
            if decision.should_send:
                due.append(DueCase(
                    case_id=row.id,
                    company_id=company_id,
                    membership_id=row.membership_id,
                    first_failure_at=row.first_failure_at,
                    attempts=row.attempts,
                    attempt_number=decision.attempt_number,
                ))
        return due

    def _build_sender(self, company_settings: CompanySettings) -> tuple[ReminderSender, int]:
        """
        sender שפותח session נפרד לכל תיק (AsyncSession לא בטוח לשימוש
        מקבילי). בלי session_factory השליחה רצה על ה-session הנוכחי, בזה אחר זה.
        """

        async def send_with(db: AsyncSession, due: DueCase) -> bool:
            recovery_case = await db.get(RecoveryCase, due.case_id, populate_existing=True)
            if recovery_case is None or not recovery_case.is_open:
                return False
            nudge_service = NudgeService(
                db,
                self.whop,
                SettingsService(db, self.settings_service.cache),
            )
            nudge = await nudge_service.send_nudge(
                recovery_case,
                due.attempt_number,
                company_settings=company_settings,
                audit_details={"trigger": "scheduled"},
            )
            return nudge.success

        if self.session_factory is None:
            async def sender(due: DueCase) -> bool:
                return await send_with(self.db, due)
            return sender, 1

        async def sender(due: DueCase) -> bool:
            async with self.session_factory() as session:
                return await send_with(session, due)
        return sender, settings.MAX_CONCURRENT_REMINDER_SENDS

    async def process_company(self, company_id: str) -> BatchResult:
        lock_name = f"reminders:{company_id}"
        token = await acquire_lock(lock_name, settings.REMINDER_LOCK_TTL_SECONDS)
        if token is None:
            logger.warning(
                "Reminder run already in progress for company, skipping",
                extra_data={"company_id": company_id}
            )
            return BatchResult(locked=True)

        try:
            with company_context(company_id):
                company_settings = await self.settings_service.get_for_company(company_id)
                offsets = company_settings.reminder_offsets_days
                due = await self.collect_due(company_id, offsets)
                sender, concurrency = self._build_sender(company_settings)
                result = await dispatch_batch(
                    due, offsets, sender, max_concurrency=concurrency, now=self._clock()
                )
                logger.info(
                    "Reminder run completed",
                    extra_data={"company_id": company_id, "due": len(due), **result.to_dict()}
                )
                return result
        finally:
            await release_lock(lock_name, token)

    async def discover_companies(self) -> list[str]:
        """חברות עם הגדרות וחברות עם תיקים פתוחים"""
        companies = set(await self.settings_service.list_configured_companies())
        result = await self.db.execute(
            select(distinct(RecoveryCase.company_id)).where(RecoveryCase.status == CaseStatus.OPEN)
        )
        companies.update(row[0] for row in result.all())
        return sorted(companies)

    async def enqueue_reminder_jobs(self, *, once_per_day: bool = True) -> list[int]:
        """
        job תזכורות אחד לכל חברה. ה-beat היומי מוגבל ל-job אחד ביום לחברה;
        הפעלה ידנית מה-API (once_per_day=False) תמיד יוצרת job חדש.
        """
        today = self._clock().date().isoformat()
        queue = JobQueue(self.db)
        job_ids = []
        for company_id in await self.discover_companies():
            job_id = await queue.enqueue(
                JobType.REMINDER_PROCESSING,
                {"company_id": company_id},
                company_id,
                singleton_key=f"reminders:{company_id}:{today}" if once_per_day else None,
            )
            if job_id is not None:
                job_ids.append(job_id)
        await self.db.commit()
        logger.info("Reminder jobs enqueued", extra_data={"count": len(job_ids)})
        return job_ids
