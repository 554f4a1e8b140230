"""
Event Processor — ניתוב אירועים שמורים לשירות התיקים לפי סוג.

payment_failed / membership_invalid → יצירה או מיזוג של תיק
payment_succeeded / membership_valid → ייחוס שחזור
כל סוג אחר נרשם ללוג ומחזיר הצלחה (no-op).

לפני הניתוב ה-payload (dict או מחרוזת JSON, שדות מקוננים או שטוחים)
מנורמל ל-EventData אחד. process_event לעולם לא זורק.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import company_context, get_logger
from app.core.time_utils import utc_now
from app.db.models.event import Event, EventType
from app.db.models.job import Job, JobType
from app.domain.services.case_service import CaseService
from app.domain.services.job_queue import JobQueue

logger = get_logger(__name__)

# ISO 4217 — מספר הספרות אחרי הנקודה. כל מטבע אחר: 2.
_ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "BYR", "CLF", "CLP", "CVE", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
    "MGA", "PYG", "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF",
})
_THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})

MAX_NORMALIZED_AMOUNT = 1_000_000


def currency_minor_units(currency: str) -> int:
    code = currency.upper()
    if code in _ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in _THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def normalize_amount_to_cents(raw_amount: Any, currency: str = "USD") -> int:
    """
    סכום ביחידות המשנה של המטבע → סנטים של יחידה ראשית
    (1000 JPY → 100000, 12345 KWD → 1235).

    Raises:
        ValueError: סכום לא מספרי, שלילי או גדול מ-1,000,000 יחידות ראשיות
    """
    if isinstance(raw_amount, bool) or not isinstance(raw_amount, (int, float)):
        raise ValueError(f"Invalid raw amount: {raw_amount!r}")
    if not math.isfinite(raw_amount):
        raise ValueError(f"Invalid raw amount: {raw_amount!r}")

    major = Decimal(str(raw_amount)).scaleb(-currency_minor_units(currency))
    if major < 0:
        raise ValueError(f"Negative amount after normalization: {major}")
    if major > MAX_NORMALIZED_AMOUNT:
        raise ValueError(f"Excessive amount after normalization: {major}")
    return int((major * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def coerce_payload(payload: Any) -> dict[str, Any]:
    """payload שמור יכול להגיע כ-dict או כמחרוזת JSON"""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            return {}
    return payload if isinstance(payload, dict) else {}


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


@dataclass(frozen=True)
class EventData:
    """Canonical, typed view of a stored webhook event"""

    event_id: str
    raw_type: str
    event_type: EventType | None
    membership_id: str
    user_id: str
    reason: str
    raw_amount: Any
    currency: str
    occurred_at: datetime
    has_data: bool

    @classmethod
    def from_event(cls, event: Event) -> "EventData":
        payload = coerce_payload(event.payload)
        data = payload.get("data")
        has_data = isinstance(data, dict)
        data = data if has_data else {}

        membership = data.get("membership") if isinstance(data.get("membership"), dict) else {}
        payment = data.get("payment") if isinstance(data.get("payment"), dict) else {}

        currency = _first(payment.get("currency"), data.get("currency")) or "USD"
        if not isinstance(currency, str) or len(currency) != 3:
            logger.warning(
                "Invalid currency format, defaulting to USD",
                extra_data={"event_id": event.whop_event_id, "currency": currency}
            )
            currency = "USD"

        return cls(
            event_id=event.whop_event_id,
            raw_type=event.type,
            event_type=EventType.parse(event.type),
            membership_id=event.membership_id,
            user_id=str(_first(membership.get("user_id"), data.get("user_id")) or "unknown"),
            reason=str(_first(payment.get("failure_reason"), data.get("reason")) or "payment_failed"),
            raw_amount=_first(payment.get("amount"), data.get("amount")),
            currency=currency.upper(),
            occurred_at=event.occurred_at or utc_now(),
            has_data=has_data,
        )

    def amount_cents(self) -> int | None:
        """None אם הסכום חסר או לא תקין"""
        if self.raw_amount is None:
            return None
        try:
            return normalize_amount_to_cents(self.raw_amount, self.currency)
        except ValueError as e:
            logger.error(
                "Failed to normalize payment amount",
                extra_data={
                    "event_id": self.event_id,
                    "raw_amount": self.raw_amount,
                    "currency": self.currency,
                    "error": str(e),
                }
            )
            return None


class EventProcessor:

    def __init__(self, db: AsyncSession, case_service: CaseService | None = None):
        self.db = db
        self.case_service = case_service or CaseService(db)

    async def process_event(self, event: Event, company_id: str) -> bool:
        """ניתוב לפי סוג. חריגה נתפסת, נרשמת ומוחזרת כ-False."""
        event_id = event.whop_event_id
        event_type = event.type
        try:
            data = EventData.from_event(event)
            logger.info(
                "Processing webhook event",
                extra_data={
                    "event_id": event_id,
                    "type": event_type,
                    "membership_id": data.membership_id,
                }
            )

            if data.event_type is None:
                logger.info(
                    "Skipping unsupported event type",
                    extra_data={"event_id": event_id, "type": event_type}
                )
                return True

            if not data.has_data:
                logger.warning(
                    "Event payload has no data object",
                    extra_data={"event_id": event_id, "type": event_type}
                )
                return False

            if data.event_type == EventType.PAYMENT_FAILED:
                await self.case_service.create_or_merge(
                    company_id, data.membership_id, data.user_id, data.reason,
                    data.occurred_at, event_id=event_id,
                )
                return True

            if data.event_type == EventType.MEMBERSHIP_INVALID:
                await self.case_service.create_or_merge(
                    company_id, data.membership_id, data.user_id, "membership_invalidated",
                    data.occurred_at, event_id=event_id,
                )
                return True

            if data.event_type == EventType.PAYMENT_SUCCEEDED:
                amount_cents = data.amount_cents()
                if not amount_cents:
                    logger.warning(
                        "Invalid or missing amount in payment_succeeded event",
                        extra_data={"event_id": event_id, "raw_amount": data.raw_amount}
                    )
                    return False
                result = await self.case_service.attribute_recovery(
                    company_id, data.membership_id, amount_cents, data.occurred_at,
                    event_id=event_id,
                )
            else:
                result = await self.case_service.attribute_recovery(
                    company_id, data.membership_id, 0, data.occurred_at,
                    event_id=event_id,
                )

            logger.info(
                "Recovery attribution finished",
                extra_data={
                    "event_id": event_id,
                    "outcome": result.outcome.value,
                    "case_id": result.case_id,
                }
            )
            return True

        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Failed to process webhook event",
                extra_data={"event_id": event_id, "type": event_type, "error": str(e)},
                exc_info=True
            )
            return False

    async def mark_processed(self, event_pk: int, success: bool, error: str | None = None) -> None:
        values = {"processed": success, "error": None if success else (error or "processing_failed")}
        if success:
            values["processed_at"] = utc_now()
        await self.db.execute(
            update(Event)
            .where(Event.id == event_pk)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def process_and_mark(self, event: Event, company_id: str) -> bool:
        event_pk = event.id
        with company_context(company_id):
            success = await self.process_event(event, company_id)
        await self.mark_processed(event_pk, success)
        return success

    async def get_event(self, whop_event_id: str, company_id: str | None = None) -> Event | None:
        query = select(Event).where(Event.whop_event_id == whop_event_id)
        if company_id is not None:
            query = query.where(Event.company_id == company_id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def process_event_by_id(self, whop_event_id: str, company_id: str) -> bool:
        """עיבוד ידני של אירוע בודד (גם אם כבר עובד)"""
        event = await self.get_event(whop_event_id, company_id)
        if event is None:
            logger.warning(
                "Event not found for manual processing",
                extra_data={"event_id": whop_event_id, "company_id": company_id}
            )
            return False
        return await self.process_and_mark(event, company_id)

    async def process_unprocessed_events(self, company_id: str, limit: int = 500) -> dict[str, int]:
        """אירועים של החברה שלא סומנו processed, לפי סדר קבלה"""
        result = await self.db.execute(
            select(Event.id)
            .where(Event.company_id == company_id, Event.processed.is_(False))
            .order_by(Event.received_at, Event.id)
            .limit(limit)
        )
        event_pks = list(result.scalars().all())

        successful = 0
        failed = 0
        for event_pk in event_pks:
            # rollback בעיבוד קודם מפיג אובייקטים; טוענים כל אירוע מחדש
            event = await self.db.get(Event, event_pk, populate_existing=True)
            if await self.process_and_mark(event, company_id):
                successful += 1
            else:
                failed += 1

        summary = {"processed": len(event_pks), "successful": successful, "failed": failed}
        logger.info(
            "Completed batch event processing",
            extra_data={"company_id": company_id, **summary}
        )
        return summary

    async def enqueue_orphaned_events(self, older_than_seconds: int = 300, limit: int = 200) -> int:
        """
        אירועים שנשמרו אבל אין להם job עיבוד (ה-enqueue נכשל אחרי ה-commit).
        אירוע שה-job שלו ב-dead-letter לא נאסף שוב.
        """
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        has_job = select(Job.id).where(Job.singleton_key == Event.whop_event_id).exists()
        result = await self.db.execute(
            select(Event.whop_event_id, Event.type, Event.membership_id, Event.company_id)
            .where(
                Event.processed.is_(False),
                Event.company_id.is_not(None),
                Event.received_at < cutoff,
                ~has_job,
            )
            .order_by(Event.received_at, Event.id)
            .limit(limit)
        )
        rows = result.all()

        queue = JobQueue(self.db)
        for row in rows:
            await queue.enqueue(
                JobType.WEBHOOK_PROCESSING,
                {
                    "event_id": row.whop_event_id,
                    "event_type": row.type,
                    "membership_id": row.membership_id,
                    "company_id": row.company_id,
                },
                row.company_id,
                singleton_key=row.whop_event_id,
            )
        await self.db.commit()

        if rows:
            logger.warning(
                "Enqueued processing jobs for orphaned events",
                extra_data={"count": len(rows)}
            )
        return len(rows)
