"""
Webhook Ingestor — אימות חתימה, הגנת replay ושמירה אידמפוטנטית.

הזרימה:
1. אימות HMAC-SHA256 על ה-body הגולמי (שלושה פורמטים של header).
2. בדיקת timestamp מול חלון סטייה (חובה בפרודקשן).
3. פענוח JSON ובדיקת שדות חובה (id / whop_event_id, type).
4. INSERT ... ON CONFLICT DO NOTHING על whop_event_id.
5. העברה לתור העבודות (job אחד לכל אירוע) — העיבוד עצמו לא על
   הנתיב של התשובה ל-Whop.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AuthenticationException, ErrorCode, ValidationException
from app.core.logging import get_logger
from app.core.time_utils import to_naive_utc, utc_now
from app.db.compat import dialect_insert
from app.db.models.event import Event
from app.db.models.job import JobType
from app.domain.services.job_queue import JobQueue

logger = get_logger(__name__)
security_logger = get_logger("app.security")

_HEX_RE = re.compile(r"^[0-9a-f]+$", re.IGNORECASE)


def parse_signature_header(signature_header: str) -> str | None:
    """
    חילוץ ה-hex מה-header. פורמטים נתמכים:
    - "sha256=<hex>"
    - "v1,<hex>"
    - "<hex>"
    כל פורמט אחר (sha512=, md5=, ...) נדחה.
    """
    s = signature_header.strip()

    if s.startswith("sha256="):
        hex_part = s[len("sha256="):]
        return hex_part if _HEX_RE.match(hex_part) else None

    parts = s.split(",")
    if len(parts) == 2 and parts[0].lower() == "v1":
        return parts[1]

    if _HEX_RE.match(s):
        return s

    return None


def timing_safe_hex_equal(a: str, b: str) -> bool:
    """השוואת hex בזמן קבוע. אורך נבדק לפני ההשוואה."""
    a_hex = a.removeprefix("0x").lower()
    b_hex = b.removeprefix("0x").lower()

    if (
        len(a_hex) != len(b_hex)
        or not a_hex
        or not _HEX_RE.match(a_hex)
        or not _HEX_RE.match(b_hex)
    ):
        return False

    try:
        return hmac.compare_digest(bytes.fromhex(a_hex), bytes.fromhex(b_hex))
    except ValueError:
        # אורך אי-זוגי
        return False


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def validate_timestamp(
    timestamp_header: str | None,
    *,
    now: float | None = None,
    tolerance_seconds: int | None = None,
    require: bool | None = None,
) -> str | None:
    """מחזיר הודעת שגיאה, או None אם ה-timestamp תקין"""
    if require is None:
        require = settings.is_production
    if tolerance_seconds is None:
        tolerance_seconds = settings.WEBHOOK_TIMESTAMP_SKEW_SECONDS

    if not timestamp_header:
        if require:
            return "Missing X-Whop-Timestamp header in production"
        return None

    try:
        ts = float(timestamp_header)
    except ValueError:
        return "Invalid X-Whop-Timestamp header: malformed timestamp"
    if not math.isfinite(ts) or ts < 0:
        return "Invalid X-Whop-Timestamp header: malformed timestamp"

    now_sec = math.floor(now if now is not None else time.time())
    skew = abs(now_sec - ts)
    if skew > tolerance_seconds:
        return f"Webhook timestamp outside allowed window: {skew:.0f}s > {tolerance_seconds}s"
    return None


def verify_webhook_signature(
    body: bytes,
    signature_header: str,
    secret: str,
    timestamp_header: str | None = None,
    *,
    now: float | None = None,
) -> tuple[bool, list[str]]:
    """
    אימות מלא. כל הבדיקות רצות גם אחרי כשלון ראשון, והחתימה הצפויה
    מחושבת תמיד, כך שזמן הריצה לא מגלה איזו בדיקה נכשלה.
    """
    errors: list[str] = []

    timestamp_error = validate_timestamp(timestamp_header, now=now)
    if timestamp_error:
        errors.append(timestamp_error)

    provided = parse_signature_header(signature_header)
    if provided is None:
        errors.append("Unsupported signature format")

    expected = compute_signature(body, secret)

    signature_valid = False
    if provided is not None:
        signature_valid = timing_safe_hex_equal(expected, provided)
    if not signature_valid:
        errors.append("Signature verification failed")

    if errors:
        logger.warning(
            "Webhook signature verification failed",
            extra_data={
                "errors": errors,
                "has_timestamp": bool(timestamp_header),
                "signature_format": signature_header[:20] + "...",
            }
        )
    return not errors, errors


def extract_membership_id(event_type: str, data: dict[str, Any]) -> str:
    """membership id מכמה מיקומים אפשריים ב-payload"""
    if isinstance(data.get("membership_id"), str):
        return data["membership_id"]
    membership = data.get("membership")
    if isinstance(membership, dict) and isinstance(membership.get("id"), str):
        return membership["id"]
    if isinstance(data.get("id"), str) and "membership" in event_type:
        return data["id"]
    return "unknown"


def _parse_created_at(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Unparseable created_at in webhook", extra_data={"created_at": value})
        return None


@dataclass
class WebhookPayload:
    event_id: str
    type: str
    data: dict[str, Any]
    occurred_at: datetime
    raw: dict[str, Any] = field(repr=False)

    @property
    def membership_id(self) -> str:
        return extract_membership_id(self.type, self.data)


def parse_webhook_payload(body: bytes) -> WebhookPayload:
    """
    Raises:
        ValidationException: JSON לא תקין או שדות חובה חסרים
    """
    try:
        raw = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        logger.error(
            "Failed to parse webhook payload",
            extra_data={"error": str(e), "body_length": len(body)}
        )
        raise ValidationException("Invalid JSON", error_code=ErrorCode.INVALID_PAYLOAD)

    if not isinstance(raw, dict):
        raise ValidationException("Invalid JSON", error_code=ErrorCode.INVALID_PAYLOAD)

    event_id = raw.get("id") or raw.get("whop_event_id")
    event_type = raw.get("type")
    if not event_id or not event_type:
        logger.warning(
            "Webhook payload missing required fields",
            extra_data={
                "has_id": bool(event_id),
                "has_type": bool(event_type),
                "payload_keys": sorted(raw.keys()),
            }
        )
        raise ValidationException(
            "Missing required fields",
            details={"has_id": bool(event_id), "has_type": bool(event_type)},
            error_code=ErrorCode.INVALID_PAYLOAD,
        )

    data = raw.get("data")
    return WebhookPayload(
        event_id=str(event_id),
        type=str(event_type),
        data=data if isinstance(data, dict) else {},
        occurred_at=_parse_created_at(raw.get("created_at")) or utc_now(),
        raw=raw,
    )


def report_security_event(
    event_type: str,
    severity: str,
    description: str,
    **metadata: Any,
) -> None:
    """אירוע אבטחה ללוג ייעודי (app.security) — נאסף ע"י ניטור חיצוני"""
    log = security_logger.warning if severity in ("high", "medium") else security_logger.info
    log(
        description,
        extra_data={
            "category": "authentication",
            "severity": severity,
            "type": event_type,
            "endpoint": "/api/webhooks/whop",
            **metadata,
        }
    )


@dataclass
class IngestResult:
    event_id: str
    inserted: bool
    job_id: int | None = None


class WebhookIngestor:
    """Verifies, stores and hands off one inbound Whop webhook"""

    def __init__(
        self,
        db: AsyncSession,
        *,
        secret: str | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.db = db
        self.secret = secret if secret is not None else settings.WHOP_WEBHOOK_SECRET
        self._clock = clock or time.time

    def verify(
        self,
        body: bytes,
        signature_header: str | None,
        timestamp_header: str | None,
        *,
        client_ip: str = "unknown",
    ) -> None:
        """
        Raises:
            AuthenticationException: חתימה חסרה / לא תקינה או timestamp מחוץ לחלון
        """
        if not signature_header:
            logger.warning("Webhook received without signature")
            raise AuthenticationException("Missing signature")

        valid, errors = verify_webhook_signature(
            body,
            signature_header,
            self.secret,
            timestamp_header,
            now=self._clock(),
        )
        if not valid:
            report_security_event(
                "webhook_signature_invalid",
                "high",
                "Invalid webhook signature detected",
                ip=client_ip,
                signature_length=len(signature_header),
                has_timestamp=bool(timestamp_header),
                body_length=len(body),
            )
            error_code = ErrorCode.INVALID_SIGNATURE
            if any("timestamp" in e.lower() for e in errors):
                error_code = ErrorCode.STALE_TIMESTAMP
            raise AuthenticationException(
                "Invalid signature",
                error_code=error_code,
                details={"errors": errors},
            )

    async def persist(self, payload: WebhookPayload, company_id: str | None) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING. מחזיר True אם נוצרה שורה חדשה."""
        stmt = (
            dialect_insert(self.db, Event)
            .values(
                whop_event_id=payload.event_id,
                type=payload.type,
                membership_id=payload.membership_id,
                company_id=company_id,
                payload=payload.raw,
                occurred_at=payload.occurred_at,
                received_at=utc_now(),
                processed=False,
            )
            .on_conflict_do_nothing(index_elements=["whop_event_id"])
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1

    async def hand_off(self, payload: WebhookPayload, company_id: str | None) -> int | None:
        """
        Job עיבוד לאירוע. ה-singleton key הוא ה-event id, כך שמשלוח חוזר
        לא יוצר job נוסף.
        """
        queue = JobQueue(self.db)
        job_id = await queue.enqueue(
            JobType.WEBHOOK_PROCESSING,
            {
                "event_id": payload.event_id,
                "event_type": payload.type,
                "membership_id": payload.membership_id,
                "company_id": company_id,
            },
            company_id,
            singleton_key=payload.event_id,
        )
        await self.db.commit()
        return job_id

    async def handle(
        self,
        body: bytes,
        signature_header: str | None,
        timestamp_header: str | None,
        company_id: str | None,
        *,
        client_ip: str = "unknown",
    ) -> IngestResult:
        """
        Raises:
            AuthenticationException: 401
            ValidationException: 400
        """
        started = time.monotonic()
        self.verify(body, signature_header, timestamp_header, client_ip=client_ip)

        try:
            payload = parse_webhook_payload(body)
        except ValidationException:
            report_security_event(
                "webhook_payload_invalid",
                "medium",
                "Webhook payload rejected",
                ip=client_ip,
                body_length=len(body),
            )
            raise

        logger.info(
            "Webhook received",
            extra_data={
                "event_id": payload.event_id,
                "event_type": payload.type,
                "membership_id": payload.membership_id,
                "company_id": company_id,
            }
        )

        inserted = await self.persist(payload, company_id)
        if not inserted:
            logger.info(
                "Duplicate webhook event ignored",
                extra_data={"event_id": payload.event_id}
            )

        # האירוע כבר שמור — כשלון כאן לא נחשף לשולח, ה-sweep יאסוף אותו
        job_id = None
        try:
            job_id = await self.hand_off(payload, company_id)
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Failed to enqueue webhook processing job",
                extra_data={"event_id": payload.event_id, "error": str(e)},
                exc_info=True
            )

        logger.info(
            "Webhook ingested",
            extra_data={
                "event_id": payload.event_id,
                "event_type": payload.type,
                "inserted": inserted,
                "job_id": job_id,
                "processing_time_ms": round((time.monotonic() - started) * 1000, 2),
            }
        )
        return IngestResult(event_id=payload.event_id, inserted=inserted, job_id=job_id)
