"""
Whop Webhook Handler

נקודת כניסה יחידה לאירועי Whop: הגבלת קצב גלובלית, אימות חתימה
ו-timestamp, שמירה idempotent של האירוע ומסירה לתור העבודות.

פורמט התשובה נשמר מול השולח:
    200 {"success": true, "eventId": ...}
    401 {"error": "Missing signature" | "Invalid signature"}
    400 {"error": "Invalid JSON" | "Missing required fields"}
    429 {"error": "Rate limit exceeded", "retryAfter": ..., "resetAt": ...}
כשל פנימי אחרי שהאירוע התקבל מוחזר כ-200 עם דגל שגיאה, כדי שהשולח
לא ייכנס ללולאת retries.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AuthenticationException, ValidationException
from app.core.logging import get_correlation_id, get_logger
from app.db.database import get_db
from app.domain.services.rate_limiter import RateLimiter
from app.domain.services.webhook_ingestor import WebhookIngestor

logger = get_logger(__name__)

router = APIRouter()

_GLOBAL_RATE_LIMIT_KEY = "webhook:global"


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


@router.post(
    "/whop",
    summary="Webhook - Whop (אירועי תשלום ו-membership)",
    description=(
        "מקבל אירועי payment_failed / payment_succeeded / membership_went_valid / "
        "membership_went_invalid. מאמת חתימת HMAC-SHA256 (sha256=, v1, או hex), "
        "שומר את האירוע פעם אחת בלבד ומעביר לעיבוד אסינכרוני."
    ),
    responses={
        200: {"description": "האירוע התקבל (או כבר היה שמור)"},
        400: {"description": "JSON לא תקין או שדות חובה חסרים"},
        401: {"description": "חתימה חסרה/לא תקינה או timestamp מחוץ לחלון"},
        429: {"description": "חריגה ממגבלת הקצב הגלובלית"},
    },
)
async def whop_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    client_ip = _client_ip(request)

    rate_limit = await RateLimiter(db).check_named("webhooks", _GLOBAL_RATE_LIMIT_KEY)
    if not rate_limit.allowed:
        logger.error(
            "Webhook rate limit exceeded",
            extra_data={
                "ip": client_ip,
                "retry_after": rate_limit.retry_after,
                "reset_at": rate_limit.reset_at.isoformat(),
            }
        )
        return JSONResponse(
            status_code=429,
            content={
                "error": "Rate limit exceeded",
                "retryAfter": rate_limit.retry_after,
                "resetAt": rate_limit.reset_at.isoformat(),
            },
            headers={"Retry-After": str(rate_limit.retry_after or 1)},
        )

    body = await request.body()
    company_id = request.headers.get("x-company-id") or settings.WHOP_APP_ID or None
    ingestor = WebhookIngestor(db)

    try:
        result = await ingestor.handle(
            body,
            request.headers.get("x-whop-signature"),
            request.headers.get("x-whop-timestamp"),
            company_id,
            client_ip=client_ip,
        )
    except AuthenticationException as e:
        return JSONResponse(status_code=401, content={"error": e.message})
    except ValidationException as e:
        return JSONResponse(status_code=400, content={"error": e.message})
    except Exception as e:
        await db.rollback()
        logger.error(
            "Webhook processing error",
            extra_data={
                "error": str(e),
                "correlation_id": get_correlation_id(),
                "body_length": len(body),
            },
            exc_info=True
        )
        return JSONResponse(
            status_code=200,
            content={"error": "Internal processing error", "eventLogged": True},
        )

    return JSONResponse(
        status_code=200,
        content={"success": True, "eventId": result.event_id},
    )
