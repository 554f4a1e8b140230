"""
הגבלת קצב ל-endpoints לפי קונפיגורציה בשם (webhooks / caseActions / scheduler).

חריגה נזרקת כ-RateLimitExceededException; ה-handler הגלובלי מחזיר 429
עם Retry-After.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import RateLimitExceededException
from app.core.logging import get_logger
from app.domain.services.rate_limiter import RateLimiter, RateLimitResult

logger = get_logger(__name__)


async def enforce_rate_limit(
    db: AsyncSession,
    config_name: str,
    identifier: str,
) -> RateLimitResult:
    """
    Raises:
        RateLimitExceededException: ה-bucket הנוכחי מלא
    """
    result = await RateLimiter(db).check_named(config_name, identifier)
    if not result.allowed:
        logger.warning(
            "Rate limit exceeded",
            extra_data={
                "config": config_name,
                "identifier": identifier,
                "retry_after": result.retry_after,
            }
        )
        raise RateLimitExceededException(
            identifier,
            retry_after=result.retry_after or 1,
            reset_at=result.reset_at,
        )
    return result
