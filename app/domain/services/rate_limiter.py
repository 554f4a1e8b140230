"""
Rate Limiter — מונה בחלונות קבועים (fixed buckets) שמגובה במסד הנתונים.

כל בקשה מגדילה מונה לזוג (identifier, תחילת חלון). תחילת החלון היא
floor(now / window) * window, כך שכל המופעים של השירות סופרים לאותה שורה.
באגים ישנים של אותו identifier נמחקים בכל בדיקה.

בפרודקשן כשל של המאגר דוחה את הבקשה (fail closed). בפיתוח הבקשה עוברת.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.time_utils import from_epoch_ms
from app.db.compat import dialect_insert
from app.db.models.rate_limit_bucket import RateLimitBucket

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int | None = None


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def get_rate_limit_config(name: str) -> RateLimitConfig:
    """
    קונפיגורציות בשם. נקראות מההגדרות בזמן הקריאה כדי שבדיקות
    יוכלו לשנות ערכים עם monkeypatch.
    """
    configs = {
        "webhooks": (
            settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
            settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        ),
        "caseActions": (
            settings.CASE_ACTION_RATE_LIMIT_WINDOW_SECONDS,
            settings.CASE_ACTION_RATE_LIMIT_MAX_REQUESTS,
        ),
        "scheduler": (
            settings.SCHEDULER_RATE_LIMIT_WINDOW_SECONDS,
            settings.SCHEDULER_RATE_LIMIT_MAX_REQUESTS,
        ),
    }
    if name not in configs:
        raise KeyError(f"Unknown rate limit config: {name}")
    window_seconds, max_requests = configs[name]
    return RateLimitConfig(window_ms=window_seconds * 1000, max_requests=max_requests)


def bucket_start_ms(now_ms: int, window_ms: int) -> int:
    return (now_ms // window_ms) * window_ms


class RateLimiter:
    """Fixed-bucket limiter; clock is injectable for tests"""

    def __init__(self, db: AsyncSession, clock: Callable[[], int] | None = None):
        self.db = db
        self._clock = clock or _now_ms

    async def check_limit(
        self,
        identifier: str,
        window_ms: int,
        max_requests: int,
    ) -> RateLimitResult:
        now_ms = self._clock()
        window_start = bucket_start_ms(now_ms, window_ms)
        reset_ms = window_start + window_ms
        reset_at = from_epoch_ms(reset_ms)

        try:
            # ניקוי באגים ישנים של ה-identifier הזה
            await self.db.execute(
                delete(RateLimitBucket).where(
                    RateLimitBucket.identifier == identifier,
                    RateLimitBucket.window_start_ms < window_start,
                )
            )

            current = await self.db.scalar(
                select(RateLimitBucket.count).where(
                    RateLimitBucket.identifier == identifier,
                    RateLimitBucket.window_start_ms == window_start,
                )
            ) or 0

            if current >= max_requests:
                await self.db.commit()
                retry_after = max(1, math.ceil((reset_ms - now_ms) / 1000))
                logger.warning(
                    "Rate limit exceeded",
                    extra_data={
                        "identifier": identifier,
                        "count": current,
                        "max_requests": max_requests,
                        "retry_after": retry_after,
                    }
                )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=retry_after,
                )

            stmt = dialect_insert(self.db, RateLimitBucket).values(
                identifier=identifier,
                window_start_ms=window_start,
                count=1,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["identifier", "window_start_ms"],
                set_={"count": RateLimitBucket.count + 1},
            )
            await self.db.execute(stmt)
            await self.db.commit()

            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_requests - current - 1),
                reset_at=reset_at,
            )
        except Exception as e:
            await self.db.rollback()
            if settings.is_production:
                logger.error(
                    "Rate limiter store failed, denying request",
                    extra_data={"identifier": identifier, "error": str(e)},
                    exc_info=True
                )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=math.ceil(window_ms / 1000),
                )
            logger.warning(
                "Rate limiter store failed, allowing request",
                extra_data={"identifier": identifier, "error": str(e)},
            )
            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_requests - 1),
                reset_at=reset_at,
            )

    async def check_named(self, name: str, identifier: str) -> RateLimitResult:
        config = get_rate_limit_config(name)
        return await self.check_limit(identifier, config.window_ms, config.max_requests)

    async def cleanup_expired(self, older_than_ms: int | None = None) -> int:
        """מחיקת כל הבאגים שהתחילו לפני הסף (ברירת מחדל: לפני יממה)"""
        threshold = older_than_ms
        if threshold is None:
            threshold = self._clock() - 24 * 60 * 60 * 1000
        result = await self.db.execute(
            delete(RateLimitBucket).where(RateLimitBucket.window_start_ms < threshold)
        )
        await self.db.commit()
        return result.rowcount or 0
