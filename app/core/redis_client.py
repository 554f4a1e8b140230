"""
Redis Client — async singleton ונעילות ריצה קצרות.

משתמש ב-REDIS_URL מהקונפיגורציה. הנעילה (SET NX EX) מונעת משתי ריצות
scheduler חופפות לעבד את אותה חברה במקביל.
"""
import asyncio
import uuid
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()

_LOCK_PREFIX = "lock:"

# compare-and-delete אטומי: מוחק רק אם הערך עדיין ה-token שלנו
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis — לקרוא ב-app shutdown ובסיום task."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def acquire_lock(name: str, ttl_seconds: int) -> str | None:
    """
    ניסיון לתפוס נעילה. מחזיר token אם נתפסה, None אם מוחזקת ע"י ריצה אחרת.

    ה-TTL משחרר את הנעילה גם אם ה-worker קרס באמצע.
    """
    redis = await get_redis()
    token = uuid.uuid4().hex
    acquired = await redis.set(f"{_LOCK_PREFIX}{name}", token, nx=True, ex=ttl_seconds)
    return token if acquired else None


async def release_lock(name: str, token: str) -> bool:
    """שחרור נעילה רק אם היא עדיין שלנו (ה-TTL לא פג ונתפסה מחדש)"""
    redis = await get_redis()
    released = await redis.eval(_RELEASE_SCRIPT, 1, f"{_LOCK_PREFIX}{name}", token)
    if not released:
        logger.warning("Lock expired before release", extra_data={"lock": name})
        return False
    return True
