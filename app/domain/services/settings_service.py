"""
Creator settings — ערוצים, ימי תמריץ, offsets לתזכורות וחלון ייחוס לכל חברה.

קריאה: cache → DB → ברירות מחדל מהסביבה. כשלון של ה-DB לא מפיל את
הקורא; מוחזרות ברירות המחדל.
"""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import SettingsValidationError
from app.core.logging import get_logger
from app.core.time_utils import utc_now
from app.db.compat import dialect_insert
from app.db.models.creator_settings import CreatorSettings

logger = get_logger(__name__)

MAX_INCENTIVE_DAYS = 365
MAX_ATTRIBUTION_WINDOW_DAYS = 365


@dataclass(frozen=True)
class CompanySettings:
    company_id: str
    enable_push: bool
    enable_dm: bool
    incentive_days: int
    reminder_offsets_days: list[int] = field(default_factory=list)
    attribution_window_days: int = 30

    def to_dict(self) -> dict:
        return asdict(self)


def default_settings(company_id: str) -> CompanySettings:
    return CompanySettings(
        company_id=company_id,
        enable_push=settings.ENABLE_PUSH,
        enable_dm=settings.ENABLE_DM,
        incentive_days=settings.DEFAULT_INCENTIVE_DAYS,
        reminder_offsets_days=settings.reminder_offsets,
        attribution_window_days=settings.KPI_ATTRIBUTION_WINDOW_DAYS,
    )


def validate_settings(
    incentive_days: int,
    reminder_offsets_days: list[int],
    attribution_window_days: int | None,
) -> list[str]:
    errors = []
    if incentive_days < 0 or incentive_days > MAX_INCENTIVE_DAYS:
        errors.append(f"incentive_days must be between 0 and {MAX_INCENTIVE_DAYS}")
    if any(offset < 0 for offset in reminder_offsets_days):
        errors.append("reminder_offsets_days must be non-negative")
    if attribution_window_days is not None and not (
        1 <= attribution_window_days <= MAX_ATTRIBUTION_WINDOW_DAYS
    ):
        errors.append(
            f"attribution_window_days must be between 1 and {MAX_ATTRIBUTION_WINDOW_DAYS}"
        )
    return errors


class SettingsCache:
    """
    Per-company settings cache with an explicit TTL.

    The clock is injectable so staleness can be tested without sleeping.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[CompanySettings, float]] = {}

    def get(self, company_id: str) -> CompanySettings | None:
        """ערך טרי בלבד — ערך שפג תוקפו מוחזר כ-None"""
        if self.is_stale(company_id):
            return None
        return self._entries[company_id][0]

    def put(self, value: CompanySettings) -> None:
        self._entries[value.company_id] = (value, self._clock())

    def invalidate(self, company_id: str | None = None) -> None:
        if company_id is None:
            self._entries.clear()
        else:
            self._entries.pop(company_id, None)

    def is_stale(self, company_id: str) -> bool:
        entry = self._entries.get(company_id)
        if entry is None:
            return True
        return self._clock() - entry[1] >= self.ttl_seconds

    async def reload_if_stale(
        self,
        company_id: str,
        loader: Callable[[str], Awaitable[CompanySettings]],
    ) -> CompanySettings:
        if not self.is_stale(company_id):
            return self._entries[company_id][0]
        value = await loader(company_id)
        self.put(value)
        return value


_default_cache: SettingsCache | None = None


def get_settings_cache() -> SettingsCache:
    """cache משותף לתהליך (ה-API וה-worker)"""
    global _default_cache
    if _default_cache is None:
        _default_cache = SettingsCache(settings.SETTINGS_CACHE_TTL_SECONDS)
    return _default_cache


class SettingsService:

    def __init__(self, db: AsyncSession, cache: SettingsCache | None = None):
        self.db = db
        self.cache = cache if cache is not None else get_settings_cache()

    async def _load(self, company_id: str) -> CompanySettings:
        try:
            row = await self.db.get(CreatorSettings, company_id, populate_existing=True)
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Failed to load creator settings, using defaults",
                extra_data={"company_id": company_id, "error": str(e)}
            )
            return default_settings(company_id)

        if row is None:
            return default_settings(company_id)

        return CompanySettings(
            company_id=company_id,
            enable_push=row.enable_push,
            enable_dm=row.enable_dm,
            incentive_days=row.incentive_days,
            reminder_offsets_days=sorted(
                row.reminder_offsets_days
                if row.reminder_offsets_days is not None
                else settings.reminder_offsets
            ),
            attribution_window_days=(
                row.attribution_window_days or settings.KPI_ATTRIBUTION_WINDOW_DAYS
            ),
        )

    async def get_for_company(self, company_id: str) -> CompanySettings:
        return await self.cache.reload_if_stale(company_id, self._load)

    async def upsert(
        self,
        company_id: str,
        *,
        enable_push: bool,
        enable_dm: bool,
        incentive_days: int,
        reminder_offsets_days: list[int],
        attribution_window_days: int | None = None,
    ) -> CompanySettings:
        """
        Raises:
            SettingsValidationError: ערכים מחוץ לטווח
        """
        errors = validate_settings(incentive_days, reminder_offsets_days, attribution_window_days)
        if errors:
            raise SettingsValidationError(errors)

        offsets = sorted(set(reminder_offsets_days))
        values = {
            "enable_push": enable_push,
            "enable_dm": enable_dm,
            "incentive_days": incentive_days,
            "reminder_offsets_days": offsets,
            "attribution_window_days": attribution_window_days,
            "updated_at": utc_now(),
        }
        stmt = dialect_insert(self.db, CreatorSettings).values(company_id=company_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["company_id"], set_=values)
        await self.db.execute(stmt)
        await self.db.commit()

        self.cache.invalidate(company_id)
        logger.info(
            "Creator settings updated",
            extra_data={"company_id": company_id, **{k: v for k, v in values.items() if k != "updated_at"}}
        )
        return await self.get_for_company(company_id)

    async def list_configured_companies(self) -> list[str]:
        result = await self.db.execute(select(CreatorSettings.company_id))
        return [row[0] for row in result.all()]
