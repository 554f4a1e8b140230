"""
Incentive Service — הוספת ימי חינם ל-membership כתמריץ לעדכון תשלום.

תמריץ ניתן פעם אחת לכל תיק: תיק שכבר רשום עליו incentive_days לא פונה
שוב ל-Whop, והרישום עצמו מותנה ב-incentive_days = 0 כך שמבין שתי הפעלות
מקבילות רק אחת נחשבת. כשלון של ה-API לא עוצר יצירת תיק או שליחת התראות.
"""
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.core.time_utils import utc_now
from app.db.models.recovery_action import ActionType
from app.db.models.recovery_case import RecoveryCase
from app.domain.services.recovery_audit import log_recovery_action
from app.domain.services.settings_service import MAX_INCENTIVE_DAYS, SettingsService
from app.domain.services.whop_client import WhopClient

logger = get_logger(__name__)


@dataclass
class IncentiveResult:
    success: bool
    days_added: int = 0
    error: str | None = None


def validate_incentive_config(days: int | None = None) -> list[str]:
    """ולידציה לערך ברירת המחדל (או לערך שהועבר)"""
    value = settings.DEFAULT_INCENTIVE_DAYS if days is None else days
    errors = []
    if value < 0:
        errors.append("DEFAULT_INCENTIVE_DAYS cannot be negative")
    if value > MAX_INCENTIVE_DAYS:
        errors.append(f"DEFAULT_INCENTIVE_DAYS cannot exceed {MAX_INCENTIVE_DAYS} days")
    return errors


class IncentiveService:

    def __init__(
        self,
        db: AsyncSession,
        whop_client: WhopClient | None = None,
        settings_service: SettingsService | None = None,
    ):
        self.db = db
        self.whop = whop_client or WhopClient()
        self.settings_service = settings_service or SettingsService(db)

    async def apply_incentive(
        self,
        membership_id: str,
        case_id: str,
        company_id: str,
        *,
        user_id: str = "unknown",
    ) -> IncentiveResult:
        company_settings = await self.settings_service.get_for_company(company_id)
        days = company_settings.incentive_days

        if days <= 0:
            logger.info(
                "Incentives disabled (0 days)",
                extra_data={"membership_id": membership_id, "case_id": case_id}
            )
            return IncentiveResult(success=True, days_added=0)

        already_granted = await self.db.scalar(
            select(RecoveryCase.incentive_days)
            .where(RecoveryCase.id == case_id, RecoveryCase.company_id == company_id)
            .execution_options(populate_existing=True)
        )
        if already_granted:
            logger.info(
                "Incentive already granted for case, skipping",
                extra_data={"case_id": case_id, "incentive_days": already_granted}
            )
            return IncentiveResult(success=True, days_added=0)

        logger.info(
            "Applying recovery incentive",
            extra_data={"membership_id": membership_id, "case_id": case_id, "days": days}
        )

        result = await self.whop.add_free_days(membership_id, days)
        if not result.success:
            logger.error(
                "Failed to apply recovery incentive after retries",
                extra_data={
                    "membership_id": membership_id,
                    "case_id": case_id,
                    "error": result.error,
                    "attempts": result.attempts,
                }
            )
            await log_recovery_action(
                self.db,
                company_id,
                case_id,
                membership_id,
                user_id,
                ActionType.INCENTIVE_FAILED,
                details={
                    "error": result.error,
                    "attempts": result.attempts,
                    "incentive_days": days,
                    "can_retry": True,
                },
            )
            return IncentiveResult(success=False, error=result.error or "Failed to add free days")

        try:
            persisted = await self.db.execute(
                update(RecoveryCase)
                .where(
                    RecoveryCase.id == case_id,
                    RecoveryCase.company_id == company_id,
                    RecoveryCase.incentive_days == 0,
                )
                .values(incentive_days=days, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as e:
            # הימים כבר נוספו ב-Whop; כשלון הרישום לא הופך את התוצאה לכשלון
            await self.db.rollback()
            logger.error(
                "Failed to persist incentive_days on case",
                extra_data={"case_id": case_id, "days": days, "error": str(e)}
            )
        else:
            if persisted.rowcount == 0:
                # הפעלה מקבילה רשמה את התמריץ ראשונה
                logger.warning(
                    "Incentive already recorded on case by a concurrent run",
                    extra_data={"case_id": case_id, "days": days}
                )
                return IncentiveResult(success=True, days_added=0)

        logger.info(
            "Recovery incentive applied",
            extra_data={"membership_id": membership_id, "case_id": case_id, "days_added": days}
        )
        return IncentiveResult(success=True, days_added=days)
