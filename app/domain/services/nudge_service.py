"""
Nudge Service — שליחת תזכורת לעדכון תשלום בערוצים הפעילים.

משמש את ה-nudge המיידי (יצירה / מיזוג תיק), את תזכורות ה-scheduler ואת
ה-nudge הידני מה-API. ניסיון נרשם על התיק רק אם ערוץ אחד לפחות הצליח.
"""
from dataclasses import dataclass

from sqlalchemy import case as sql_case, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.time_utils import utc_now
from app.db.models.recovery_action import ActionType
from app.db.models.recovery_case import CaseStatus, RecoveryCase
from app.domain.services.incentive_service import IncentiveService
from app.domain.services.recovery_audit import log_recovery_action
from app.domain.services.settings_service import CompanySettings, SettingsService
from app.domain.services.whop_client import WhopClient

logger = get_logger(__name__)


def push_copy(attempt_number: int) -> tuple[str, str]:
    if attempt_number == 1:
        return (
            "Payment Failed - Fix Now to Avoid Pause",
            "Your payment didn't go through. Update details now to keep access ➡️",
        )
    return (
        f"Payment Failed - Action Required ({attempt_number}x reminder)",
        "Subscription will pause soon. Update payment method to continue ➡️",
    )


def dm_copy(manage_url: str, attempt_number: int) -> str:
    if attempt_number == 1:
        return (
            "⚠️ **Payment Failed**\n\n"
            "Hi! Your recent payment didn't process. Update your payment method "
            "now to keep your subscription active:\n\n"
            f"🔗 **Update Payment:** {manage_url}\n\n"
            "No interruption yet, but let's fix this quickly!"
        )
    return (
        "⏰ **Payment Still Pending**\n\n"
        "Your payment method needs to be updated to avoid subscription interruption.\n\n"
        f"🔗 **Update Payment:** {manage_url}\n\n"
        f"This is reminder #{attempt_number}. Your access continues until we resolve this!"
    )


@dataclass
class NudgeResult:
    attempt_number: int
    push_sent: bool = False
    dm_sent: bool = False
    incentive_applied: bool = False
    skipped_reason: str | None = None

    @property
    def success(self) -> bool:
        return self.push_sent or self.dm_sent


async def record_reminder_attempt(
    db: AsyncSession,
    case_id: str,
    company_id: str,
    attempt_number: int,
) -> bool:
    """
    attempts = max(attempts, attempt_number), last_nudge_at = now.
    רק על תיק פתוח של אותה חברה.
    """
    result = await db.execute(
        update(RecoveryCase)
        .where(
            RecoveryCase.id == case_id,
            RecoveryCase.company_id == company_id,
            RecoveryCase.status == CaseStatus.OPEN,
        )
        .values(
            attempts=sql_case(
                (RecoveryCase.attempts < attempt_number, attempt_number),
                else_=RecoveryCase.attempts,
            ),
            last_nudge_at=utc_now(),
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount == 0:
        logger.warning(
            "Failed to record reminder attempt - case not open",
            extra_data={"case_id": case_id, "company_id": company_id}
        )
        return False
    logger.info(
        "Recorded reminder attempt",
        extra_data={"case_id": case_id, "attempt_number": attempt_number}
    )
    return True


class NudgeService:

    def __init__(
        self,
        db: AsyncSession,
        whop_client: WhopClient | None = None,
        settings_service: SettingsService | None = None,
        incentive_service: IncentiveService | None = None,
    ):
        self.db = db
        self.whop = whop_client or WhopClient()
        self.settings_service = settings_service or SettingsService(db)
        self.incentive_service = incentive_service or IncentiveService(
            db, self.whop, self.settings_service
        )

    async def send_nudge(
        self,
        recovery_case: RecoveryCase,
        attempt_number: int,
        *,
        company_settings: CompanySettings | None = None,
        audit_details: dict | None = None,
    ) -> NudgeResult:
        # ה-commit-ים של ה-audit עלולים לפוג את האובייקט; עובדים על עותק
        case_id = recovery_case.id
        company_id = recovery_case.company_id
        membership_id = recovery_case.membership_id
        user_id = recovery_case.user_id
        incentive_recorded = recovery_case.incentive_days > 0

        company_settings = company_settings or await self.settings_service.get_for_company(company_id)
        result = NudgeResult(attempt_number=attempt_number)

        wants_incentive = (
            attempt_number == 1
            and not incentive_recorded
            and company_settings.incentive_days > 0
        )
        if not (company_settings.enable_push or company_settings.enable_dm or wants_incentive):
            result.skipped_reason = "channels_disabled"
            return result

        url_result = await self.whop.get_manage_url(membership_id)
        if not url_result.success:
            logger.warning(
                "No manage URL available for nudge",
                extra_data={"case_id": case_id, "membership_id": membership_id, "error": url_result.error}
            )
            result.skipped_reason = "no_manage_url"
            return result
        manage_url = url_result.data["url"]

        details = {"attempt_number": attempt_number, "manage_url": manage_url, **(audit_details or {})}

        if company_settings.enable_push:
            title, body = push_copy(attempt_number)
            push = await self.whop.send_push(
                user_id,
                title,
                body,
                data={
                    "type": "payment_recovery",
                    "manage_url": manage_url,
                    "membership_id": membership_id,
                    "attempt_number": attempt_number,
                    "case_id": case_id,
                    "company_id": company_id,
                },
            )
            result.push_sent = push.success
            if push.success:
                await log_recovery_action(
                    self.db, company_id, case_id, membership_id, user_id,
                    ActionType.NUDGE_PUSH, "push",
                    {**details, "message_id": push.message_id},
                )
            else:
                logger.warning("Push nudge failed", extra_data={"case_id": case_id, "error": push.error})

        if company_settings.enable_dm:
            dm = await self.whop.send_direct_message(user_id, dm_copy(manage_url, attempt_number))
            result.dm_sent = dm.success
            if dm.success:
                await log_recovery_action(
                    self.db, company_id, case_id, membership_id, user_id,
                    ActionType.NUDGE_DM, "dm",
                    {**details, "message_id": dm.message_id},
                )
            else:
                logger.warning("DM nudge failed", extra_data={"case_id": case_id, "error": dm.error})

        if wants_incentive:
            incentive = await self.incentive_service.apply_incentive(
                membership_id, case_id, company_id, user_id=user_id
            )
            result.incentive_applied = incentive.success and incentive.days_added > 0
            if result.incentive_applied:
                await log_recovery_action(
                    self.db, company_id, case_id, membership_id, user_id,
                    ActionType.INCENTIVE_APPLIED,
                    details={"days_added": incentive.days_added, "attempt_number": attempt_number},
                )

        if result.success:
            await record_reminder_attempt(self.db, case_id, company_id, attempt_number)

        logger.info(
            "Recovery nudge completed",
            extra_data={
                "case_id": case_id,
                "attempt_number": attempt_number,
                "push_sent": result.push_sent,
                "dm_sent": result.dm_sent,
                "incentive_applied": result.incentive_applied,
            }
        )
        return result
