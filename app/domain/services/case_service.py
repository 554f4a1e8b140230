"""
Recovery Case Service — יצירה/מיזוג של תיקים, ייחוס שחזור ופעולות ידניות.

מצבים: open → recovered, open → closed. אין מעבר יוצא מ-recovered/closed.

כל מעבר הוא UPDATE מותנה (WHERE status = 'OPEN'). כותב שני שמגיע אחרי
שהמעבר כבר בוצע מקבל rowcount = 0 ומטופל כ-no-op, לא כשגיאה.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    CaseNotFoundError,
    ExternalServiceException,
    InvalidStateTransitionError,
)
from app.core.logging import get_logger
from app.core.time_utils import utc_now
from app.db.models.recovery_action import ActionType
from app.db.models.recovery_case import CaseStatus, RecoveryCase, generate_case_id
from app.domain.services.nudge_service import NudgeResult, NudgeService
from app.domain.services.recovery_audit import log_recovery_action
from app.domain.services.settings_service import SettingsService
from app.domain.services.whop_client import WhopClient

logger = get_logger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


class AttributionOutcome(str, enum.Enum):
    RECOVERED = "recovered"
    NO_OPEN_CASE = "no_open_case"
    OUTSIDE_WINDOW = "outside_window"
    ALREADY_TRANSITIONED = "already_transitioned"


@dataclass
class AttributionResult:
    outcome: AttributionOutcome
    case_id: str | None = None
    days_since_failure: float | None = None

    @property
    def recovered(self) -> bool:
        return self.outcome == AttributionOutcome.RECOVERED


@dataclass
class FailureResult:
    case_id: str
    created: bool
    attempts: int
    nudge: NudgeResult | None = None


class CaseService:

    def __init__(
        self,
        db: AsyncSession,
        whop_client: WhopClient | None = None,
        settings_service: SettingsService | None = None,
        nudge_service: NudgeService | None = None,
    ):
        self.db = db
        self.whop = whop_client or WhopClient()
        self.settings_service = settings_service or SettingsService(db)
        self.nudge_service = nudge_service or NudgeService(
            db, self.whop, self.settings_service
        )

    # ── שאילתות ──

    async def find_open_case(self, company_id: str, membership_id: str) -> RecoveryCase | None:
        result = await self.db.execute(
            select(RecoveryCase)
            .where(
                RecoveryCase.company_id == company_id,
                RecoveryCase.membership_id == membership_id,
                RecoveryCase.status == CaseStatus.OPEN,
            )
            .order_by(RecoveryCase.first_failure_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_case(self, case_id: str, company_id: str) -> RecoveryCase:
        """
        Raises:
            CaseNotFoundError: אין תיק כזה לחברה
        """
        result = await self.db.execute(
            select(RecoveryCase)
            .where(RecoveryCase.id == case_id, RecoveryCase.company_id == company_id)
            .execution_options(populate_existing=True)
        )
        recovery_case = result.scalar_one_or_none()
        if recovery_case is None:
            raise CaseNotFoundError(case_id)
        return recovery_case

    async def list_cases(
        self,
        company_id: str,
        status: CaseStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[RecoveryCase], int]:
        conditions = [RecoveryCase.company_id == company_id]
        if status is not None:
            conditions.append(RecoveryCase.status == status)

        total = await self.db.scalar(
            select(func.count(RecoveryCase.id)).where(*conditions)
        )
        result = await self.db.execute(
            select(RecoveryCase)
            .where(*conditions)
            .order_by(RecoveryCase.first_failure_at.desc(), RecoveryCase.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    async def _current_attempts(self, case_id: str) -> int:
        return await self.db.scalar(
            select(RecoveryCase.attempts).where(RecoveryCase.id == case_id)
        ) or 0

    # ── כשלון תשלום / membership לא תקף ──

    async def _create_case(
        self,
        company_id: str,
        membership_id: str,
        user_id: str,
        reason: str | None,
        failed_at: datetime,
    ) -> str | None:
        """מחזיר case id, או None אם תיק פתוח נוצר במקביל"""
        recovery_case = RecoveryCase(
            id=generate_case_id(),
            company_id=company_id,
            membership_id=membership_id,
            user_id=user_id,
            status=CaseStatus.OPEN,
            first_failure_at=failed_at,
            attempts=0,
            failure_reason=reason,
            incentive_days=0,
        )
        self.db.add(recovery_case)
        try:
            await self.db.commit()
        except IntegrityError:
            # האינדקס החלקי על תיק פתוח — מישהו אחר יצר אותו רגע לפנינו
            await self.db.rollback()
            logger.info(
                "Concurrent open case detected, merging",
                extra_data={"company_id": company_id, "membership_id": membership_id}
            )
            return None
        return recovery_case.id

    async def _merge_into(self, case_id: str, reason: str | None) -> bool:
        result = await self.db.execute(
            update(RecoveryCase)
            .where(RecoveryCase.id == case_id, RecoveryCase.status == CaseStatus.OPEN)
            .values(
                attempts=RecoveryCase.attempts + 1,
                last_nudge_at=utc_now(),
                failure_reason=func.coalesce(reason, RecoveryCase.failure_reason),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def create_or_merge(
        self,
        company_id: str,
        membership_id: str,
        user_id: str,
        reason: str | None,
        failed_at: datetime | None = None,
        *,
        event_id: str | None = None,
    ) -> FailureResult:
        """
        תיק פתוח קיים → מיזוג (attempts + 1) ו-nudge חוזר.
        אין תיק → יצירה עם attempts = 0 ו-nudge ראשון.
        """
        failed_at = failed_at or utc_now()

        # שני סיבובים: תיק שנסגר בין הקריאה למיזוג, או יצירה מקבילה
        for _ in range(2):
            existing = await self.find_open_case(company_id, membership_id)

            if existing is None:
                case_id = await self._create_case(
                    company_id, membership_id, user_id, reason, failed_at
                )
                if case_id is None:
                    continue
                logger.info(
                    "Recovery case created",
                    extra_data={
                        "case_id": case_id,
                        "event_id": event_id,
                        "membership_id": membership_id,
                        "reason": reason,
                    }
                )
                created_case = await self.get_case(case_id, company_id)
                nudge = await self._immediate_nudge(created_case, attempt_number=1)
                return FailureResult(
                    case_id=case_id,
                    created=True,
                    attempts=await self._current_attempts(case_id),
                    nudge=nudge,
                )

            case_id = existing.id
            if not await self._merge_into(case_id, reason):
                continue

            merged_case = await self.get_case(case_id, company_id)
            attempts = merged_case.attempts
            logger.info(
                "Failure merged into open case",
                extra_data={
                    "case_id": case_id,
                    "event_id": event_id,
                    "membership_id": membership_id,
                    "attempts": attempts,
                }
            )
            nudge = await self._immediate_nudge(merged_case, attempt_number=attempts)
            return FailureResult(
                case_id=case_id,
                created=False,
                attempts=await self._current_attempts(case_id),
                nudge=nudge,
            )

        raise RuntimeError(
            f"Could not create or merge recovery case for membership {membership_id}"
        )

    async def _immediate_nudge(self, recovery_case: RecoveryCase, attempt_number: int) -> NudgeResult | None:
        """כשלון של ה-nudge לא מבטל את יצירת/מיזוג התיק"""
        case_id = recovery_case.id
        try:
            return await self.nudge_service.send_nudge(recovery_case, max(attempt_number, 1))
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Immediate nudge failed",
                extra_data={"case_id": case_id, "error": str(e)},
                exc_info=True
            )
            return None

    # ── ייחוס שחזור ──

    async def mark_recovered(
        self,
        case_id: str,
        recovered_amount_cents: int,
        recovered_at: datetime | None = None,
    ) -> bool:
        """open → recovered. False אם התיק כבר לא פתוח."""
        result = await self.db.execute(
            update(RecoveryCase)
            .where(RecoveryCase.id == case_id, RecoveryCase.status == CaseStatus.OPEN)
            .values(
                status=CaseStatus.RECOVERED,
                recovered_amount_cents=recovered_amount_cents,
                recovered_at=recovered_at or utc_now(),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def attribute_recovery(
        self,
        company_id: str,
        membership_id: str,
        recovered_amount_cents: int,
        success_time: datetime | None = None,
        *,
        attribution_window_days: int | None = None,
        event_id: str | None = None,
    ) -> AttributionResult:
        success_time = success_time or utc_now()

        open_case = await self.find_open_case(company_id, membership_id)
        if open_case is None:
            logger.info(
                "No open case to recover",
                extra_data={"membership_id": membership_id, "event_id": event_id}
            )
            return AttributionResult(AttributionOutcome.NO_OPEN_CASE)

        case_id = open_case.id
        user_id = open_case.user_id
        first_failure_at = open_case.first_failure_at

        if attribution_window_days is None:
            company_settings = await self.settings_service.get_for_company(company_id)
            attribution_window_days = company_settings.attribution_window_days

        days = (success_time - first_failure_at).total_seconds() / _SECONDS_PER_DAY
        if days > attribution_window_days:
            logger.warning(
                "Success event outside attribution window",
                extra_data={
                    "case_id": case_id,
                    "event_id": event_id,
                    "membership_id": membership_id,
                    "first_failure_at": first_failure_at.isoformat(),
                    "success_time": success_time.isoformat(),
                    "days_since_failure": round(days, 3),
                    "attribution_window_days": attribution_window_days,
                }
            )
            return AttributionResult(AttributionOutcome.OUTSIDE_WINDOW, case_id, days)

        if not await self.mark_recovered(case_id, recovered_amount_cents, success_time):
            logger.info(
                "Case already transitioned, recovery is a no-op",
                extra_data={"case_id": case_id, "event_id": event_id}
            )
            return AttributionResult(AttributionOutcome.ALREADY_TRANSITIONED, case_id, days)

        logger.info(
            "Case marked as recovered",
            extra_data={
                "case_id": case_id,
                "event_id": event_id,
                "membership_id": membership_id,
                "recovered_amount_cents": recovered_amount_cents,
                "days_since_failure": round(days, 3),
            }
        )
        await log_recovery_action(
            self.db, company_id, case_id, membership_id, user_id,
            ActionType.CASE_RECOVERED,
            details={"recovered_amount_cents": recovered_amount_cents, "event_id": event_id},
        )
        return AttributionResult(AttributionOutcome.RECOVERED, case_id, days)

    # ── פעולות ידניות ──

    async def _require_open(self, case_id: str, company_id: str, target: CaseStatus) -> RecoveryCase:
        recovery_case = await self.get_case(case_id, company_id)
        if not recovery_case.is_open:
            raise InvalidStateTransitionError(case_id, recovery_case.status.value, target.value)
        return recovery_case

    async def nudge_case_again(
        self,
        case_id: str,
        company_id: str,
        actor: str = "anonymous",
    ) -> NudgeResult:
        """
        Raises:
            CaseNotFoundError
            InvalidStateTransitionError: התיק לא פתוח
        """
        recovery_case = await self._require_open(case_id, company_id, CaseStatus.OPEN)
        attempt_number = recovery_case.attempts + 1
        result = await self.nudge_service.send_nudge(
            recovery_case,
            attempt_number,
            audit_details={"manual": True, "actor": actor},
        )
        if not result.success:
            logger.warning(
                "Manual nudge was not delivered",
                extra_data={"case_id": case_id, "reason": result.skipped_reason}
            )
        return result

    async def cancel_case(self, case_id: str, company_id: str, actor: str = "anonymous") -> RecoveryCase:
        """
        open → closed. עוצר תזכורות עתידיות.

        Raises:
            CaseNotFoundError
            InvalidStateTransitionError: התיק כבר לא פתוח
        """
        recovery_case = await self._require_open(case_id, company_id, CaseStatus.CLOSED)
        membership_id = recovery_case.membership_id
        user_id = recovery_case.user_id

        result = await self.db.execute(
            update(RecoveryCase)
            .where(
                RecoveryCase.id == case_id,
                RecoveryCase.company_id == company_id,
                RecoveryCase.status == CaseStatus.OPEN,
            )
            .values(status=CaseStatus.CLOSED, closed_at=utc_now(), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount == 0:
            current = await self.get_case(case_id, company_id)
            raise InvalidStateTransitionError(case_id, current.status.value, CaseStatus.CLOSED.value)

        logger.info("Recovery case cancelled", extra_data={"case_id": case_id, "actor": actor})
        await log_recovery_action(
            self.db, company_id, case_id, membership_id, user_id,
            ActionType.CASE_CANCELLED,
            details={"manual": True, "actor": actor},
        )
        return await self.get_case(case_id, company_id)

    async def terminate_membership(
        self,
        case_id: str,
        company_id: str,
        actor: str = "anonymous",
    ) -> RecoveryCase:
        """
        סיום ה-membership ב-Whop וסגירת התיק (אם עדיין פתוח).

        Raises:
            CaseNotFoundError
            ExternalServiceException: Whop דחה את הבקשה
        """
        recovery_case = await self.get_case(case_id, company_id)
        membership_id = recovery_case.membership_id
        user_id = recovery_case.user_id

        terminated = await self.whop.terminate_membership(membership_id)
        if not terminated.success:
            raise ExternalServiceException(
                "whop",
                f"Failed to terminate membership: {terminated.error}",
                details={"case_id": case_id, "membership_id": membership_id},
            )

        await self.db.execute(
            update(RecoveryCase)
            .where(RecoveryCase.id == case_id, RecoveryCase.status == CaseStatus.OPEN)
            .values(status=CaseStatus.CLOSED, closed_at=utc_now(), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            "Membership terminated",
            extra_data={"case_id": case_id, "membership_id": membership_id, "actor": actor}
        )
        await log_recovery_action(
            self.db, company_id, case_id, membership_id, user_id,
            ActionType.MEMBERSHIP_TERMINATED,
            details={"manual": True, "actor": actor},
        )
        return await self.get_case(case_id, company_id)
