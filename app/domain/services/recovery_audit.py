"""
Audit trail לפעולות על תיקי שחזור (recovery_actions).

כתיבת audit לעולם לא מכשילה את הפעולה עצמה — כשלון נרשם ללוג בלבד.
"""
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.recovery_action import ActionType, RecoveryAction

logger = get_logger(__name__)


async def log_recovery_action(
    db: AsyncSession,
    company_id: str,
    case_id: str | None,
    membership_id: str,
    user_id: str,
    action_type: ActionType,
    channel: str | None = None,
    details: dict[str, Any] | None = None,
) -> bool:
    try:
        db.add(RecoveryAction(
            company_id=company_id,
            case_id=case_id,
            membership_id=membership_id,
            user_id=user_id,
            type=action_type,
            channel=channel,
            details=details or {},
        ))
        await db.commit()
        return True
    except Exception as e:
        await db.rollback()
        logger.error(
            "Failed to log recovery action",
            extra_data={
                "company_id": company_id,
                "case_id": case_id,
                "membership_id": membership_id,
                "type": action_type.value,
                "error": str(e),
            }
        )
        return False
