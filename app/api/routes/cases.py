"""
Recovery Case API Routes

פעולות אדמין על תיקי שחזור: רשימה, nudge חוזר, ביטול וסיום membership.
כל פעולה על תיק מוגבלת בקצב לפי התיק (caseActions).
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key, require_company_id
from app.api.dependencies.rate_limit import enforce_rate_limit
from app.core.exceptions import ValidationException
from app.core.logging import company_context, get_logger
from app.db.database import get_db
from app.db.models.recovery_case import CaseStatus
from app.domain.services.case_service import CaseService

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_ADMIN_ACTOR = "admin_api"


class CaseResponse(BaseModel):
    """Response schema for a recovery case"""
    id: str
    company_id: str
    membership_id: str
    user_id: str
    status: CaseStatus
    attempts: int
    incentive_days: int
    failure_reason: str | None
    first_failure_at: datetime
    last_nudge_at: datetime | None
    recovered_amount_cents: int | None
    recovered_at: datetime | None
    closed_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("status")
    def serialize_status(self, v: CaseStatus) -> str:
        return v.value


class CaseListResponse(BaseModel):
    items: list[CaseResponse]
    total: int
    limit: int
    offset: int


class NudgeResponse(BaseModel):
    case_id: str
    attempt_number: int
    push_sent: bool
    dm_sent: bool
    incentive_applied: bool
    skipped_reason: str | None = None
    success: bool


def _parse_status(value: str | None) -> CaseStatus | None:
    if value is None:
        return None
    try:
        return CaseStatus(value.lower())
    except ValueError:
        raise ValidationException(
            f"Invalid status filter: {value}",
            details={"allowed": [s.value for s in CaseStatus]},
        )


@router.get(
    "",
    response_model=CaseListResponse,
    summary="רשימת תיקי שחזור",
    description="תיקים של החברה, החדשים קודם. סינון אופציונלי לפי status.",
)
async def list_cases(
    status: str | None = Query(None, description="open / recovered / closed"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    company_id: str = Depends(require_company_id),
    db: AsyncSession = Depends(get_db),
) -> CaseListResponse:
    cases, total = await CaseService(db).list_cases(
        company_id, _parse_status(status), limit=limit, offset=offset
    )
    return CaseListResponse(
        items=[CaseResponse.model_validate(c) for c in cases],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{case_id}",
    response_model=CaseResponse,
    summary="תיק שחזור בודד",
)
async def get_case(
    case_id: str,
    company_id: str = Depends(require_company_id),
    db: AsyncSession = Depends(get_db),
) -> CaseResponse:
    recovery_case = await CaseService(db).get_case(case_id, company_id)
    return CaseResponse.model_validate(recovery_case)


@router.post(
    "/{case_id}/nudge",
    response_model=NudgeResponse,
    summary="שליחת nudge חוזר",
    description="תזכורת נוספת בערוצים הפעילים. 409 אם התיק כבר לא פתוח.",
)
async def nudge_case(
    case_id: str,
    company_id: str = Depends(require_company_id),
    db: AsyncSession = Depends(get_db),
) -> NudgeResponse:
    await enforce_rate_limit(db, "caseActions", f"cases:action:{case_id}")
    with company_context(company_id):
        result = await CaseService(db).nudge_case_again(case_id, company_id, _ADMIN_ACTOR)
    return NudgeResponse(
        case_id=case_id,
        attempt_number=result.attempt_number,
        push_sent=result.push_sent,
        dm_sent=result.dm_sent,
        incentive_applied=result.incentive_applied,
        skipped_reason=result.skipped_reason,
        success=result.success,
    )


@router.post(
    "/{case_id}/cancel",
    response_model=CaseResponse,
    summary="ביטול תיק",
    description="open → closed. עוצר תזכורות עתידיות. 409 אם התיק כבר לא פתוח.",
)
async def cancel_case(
    case_id: str,
    company_id: str = Depends(require_company_id),
    db: AsyncSession = Depends(get_db),
) -> CaseResponse:
    await enforce_rate_limit(db, "caseActions", f"cases:action:{case_id}")
    with company_context(company_id):
        recovery_case = await CaseService(db).cancel_case(case_id, company_id, _ADMIN_ACTOR)
    return CaseResponse.model_validate(recovery_case)


@router.post(
    "/{case_id}/terminate",
    response_model=CaseResponse,
    summary="סיום membership",
    description="מסיים את ה-membership ב-Whop וסוגר את התיק אם עדיין פתוח.",
)
async def terminate_membership(
    case_id: str,
    company_id: str = Depends(require_company_id),
    db: AsyncSession = Depends(get_db),
) -> CaseResponse:
    await enforce_rate_limit(db, "caseActions", f"cases:action:{case_id}")
    with company_context(company_id):
        recovery_case = await CaseService(db).terminate_membership(case_id, company_id, _ADMIN_ACTOR)
    return CaseResponse.model_validate(recovery_case)
