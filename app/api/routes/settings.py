"""
Creator Settings API Routes
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key, require_company_id
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.settings_service import SettingsService

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class SettingsResponse(BaseModel):
    company_id: str
    enable_push: bool
    enable_dm: bool
    incentive_days: int
    reminder_offsets_days: list[int]
    attribution_window_days: int


class SettingsUpdate(BaseModel):
    """טווחים נבדקים ב-SettingsService; כאן רק טיפוסים"""
    enable_push: bool
    enable_dm: bool
    incentive_days: int
    reminder_offsets_days: list[int] = Field(default_factory=lambda: [0, 2, 4])
    attribution_window_days: int | None = None


@router.get(
    "",
    response_model=SettingsResponse,
    summary="הגדרות שחזור של החברה",
    description="ערכי ברירת מחדל מהסביבה אם לחברה אין הגדרות שמורות.",
)
async def get_settings(
    company_id: str = Depends(require_company_id),
    db: AsyncSession = Depends(get_db),
) -> SettingsResponse:
    company_settings = await SettingsService(db).get_for_company(company_id)
    return SettingsResponse(**company_settings.to_dict())


@router.put(
    "",
    response_model=SettingsResponse,
    summary="עדכון הגדרות שחזור",
    description="400 אם ערך מחוץ לטווח (incentive 0..365, offsets >= 0, window 1..365).",
)
async def update_settings(
    body: SettingsUpdate,
    company_id: str = Depends(require_company_id),
    db: AsyncSession = Depends(get_db),
) -> SettingsResponse:
    company_settings = await SettingsService(db).upsert(
        company_id,
        enable_push=body.enable_push,
        enable_dm=body.enable_dm,
        incentive_days=body.incentive_days,
        reminder_offsets_days=body.reminder_offsets_days,
        attribution_window_days=body.attribution_window_days,
    )
    return SettingsResponse(**company_settings.to_dict())
