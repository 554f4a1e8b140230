"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.cases import router as cases_router
from app.api.routes.scheduler import router as scheduler_router
from app.api.routes.settings import router as settings_router
from app.api.webhooks.whop import router as whop_router

router = APIRouter()

router.include_router(cases_router, prefix="/cases", tags=["cases"])
router.include_router(scheduler_router, prefix="/scheduler", tags=["scheduler"])
router.include_router(settings_router, prefix="/settings", tags=["settings"])
router.include_router(whop_router, prefix="/webhooks", tags=["webhooks"])
