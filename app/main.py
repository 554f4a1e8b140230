"""
Churn Recovery - Main FastAPI Application

Webhook intake, recovery-case admin endpoints, scheduler triggers and
per-company settings. Background work runs in Celery (app/workers).
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
from app.db import models  # noqa: F401  רישום הטבלאות ב-Base.metadata
from app.domain.services import job_handlers  # noqa: F401  רישום handlers בתור העבודות

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)

_DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

_OPENAPI_TAGS = [
    {"name": "webhooks", "description": "Webhook של Whop: אימות חתימה, שמירה idempotent ומסירה לתור."},
    {"name": "cases", "description": "תיקי שחזור: רשימה, nudge חוזר, ביטול וסיום membership."},
    {"name": "scheduler", "description": "הפעלת ריצת תזכורות ומצב תור העבודות."},
    {"name": "settings", "description": "הגדרות שחזור לכל חברה (ערוצים, תמריץ, offsets)."},
    {"name": "Health", "description": "Liveness ו-Readiness."},
]

_READINESS_EXAMPLES = {
    200: ("כל התלויות תקינות", {"status": "healthy", "db": "ok", "redis": "ok", "dead_letter_jobs": 0}),
    503: (
        "לפחות תלות אחת לא זמינה",
        {"status": "degraded", "db": "ok", "redis": "error: redis_unavailable", "dead_letter_jobs": 0},
    ),
}


def _parse_allowed_origins(raw: str) -> list[str]:
    """Comma-separated ALLOWED_ORIGINS → list, blanks dropped"""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _configure_cors(app: FastAPI) -> None:
    origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)
    if not origins and settings.DEBUG:
        origins = _DEV_ORIGINS
    if not origins:
        return

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Company-Id", "X-Admin-API-Key"],
    )


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="שחזור תשלומים שנכשלו עבור יוצרים ב-Whop: קליטת webhooks, תיקי שחזור, תזכורות ותמריצים.",
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

setup_middleware(app)
setup_exception_handlers(app)
_configure_cors(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    logger.info(
        "Starting application",
        extra_data={
            "app_name": settings.APP_NAME,
            "production": settings.is_production,
            "push_enabled": settings.ENABLE_PUSH,
            "dm_enabled": settings.ENABLE_DM,
            "reminder_offsets": settings.reminder_offsets,
        },
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    from app.core.redis_client import close_redis

    logger.info("Shutting down application")
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="התהליך חי ומגיב. לא בודק DB/Redis כדי שתקלה בהם לא תגרום ל-restart.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת DB ו-Redis. 200 עם status=healthy כששניהם תקינים, אחרת 503 עם status=degraded. "
        "מספר העבודות ב-dead-letter מדווח בנוסף ולא משפיע על הסטטוס."
    ),
    responses={
        code: {"description": text, "content": {"application/json": {"example": example}}}
        for code, (text, example) in _READINESS_EXAMPLES.items()
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)
