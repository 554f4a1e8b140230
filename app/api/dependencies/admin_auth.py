"""
אימות מפתח API ושיוך חברה עבור endpoints של אדמין (תיקים, scheduler, הגדרות).

שימוש:
    @router.post("/{case_id}/cancel")
    async def cancel(
        case_id: str,
        company_id: str = Depends(require_company_id),
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    ולידציה של מפתח API לגישת אדמין.

    זורק 401 אם המפתח חסר, 403 אם לא תואם.
    אם ADMIN_API_KEY לא מוגדר בסביבה — הגישה חסומה לחלוטין.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("גישה ל-admin endpoint נדחתה — ADMIN_API_KEY לא מוגדר")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY לא מוגדר בסביבה",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="חסר מפתח API — נדרש header: X-Admin-API-Key",
        )

    if not hmac.compare_digest(api_key.encode(), settings.ADMIN_API_KEY.encode()):
        logger.warning("גישה ל-admin endpoint נדחתה — מפתח API שגוי")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="מפתח API לא תקין",
        )


async def require_company_id(
    x_company_id: str | None = Header(default=None, alias="X-Company-Id"),
) -> str:
    """החברה שעליה פועלת הבקשה. כל פעולה על תיקים והגדרות מוגבלת אליה."""
    company_id = (x_company_id or "").strip()
    if not company_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="חסר header: X-Company-Id",
        )
    return company_id
