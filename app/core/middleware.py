"""
FastAPI Middleware

Stack (outermost first): SecurityHeaders → CorrelationId → RequestLogging → app.

- CorrelationId: correlation id from X-Correlation-ID (or a fresh one) and the
  tenant from X-Company-Id, both bound to the logging context.
- RequestLogging: one record per request; Whop member/user ids in the path are masked.
- Exception handlers: AppException → its envelope, anything else → opaque 500.
"""
import re
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode, RateLimitExceededException
from app.core.logging import (
    company_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

# mem_xxx / user_xxx - נשארים הקידומת ו-4 תווים
_WHOP_ID_IN_PATH_RE = re.compile(r"\b(mem|user)_([A-Za-z0-9]{4})[A-Za-z0-9]+")

# probes של ה-orchestrator נרשמים ב-DEBUG בלבד
_PROBE_PATHS = frozenset({"/health", "/health/ready"})


def _mask_path_pii(path: str) -> str:
    return _WHOP_ID_IN_PATH_RE.sub(r"\1_\2****", path)


def _response_headers(exc: AppException | None = None) -> dict[str, str]:
    headers = {"X-Correlation-ID": get_correlation_id()}
    if isinstance(exc, RateLimitExceededException):
        headers["Retry-After"] = str(exc.retry_after)
    return headers


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds correlation id and company id for everything logged during the request"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        with company_context(request.headers.get("X-Company-Id")):
            response = await call_next(request)

        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, masked path, status and latency of every request"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        fields = {
            "method": request.method,
            "path": _mask_path_pii(request.url.path),
            "client_host": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 1)
            fields["error"] = str(e)
            logger.error(f"Request failed: {request.method} {fields['path']}", extra_data=fields, exc_info=True)
            raise

        fields["status_code"] = response.status_code
        fields["duration_ms"] = round((time.perf_counter() - started) * 1000, 1)

        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        elif request.url.path in _PROBE_PATHS:
            log = logger.debug
        else:
            log = logger.info
        log(f"{request.method} {fields['path']} -> {response.status_code}", extra_data=fields)

        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """AppException → ``{"error": {"code", "message", "details"}}`` with its status"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": _mask_path_pii(request.url.path),
        }
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=_response_headers(exc))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected errors are logged in full; the client only sees a generic 500"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": _mask_path_pii(request.url.path),
        },
        exc_info=True
    )
    body = {
        "error": {
            "code": ErrorCode.INTERNAL_ERROR.value,
            "message": "An unexpected error occurred",
            "details": {},
        }
    }
    return JSONResponse(status_code=500, content=body, headers=_response_headers())


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    כותרות אבטחה לכל תשובה.

    nosniff תמיד. CSP ו-HSTS רק מחוץ ל-DEBUG, כדי לא לשבור פיתוח מקומי ב-HTTP.
    """

    _STRICT_HEADERS = {
        "Content-Security-Policy": "upgrade-insecure-requests",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    }

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers.update(self._STRICT_HEADERS)
        return response


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # ב-Starlette ה-middleware האחרון שנוסף הוא ה-outermost
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
