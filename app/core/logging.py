"""
Structured Logging Infrastructure

Two context variables travel with every request and every queued job:
the correlation id (tracing) and the company id (tenant). Both are
stamped onto JSON records in production and onto the text line in
development. Callers attach structured fields with ``extra_data=``.
"""
import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
company_id_var: ContextVar[str] = ContextVar("company_id", default="")

_TEXT_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "[%(correlation_id)s|%(company_id)s] | %(message)s"
)

# ספריות רועשות - רק אזהרות ומעלה
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
}


def _context_fields() -> dict[str, str]:
    fields = {}
    if correlation_id_var.get():
        fields["correlation_id"] = correlation_id_var.get()
    if company_id_var.get():
        fields["company_id"] = company_id_var.get()
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping in production"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            **_context_fields(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_entry["extra"] = extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """
    Logger שמקבל ``extra_data`` בכל קריאה (info/warning/error וכו').

    כל מתודות הרמה של logging.Logger עוברות דרך ``_log``, לכן מספיק
    לעטוף אותה ולהעביר את ה-dict ל-record.
    """

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, extra_data: dict[str, Any] | None = None) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel,
        )


logging.setLoggerClass(StructuredLogger)


class ContextFilter(logging.Filter):
    """Fills correlation_id and company_id for the text formatter"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.company_id = company_id_var.get() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "churn-recovery"
) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        json_format: JSON lines (production) or a human-readable line (development)
        app_name: Name reported in the startup record
    """
    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(ContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.getLogger(__name__).info(f"Logging configured for {app_name}")


def generate_correlation_id() -> str:
    """8-char hex id, short enough to grep for"""
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation id; one is created on first use"""
    return correlation_id_var.get() or set_correlation_id()


@contextmanager
def company_context(company_id: str | None) -> Iterator[None]:
    """Scope log records to a company for the duration of the block"""
    token = company_id_var.set(company_id or "")
    try:
        yield
    finally:
        company_id_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]
