"""
Custom Exception Hierarchy

Structured exceptions for consistent error handling across the pipeline.
Expected business outcomes (duplicate event, success outside the
attribution window, lost race on a case transition) are NOT exceptions;
they are returned as outcome values by the services.
"""
from datetime import datetime
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook errors (2xxx)
    INVALID_SIGNATURE = "ERR_2001"
    STALE_TIMESTAMP = "ERR_2002"
    INVALID_PAYLOAD = "ERR_2003"

    # Recovery case errors (3xxx)
    CASE_NOT_FOUND = "ERR_3001"
    INVALID_CASE_TRANSITION = "ERR_3002"

    # Settings errors (4xxx)
    INVALID_SETTINGS = "ERR_4001"

    # External service errors (5xxx)
    WHOP_API_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    TRANSIENT_FAILURE = "ERR_5005"

    # Job queue errors (6xxx)
    JOB_HANDLER_MISSING = "ERR_6001"
    JOB_FAILED = "ERR_6002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails (malformed JSON, missing fields)"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class AuthenticationException(AppException):
    """Bad or missing signature, stale or future timestamp. Never retried."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INVALID_SIGNATURE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=401,
            details=details
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class CaseNotFoundError(NotFoundException):
    """Raised when a recovery case does not exist for the company"""

    def __init__(self, case_id: str):
        super().__init__("RecoveryCase", case_id, ErrorCode.CASE_NOT_FOUND)


class InvalidStateTransitionError(AppException):
    """Raised by explicit operator actions on a case that is no longer open"""

    def __init__(self, case_id: str, current_state: str, target_state: str):
        super().__init__(
            message=f"Cannot transition case from {current_state} to {target_state}",
            error_code=ErrorCode.INVALID_CASE_TRANSITION,
            status_code=409,
            details={
                "case_id": case_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class RateLimitExceededException(AppException):
    """Raised when a fixed-bucket rate limit denies a request"""

    def __init__(self, identifier: str, retry_after: int, reset_at: datetime):
        super().__init__(
            message="Rate limit exceeded",
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={
                "identifier": identifier,
                "retry_after": retry_after,
                "reset_at": reset_at.isoformat(),
            }
        )
        self.retry_after = retry_after
        self.reset_at = reset_at


class SettingsValidationError(ValidationException):
    """Raised when creator settings are out of range"""

    def __init__(self, errors: list[str]):
        super().__init__(
            message="Invalid creator settings",
            details={"errors": errors},
            error_code=ErrorCode.INVALID_SETTINGS,
        )
        self.errors = errors


class TransientError(AppException):
    """Backing-store or external failure worth retrying"""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.TRANSIENT_FAILURE,
            status_code=503,
            details=details
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class WhopAPIError(ExternalServiceException):
    """Whop API returned a non-success status or an unusable body"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name="whop",
            message=message,
            error_code=ErrorCode.WHOP_API_ERROR,
            details=details
        )
        self.api_status_code = status_code

    @property
    def is_client_error(self) -> bool:
        """4xx responses are permanent and must not be retried"""
        return self.api_status_code is not None and 400 <= self.api_status_code < 500

    @classmethod
    def from_response(
        cls,
        endpoint: str,
        response: Any,
        *,
        message: str | None = None,
    ) -> "WhopAPIError":
        status_code = getattr(response, "status_code", None)
        body = getattr(response, "text", "") or ""
        return cls(
            message=message or f"Whop API error: {status_code} {body[:200]}",
            status_code=status_code,
            details={
                "endpoint": endpoint,
                "status_code": status_code,
                "response_body": body[:500],
            },
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when the circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"Service {service_name} is temporarily unavailable",
            details={"retry_after_seconds": retry_after_seconds}
        )


class JobHandlerError(AppException):
    """Raised by a job handler to request a retry of the job"""

    def __init__(self, message: str, job_id: int | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.JOB_FAILED,
            details={"job_id": job_id} if job_id is not None else None
        )
