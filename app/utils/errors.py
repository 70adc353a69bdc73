"""Service error taxonomy and sanitization for external callers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from app.config.logger import app_logger

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."


class ServiceError(Exception):
    """Base class for errors that are safe to describe to callers."""

    status_code: int = 500
    code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class TransientProviderError(ServiceError):
    """Network failure or rate limit from an external provider."""

    status_code = 503
    code = "provider_unavailable"
    retryable = True

    def __init__(self, message: str, *, status: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.status = status


class ProviderTimeoutError(ServiceError):
    """An external call exceeded its time budget."""

    status_code = 504
    code = "provider_timeout"


class ValidationError(ServiceError):
    """Malformed input or a request the provider rejected."""

    status_code = 400
    code = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    """A lock or claim is already held by another worker."""

    status_code = 409
    code = "already_in_progress"


class ConfigurationError(ServiceError):
    """A required client or credential is not configured."""

    status_code = 503
    code = "not_configured"


class PartialBatchFailure(ServiceError):
    """Some items in a batch failed; the batch itself completed."""

    status_code = 200
    code = "partial_failure"

    def __init__(self, message: str, *, results: List[Dict[str, Any]]):
        super().__init__(message)
        self.results = results

    @property
    def failed(self) -> List[Dict[str, Any]]:
        return [r for r in self.results if r.get("status") == "failed"]


def new_request_id() -> str:
    return uuid4().hex[:16]


def public_message(exc: BaseException) -> str:
    """Message that may be shown to callers; never raw provider text."""
    if isinstance(exc, ServiceError):
        return exc.message
    return GENERIC_ERROR_MESSAGE


def sanitize_error(exc: BaseException, request_id: str, context: str = "request") -> Dict[str, Any]:
    """Log the full error server-side and return a payload safe for callers."""
    if isinstance(exc, ServiceError):
        app_logger.bind(request_id=request_id, code=exc.code).warning(
            f"{context} failed: {exc.message} ({exc.detail or 'no detail'})"
        )
        return {
            "error": exc.message,
            "code": exc.code,
            "request_id": request_id,
        }

    app_logger.bind(request_id=request_id, error_type=type(exc).__name__).opt(exception=exc).error(
        f"{context} failed unexpectedly: {exc}"
    )
    return {
        "error": GENERIC_ERROR_MESSAGE,
        "code": "internal_error",
        "request_id": request_id,
    }
