"""Generic response models for consistent API responses."""

from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from app.config.settings import settings

T = TypeVar("T")


class ResponseMetadata(BaseModel):
    """Metadata included in all API responses."""

    app_name: str = Field(default=settings.APP_NAME)
    app_version: str = Field(default=settings.APP_VERSION)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {
        "json_schema_extra": {
            "example": {
                "app_name": "Knowledge Hub Backend",
                "app_version": "1.0.0",
                "timestamp": "2025-11-03T15:58:36Z",
            }
        }
    }


class SuccessResponse(BaseModel, Generic[T]):
    """Generic success response with data and metadata."""

    success: bool = Field(default=True)
    message: str = Field(default="Operation completed successfully")
    data: T
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


class ErrorResponse(BaseModel):
    """Standard error response structure.

    ``error`` is always safe to show; internal details stay in the server logs
    and can be found again by ``request_id``.
    """

    success: bool = Field(default=False)
    error: str
    code: str = Field(default="internal_error")
    request_id: Optional[str] = None
    detail: Optional[str] = None
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "error": "Sync already in progress for folder 1AbC",
                "code": "already_in_progress",
                "request_id": "4f9c2a7e1b3d8c60",
                "metadata": {
                    "app_name": "Knowledge Hub Backend",
                    "app_version": "1.0.0",
                    "timestamp": "2025-11-03T15:58:36Z",
                },
            }
        }
    }


class PartialFailureResponse(BaseModel):
    """A batch that completed with some failed items."""

    success: bool = Field(default=False)
    message: str
    code: str = Field(default="partial_failure")
    request_id: Optional[str] = None
    results: List[Dict[str, Any]] = Field(default_factory=list)
    failed_count: int = Field(default=0, ge=0)
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


# Helper functions to create responses
def success_response(
    data: T,
    message: str = "Operation completed successfully",
    **kwargs: Any
) -> SuccessResponse[T]:
    """Create a success response."""
    return SuccessResponse(
        success=True,
        message=message,
        data=data,
        metadata=ResponseMetadata(**kwargs) if kwargs else ResponseMetadata()
    )


def error_response(
    error: str,
    code: str = "internal_error",
    request_id: Optional[str] = None,
    detail: Optional[str] = None,
) -> ErrorResponse:
    """Create an error response."""
    return ErrorResponse(success=False, error=error, code=code, request_id=request_id, detail=detail)
