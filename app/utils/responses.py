"""Envelopes wrapping every /v1/knowledge response body."""

from datetime import datetime, timezone
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from app.config.settings import settings

T = TypeVar("T")

_EXAMPLE_METADATA = {
    "app_name": "Knowledge Base Backend",
    "app_version": "1.0.0",
    "timestamp": "2026-03-02T09:14:00Z",
}


class ResponseMetadata(BaseModel):
    app_name: str = Field(default=settings.APP_NAME)
    app_version: str = Field(default=settings.APP_VERSION)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SuccessResponse(BaseModel, Generic[T]):
    """Payload plus a human readable message."""

    success: bool = True
    message: str
    data: T
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "message": "Sync started",
                "data": {"job_id": "4f7c1a2e-4d0b-4c55-9a51-0d3c9f6f7a10", "reused": False},
                "metadata": _EXAMPLE_METADATA,
            }
        }
    }


class ErrorResponse(BaseModel):
    """Failure body; ``error`` is the service exception class name."""

    success: bool = False
    error: str
    detail: Optional[str] = None
    retry_after_seconds: Optional[int] = Field(
        default=None,
        description="Set on cooldown rejections; mirrors the Retry-After header.",
    )
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "error": "SyncCooldownError",
                "detail": "Sync cooldown: please wait 12 seconds before syncing again",
                "retry_after_seconds": 12,
                "metadata": _EXAMPLE_METADATA,
            }
        }
    }


def success_response(data: T, message: str) -> SuccessResponse[T]:
    return SuccessResponse(message=message, data=data)


def error_response(error: str, detail: Optional[str] = None, retry_after_seconds: Optional[int] = None) -> ErrorResponse:
    return ErrorResponse(error=error, detail=detail, retry_after_seconds=retry_after_seconds)
