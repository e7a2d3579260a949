"""
Unified exception handling for the meeting webhook pipeline.

This module provides:
- Webhook exceptions mapped to HTTP status codes for the inbound endpoints
- Job exceptions classified as retryable or fatal for the queue worker
- Standardized error response format and FastAPI exception handlers
"""

from __future__ import annotations

from typing import Any, Optional, Dict
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR = "Internal Server Error"


# =============================================================================
# Error Response Schema
# =============================================================================

class ErrorDetail(BaseModel):
    """Standardized error detail."""
    code: str
    message: str
    field: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    success: bool = False
    error: ErrorDetail
    request_id: Optional[str] = None


# =============================================================================
# Custom Exception Classes
# =============================================================================

class PipelineException(Exception):
    """Base exception for the meeting webhook pipeline."""

    # When False the HTTP response carries only a generic message.
    expose: bool = True

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        self.field = field
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to standardized error response."""
        if not self.expose:
            return ErrorResponse(
                error=ErrorDetail(code="INTERNAL_ERROR", message=GENERIC_SERVER_ERROR)
            )
        return ErrorResponse(
            error=ErrorDetail(
                code=self.code,
                message=self.message,
                field=self.field,
                details=self.details,
            )
        )


# --- Webhook Errors ---

class WebhookSignatureError(PipelineException):
    """Webhook signature did not match."""

    def __init__(self, platform: str = "tencent"):
        super().__init__(
            message="Invalid webhook signature",
            code="INVALID_SIGNATURE",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"platform": platform},
        )


class WebhookDecryptionError(PipelineException):
    """Ciphertext could not be decrypted. The reason stays in the logs."""

    expose = False

    def __init__(self, reason: str):
        super().__init__(
            message=f"Webhook decryption failed: {reason}",
            code="DECRYPTION_FAILED",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        self.reason = reason


class WebhookConfigError(PipelineException):
    """Webhook credentials are missing or malformed."""

    expose = False

    def __init__(self, setting: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Webhook setting {setting} is not configured",
            code="WEBHOOK_CONFIG_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"setting": setting},
        )


class WebhookMissingParameterError(PipelineException):
    """A required header, query parameter or body field was absent."""

    def __init__(self, parameters: list):
        super().__init__(
            message=f"Missing required parameters: {', '.join(parameters)}",
            code="MISSING_PARAMETERS",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"parameters": parameters},
        )


class WebhookDataFormatError(PipelineException):
    """Event body is malformed for its event type."""

    def __init__(self, field: str, expected: str, platform: str = "tencent"):
        super().__init__(
            message=f"Invalid webhook data: '{field}' must be {expected}",
            code="INVALID_EVENT_FORMAT",
            status_code=status.HTTP_400_BAD_REQUEST,
            field=field,
            details={"expected": expected, "platform": platform},
        )
        self.expected = expected
        self.platform = platform


class UnsupportedWebhookEventError(PipelineException):
    """Event type passed routing but has no registered handler."""

    def __init__(self, platform: str, event_type: str):
        super().__init__(
            message=f"No handler registered for {platform} event '{event_type}'",
            code="UNSUPPORTED_EVENT",
            status_code=status.HTTP_200_OK,
            details={"platform": platform, "event_type": event_type},
        )
        self.platform = platform
        self.event_type = event_type


class PlatformApiError(PipelineException):
    """Provider REST API returned an error."""

    def __init__(
        self,
        platform: str,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[Any] = None,
    ):
        super().__init__(
            message=f"{platform} {operation} failed: {message}",
            code="PLATFORM_API_ERROR",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={
                "platform": platform,
                "operation": operation,
                "http_status": status_code,
                "error_code": error_code,
            },
        )
        self.platform = platform
        self.operation = operation
        self.http_status = status_code
        self.error_code = error_code
        self.provider_message = message

    @property
    def is_transient(self) -> bool:
        """Server-side or throttling failures that may succeed later."""
        return self.http_status is None or self.http_status == 429 or self.http_status >= 500


# --- Job Errors ---

class JobError(PipelineException):
    """Base class for errors raised while processing a queued job."""

    retryable: bool = True

    def __init__(self, message: str, code: str = "JOB_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code=code, details=details)


class RetryableJobError(JobError):
    """Job failed but the queue's backoff policy should try again."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="JOB_RETRYABLE", details=details)


class FatalJobError(JobError):
    """Job can never succeed; move it to the failed set immediately."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="JOB_FATAL", details=details)


class RecordingStillProcessingError(RetryableJobError):
    """Provider has not finished producing the recording artifact."""

    def __init__(self, meeting_id: str, attempts: int):
        super().__init__(
            message=f"Recording for meeting {meeting_id} still processing after {attempts} attempts",
            details={"meeting_id": meeting_id, "attempts": attempts},
        )


class RecordingPermanentFailureError(FatalJobError):
    """Recording lookup failed in a way retries cannot fix."""

    def __init__(self, meeting_id: str, reason: str):
        super().__init__(
            message=f"Recording for meeting {meeting_id} unavailable: {reason}",
            details={"meeting_id": meeting_id, "reason": reason},
        )


class DownstreamWriteConflictError(RetryableJobError):
    """Concurrent writers collided on the same natural key."""

    def __init__(self, natural_key: str):
        super().__init__(
            message=f"Write conflict on meeting {natural_key}",
            details={"natural_key": natural_key},
        )


class QueueAttemptsExhaustedError(JobError):
    """Job used up its attempts and was moved to the failed set."""

    retryable = False

    def __init__(self, job_id: str, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            message=f"Job {job_id} failed after {attempts} attempts: {last_error}",
            code="JOB_ATTEMPTS_EXHAUSTED",
            details={"job_id": job_id, "attempts": attempts},
        )


class InvalidStatusTransitionError(PipelineException):
    """A status write would move a meeting backwards."""

    def __init__(self, field: str, current: str, requested: str):
        super().__init__(
            message=f"Cannot move {field} from {current} to {requested}",
            code="INVALID_STATUS_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            field=field,
            details={"current": current, "requested": requested},
        )


# =============================================================================
# Exception Handlers for FastAPI
# =============================================================================

async def pipeline_exception_handler(request: Request, exc: PipelineException) -> JSONResponse:
    """Handle PipelineException and return standardized response."""
    if exc.status_code >= 500:
        logger.error(
            f"PipelineException: {exc.code} - {exc.message}",
            extra={"details": exc.details, "path": request.url.path},
        )
    else:
        logger.warning(
            f"PipelineException: {exc.code} - {exc.message}",
            extra={"details": exc.details, "path": request.url.path},
        )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException and convert to standardized response."""
    code_map = {
        400: "BAD_REQUEST",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }

    response = ErrorResponse(
        error=ErrorDetail(
            code=code_map.get(exc.status_code, "UNKNOWN_ERROR"),
            message=str(exc.detail),
        )
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=response.model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True,
        extra={"path": request.url.path},
    )

    response = ErrorResponse(
        error=ErrorDetail(code="INTERNAL_ERROR", message=GENERIC_SERVER_ERROR)
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=response.model_dump(),
    )


def register_exception_handlers(app):
    """Register all exception handlers with FastAPI app."""
    app.add_exception_handler(PipelineException, pipeline_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
