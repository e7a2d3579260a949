"""
Tests for unified exception handling.
"""

import json

import pytest
from fastapi import HTTPException, status
from unittest.mock import MagicMock

from app.core.exceptions import (
    # Base
    PipelineException,
    ErrorResponse,
    ErrorDetail,
    # Webhook errors
    WebhookSignatureError,
    WebhookDecryptionError,
    WebhookConfigError,
    WebhookMissingParameterError,
    WebhookDataFormatError,
    UnsupportedWebhookEventError,
    PlatformApiError,
    # Job errors
    JobError,
    RetryableJobError,
    FatalJobError,
    RecordingStillProcessingError,
    RecordingPermanentFailureError,
    DownstreamWriteConflictError,
    QueueAttemptsExhaustedError,
    InvalidStatusTransitionError,
    # Handlers
    pipeline_exception_handler,
    http_exception_handler,
    generic_exception_handler,
)


class TestErrorResponse:
    """Tests for ErrorResponse model."""

    def test_error_response_structure(self):
        response = ErrorResponse(
            error=ErrorDetail(
                code="TEST_ERROR",
                message="Test message",
                field="test_field",
                details={"key": "value"},
            ),
            request_id="req-123",
        )

        assert response.success is False
        assert response.error.code == "TEST_ERROR"
        assert response.error.field == "test_field"
        assert response.request_id == "req-123"

    def test_error_response_minimal(self):
        response = ErrorResponse(error=ErrorDetail(code="ERROR", message="Error"))

        assert response.error.field is None
        assert response.error.details is None


class TestPipelineException:
    """Tests for the base exception."""

    def test_basic_exception(self):
        exc = PipelineException("Something failed")

        assert exc.message == "Something failed"
        assert exc.code == "INTERNAL_ERROR"
        assert exc.status_code == 500
        assert str(exc) == "Something failed"

    def test_to_response(self):
        exc = PipelineException("Bad", code="BAD", status_code=400, field="x", details={"a": 1})

        response = exc.to_response()

        assert response.error.code == "BAD"
        assert response.error.field == "x"
        assert response.error.details == {"a": 1}


class TestWebhookErrors:
    """Tests for inbound webhook errors."""

    def test_signature_error(self):
        exc = WebhookSignatureError("lark")

        assert exc.status_code == status.HTTP_403_FORBIDDEN
        assert exc.code == "INVALID_SIGNATURE"
        assert exc.details == {"platform": "lark"}

    def test_decryption_error_not_exposed(self):
        exc = WebhookDecryptionError("Invalid padding bytes.")

        assert exc.status_code == 500
        assert "padding" in exc.message
        assert exc.to_response().error.message == "Internal Server Error"
        assert exc.to_response().error.details is None

    def test_config_error_not_exposed(self):
        exc = WebhookConfigError("TENCENT_ENCODING_AES_KEY")

        assert "TENCENT_ENCODING_AES_KEY" in exc.message
        assert "TENCENT" not in exc.to_response().error.message

    def test_missing_parameter_error(self):
        exc = WebhookMissingParameterError(["timestamp", "nonce"])

        assert exc.status_code == 400
        assert exc.message == "Missing required parameters: timestamp, nonce"
        assert exc.details == {"parameters": ["timestamp", "nonce"]}

    def test_data_format_error(self):
        exc = WebhookDataFormatError("payload[0].meeting_info", "an object")

        assert exc.status_code == 400
        assert exc.field == "payload[0].meeting_info"
        assert exc.message == "Invalid webhook data: 'payload[0].meeting_info' must be an object"

    def test_unsupported_event_is_ok_status(self):
        exc = UnsupportedWebhookEventError("tencent", "meeting.created")

        assert exc.status_code == 200
        assert exc.event_type == "meeting.created"


class TestPlatformApiError:
    """Tests for provider API errors."""

    @pytest.mark.parametrize("http_status,transient", [
        (None, True),
        (429, True),
        (500, True),
        (503, True),
        (400, False),
        (403, False),
        (404, False),
    ])
    def test_is_transient(self, http_status, transient):
        exc = PlatformApiError("lark", "get_meeting_recording", "x", status_code=http_status)
        assert exc.is_transient is transient

    def test_fields(self):
        exc = PlatformApiError("tencent", "get_recording_transcript", "denied", status_code=403, error_code=500125)

        assert exc.status_code == 502
        assert exc.http_status == 403
        assert exc.error_code == 500125
        assert exc.provider_message == "denied"
        assert exc.message == "tencent get_recording_transcript failed: denied"


class TestJobErrors:
    """Tests for retryable / fatal classification."""

    def test_retryable(self):
        assert RetryableJobError("x").retryable is True
        assert RecordingStillProcessingError("m1", 3).retryable is True
        assert DownstreamWriteConflictError("tencent:m1:__ROOT__").retryable is True

    def test_fatal(self):
        assert FatalJobError("x").retryable is False
        exc = RecordingPermanentFailureError("m1", "gone")
        assert exc.retryable is False
        assert isinstance(exc, FatalJobError)
        assert exc.details == {"meeting_id": "m1", "reason": "gone"}

    def test_exhausted(self):
        exc = QueueAttemptsExhaustedError("job-1", 5, "boom")

        assert isinstance(exc, JobError)
        assert exc.retryable is False
        assert "5 attempts" in exc.message

    def test_invalid_transition(self):
        exc = InvalidStatusTransitionError("processing_status", "completed", "pending")

        assert exc.status_code == 409
        assert exc.field == "processing_status"


class TestExceptionHandlers:
    """Tests for exception handlers."""

    @pytest.fixture
    def mock_request(self):
        request = MagicMock()
        request.url.path = "/api/v1/webhooks/tencent"
        return request

    @pytest.mark.asyncio
    async def test_pipeline_exception_handler(self, mock_request):
        exc = WebhookMissingParameterError(["signature"])

        response = await pipeline_exception_handler(mock_request, exc)

        assert response.status_code == 400
        body = json.loads(response.body)
        assert body["success"] is False
        assert body["error"]["code"] == "MISSING_PARAMETERS"

    @pytest.mark.asyncio
    async def test_pipeline_exception_handler_hides_decryption_reason(self, mock_request):
        response = await pipeline_exception_handler(mock_request, WebhookDecryptionError("bad padding"))

        body = json.loads(response.body)
        assert response.status_code == 500
        assert "padding" not in json.dumps(body)

    @pytest.mark.asyncio
    async def test_http_exception_handler(self, mock_request):
        exc = HTTPException(status_code=405, detail="Method Not Allowed")

        response = await http_exception_handler(mock_request, exc)

        assert response.status_code == 405
        assert json.loads(response.body)["error"]["code"] == "METHOD_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_generic_exception_handler(self, mock_request):
        response = await generic_exception_handler(mock_request, ValueError("secret detail"))

        assert response.status_code == 500
        body = json.loads(response.body)
        assert body["error"]["message"] == "Internal Server Error"
        assert "secret detail" not in json.dumps(body)
