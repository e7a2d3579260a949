"""
Tests for WebhookService: verify, decrypt, validate and enqueue.

Tests cover:
- Tencent Meeting URL handshake and event callbacks
- Lark URL verification, encrypted bodies and events
- Job keys of queued events
"""

import json
import logging

import pytest
from unittest.mock import patch

from app.core.exceptions import (
    WebhookConfigError,
    WebhookDataFormatError,
    WebhookDecryptionError,
    WebhookMissingParameterError,
    WebhookSignatureError,
)
from app.queue.jobs import JobType
from app.schemas.meeting import MeetingKey, Provider
from app.schemas.webhook import LarkAckResponse, LarkChallengeResponse
from app.services.webhook_service import WebhookService, event_idempotency_key
from app.webhooks.codec import lark_encrypt
from app.webhooks.parser import parse_tencent_event
from app.webhooks.signature import compute_lark_signature, compute_signature

LARK_KEY = MeetingKey.build(Provider.LARK, "6911188411934433028")


class TestTencentUrlVerification:
    """Tests for the GET handshake."""

    def test_returns_decrypted_check_str(self, webhook_service, encrypt_tencent_event):
        check_str, timestamp, nonce, signature = encrypt_tencent_event("1234567890abcdef")

        assert webhook_service.verify_tencent_url(check_str, timestamp, nonce, signature) == "1234567890abcdef"

    def test_missing_parameters_listed(self, webhook_service):
        with pytest.raises(WebhookMissingParameterError) as exc_info:
            webhook_service.verify_tencent_url("abc", None, "n", None)

        assert exc_info.value.details["parameters"] == ["timestamp", "signature"]
        assert exc_info.value.status_code == 400

    def test_bad_signature(self, webhook_service, encrypt_tencent_event):
        check_str, timestamp, nonce, signature = encrypt_tencent_event("1234567890abcdef")

        with pytest.raises(WebhookSignatureError) as exc_info:
            webhook_service.verify_tencent_url(check_str, timestamp, nonce, signature[::-1])

        assert exc_info.value.status_code == 403

    def test_unconfigured_token(self, job_queue, encrypt_tencent_event):
        with patch("app.services.webhook_service.settings") as mock_settings:
            mock_settings.TENCENT_WEBHOOK_TOKEN = "__MISSING__"
            mock_settings.TENCENT_ENCODING_AES_KEY = "__MISSING__"
            service = WebhookService(queue=job_queue)

        with pytest.raises(WebhookConfigError):
            service.verify_tencent_url(*encrypt_tencent_event("x"))


class TestReceiveTencentEvent:
    """Tests for POST callbacks."""

    @pytest.mark.asyncio
    async def test_recording_completed_enqueued(self, webhook_service, job_queue, encrypt_tencent_event,
                                                recording_completed_body):
        job = await webhook_service.receive_tencent_event(*encrypt_tencent_event(recording_completed_body))

        assert job.job_type == JobType.TENCENT_WEBHOOK_EVENT.value
        assert job.job_id == "tencent:recording.completed:7350218455384938612:__ROOT__:rec-file-001"
        assert job.payload["event_type"] == "recording.completed"
        assert job.payload["trace_id"] == "trace-recording-1"
        assert job.payload["payloads"][0]["recording_files"] == [{"record_file_id": "rec-file-001"}]
        assert (await job_queue.stats())["scheduled"] == 1

    @pytest.mark.asyncio
    async def test_receipt_logged_with_event_and_trace(self, webhook_service, encrypt_tencent_event,
                                                       recording_completed_body, caplog):
        caplog.set_level(logging.INFO, logger="app.services.webhook_service")

        await webhook_service.receive_tencent_event(*encrypt_tencent_event(recording_completed_body))

        assert "tencent event recording.completed (trace trace-recording-1" in caplog.text

    @pytest.mark.asyncio
    async def test_redelivery_not_duplicated(self, webhook_service, job_queue, encrypt_tencent_event,
                                             meeting_started_body):
        first = await webhook_service.receive_tencent_event(*encrypt_tencent_event(meeting_started_body))
        second = await webhook_service.receive_tencent_event(
            *encrypt_tencent_event(meeting_started_body, nonce="999", timestamp="1700003800")
        )

        assert first.job_id == second.job_id
        assert (await job_queue.stats())["scheduled"] == 1

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged_not_queued(self, webhook_service, job_queue, encrypt_tencent_event,
                                                         meeting_info):
        body = {"event": "meeting.brand-new", "payload": [{"meeting_info": meeting_info}]}

        assert await webhook_service.receive_tencent_event(*encrypt_tencent_event(body)) is None
        assert (await job_queue.stats())["scheduled"] == 0

    @pytest.mark.asyncio
    async def test_empty_payload_not_queued(self, webhook_service, job_queue, encrypt_tencent_event):
        body = {"event": "meeting.started", "payload": []}

        assert await webhook_service.receive_tencent_event(*encrypt_tencent_event(body)) is None

    @pytest.mark.asyncio
    async def test_malformed_event_rejected(self, webhook_service, job_queue, encrypt_tencent_event,
                                            recording_completed_body):
        recording_completed_body["payload"][0]["recording_files"] = [{}]

        with pytest.raises(WebhookDataFormatError) as exc_info:
            await webhook_service.receive_tencent_event(*encrypt_tencent_event(recording_completed_body))

        assert exc_info.value.field == "payload[0].recording_files[0].record_file_id"
        assert (await job_queue.stats())["scheduled"] == 0

    @pytest.mark.asyncio
    async def test_tampered_data_fails_signature(self, webhook_service, encrypt_tencent_event, meeting_started_body):
        data, timestamp, nonce, signature = encrypt_tencent_event(meeting_started_body)

        with pytest.raises(WebhookSignatureError):
            await webhook_service.receive_tencent_event(data[:-4] + "AAAA", timestamp, nonce, signature)

    @pytest.mark.asyncio
    async def test_undecryptable_data(self, webhook_service):
        data = "bm90IHJlYWxseSBjaXBoZXJ0ZXh0"
        signature = compute_signature("test_token", "1700003700", "1", data)

        with pytest.raises(WebhookDecryptionError):
            await webhook_service.receive_tencent_event(data, "1700003700", "1", signature)

    @pytest.mark.asyncio
    async def test_missing_headers(self, webhook_service):
        with pytest.raises(WebhookMissingParameterError) as exc_info:
            await webhook_service.receive_tencent_event("data", None, None, None)

        assert exc_info.value.details["parameters"] == ["timestamp", "nonce", "signature"]


class TestEventIdempotencyKey:
    """Tests for webhook event job keys."""

    def test_lifecycle_event(self, meeting_started_body):
        event = parse_tencent_event(json.dumps(meeting_started_body))
        assert event_idempotency_key(event) == "tencent:meeting.started:7350218455384938612:__ROOT__:-"

    def test_multi_meeting_event(self, meeting_started_body, meeting_info):
        second = dict(meeting_started_body["payload"][0])
        second["meeting_info"] = dict(meeting_info, meeting_id="m2", sub_meeting_id="s2")
        meeting_started_body["payload"].append(second)

        event = parse_tencent_event(json.dumps(meeting_started_body))

        assert event_idempotency_key(event) == "tencent:meeting.started:7350218455384938612+m2:__ROOT__+s2:-"


class TestReceiveLarkEvent:
    """Tests for Lark callbacks."""

    @staticmethod
    def raw(body) -> bytes:
        return json.dumps(body).encode("utf-8")

    @pytest.mark.asyncio
    async def test_url_verification(self, webhook_service):
        body = {"type": "url_verification", "challenge": "ajls384kdjx98XX", "token": "lark-verification-token"}

        response = await webhook_service.receive_lark_event(self.raw(body), {})

        assert isinstance(response, LarkChallengeResponse)
        assert response.challenge == "ajls384kdjx98XX"

    @pytest.mark.asyncio
    async def test_encrypted_url_verification(self, webhook_service):
        inner = {"type": "url_verification", "challenge": "c-1", "token": "lark-verification-token"}
        body = {"encrypt": lark_encrypt(json.dumps(inner), "lark-encrypt-key")}

        response = await webhook_service.receive_lark_event(self.raw(body), {})

        assert response.challenge == "c-1"

    @pytest.mark.asyncio
    async def test_wrong_verification_token(self, webhook_service):
        body = {"type": "url_verification", "challenge": "c", "token": "someone-else"}

        with pytest.raises(WebhookSignatureError):
            await webhook_service.receive_lark_event(self.raw(body), {})

    @pytest.mark.asyncio
    async def test_meeting_ended_cached_and_enqueued(self, webhook_service, job_queue, meeting_cache,
                                                     lark_meeting_ended_body):
        response = await webhook_service.receive_lark_event(self.raw(lark_meeting_ended_body), {})

        assert isinstance(response, LarkAckResponse)
        assert response.msg == "success"

        job = await job_queue.get_job("lark:vc.meeting.all_meeting_ended_v1:6911188411934433028:__ROOT__:-")
        assert job.job_type == JobType.LARK_WEBHOOK_EVENT.value
        assert (await meeting_cache.lookup(LARK_KEY))["title"] == "Design review"

    @pytest.mark.asyncio
    async def test_signed_encrypted_event(self, webhook_service, job_queue, lark_meeting_ended_body):
        raw = self.raw({"encrypt": lark_encrypt(json.dumps(lark_meeting_ended_body), "lark-encrypt-key")})
        signature = compute_lark_signature("1700003600", "nonce-1", "lark-encrypt-key", raw.decode("utf-8"))
        headers = {
            "X-Lark-Request-Timestamp": "1700003600",
            "X-Lark-Request-Nonce": "nonce-1",
            "X-Lark-Signature": signature,
        }

        await webhook_service.receive_lark_event(raw, headers)

        assert (await job_queue.stats())["scheduled"] == 1

    @pytest.mark.asyncio
    async def test_bad_lark_signature(self, webhook_service, lark_meeting_ended_body):
        raw = self.raw({"encrypt": lark_encrypt(json.dumps(lark_meeting_ended_body), "lark-encrypt-key")})
        headers = {"X-Lark-Request-Timestamp": "1", "X-Lark-Request-Nonce": "n", "X-Lark-Signature": "deadbeef"}

        with pytest.raises(WebhookSignatureError):
            await webhook_service.receive_lark_event(raw, headers)

    @pytest.mark.asyncio
    async def test_encrypted_without_key(self, job_queue, lark_meeting_ended_body):
        with patch("app.services.webhook_service.settings") as mock_settings:
            mock_settings.LARK_ENCRYPT_KEY = None
            mock_settings.LARK_VERIFICATION_TOKEN = None
            service = WebhookService(queue=job_queue, tencent_token="t", tencent_aes_key="k")

        raw = self.raw({"encrypt": lark_encrypt(json.dumps(lark_meeting_ended_body), "lark-encrypt-key")})
        with pytest.raises(WebhookConfigError):
            await service.receive_lark_event(raw, {})

    @pytest.mark.asyncio
    async def test_unknown_lark_event_acknowledged(self, webhook_service, job_queue):
        body = {
            "schema": "2.0",
            "header": {"event_type": "im.message.receive_v1", "event_id": "e", "token": "lark-verification-token"},
            "event": {},
        }

        response = await webhook_service.receive_lark_event(self.raw(body), {})

        assert response.msg == "success"
        assert (await job_queue.stats())["scheduled"] == 0

    @pytest.mark.asyncio
    async def test_not_json(self, webhook_service):
        with pytest.raises(WebhookDataFormatError):
            await webhook_service.receive_lark_event(b"<xml/>", {})


class TestProviderStatus:
    """Tests for configuration reporting."""

    def test_tencent_configured(self, webhook_service):
        assert webhook_service.provider_status()["tencent"] is True
        assert webhook_service.is_configured("tencent") is True

    def test_tencent_unconfigured(self, job_queue):
        with patch("app.services.webhook_service.settings") as mock_settings:
            mock_settings.TENCENT_WEBHOOK_TOKEN = "__MISSING__"
            mock_settings.TENCENT_ENCODING_AES_KEY = "__MISSING__"
            service = WebhookService(queue=job_queue)

        assert service.is_configured(Provider.TENCENT) is False
