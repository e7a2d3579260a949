"""
Webhook service for Tencent Meeting and Lark callbacks.

The HTTP path stops at the queue: verify, decrypt, validate, enqueue, ack.
Everything that talks to provider APIs or the database runs in the worker.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from app.cache.meeting_cache import MeetingMetadataCache
from app.core.config import settings
from app.core.exceptions import (
    WebhookConfigError,
    WebhookDataFormatError,
    WebhookMissingParameterError,
    WebhookSignatureError,
)
from app.queue.jobs import JobType, QueueJob, build_idempotency_key
from app.queue.producer import JobQueue
from app.schemas.meeting import Provider
from app.schemas.webhook import DecryptedEvent, LarkAckResponse, LarkChallengeResponse, WebhookEnvelope
from app.webhooks.codec import aes_decrypt, lark_decrypt
from app.webhooks.handlers import lark_cache_entry
from app.webhooks.parser import parse_lark_event, parse_tencent_event
from app.webhooks.signature import verify_lark_signature, verify_signature

logger = logging.getLogger(__name__)

MISSING = "__MISSING__"

LARK_SIGNATURE_HEADER = "x-lark-signature"
LARK_TIMESTAMP_HEADER = "x-lark-request-timestamp"
LARK_NONCE_HEADER = "x-lark-request-nonce"


def _configured(value: Optional[str]) -> bool:
    return bool(value) and value != MISSING


def _require(**params: Optional[str]) -> None:
    missing = [name for name, value in params.items() if not value]
    if missing:
        raise WebhookMissingParameterError(missing)


def event_idempotency_key(event: DecryptedEvent) -> str:
    """
    Key of a webhook event job.

    Meetings and artifacts of every payload take part, so a redelivery maps
    to the same key and a different batch does not.
    """
    keys = []
    for payload in event.payloads:
        key = payload.meeting_key()
        if key is not None and key not in keys:
            keys.append(key)
    artifacts = [a for a in (p.artifact_id() for p in event.payloads) if a]

    return build_idempotency_key(
        event.provider,
        event.event_type,
        "+".join(k.meeting_id for k in keys) or None,
        "+".join(k.sub_meeting_id for k in keys) or None,
        "+".join(artifacts) or None,
    )


class WebhookService:
    """Receives provider callbacks and hands them to the job queue."""

    def __init__(
        self,
        queue: JobQueue,
        meeting_cache: Optional[MeetingMetadataCache] = None,
        tencent_token: Optional[str] = None,
        tencent_aes_key: Optional[str] = None,
        lark_encrypt_key: Optional[str] = None,
        lark_verification_token: Optional[str] = None,
    ) -> None:
        logger.info("Initializing WebhookService")
        self.queue = queue
        self.meeting_cache = meeting_cache
        self.tencent_token = tencent_token or settings.TENCENT_WEBHOOK_TOKEN
        self.tencent_aes_key = tencent_aes_key or settings.TENCENT_ENCODING_AES_KEY
        self.lark_encrypt_key = lark_encrypt_key or settings.LARK_ENCRYPT_KEY
        self.lark_verification_token = lark_verification_token or settings.LARK_VERIFICATION_TOKEN

    # -----------------------------
    # Tencent Meeting
    # -----------------------------

    def _check_tencent_config(self) -> None:
        if not _configured(self.tencent_token):
            raise WebhookConfigError("TENCENT_WEBHOOK_TOKEN")
        if not _configured(self.tencent_aes_key):
            raise WebhookConfigError("TENCENT_ENCODING_AES_KEY")

    def _verify_tencent(self, data: str, timestamp: str, nonce: str, signature: str) -> None:
        if not verify_signature(self.tencent_token, timestamp, nonce, data, signature):
            logger.warning(f"Tencent Meeting signature mismatch (timestamp={timestamp}, nonce={nonce})")
            raise WebhookSignatureError("tencent")

    def verify_tencent_url(
        self,
        check_str: Optional[str],
        timestamp: Optional[str],
        nonce: Optional[str],
        signature: Optional[str],
    ) -> str:
        """
        URL handshake: verify the signature over check_str and return it
        decrypted, which Tencent expects echoed back as plain text.
        """
        _require(check_str=check_str, timestamp=timestamp, nonce=nonce, signature=signature)
        self._check_tencent_config()
        self._verify_tencent(check_str, timestamp, nonce, signature)

        plaintext = aes_decrypt(check_str, self.tencent_aes_key)
        logger.info("Tencent Meeting callback URL verified")
        return plaintext

    async def receive_tencent_event(
        self,
        data: Optional[str],
        timestamp: Optional[str],
        nonce: Optional[str],
        signature: Optional[str],
    ) -> Optional[QueueJob]:
        """
        Verify, decrypt and validate a callback, then enqueue it.

        Returns:
            The queued job, or None when nothing was queued (unknown event
            type, empty payload list or an already completed key)
        """
        _require(timestamp=timestamp, nonce=nonce, signature=signature, data=data)
        self._check_tencent_config()
        envelope = WebhookEnvelope(
            provider=Provider.TENCENT,
            raw_timestamp=timestamp,
            nonce=nonce,
            signature=signature,
            ciphertext=data.encode("utf-8"),
            received_at=datetime.now(timezone.utc),
        )
        self._verify_tencent(data, envelope.raw_timestamp, envelope.nonce, envelope.signature)

        event = parse_tencent_event(aes_decrypt(data, self.tencent_aes_key))
        envelope = envelope.with_event(event.event_type, event.trace_id)
        logger.info(f"Received {envelope.describe()} with {len(event.payloads)} payload(s)")

        if not event.known:
            return None
        if not event.payloads:
            logger.info(f"Tencent Meeting event {event.event_type} has no payloads, nothing to queue")
            return None

        return await self.queue.enqueue(
            JobType.TENCENT_WEBHOOK_EVENT.value,
            event.to_job_payload(),
            idempotency_key=event_idempotency_key(event),
        )

    # -----------------------------
    # Lark
    # -----------------------------

    def _decrypt_lark(self, raw_body: bytes, body: Dict[str, Any], headers: Mapping[str, str]) -> Dict[str, Any]:
        if not _configured(self.lark_encrypt_key):
            raise WebhookConfigError("LARK_ENCRYPT_KEY", "Encrypted Lark callback received but LARK_ENCRYPT_KEY is not set")

        signature = headers.get(LARK_SIGNATURE_HEADER)
        if signature:
            valid = verify_lark_signature(
                headers.get(LARK_TIMESTAMP_HEADER, ""),
                headers.get(LARK_NONCE_HEADER, ""),
                self.lark_encrypt_key,
                raw_body.decode("utf-8"),
                signature,
            )
            if not valid:
                logger.warning("Lark callback signature mismatch")
                raise WebhookSignatureError("lark")

        if not isinstance(body["encrypt"], str):
            raise WebhookDataFormatError("encrypt", "a string", platform="lark")
        plaintext = lark_decrypt(body["encrypt"], self.lark_encrypt_key)
        return _load_lark_body(plaintext.encode("utf-8"))

    def _check_lark_token(self, body: Dict[str, Any]) -> None:
        if not _configured(self.lark_verification_token):
            return
        token = body.get("token") or (body.get("header") or {}).get("token")
        if token != self.lark_verification_token:
            logger.warning("Lark callback verification token mismatch")
            raise WebhookSignatureError("lark")

    async def receive_lark_event(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> LarkChallengeResponse | LarkAckResponse:
        """
        Handle one Lark callback.

        Returns the JSON body to answer with: the echoed challenge for URL
        verification, otherwise ``{"msg": "success"}``.
        """
        headers = {k.lower(): v for k, v in headers.items()}
        body = _load_lark_body(raw_body)
        if "encrypt" in body:
            body = self._decrypt_lark(raw_body, body, headers)

        if body.get("type") == "url_verification":
            self._check_lark_token(body)
            logger.info("Lark callback URL verified")
            return LarkChallengeResponse(challenge=str(body.get("challenge", "")))

        self._check_lark_token(body)
        event = parse_lark_event(body)
        logger.info(f"Received Lark event {event.event_type} (trace {event.trace_id})")

        if event.known:
            if self.meeting_cache is not None:
                for payload in event.payloads:
                    await self.meeting_cache.remember(payload.meeting_key(), lark_cache_entry(payload))
            await self.queue.enqueue(
                JobType.LARK_WEBHOOK_EVENT.value,
                event.to_job_payload(),
                idempotency_key=event_idempotency_key(event),
            )
        return LarkAckResponse()

    def provider_status(self) -> Dict[str, bool]:
        """Which providers have the credentials needed to accept callbacks."""
        return {
            Provider.TENCENT.value: _configured(self.tencent_token) and _configured(self.tencent_aes_key),
            Provider.LARK.value: _configured(settings.LARK_APP_ID) and _configured(settings.LARK_APP_SECRET),
        }

    def is_configured(self, provider: Provider | str) -> bool:
        return self.provider_status().get(Provider(provider).value, False)


def _load_lark_body(raw: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise WebhookDataFormatError("body", "a JSON object", platform="lark") from e
    if not isinstance(body, dict):
        raise WebhookDataFormatError("body", "a JSON object", platform="lark")
    return body
