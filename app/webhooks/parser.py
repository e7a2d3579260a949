"""
Decrypted webhook body -> DecryptedEvent.

Validation is per event type. Event types outside the catalogue are
accepted as UnknownPayload and logged as unhandled, because the providers
own their event catalogues and add types without notice.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from app.core.exceptions import WebhookDataFormatError
from app.schemas.meeting import Provider
from app.schemas.webhook import (
    DecryptedEvent,
    LarkMeetingEndedPayload,
    MeetingLifecyclePayload,
    ParticipantPayload,
    RecordingCompletedPayload,
    TencentPayload,
    UnknownPayload,
    WebhookEventType as E,
)

logger = logging.getLogger(__name__)

TENCENT_PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    E.MEETING_STARTED.value: MeetingLifecyclePayload,
    E.MEETING_END.value: MeetingLifecyclePayload,
    E.MEETING_ENDED.value: MeetingLifecyclePayload,
    E.PARTICIPANT_JOINED.value: ParticipantPayload,
    E.PARTICIPANT_LEFT.value: ParticipantPayload,
    E.PARTICIPANT_JOINED_SHORT.value: ParticipantPayload,
    E.PARTICIPANT_LEFT_SHORT.value: ParticipantPayload,
    E.RECORDING_COMPLETED.value: RecordingCompletedPayload,
    E.TRANSCRIPT_READY.value: RecordingCompletedPayload,
    # Known to the platform but not acted on here
    "meeting.created": TencentPayload,
    "meeting.updated": TencentPayload,
    "meeting.canceled": TencentPayload,
}

LARK_PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    E.LARK_MEETING_ENDED.value: LarkMeetingEndedPayload,
    E.LARK_MEETING_ALL_ENDED.value: LarkMeetingEndedPayload,
}

_CATALOGUES = {
    Provider.TENCENT: TENCENT_PAYLOAD_MODELS,
    Provider.LARK: LARK_PAYLOAD_MODELS,
}

_EXPECTED = {
    "missing": "a required field",
    "string_type": "a string",
    "int_type": "an integer",
    "int_parsing": "an integer",
    "int_from_float": "an integer",
    "list_type": "an array",
    "too_short": "a non-empty array",
    "model_type": "an object",
    "dict_type": "an object",
    "model_attributes_type": "an object",
}


_UNION_TAGS = {"int", "str", "float", "bool"}


def is_known_event_type(provider: Provider, event_type: str) -> bool:
    return event_type in _CATALOGUES[Provider(provider)]


def _field_path(prefix: str, loc: tuple) -> str:
    path = prefix
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        elif path:
            path += f".{part}"
        else:
            path = str(part)
    return path


def _format_error(error: ValidationError, prefix: str, provider: Provider) -> WebhookDataFormatError:
    first = error.errors()[0]
    # Union members add their type name to loc; keep only data keys
    loc = tuple(
        p for p in first.get("loc", ())
        if isinstance(p, int) or not (p[:1].isupper() or p in _UNION_TAGS)
    )
    field = _field_path(prefix, loc)
    expected = _EXPECTED.get(first.get("type", ""), first.get("msg", "valid"))
    return WebhookDataFormatError(field, expected, platform=provider.value)


def build_event(
    provider: Provider,
    event_type: str,
    trace_id: Optional[str],
    raw_payloads: List[Any],
) -> DecryptedEvent:
    """
    Validate raw payload dicts for an event type and build the event.

    Also used by the queue worker to rebuild an event from a job payload.

    Raises:
        WebhookDataFormatError: the first malformed field, e.g.
            ``payload[0].recording_files[0].record_file_id``
    """
    provider = Provider(provider)
    trace_id = trace_id or uuid.uuid4().hex
    model = _CATALOGUES[provider].get(event_type)

    if model is None:
        logger.info(f"Unhandled {provider.value} event type '{event_type}' (trace {trace_id})")
        payloads = [
            UnknownPayload.model_validate(p) if isinstance(p, dict) else UnknownPayload(value=p)
            for p in raw_payloads
        ]
        return DecryptedEvent(provider, event_type, trace_id, payloads, known=False)

    payloads = []
    for index, raw in enumerate(raw_payloads):
        prefix = f"payload[{index}]"
        if not isinstance(raw, dict):
            raise WebhookDataFormatError(prefix, "an object", platform=provider.value)
        try:
            payloads.append(model.model_validate(raw))
        except ValidationError as e:
            raise _format_error(e, prefix, provider) from e

    return DecryptedEvent(provider, event_type, trace_id, payloads, known=True)


def parse_tencent_event(plaintext: str) -> DecryptedEvent:
    """Parse the decrypted Tencent Meeting body."""
    try:
        body = json.loads(plaintext)
    except (json.JSONDecodeError, TypeError) as e:
        raise WebhookDataFormatError("body", "a JSON object") from e

    if not isinstance(body, dict):
        raise WebhookDataFormatError("body", "a JSON object")

    event_type = body.get("event")
    if not isinstance(event_type, str) or not event_type:
        raise WebhookDataFormatError("event", "a string")

    raw_payloads = body.get("payload")
    if not isinstance(raw_payloads, list):
        raise WebhookDataFormatError("payload", "an array")

    return build_event(Provider.TENCENT, event_type, body.get("trace_id"), raw_payloads)


def _lark_meeting_source(body: Dict[str, Any], event: Dict[str, Any]) -> Any:
    """Meeting fields live under event.meeting, with older shapes as fallbacks."""
    if isinstance(body.get("meeting"), dict):
        return body["meeting"]
    if isinstance(event.get("meeting"), dict):
        return event["meeting"]
    return event


def parse_lark_event(body: Dict[str, Any]) -> DecryptedEvent:
    """
    Parse a plaintext Lark event envelope.

    Schema 2.0 puts the type in header.event_type; schema 1.0 in event.type.
    """
    header = body.get("header") or {}
    event = body.get("event") or {}
    if not isinstance(header, dict):
        raise WebhookDataFormatError("header", "an object", platform="lark")
    if not isinstance(event, dict):
        raise WebhookDataFormatError("event", "an object", platform="lark")

    event_type = header.get("event_type") or event.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise WebhookDataFormatError("header.event_type", "a string", platform="lark")

    trace_id = header.get("event_id") or body.get("uuid")

    if not is_known_event_type(Provider.LARK, event_type):
        return build_event(Provider.LARK, event_type, trace_id, [event])

    raw = {
        "meeting": _lark_meeting_source(body, event),
        "event_id": trace_id,
        "create_time": header.get("create_time"),
        "app_id": header.get("app_id"),
    }
    try:
        payload = LarkMeetingEndedPayload.model_validate(raw)
    except ValidationError as e:
        raise _format_error(e, "event", Provider.LARK) from e

    return DecryptedEvent(Provider.LARK, event_type, trace_id or uuid.uuid4().hex, [payload], known=True)
