from __future__ import annotations

import base64
import binascii
import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.core.config import settings
from app.core.exceptions import PlatformApiError
from app.utils.timestamps import format_offset
from app.webhooks.signature import sign_api_request

logger = logging.getLogger(__name__)

IP_WHITELIST_ERROR = 500125
UNKNOWN_SPEAKER = "Unknown speaker"


class TencentMeetingClient:
    """
    Tencent Meeting REST client (enterprise self-built app).
    Every request carries X-TC-* headers signed with the secret key.
    """

    def __init__(
        self,
        secret_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        app_id: Optional[str] = None,
        sdk_id: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.secret_id = secret_id or settings.TENCENT_SECRET_ID
        self.secret_key = secret_key or settings.TENCENT_SECRET_KEY
        self.app_id = app_id if app_id is not None else settings.TENCENT_APP_ID
        self.sdk_id = sdk_id if sdk_id is not None else settings.TENCENT_SDK_ID
        self.base_url = (base_url or settings.TENCENT_API_BASE_URL).rstrip("/")

        self.timeout = httpx.Timeout(
            connect=settings.HTTP_CONNECT_TIMEOUT,
            read=settings.HTTP_READ_TIMEOUT,
            write=10.0,
            pool=10.0,
        )
        self.client = client or httpx.AsyncClient(
            timeout=self.timeout,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def is_configured(self) -> bool:
        return self.secret_id != "__MISSING__" and self.secret_key != "__MISSING__"

    def _headers(self, method: str, uri: str, body: str) -> Dict[str, str]:
        timestamp = str(int(time.time()))
        nonce = str(secrets.randbelow(10**9) + 1)
        signature = sign_api_request(self.secret_key, method, self.secret_id, nonce, timestamp, uri, body)
        return {
            "Content-Type": "application/json",
            "X-TC-Key": self.secret_id,
            "X-TC-Timestamp": timestamp,
            "X-TC-Nonce": nonce,
            "X-TC-Signature": signature,
            "AppId": self.app_id,
            "SdkId": self.sdk_id,
            "X-TC-Registered": "1",
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, operation: str, method: str, uri: str, body: str = "") -> Dict[str, Any]:
        """
        Signed request against a path+query ``uri``.

        Tencent reports failures in an ``error_info`` object, sometimes with
        HTTP 200, so both are checked.
        """
        response = await self.client.request(
            method,
            f"{self.base_url}{uri}",
            headers=self._headers(method, uri, body),
            content=body or None,
        )
        try:
            data = response.json()
        except ValueError:
            data = {}

        error_info = data.get("error_info") if isinstance(data, dict) else None
        if error_info or response.status_code >= 400:
            error_info = error_info or {}
            code = error_info.get("new_error_code") or error_info.get("error_code")
            message = error_info.get("message") or response.text[:200]
            if code == IP_WHITELIST_ERROR or error_info.get("error_code") == IP_WHITELIST_ERROR:
                logger.error("Tencent Meeting rejected the request: server IP is not whitelisted")
            raise PlatformApiError(
                platform="tencent",
                operation=operation,
                message=message,
                status_code=response.status_code,
                error_code=code,
            )
        return data

    async def get_recording_transcript(
        self,
        record_file_id: str,
        userid: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """One page of a recording's transcript: {"minutes": {...}, "more": bool}."""
        page_size = page_size or settings.TENCENT_TRANSCRIPT_PAGE_SIZE
        uri = f"/v1/recording/{record_file_id}/transcripts?userid={userid}&page={page}&page_size={page_size}"
        return await self._request("get_recording_transcript", "GET", uri)

    async def fetch_full_transcript(self, record_file_id: str, userid: str) -> str:
        """Follow ``more`` through every page and return the formatted text."""
        paragraphs: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = await self.get_recording_transcript(record_file_id, userid, page=page)
            paragraphs.extend((data.get("minutes") or {}).get("paragraphs") or [])
            if not data.get("more"):
                break
            page += 1

        logger.info(f"Fetched {len(paragraphs)} transcript paragraphs for record file {record_file_id} ({page} pages)")
        return format_transcript(paragraphs)

    async def get_recording_file_detail(self, record_file_id: str, userid: str) -> Dict[str, Any]:
        """Playback and download addresses of one record file."""
        uri = f"/v1/addresses/{record_file_id}?userid={userid}"
        return await self._request("get_recording_file_detail", "GET", uri)

    async def get_meeting_participants(
        self,
        meeting_id: str,
        userid: str,
        sub_meeting_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        uri = f"/v1/meetings/{meeting_id}/participants?userid={userid}"
        if sub_meeting_id:
            uri += f"&sub_meeting_id={sub_meeting_id}"
        return await self._request("get_meeting_participants", "GET", uri)

    async def fetch_unique_participants(
        self,
        meeting_id: str,
        userid: str,
        sub_meeting_id: Optional[str] = None,
    ) -> List[Tuple[str, Optional[str]]]:
        """
        (participant_id, display_name) pairs, one per attendee.

        A participant who dropped and rejoined is listed once per session,
        so entries are collapsed on uuid (userid when uuid is absent).
        """
        data = await self.get_meeting_participants(meeting_id, userid, sub_meeting_id)
        unique: Dict[str, Optional[str]] = {}
        for participant in data.get("participants") or []:
            participant_id = participant.get("uuid") or participant.get("userid")
            if not participant_id or participant_id in unique:
                continue
            unique[participant_id] = decode_user_name(participant.get("user_name"))
        return list(unique.items())


def format_transcript(paragraphs: List[Dict[str, Any]]) -> str:
    """
    Render paragraphs as ``speaker(HH:MM:SS)：text`` blocks.

    Words inside each sentence are concatenated without spaces, as the
    provider already includes any needed whitespace.
    """
    lines = []
    for paragraph in paragraphs:
        sentences = paragraph.get("sentences") or []
        if not sentences:
            continue
        speaker = (paragraph.get("speaker_info") or {}).get("username") or UNKNOWN_SPEAKER
        text = "".join(
            "".join(word.get("text", "") for word in sentence.get("words") or [])
            for sentence in sentences
        ).strip()
        lines.append(f"{speaker}({format_offset(sentences[0].get('start_time'))})：{text}")
    return "\n\n".join(lines)


def decode_user_name(value: Optional[str]) -> Optional[str]:
    """The participants endpoint returns user_name base64-encoded."""
    if not value:
        return value
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return value
