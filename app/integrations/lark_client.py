from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.core.config import settings
from app.core.exceptions import PlatformApiError

logger = logging.getLogger(__name__)

# Refresh the tenant token this many seconds before Lark expires it
TOKEN_REFRESH_MARGIN = 300


class LarkClient:
    """
    Lark / Feishu open platform client.
    Authenticates with an app-level tenant_access_token.
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.app_id = app_id or settings.LARK_APP_ID
        self.app_secret = app_secret or settings.LARK_APP_SECRET
        self.base_url = (base_url or settings.LARK_API_BASE_URL).rstrip("/")

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

        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    async def close(self) -> None:
        await self.client.aclose()

    def is_configured(self) -> bool:
        return self.app_id != "__MISSING__" and self.app_secret != "__MISSING__"

    @staticmethod
    def _error(operation: str, response: httpx.Response, body: Any) -> PlatformApiError:
        code = body.get("code") if isinstance(body, dict) else None
        message = (body.get("msg") if isinstance(body, dict) else None) or response.text[:200]
        return PlatformApiError(
            platform="lark",
            operation=operation,
            message=message,
            status_code=response.status_code,
            error_code=code,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    # -----------------------------
    # Auth
    # -----------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch_tenant_token(self) -> None:
        response = await self.client.post(
            f"{self.base_url}/open-apis/auth/v3/tenant_access_token/internal",
            json={"app_id": self.app_id, "app_secret": self.app_secret},
        )
        body = self._json(response)
        if response.status_code != 200 or not isinstance(body, dict) or body.get("code") != 0:
            raise self._error("tenant_access_token", response, body)

        self._token = body["tenant_access_token"]
        self._token_expires_at = time.time() + int(body.get("expire", 7200)) - TOKEN_REFRESH_MARGIN
        logger.info("Obtained Lark tenant access token")

    async def tenant_token(self) -> str:
        if self._token is None or time.time() >= self._token_expires_at:
            await self._fetch_tenant_token()
        return self._token

    # -----------------------------
    # Requests
    # -----------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get(self, operation: str, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        token = await self.tenant_token()
        response = await self.client.get(
            f"{self.base_url}{path}",
            params=params,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code >= 400:
            raise self._error(operation, response, self._json(response))
        return response

    async def get_meeting_recording(self, meeting_id: str) -> Dict[str, Any]:
        """
        Recording of a finished meeting.

        Returns the ``recording`` object ({"url": ..., "duration": ...}); the
        url is empty until Lark finishes processing.

        Raises:
            PlatformApiError: HTTP 400 with code 124002 while the recording
                is still being generated, or any other API failure
        """
        operation = "get_meeting_recording"
        response = await self._get(operation, f"/open-apis/vc/v1/meetings/{meeting_id}/recording")
        body = self._json(response)
        if not isinstance(body, dict) or body.get("code") != 0:
            raise self._error(operation, response, body)
        return (body.get("data") or {}).get("recording") or {}

    async def get_minute_transcript(self, minute_token: str, file_format: str = "txt") -> str:
        """Export a minute transcript as text with speakers and timestamps."""
        operation = "get_minute_transcript"
        response = await self._get(
            operation,
            f"/open-apis/minutes/v1/minutes/{minute_token}/transcript",
            params={
                "file_format": file_format,
                "need_speaker": "true",
                "need_timestamp": "true",
            },
        )
        # The export is a file; JSON here means an error envelope
        if response.headers.get("content-type", "").startswith("application/json"):
            body = self._json(response)
            if isinstance(body, dict) and body.get("code") not in (None, 0):
                raise self._error(operation, response, body)
        return response.text
