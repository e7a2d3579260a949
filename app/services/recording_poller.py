"""
Recording Availability Poller

Lark's "meeting ended" event carries only a meeting id. The recording URL
(and with it the minute token of the transcript) shows up a few minutes
later, so the token is polled for.

Retry policy:
- recording empty, or URL without a token: retry
- HTTP 400 with code 124002 or a "processing" message: retry
- anything else: abort after that attempt
- attempts exhausted: NOT_FOUND, never an exception
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qs, urlparse

from app.core.config import settings
from app.core.exceptions import PlatformApiError

logger = logging.getLogger(__name__)

STILL_PROCESSING_CODE = 124002
MIN_PATH_TOKEN_LENGTH = 12
_PROCESSING_PATTERN = re.compile(r"processing", re.IGNORECASE)


class PollOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ABORTED = "aborted"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    token: Optional[str] = None
    url: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def found(self) -> bool:
        return self.outcome == PollOutcome.FOUND


def extract_minute_token(url: Optional[str]) -> Optional[str]:
    """
    Minute token from a recording URL.

    ``?minute_token=...`` wins; otherwise the last non-empty path segment,
    if it is long enough to be a token (e.g. ``/minutes/obcnq3b9jl72l83w4f14``).
    """
    if not url:
        return None

    parsed = urlparse(url)
    values = parse_qs(parsed.query).get("minute_token")
    if values and values[0]:
        return values[0]

    segments = [s for s in parsed.path.split("/") if s]
    if segments and len(segments[-1]) >= MIN_PATH_TOKEN_LENGTH:
        return segments[-1]
    return None


def is_still_processing(error: Exception) -> bool:
    """True for the provider's "recording is being generated" response."""
    if not isinstance(error, PlatformApiError) or error.http_status != 400:
        return False
    if str(error.error_code) == str(STILL_PROCESSING_CODE):
        return True
    return bool(_PROCESSING_PATTERN.search(error.provider_message or ""))


class RecordingAvailabilityPoller:
    """Bounded fixed-delay polling for a meeting's minute token."""

    def __init__(
        self,
        client,
        max_attempts: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.max_attempts = max_attempts or settings.RECORDING_POLL_MAX_ATTEMPTS
        self.delay_seconds = delay_seconds if delay_seconds is not None else settings.RECORDING_POLL_DELAY_SECONDS
        self._sleep = sleep

    async def poll_for_token(self, meeting_id: str) -> PollResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                recording = await self.client.get_meeting_recording(meeting_id)
            except Exception as e:
                if not is_still_processing(e):
                    logger.error(
                        f"Recording lookup for meeting {meeting_id} failed on attempt {attempt}, "
                        f"not retrying: {e}"
                    )
                    return PollResult(PollOutcome.ABORTED, attempt, error=e)
                logger.info(f"Recording for meeting {meeting_id} still processing ({attempt}/{self.max_attempts})")
            else:
                url = (recording or {}).get("url")
                token = extract_minute_token(url)
                if token:
                    logger.info(f"Resolved minute token for meeting {meeting_id} after {attempt} attempt(s)")
                    return PollResult(PollOutcome.FOUND, attempt, token=token, url=url)
                if url:
                    logger.warning(f"No minute token in recording URL for meeting {meeting_id}: {url}")
                else:
                    logger.info(f"Recording for meeting {meeting_id} not ready ({attempt}/{self.max_attempts})")

            if attempt < self.max_attempts:
                await self._sleep(self.delay_seconds)

        logger.warning(f"No recording for meeting {meeting_id} after {self.max_attempts} attempts")
        return PollResult(PollOutcome.NOT_FOUND, self.max_attempts)
