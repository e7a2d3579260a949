"""
Event type -> handler lookup with per-payload failure isolation.

A handler is ``async def handler(payload, index, context)``. Every payload of
an event is attempted even when an earlier one fails; failures are collected
and turned into a single job error afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

from app.core.exceptions import (
    FatalJobError,
    JobError,
    RetryableJobError,
    UnsupportedWebhookEventError,
)
from app.schemas.meeting import Provider
from app.webhooks.handlers import LARK_HANDLERS, TENCENT_HANDLERS

logger = logging.getLogger(__name__)

Handler = Callable[[Any, int, Any], Awaitable[None]]


@dataclass
class DispatchResult:
    event_type: str
    total: int
    failures: List[Tuple[int, Exception]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.total - len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_outcome(self) -> None:
        """
        Raise one job error for the collected failures.

        Fatal only when every failure is fatal; one retryable (or unexpected)
        failure makes the whole event retryable. Payloads that already
        succeeded are safe to redo because writes are idempotent.
        """
        if self.ok:
            return

        summary = "; ".join(f"payload[{i}]: {type(e).__name__}: {e}" for i, e in self.failures)
        message = f"{len(self.failures)}/{self.total} payload(s) of {self.event_type} failed: {summary}"
        details = {"event_type": self.event_type, "failed_indexes": [i for i, _ in self.failures]}

        if all(isinstance(e, JobError) and not e.retryable for _, e in self.failures):
            raise FatalJobError(message, details=details)
        raise RetryableJobError(message, details=details)


class EventDispatcher:
    """Registry of business handlers for one provider."""

    def __init__(self, provider: Provider):
        self.provider = Provider(provider)
        self._handlers: Dict[str, Handler] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type] = handler

    def get_handler(self, event_type: str) -> Handler:
        handler = self._handlers.get(event_type)
        if handler is None:
            raise UnsupportedWebhookEventError(self.provider.value, event_type)
        return handler

    def supported_events(self) -> List[str]:
        return sorted(self._handlers)

    async def dispatch(self, event_type: str, payloads: Sequence[Any], context: Any = None) -> DispatchResult:
        handler = self.get_handler(event_type)
        result = DispatchResult(event_type=event_type, total=len(payloads))

        for index, payload in enumerate(payloads):
            try:
                await handler(payload, index, context)
            except Exception as e:
                logger.warning(f"{self.provider.value} {event_type} payload[{index}] failed: {type(e).__name__}: {e}")
                result.failures.append((index, e))

        if result.failures:
            logger.error(
                f"{self.provider.value} {event_type}: {len(result.failures)} of {result.total} payload(s) failed "
                f"(indexes {[i for i, _ in result.failures]})"
            )
        else:
            logger.info(f"{self.provider.value} {event_type}: processed {result.total} payload(s)")
        return result


def build_dispatcher(provider: Provider) -> EventDispatcher:
    """Dispatcher with the business handlers for provider."""
    table = TENCENT_HANDLERS if Provider(provider) == Provider.TENCENT else LARK_HANDLERS
    dispatcher = EventDispatcher(provider)
    for event_type, handler in table.items():
        dispatcher.register(event_type, handler)
    return dispatcher
