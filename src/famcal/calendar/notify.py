"""Fan-out of event changes to real-time subscribers.

Notifications are best-effort: a failed delivery is logged and never fails
the mutation that triggered it.
"""

from __future__ import annotations

import abc
import logging

import httpx

from famcal.calendar.models import EventNotification
from famcal.core.telemetry import inject_trace_context

logger = logging.getLogger(__name__)

DEFAULT_NOTIFY_TIMEOUT_SECONDS = 5.0


class Notifier(abc.ABC):
    """Publishes ``created`` / ``updated`` / ``deleted`` household events."""

    @abc.abstractmethod
    async def publish(self, notification: EventNotification) -> None: ...

    async def shutdown(self) -> None:
        """Release resources held by this notifier."""
        return None


class LoggingNotifier(Notifier):
    """Notifier used when no fan-out endpoint is configured."""

    async def publish(self, notification: EventNotification) -> None:
        logger.debug(
            "Event %s %s in household %s",
            notification.event_id,
            notification.action,
            notification.household_id,
        )


class HttpNotifier(Notifier):
    """POSTs each notification as JSON to a fan-out endpoint."""

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout_s: float = DEFAULT_NOTIFY_TIMEOUT_SECONDS,
    ) -> None:
        self._url = url
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def publish(self, notification: EventNotification) -> None:
        headers = inject_trace_context()
        try:
            response = await self._http_client.post(
                self._url,
                json=notification.model_dump(mode="json"),
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Failed to publish %s notification for event %s: %s",
                notification.action,
                notification.event_id,
                exc,
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def build_notifier(url: str | None, *, timeout_s: float = DEFAULT_NOTIFY_TIMEOUT_SECONDS) -> Notifier:
    if url:
        return HttpNotifier(url, timeout_s=timeout_s)
    return LoggingNotifier()
