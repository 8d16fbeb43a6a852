from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

import httpx

from ..core.timeutil import now_utc
from ..domain.interfaces import NotificationSink

logger = logging.getLogger(__name__)


def _advance_text(name: str, duration_minutes: int, start_time: datetime) -> str:
    return (
        f"{name} is scheduled to start at {start_time.strftime('%H:%M')} and will run for "
        f"{duration_minutes} minutes. Make sure the aquarium area is clear."
    )


class LoggingNotificationSink:
    async def advance_notice(
        self, schedule_id: str, name: str, duration_minutes: int, start_time: datetime
    ) -> None:
        logger.info("UV Cleaning Starting Soon [%s]: %s", schedule_id, _advance_text(name, duration_minutes, start_time))

    async def started(self, schedule_id: str, name: str, duration_minutes: int) -> None:
        logger.info("UV Cleaning Started [%s]: %s is now running for %d minutes.", schedule_id, name, duration_minutes)

    async def completed(self, schedule_id: str, name: str) -> None:
        logger.info("UV Cleaning Complete [%s]: %s has finished successfully", schedule_id, name)

    async def error(self, schedule_id: str, name: str, message: str) -> None:
        logger.warning("UV Cleaning Error [%s]: %s: %s", schedule_id, name, message)


class WebhookNotificationSink:
    """POSTs each notice as JSON. Delivery failures are logged, never raised."""

    def __init__(
        self,
        webhook_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self._timeout = timeout
        self._transport = transport
        logger.info("Webhook notifications configured: %s", webhook_url)

    async def send(self, event_type: str, message: str, details: dict[str, Any]) -> bool:
        payload = {
            "event_type": event_type,
            "message": message,
            "timestamp": now_utc().isoformat(),
            "details": details,
            "source": "aqualuminus_scheduler",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self.webhook_url, json=payload, headers=self.headers)
            if resp.status_code >= 400:
                logger.error(
                    "Webhook notification failed for %s: HTTP %s, response: %s",
                    event_type, resp.status_code, resp.text[:200],
                )
                return False
            logger.debug("Webhook notification sent: %s (status: %s)", event_type, resp.status_code)
            return True
        except httpx.HTTPError as e:
            logger.error("Failed to send webhook notification for %s: %s: %s", event_type, type(e).__name__, e)
            return False

    async def advance_notice(
        self, schedule_id: str, name: str, duration_minutes: int, start_time: datetime
    ) -> None:
        await self.send(
            "uv_cleaning_advance",
            _advance_text(name, duration_minutes, start_time),
            {
                "schedule_id": schedule_id,
                "schedule_name": name,
                "duration_minutes": duration_minutes,
                "start_time": start_time.isoformat(),
            },
        )

    async def started(self, schedule_id: str, name: str, duration_minutes: int) -> None:
        await self.send(
            "uv_cleaning_started",
            f"{name} is now running.",
            {"schedule_id": schedule_id, "schedule_name": name, "duration_minutes": duration_minutes},
        )

    async def completed(self, schedule_id: str, name: str) -> None:
        await self.send(
            "uv_cleaning_complete",
            f"{name} has finished successfully",
            {"schedule_id": schedule_id, "schedule_name": name},
        )

    async def error(self, schedule_id: str, name: str, message: str) -> None:
        await self.send(
            "uv_cleaning_error",
            f"{name}: {message}",
            {"schedule_id": schedule_id, "schedule_name": name, "error": message},
        )


class CompositeNotificationSink:
    """Fan a notice out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: Iterable[NotificationSink]) -> None:
        self._sinks = list(sinks)

    async def _each(self, method: str, *args: Any) -> None:
        for sink in self._sinks:
            try:
                await getattr(sink, method)(*args)
            except Exception:
                logger.exception("Notification sink %s.%s failed", type(sink).__name__, method)

    async def advance_notice(
        self, schedule_id: str, name: str, duration_minutes: int, start_time: datetime
    ) -> None:
        await self._each("advance_notice", schedule_id, name, duration_minutes, start_time)

    async def started(self, schedule_id: str, name: str, duration_minutes: int) -> None:
        await self._each("started", schedule_id, name, duration_minutes)

    async def completed(self, schedule_id: str, name: str) -> None:
        await self._each("completed", schedule_id, name)

    async def error(self, schedule_id: str, name: str, message: str) -> None:
        await self._each("error", schedule_id, name, message)


def build_notifier(webhook_url: Optional[str]) -> NotificationSink:
    sinks: list[NotificationSink] = [LoggingNotificationSink()]
    if webhook_url:
        sinks.append(WebhookNotificationSink(webhook_url))
    return CompositeNotificationSink(sinks)
