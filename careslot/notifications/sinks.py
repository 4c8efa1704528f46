"""Delivery sinks for scheduling events."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

import httpx

from careslot.config import Settings, get_settings
from careslot.notifications.events import SchedulingEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Anything that can hand an event to the notification collaborator.

    ``deliver`` raises on failure; the dispatcher records the attempt.
    """

    name: str

    async def deliver(self, event: SchedulingEvent) -> None: ...


class LoggingSink:
    """Writes events to the application log."""

    name = "log"

    async def deliver(self, event: SchedulingEvent) -> None:
        logger.info(
            "Scheduling event %s appointment=%s request=%s status=%s",
            event.event_type.value,
            event.appointment_id,
            event.request_id,
            event.status,
        )


class JsonlSink:
    """Appends events to a JSON Lines file for later pickup."""

    name = "jsonl"

    def __init__(self, log_dir: Path, filename: str = "scheduling_events.jsonl"):
        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.log_dir / filename

    async def deliver(self, event: SchedulingEvent) -> None:
        await asyncio.to_thread(self._append, event.model_dump_json() + "\n")

    def _append(self, line: str) -> None:
        with open(self.path, "a") as f:
            f.write(line)


class WebhookSink:
    """POSTs each event as JSON to an HTTP endpoint."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def deliver(self, event: SchedulingEvent) -> None:
        payload = event.model_dump(mode="json")
        headers = {"X-Event-Type": event.event_type.value, "X-Event-Id": str(event.event_id)}
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=payload, headers=headers)
            response.raise_for_status()


def create_sink_from_settings(settings: Optional[Settings] = None) -> NotificationSink:
    """Build the configured sink. Falls back to logging if no webhook URL is set."""
    settings = settings or get_settings()

    if settings.notification_sink == "jsonl":
        return JsonlSink(settings.notification_log_dir)
    if settings.notification_sink == "webhook":
        if settings.has_webhook:
            return WebhookSink(settings.notification_webhook_url, timeout=settings.notification_timeout)
        logger.warning("Webhook sink selected but no URL configured; using log sink")
    return LoggingSink()
