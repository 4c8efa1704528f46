"""Scheduling notification events and their outbox."""

from careslot.notifications.events import EventType, SchedulingEvent
from careslot.notifications.outbox import DispatchReport, Outbox, OutboxDispatcher
from careslot.notifications.sinks import (
    JsonlSink,
    LoggingSink,
    NotificationSink,
    WebhookSink,
    create_sink_from_settings,
)

__all__ = [
    "DispatchReport",
    "EventType",
    "JsonlSink",
    "LoggingSink",
    "NotificationSink",
    "Outbox",
    "OutboxDispatcher",
    "SchedulingEvent",
    "WebhookSink",
    "create_sink_from_settings",
]
