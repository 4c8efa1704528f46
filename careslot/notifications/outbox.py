"""Transactional outbox: record events with the change, deliver them afterwards."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from careslot.core.database import Database
from careslot.core.repository import OutboxRepository
from careslot.notifications.events import EventType, SchedulingEvent
from careslot.notifications.sinks import NotificationSink

logger = logging.getLogger(__name__)


class Outbox:
    """Session-bound event recorder. Rows commit or roll back with the change."""

    def __init__(self, session: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.repo = OutboxRepository(session)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.recorded: list[SchedulingEvent] = []

    async def record(
        self,
        event_type: EventType,
        status: str,
        appointment_id: Optional[uuid.UUID] = None,
        request_id: Optional[uuid.UUID] = None,
        **metadata: Any,
    ) -> SchedulingEvent:
        event = SchedulingEvent(
            event_type=event_type,
            appointment_id=appointment_id,
            request_id=request_id,
            status=status,
            metadata=metadata,
            timestamp=self.clock(),
        )
        await self.repo.add(event.to_row())
        self.recorded.append(event)
        return event


@dataclass
class DispatchReport:
    delivered: list[uuid.UUID] = field(default_factory=list)
    failed: list[uuid.UUID] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.delivered) + len(self.failed)


class OutboxDispatcher:
    """Delivers committed events to a sink.

    Each event is delivered and marked in its own short transaction, so a
    failing sink never touches scheduling state. Events that exhaust
    ``max_attempts`` stay in the table and are no longer picked up.
    """

    def __init__(self, database: Database, sink: NotificationSink, max_attempts: int = 5):
        self.database = database
        self.sink = sink
        self.max_attempts = max_attempts

    async def dispatch_pending(self, limit: int = 100) -> DispatchReport:
        async with self.database.transaction() as session:
            rows = await OutboxRepository(session).list_undelivered(self.max_attempts, limit=limit)
            events = [SchedulingEvent.from_row(row) for row in rows]

        report = DispatchReport()
        for event in events:
            try:
                await self.sink.deliver(event)
            except Exception as e:
                logger.warning(
                    "Delivery of %s (%s) via %s failed: %s",
                    event.event_id,
                    event.event_type.value,
                    self.sink.name,
                    e,
                )
                await self._mark(event.event_id, error=str(e))
                report.failed.append(event.event_id)
            else:
                await self._mark(event.event_id)
                report.delivered.append(event.event_id)

        if report.total:
            logger.info("Dispatched %d events (%d failed)", len(report.delivered), len(report.failed))
        return report

    async def _mark(self, event_id: uuid.UUID, error: Optional[str] = None) -> None:
        async with self.database.transaction() as session:
            row = await OutboxRepository(session).get(event_id)
            if row is None:
                return
            row.attempts += 1
            if error is None:
                row.delivered_at = datetime.now(timezone.utc)
                row.last_error = None
            else:
                row.last_error = error[:1000]
