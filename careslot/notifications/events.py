"""Notification events emitted for scheduling state changes."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from careslot.core.models import OutboxEvent


class EventType(str, Enum):
    """Types of scheduling events."""

    APPOINTMENT_BOOKED = "appointment.booked"
    APPOINTMENT_CONFIRMED = "appointment.confirmed"
    APPOINTMENT_CHECKED_IN = "appointment.checked_in"
    APPOINTMENT_STARTED = "appointment.started"
    APPOINTMENT_COMPLETED = "appointment.completed"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_NO_SHOW = "appointment.no_show"
    APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
    RESCHEDULE_REQUESTED = "reschedule.requested"
    RESCHEDULE_APPROVED = "reschedule.approved"
    RESCHEDULE_REJECTED = "reschedule.rejected"
    RESCHEDULE_CANCELLED = "reschedule.cancelled"


class SchedulingEvent(BaseModel):
    """Outbound event describing one committed state change."""

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    appointment_id: Optional[uuid.UUID] = None
    request_id: Optional[uuid.UUID] = None
    status: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_row(self) -> OutboxEvent:
        return OutboxEvent(
            id=self.event_id,
            event_type=self.event_type.value,
            appointment_id=self.appointment_id,
            request_id=self.request_id,
            status=self.status,
            occurred_at=self.timestamp,
            payload=self.model_dump(mode="json")["metadata"],
        )

    @classmethod
    def from_row(cls, row: OutboxEvent) -> "SchedulingEvent":
        return cls(
            event_id=row.id,
            event_type=EventType(row.event_type),
            appointment_id=row.appointment_id,
            request_id=row.request_id,
            status=row.status,
            timestamp=row.occurred_at,
            metadata=row.payload or {},
        )
