"""Pydantic snapshots returned by the service and the API."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, ConfigDict


# --- Time slots ---

class TimeSlotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider_id: uuid.UUID
    slot_date: date
    start_time: time
    duration_minutes: int
    state: str
    appointment_id: Optional[uuid.UUID] = None
    held_by: Optional[str] = None
    held_until: Optional[datetime] = None
    block_reason: Optional[str] = None
    generated_from: str
    version: int

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.start_time)


class SlotStats(BaseModel):
    provider_id: uuid.UUID
    start: date
    end: date
    total: int = 0
    open: int = 0
    held: int = 0
    booked: int = 0
    blocked: int = 0
    utilization_rate: float = 0.0


class BlockResult(BaseModel):
    changed: list[uuid.UUID] = []
    conflicts: list[uuid.UUID] = []


class PublishResult(BaseModel):
    provider_id: uuid.UUID
    created: int = 0
    skipped_days: list[date] = []


class PruneResult(BaseModel):
    cutoff: date
    deleted: int = 0
    provider_id: Optional[uuid.UUID] = None


# --- Availability ---

class AvailabilityTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider_id: uuid.UUID
    day_of_week: int
    start_time: time
    end_time: time
    slot_duration_minutes: int
    buffer_minutes: int
    breaks: list[dict] = []
    active: bool


# --- Appointments ---

class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider_id: uuid.UUID
    patient_id: uuid.UUID
    care_relationship_id: uuid.UUID
    slot_id: uuid.UUID
    scheduled_start: datetime
    duration_minutes: int
    timezone: str
    appointment_type: str
    status: str
    visit_reason: str
    location: dict = {}
    chief_complaint: Optional[str] = None
    vitals: Optional[dict] = None
    clinical_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    reschedule_count: int = 0
    confirmed_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    last_rescheduled_at: Optional[datetime] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int


class StatusChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: uuid.UUID
    from_status: Optional[str] = None
    to_status: str
    actor_id: str
    reason: Optional[str] = None
    changed_at: datetime


# --- Reschedule requests ---

class RescheduleRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    appointment_id: uuid.UUID
    provider_id: uuid.UUID
    patient_id: uuid.UUID
    requester_id: str
    requester_role: str
    current_start: datetime
    requested_slot_id: Optional[uuid.UUID] = None
    requested_start: Optional[datetime] = None
    reason: str
    status: str
    responder_id: Optional[str] = None
    responder_notes: Optional[str] = None
    fulfilled_slot_id: Optional[uuid.UUID] = None
    requested_at: datetime
    responded_at: Optional[datetime] = None

    @property
    def awaiting_slot(self) -> bool:
        """Approved by date-time only and not yet bound to a slot."""
        return self.status == "approved" and self.fulfilled_slot_id is None
