"""SQLAlchemy 2.0 async models for the scheduling store."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


# Appointments in these statuses no longer hold their slot.
_RELEASED_STATUSES_SQL = "status NOT IN ('cancelled', 'no_show')"


class Base(DeclarativeBase):
    pass


class CareRelationship(Base):
    """Patient-provider relationship an appointment is booked through."""

    __tablename__ = "care_relationships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_new_uuid)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    assigned_by: Mapped[str] = mapped_column(String(30), default="appointment_scheduling")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("uq_care_relationships_provider_patient", "provider_id", "patient_id", unique=True),
        Index("ix_care_relationships_patient_id", "patient_id"),
    )


class AvailabilityTemplate(Base):
    __tablename__ = "availability_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_new_uuid)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0=Mon..6=Sun
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    slot_duration_minutes: Mapped[int] = mapped_column(Integer, default=30)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=0)
    breaks: Mapped[list] = mapped_column(JSON, default=list)  # [{"start_time", "end_time", "reason"}]
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("uq_availability_templates_provider_day", "provider_id", "day_of_week", unique=True),
    )


class TimeSlotDB(Base):
    __tablename__ = "time_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_new_uuid)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    state: Mapped[str] = mapped_column(String(10), nullable=False, default="open")
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    held_by: Mapped[str | None] = mapped_column(String(255))
    held_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    block_reason: Mapped[str | None] = mapped_column(Text)
    generated_from: Mapped[str] = mapped_column(String(20), default="manual")
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("uq_time_slots_provider_start", "provider_id", "slot_date", "start_time", unique=True),
        Index("ix_time_slots_provider_state_date", "provider_id", "state", "slot_date"),
        Index("ix_time_slots_appointment_id", "appointment_id"),
    )


class AppointmentDB(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_new_uuid)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    care_relationship_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("care_relationships.id", ondelete="RESTRICT"), nullable=False
    )
    slot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("time_slots.id", ondelete="RESTRICT"), nullable=False
    )
    scheduled_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # provider wall clock
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    appointment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    visit_reason: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[dict] = mapped_column(JSON, default=dict)

    # Clinical annotations, accepted once the visit has started
    chief_complaint: Mapped[str | None] = mapped_column(Text)
    vitals: Mapped[dict | None] = mapped_column(JSON)
    clinical_notes: Mapped[str | None] = mapped_column(Text)

    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0)

    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    no_show_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_rescheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_appointments_active_slot",
            "slot_id",
            unique=True,
            sqlite_where=text(_RELEASED_STATUSES_SQL),
            postgresql_where=text(_RELEASED_STATUSES_SQL),
        ),
        Index("ix_appointments_provider_start", "provider_id", "scheduled_start"),
        Index("ix_appointments_patient_start", "patient_id", "scheduled_start"),
        Index("ix_appointments_status", "status"),
    )


class RescheduleRequestDB(Base):
    __tablename__ = "reschedule_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_new_uuid)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    requester_id: Mapped[str] = mapped_column(String(255), nullable=False)
    requester_role: Mapped[str] = mapped_column(String(10), nullable=False)
    current_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    requested_slot_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("time_slots.id", ondelete="SET NULL")
    )
    requested_start: Mapped[datetime | None] = mapped_column(DateTime)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(10), default="pending")
    responder_id: Mapped[str | None] = mapped_column(String(255))
    responder_notes: Mapped[str | None] = mapped_column(Text)
    fulfilled_slot_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_reschedule_requests_pending",
            "appointment_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_reschedule_requests_provider_status", "provider_id", "status"),
        Index("ix_reschedule_requests_patient_status", "patient_id", "status"),
        Index("ix_reschedule_requests_requested_at", "requested_at"),
    )


class StatusChange(Base):
    """Append-only trail of appointment and reschedule-request status changes."""

    __tablename__ = "status_changes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_new_uuid)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20))
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sequence: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_status_changes_entity", "entity_type", "entity_id"),
        Index("ix_status_changes_changed_at", "changed_at"),
    )


class OutboxEvent(Base):
    """Notification event committed together with the state change it describes."""

    __tablename__ = "outbox_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=_new_uuid)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    # Wall-clock insertion time, used for delivery order.
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_outbox_events_delivered_at", "delivered_at"),
        Index("ix_outbox_events_recorded_at", "recorded_at"),
    )
