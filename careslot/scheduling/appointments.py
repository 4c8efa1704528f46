"""Appointment lifecycle. Every status change goes through the transition graph."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from careslot.core.models import AppointmentDB
from careslot.core.repository import (
    AppointmentRepository,
    CareRelationshipRepository,
    StatusChangeRepository,
)
from careslot.notifications.events import EventType
from careslot.notifications.outbox import Outbox
from careslot.scheduling.clock import Clock, utcnow
from careslot.scheduling.errors import (
    AppointmentNotFoundError,
    FieldValidationError,
    InvalidTransitionError,
    RescheduleFailedError,
    SlotNotFoundError,
    SlotUnavailableError,
)
from careslot.scheduling.guard import ConsistencyGuard
from careslot.scheduling.inventory import SlotInventory
from careslot.scheduling.models import (
    RESCHEDULABLE_STATUSES,
    AppointmentStatus,
    BookingRequest,
    Caller,
    Vitals,
    can_transition,
)

logger = logging.getLogger(__name__)

ENTITY = "appointment"

_EVENTS = {
    AppointmentStatus.CONFIRMED: EventType.APPOINTMENT_CONFIRMED,
    AppointmentStatus.CHECKED_IN: EventType.APPOINTMENT_CHECKED_IN,
    AppointmentStatus.IN_PROGRESS: EventType.APPOINTMENT_STARTED,
    AppointmentStatus.COMPLETED: EventType.APPOINTMENT_COMPLETED,
    AppointmentStatus.CANCELLED: EventType.APPOINTMENT_CANCELLED,
    AppointmentStatus.NO_SHOW: EventType.APPOINTMENT_NO_SHOW,
    AppointmentStatus.RESCHEDULED: EventType.APPOINTMENT_RESCHEDULED,
}


def require_text(field: str, value: Optional[str]) -> str:
    if value is None or not value.strip():
        raise FieldValidationError(field, f"{field} must not be blank")
    return value.strip()


class AppointmentStateMachine:
    """Applies appointment transitions and their slot side effects."""

    def __init__(
        self,
        session: AsyncSession,
        inventory: SlotInventory,
        guard: ConsistencyGuard,
        outbox: Outbox,
        clock: Clock = utcnow,
        default_timezone: str = "UTC",
    ):
        self.session = session
        self.inventory = inventory
        self.guard = guard
        self.outbox = outbox
        self.clock = clock
        self.default_timezone = default_timezone
        self.appointments = AppointmentRepository(session)
        self.relationships = CareRelationshipRepository(session)
        self.history = StatusChangeRepository(session)

    async def get(self, appointment_id: uuid.UUID) -> AppointmentDB:
        appointment = await self.appointments.get(appointment_id, for_update=True)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(self, caller: Caller, request: BookingRequest) -> AppointmentDB:
        """Create a scheduled appointment and reserve its slot."""
        visit_reason = require_text("visit_reason", request.visit_reason)
        slot = await self.inventory.get(request.slot_id)
        if slot.provider_id != request.provider_id:
            raise FieldValidationError(
                "slot_id",
                f"Slot {slot.id} belongs to another provider",
                slot_id=slot.id,
                provider_id=request.provider_id,
            )

        appointment_id = uuid.uuid4()
        await self.inventory.reserve(slot.id, appointment_id, holder_id=request.holder_id)
        relationship = await self.relationships.get_or_create(request.provider_id, request.patient_id)

        appointment = AppointmentDB(
            id=appointment_id,
            provider_id=request.provider_id,
            patient_id=request.patient_id,
            care_relationship_id=relationship.id,
            slot_id=slot.id,
            scheduled_start=datetime.combine(slot.slot_date, slot.start_time),
            duration_minutes=slot.duration_minutes,
            timezone=request.timezone or self.default_timezone,
            appointment_type=request.appointment_type.value,
            status=AppointmentStatus.SCHEDULED.value,
            visit_reason=visit_reason,
            location=request.location.model_dump(mode="json"),
            created_by=caller.id,
        )
        await self.appointments.add(appointment)
        await self.history.log(ENTITY, appointment.id, None, appointment.status, caller.id)
        await self.guard.verify_appointment(appointment)
        await self.outbox.record(
            EventType.APPOINTMENT_BOOKED,
            appointment.status,
            appointment_id=appointment.id,
            slot_id=str(slot.id),
            provider_id=str(appointment.provider_id),
            patient_id=str(appointment.patient_id),
            scheduled_start=appointment.scheduled_start.isoformat(),
        )
        logger.info("Booked appointment %s into slot %s", appointment.id, slot.id)
        return appointment

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    async def confirm(self, caller: Caller, appointment_id: uuid.UUID) -> AppointmentDB:
        appointment = await self.get(appointment_id)
        previous = self._move(appointment, AppointmentStatus.CONFIRMED)
        appointment.confirmed_at = self.clock()
        return await self._finish(appointment, caller, previous)

    async def check_in(self, caller: Caller, appointment_id: uuid.UUID) -> AppointmentDB:
        appointment = await self.get(appointment_id)
        previous = self._move(appointment, AppointmentStatus.CHECKED_IN)
        appointment.checked_in_at = self.clock()
        return await self._finish(appointment, caller, previous)

    async def start(self, caller: Caller, appointment_id: uuid.UUID) -> AppointmentDB:
        appointment = await self.get(appointment_id)
        previous = self._move(appointment, AppointmentStatus.IN_PROGRESS)
        appointment.started_at = self.clock()
        return await self._finish(appointment, caller, previous)

    async def complete(
        self, caller: Caller, appointment_id: uuid.UUID, notes: Optional[str] = None
    ) -> AppointmentDB:
        """Finish the visit. The slot stays booked as a record of the visit."""
        appointment = await self.get(appointment_id)
        previous = self._move(appointment, AppointmentStatus.COMPLETED)
        appointment.completed_at = self.clock()
        if notes:
            appointment.clinical_notes = notes
        return await self._finish(appointment, caller, previous)

    async def mark_no_show(
        self, caller: Caller, appointment_id: uuid.UUID, reason: Optional[str] = None
    ) -> AppointmentDB:
        appointment = await self.get(appointment_id)
        previous = self._move(appointment, AppointmentStatus.NO_SHOW)
        appointment.no_show_at = self.clock()
        await self.inventory.release(appointment.slot_id)
        return await self._finish(appointment, caller, previous, reason)

    async def cancel(self, caller: Caller, appointment_id: uuid.UUID, reason: str) -> AppointmentDB:
        reason = require_text("reason", reason)
        appointment = await self.get(appointment_id)
        previous = self._move(appointment, AppointmentStatus.CANCELLED)
        appointment.cancelled_at = self.clock()
        appointment.cancellation_reason = reason
        await self.inventory.release(appointment.slot_id)
        return await self._finish(appointment, caller, previous, reason, cancelled_by=caller.role.value)

    async def mark_rescheduled(
        self, caller: Caller, appointment_id: uuid.UUID, reason: Optional[str] = None
    ) -> AppointmentDB:
        """Park an appointment awaiting a new slot. Its current slot stays booked."""
        appointment = await self.get(appointment_id)
        previous = self._move(appointment, AppointmentStatus.RESCHEDULED)
        return await self._finish(appointment, caller, previous, reason, awaiting_slot=True)

    async def reschedule_with_slot(
        self,
        caller: Caller,
        appointment_id: uuid.UUID,
        new_slot_id: uuid.UUID,
        reason: str,
        request_id: Optional[uuid.UUID] = None,
    ) -> AppointmentDB:
        """Bind the appointment to ``new_slot_id`` and return it to scheduled.

        On failure nothing changes: the old slot stays booked and the
        appointment keeps its status.
        """
        reason = require_text("reason", reason)
        appointment = await self.get(appointment_id)
        current = AppointmentStatus(appointment.status)
        if current not in RESCHEDULABLE_STATUSES:
            raise InvalidTransitionError(ENTITY, appointment.id, current, AppointmentStatus.RESCHEDULED)
        if new_slot_id == appointment.slot_id:
            raise FieldValidationError(
                "new_slot_id",
                f"Appointment {appointment.id} is already in slot {new_slot_id}",
                appointment_id=appointment.id,
            )

        old_slot_id = appointment.slot_id
        try:
            _, target = await self.inventory.lock_pair(old_slot_id, new_slot_id)
            if target.provider_id != appointment.provider_id:
                raise RescheduleFailedError(
                    appointment.id,
                    f"slot {new_slot_id} belongs to another provider",
                    slot_id=new_slot_id,
                    request_id=request_id,
                )
            new_slot = await self.inventory.exchange(old_slot_id, new_slot_id, appointment.id)
        except (SlotUnavailableError, SlotNotFoundError) as e:
            raise RescheduleFailedError(
                appointment.id, e.message, slot_id=new_slot_id, request_id=request_id
            ) from e

        now = self.clock()
        appointment.slot_id = new_slot.id
        appointment.scheduled_start = datetime.combine(new_slot.slot_date, new_slot.start_time)
        appointment.duration_minutes = new_slot.duration_minutes
        appointment.status = AppointmentStatus.SCHEDULED.value
        appointment.confirmed_at = None
        appointment.reschedule_count = (appointment.reschedule_count or 0) + 1
        appointment.last_rescheduled_at = now
        await self.session.flush()

        if current != AppointmentStatus.RESCHEDULED:
            await self.history.log(
                ENTITY, appointment.id, current.value, AppointmentStatus.RESCHEDULED.value, caller.id, reason
            )
        await self.history.log(
            ENTITY, appointment.id, AppointmentStatus.RESCHEDULED.value, appointment.status, caller.id, reason
        )
        await self.guard.verify_appointment(appointment)
        await self.outbox.record(
            EventType.APPOINTMENT_RESCHEDULED,
            appointment.status,
            appointment_id=appointment.id,
            request_id=request_id,
            old_slot_id=str(old_slot_id),
            new_slot_id=str(new_slot.id),
            scheduled_start=appointment.scheduled_start.isoformat(),
            reason=reason,
        )
        logger.info("Rescheduled appointment %s from slot %s to %s", appointment.id, old_slot_id, new_slot.id)
        return appointment

    # ------------------------------------------------------------------
    # Clinical annotations
    # ------------------------------------------------------------------

    async def record_clinical_data(
        self,
        caller: Caller,
        appointment_id: uuid.UUID,
        vitals: Optional[Vitals] = None,
        notes: Optional[str] = None,
        chief_complaint: Optional[str] = None,
    ) -> AppointmentDB:
        appointment = await self.get(appointment_id)
        status = AppointmentStatus(appointment.status)
        if status not in (AppointmentStatus.IN_PROGRESS, AppointmentStatus.COMPLETED):
            raise FieldValidationError(
                "status",
                f"Clinical data can only be recorded once the visit has started (status is {status.value})",
                appointment_id=appointment.id,
            )
        if vitals is not None:
            appointment.vitals = vitals.model_dump(exclude_none=True)
        if notes is not None:
            appointment.clinical_notes = notes
        if chief_complaint is not None:
            appointment.chief_complaint = chief_complaint
        await self.session.flush()
        return appointment

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _move(self, appointment: AppointmentDB, target: AppointmentStatus) -> AppointmentStatus:
        current = AppointmentStatus(appointment.status)
        # Returning to SCHEDULED is only reachable through reschedule_with_slot.
        if target == AppointmentStatus.SCHEDULED or not can_transition(current, target):
            raise InvalidTransitionError(ENTITY, appointment.id, current, target)
        appointment.status = target.value
        return current

    async def _finish(
        self,
        appointment: AppointmentDB,
        caller: Caller,
        previous: AppointmentStatus,
        reason: Optional[str] = None,
        **metadata,
    ) -> AppointmentDB:
        await self.session.flush()
        await self.history.log(ENTITY, appointment.id, previous.value, appointment.status, caller.id, reason)
        await self.guard.verify_appointment(appointment)
        status = AppointmentStatus(appointment.status)
        await self.outbox.record(
            _EVENTS[status],
            status.value,
            appointment_id=appointment.id,
            previous_status=previous.value,
            actor_id=caller.id,
            **({"reason": reason} if reason else {}),
            **metadata,
        )
        logger.info("Appointment %s %s -> %s", appointment.id, previous.value, status.value)
        return appointment
