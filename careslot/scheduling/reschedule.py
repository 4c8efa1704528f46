"""Reschedule request workflow: request, review, and deferred slot binding."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from careslot.core.models import AppointmentDB, RescheduleRequestDB
from careslot.core.repository import RescheduleRequestRepository
from careslot.notifications.events import EventType
from careslot.notifications.outbox import Outbox
from careslot.scheduling.appointments import AppointmentStateMachine, require_text
from careslot.scheduling.clock import Clock, utcnow
from careslot.scheduling.errors import (
    DuplicatePendingRequestError,
    FieldValidationError,
    InvalidTransitionError,
    RescheduleRequestNotFoundError,
    SlotUnavailableError,
)
from careslot.scheduling.guard import ConsistencyGuard
from careslot.scheduling.models import (
    AppointmentStatus,
    Caller,
    RescheduleProposal,
    RescheduleStatus,
)

logger = logging.getLogger(__name__)

ENTITY = "reschedule_request"

# Appointments that may still be moved by request.
_REQUESTABLE = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)


class RescheduleWorkflow:
    """Pending requests and the review decisions that resolve them."""

    def __init__(
        self,
        session: AsyncSession,
        machine: AppointmentStateMachine,
        guard: ConsistencyGuard,
        outbox: Outbox,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.machine = machine
        self.guard = guard
        self.outbox = outbox
        self.clock = clock
        self.requests = RescheduleRequestRepository(session)
        self.history = machine.history

    async def get(self, request_id: uuid.UUID) -> RescheduleRequestDB:
        request = await self.requests.get(request_id, for_update=True)
        if request is None:
            raise RescheduleRequestNotFoundError(request_id)
        return request

    async def create_request(self, caller: Caller, proposal: RescheduleProposal) -> RescheduleRequestDB:
        reason = require_text("reason", proposal.reason)
        if proposal.requested_slot_id is None and proposal.requested_start is None:
            raise FieldValidationError(
                "requested_slot_id",
                "Either a requested slot or a requested date-time is required",
                appointment_id=proposal.appointment_id,
            )

        appointment = await self.machine.get(proposal.appointment_id)
        status = AppointmentStatus(appointment.status)
        if status not in _REQUESTABLE:
            raise InvalidTransitionError("appointment", appointment.id, status, AppointmentStatus.RESCHEDULED)

        existing = await self.requests.find_pending(appointment.id)
        if existing is not None:
            raise DuplicatePendingRequestError(appointment.id, existing.id)

        requested_start = proposal.requested_start
        if proposal.requested_slot_id is not None:
            slot = await self.machine.inventory.get(proposal.requested_slot_id)
            if slot.provider_id != appointment.provider_id:
                raise FieldValidationError(
                    "requested_slot_id",
                    f"Slot {slot.id} belongs to another provider",
                    slot_id=slot.id,
                    appointment_id=appointment.id,
                )
            if slot.id == appointment.slot_id or not self.guard.is_open(slot, self.clock()):
                raise SlotUnavailableError(slot.id, slot.state)
            requested_start = datetime.combine(slot.slot_date, slot.start_time)

        request = RescheduleRequestDB(
            appointment_id=appointment.id,
            provider_id=appointment.provider_id,
            patient_id=appointment.patient_id,
            requester_id=caller.id,
            requester_role=caller.role.value,
            current_start=appointment.scheduled_start,
            requested_slot_id=proposal.requested_slot_id,
            requested_start=requested_start,
            reason=reason,
            status=RescheduleStatus.PENDING.value,
            requested_at=self.clock(),
        )
        try:
            await self.requests.add(request)
        except IntegrityError as e:
            raise DuplicatePendingRequestError(appointment.id) from e

        await self.guard.verify_single_pending(appointment.id)
        await self.history.log(ENTITY, request.id, None, request.status, caller.id, reason)
        await self.outbox.record(
            EventType.RESCHEDULE_REQUESTED,
            request.status,
            appointment_id=appointment.id,
            request_id=request.id,
            requester_role=caller.role.value,
            requested_slot_id=str(request.requested_slot_id) if request.requested_slot_id else None,
            requested_start=requested_start.isoformat() if requested_start else None,
        )
        logger.info("Reschedule request %s opened for appointment %s", request.id, appointment.id)
        return request

    async def approve_request(
        self, caller: Caller, request_id: uuid.UUID, notes: Optional[str] = None
    ) -> RescheduleRequestDB:
        """Approve and apply. With a slot the appointment moves now; otherwise it
        waits in ``rescheduled`` for ``assign_slot``.
        """
        request = await self.get(request_id)
        self._require_pending(request, RescheduleStatus.APPROVED)

        deferred = request.requested_slot_id is None
        if deferred:
            await self.machine.mark_rescheduled(caller, request.appointment_id, request.reason)
        else:
            await self.machine.reschedule_with_slot(
                caller,
                request.appointment_id,
                request.requested_slot_id,
                request.reason,
                request_id=request.id,
            )
            request.fulfilled_slot_id = request.requested_slot_id

        await self._resolve(request, caller, RescheduleStatus.APPROVED, notes)
        await self.outbox.record(
            EventType.RESCHEDULE_APPROVED,
            request.status,
            appointment_id=request.appointment_id,
            request_id=request.id,
            awaiting_slot=deferred,
        )
        return request

    async def assign_slot(
        self, caller: Caller, request_id: uuid.UUID, slot_id: uuid.UUID
    ) -> RescheduleRequestDB:
        """Bind the slot for a request approved by date-time only."""
        request = await self.get(request_id)
        if request.status != RescheduleStatus.APPROVED.value or request.fulfilled_slot_id is not None:
            raise FieldValidationError(
                "request_id",
                f"Reschedule request {request.id} is not awaiting a slot",
                request_id=request.id,
                status=request.status,
            )
        await self.machine.reschedule_with_slot(
            caller, request.appointment_id, slot_id, request.reason, request_id=request.id
        )
        request.fulfilled_slot_id = slot_id
        await self.session.flush()
        return request

    async def reject_request(
        self, caller: Caller, request_id: uuid.UUID, notes: str
    ) -> RescheduleRequestDB:
        notes = require_text("notes", notes)
        request = await self.get(request_id)
        self._require_pending(request, RescheduleStatus.REJECTED)
        await self._resolve(request, caller, RescheduleStatus.REJECTED, notes)
        await self.outbox.record(
            EventType.RESCHEDULE_REJECTED,
            request.status,
            appointment_id=request.appointment_id,
            request_id=request.id,
            notes=notes,
        )
        return request

    async def cancel_request(self, caller: Caller, request_id: uuid.UUID) -> RescheduleRequestDB:
        request = await self.get(request_id)
        self._require_pending(request, RescheduleStatus.CANCELLED)
        await self._resolve(request, caller, RescheduleStatus.CANCELLED, None)
        await self.outbox.record(
            EventType.RESCHEDULE_CANCELLED,
            request.status,
            appointment_id=request.appointment_id,
            request_id=request.id,
        )
        return request

    async def close_pending(
        self, caller: Caller, appointment: AppointmentDB, note: Optional[str] = None
    ) -> Optional[RescheduleRequestDB]:
        """Cancel the pending request of an appointment that left the schedule or was moved."""
        request = await self.requests.find_pending(appointment.id)
        if request is None:
            return None
        note = note or f"Appointment {appointment.status}"
        await self._resolve(request, caller, RescheduleStatus.CANCELLED, note)
        await self.outbox.record(
            EventType.RESCHEDULE_CANCELLED,
            request.status,
            appointment_id=appointment.id,
            request_id=request.id,
            notes=note,
        )
        return request

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_for_provider(
        self, provider_id: uuid.UUID, status: Optional[RescheduleStatus] = None, limit: int = 50
    ) -> list[RescheduleRequestDB]:
        return list(
            await self.requests.list_for_provider(provider_id, status.value if status else None, limit)
        )

    async def list_for_patient(
        self, patient_id: uuid.UUID, status: Optional[RescheduleStatus] = None, limit: int = 50
    ) -> list[RescheduleRequestDB]:
        return list(
            await self.requests.list_for_patient(patient_id, status.value if status else None, limit)
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_pending(request: RescheduleRequestDB, target: RescheduleStatus) -> None:
        if request.status != RescheduleStatus.PENDING.value:
            raise InvalidTransitionError(ENTITY, request.id, request.status, target)

    async def _resolve(
        self,
        request: RescheduleRequestDB,
        caller: Caller,
        target: RescheduleStatus,
        notes: Optional[str],
    ) -> None:
        previous = request.status
        request.status = target.value
        request.responder_id = caller.id
        request.responder_notes = notes
        request.responded_at = self.clock()
        await self.session.flush()
        await self.history.log(ENTITY, request.id, previous, request.status, caller.id, notes)
        logger.info("Reschedule request %s %s -> %s", request.id, previous, request.status)
