"""Tests for reschedule requests: creation, review and deferred slot binding."""

import uuid
from datetime import datetime, timezone

import pytest

from careslot.core.repository import OutboxRepository
from careslot.scheduling.clock import as_utc
from careslot.scheduling.errors import (
    DuplicatePendingRequestError,
    FieldValidationError,
    InvalidTransitionError,
    RescheduleFailedError,
    RescheduleRequestNotFoundError,
    SlotUnavailableError,
)
from careslot.scheduling.models import RescheduleProposal, RescheduleStatus


def _proposal(appointment_id, slot_id=None, start=None, reason="Work meeting moved"):
    return RescheduleProposal(
        appointment_id=appointment_id,
        reason=reason,
        requested_slot_id=slot_id,
        requested_start=start,
    )


# ------------------------------------------------------------------ creation

class TestCreateRequest:
    async def test_create_with_slot(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))

        assert request.status == "pending"
        assert request.requester_id == "pt-lindqvist"
        assert request.requester_role == "patient"
        assert request.current_start == datetime(2026, 3, 9, 9, 0)
        assert request.requested_start == datetime(2026, 3, 9, 11, 0)
        assert request.responded_at is None
        assert as_utc(request.requested_at) == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

        # A pending request does not take the slot
        slot = await service.get_slot(slots[4].id)
        assert slot.state == "open"

    async def test_create_with_preferred_time_only(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        wanted = datetime(2026, 3, 16, 14, 0)
        request = await service.create_request(patient, _proposal(appointment.id, start=wanted))
        assert request.requested_slot_id is None
        assert request.requested_start == wanted

    async def test_needs_slot_or_time(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        with pytest.raises(FieldValidationError):
            await service.create_request(patient, _proposal(appointment.id))

    async def test_needs_reason(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        with pytest.raises(FieldValidationError) as exc:
            await service.create_request(patient, _proposal(appointment.id, slots[1].id, reason=""))
        assert exc.value.field == "reason"

    async def test_duplicate_pending_rejected(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        first = await service.create_request(patient, _proposal(appointment.id, slots[1].id))

        with pytest.raises(DuplicatePendingRequestError) as exc:
            await service.create_request(doctor, _proposal(appointment.id, slots[2].id))
        assert exc.value.details["existing_request_id"] == str(first.id)

    async def test_requested_slot_must_be_open(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        await book(slots[1].id, patient_id=uuid.uuid4())
        with pytest.raises(SlotUnavailableError):
            await service.create_request(patient, _proposal(appointment.id, slots[1].id))

    async def test_requested_slot_cannot_be_current(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        with pytest.raises(SlotUnavailableError):
            await service.create_request(patient, _proposal(appointment.id, slots[0].id))

    async def test_only_upcoming_appointments(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        await service.confirm(doctor, appointment.id)
        await service.check_in(doctor, appointment.id)
        with pytest.raises(InvalidTransitionError):
            await service.create_request(patient, _proposal(appointment.id, slots[1].id))


# ------------------------------------------------------------------ approval

class TestApprove:
    async def test_approve_moves_appointment(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))

        approved = await service.approve_request(doctor, request.id, notes="See you then")
        assert approved.status == "approved"
        assert approved.responder_id == "dr-okafor"
        assert approved.responder_notes == "See you then"
        assert approved.fulfilled_slot_id == slots[4].id
        assert approved.responded_at is not None
        assert not approved.awaiting_slot

        moved = await service.get_appointment(appointment.id)
        assert moved.slot_id == slots[4].id
        assert moved.status == "scheduled"
        assert moved.reschedule_count == 1

        assert (await service.get_slot(slots[0].id)).state == "open"
        assert (await service.get_slot(slots[4].id)).state == "booked"
        assert await service.audit() == []

    async def test_approve_after_slot_taken_fails_cleanly(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))
        await book(slots[4].id, patient_id=uuid.uuid4())

        with pytest.raises(RescheduleFailedError) as exc:
            await service.approve_request(doctor, request.id)
        assert exc.value.details["request_id"] == str(request.id)

        still_pending = await service.get_request(request.id)
        assert still_pending.status == "pending"
        unchanged = await service.get_appointment(appointment.id)
        assert unchanged.slot_id == slots[0].id
        assert (await service.get_slot(slots[0].id)).state == "booked"

    async def test_approve_twice_fails(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))
        await service.approve_request(doctor, request.id)
        with pytest.raises(InvalidTransitionError):
            await service.approve_request(doctor, request.id)

    async def test_unknown_request(self, service, doctor):
        with pytest.raises(RescheduleRequestNotFoundError):
            await service.approve_request(doctor, uuid.uuid4())


class TestDeferredApproval:
    async def test_approve_by_time_then_assign(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(
            patient, _proposal(appointment.id, start=datetime(2026, 3, 9, 11, 0))
        )

        approved = await service.approve_request(doctor, request.id)
        assert approved.awaiting_slot

        parked = await service.get_appointment(appointment.id)
        assert parked.status == "rescheduled"
        assert (await service.get_slot(slots[0].id)).state == "booked"
        assert await service.audit() == []

        assigned = await service.assign_slot(doctor, request.id, slots[4].id)
        assert assigned.fulfilled_slot_id == slots[4].id
        assert not assigned.awaiting_slot

        moved = await service.get_appointment(appointment.id)
        assert moved.status == "scheduled"
        assert moved.slot_id == slots[4].id
        assert (await service.get_slot(slots[0].id)).state == "open"

    async def test_assign_only_when_awaiting(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))
        with pytest.raises(FieldValidationError):
            await service.assign_slot(doctor, request.id, slots[5].id)

        await service.approve_request(doctor, request.id)
        with pytest.raises(FieldValidationError):
            await service.assign_slot(doctor, request.id, slots[5].id)

    async def test_cancel_while_awaiting_slot_releases_original(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(
            patient, _proposal(appointment.id, start=datetime(2026, 3, 10, 9, 0))
        )
        await service.approve_request(doctor, request.id)

        cancelled = await service.cancel(patient, appointment.id, "Found another clinic")
        assert cancelled.status == "cancelled"
        assert (await service.get_slot(slots[0].id)).state == "open"


# ------------------------------------------------------------------ rejection and withdrawal

class TestRejectAndCancel:
    async def test_reject_keeps_appointment(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))

        rejected = await service.reject_request(doctor, request.id, "Fully booked that afternoon")
        assert rejected.status == "rejected"
        assert rejected.responder_notes == "Fully booked that afternoon"

        unchanged = await service.get_appointment(appointment.id)
        assert unchanged.slot_id == slots[0].id
        assert unchanged.status == "scheduled"

    async def test_reject_needs_notes(self, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))
        with pytest.raises(FieldValidationError):
            await service.reject_request(doctor, request.id, "")

    async def test_cancel_request_allows_new_one(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))

        withdrawn = await service.cancel_request(patient, request.id)
        assert withdrawn.status == "cancelled"
        assert withdrawn.responder_id == "pt-lindqvist"

        again = await service.create_request(patient, _proposal(appointment.id, slots[5].id))
        assert again.status == "pending"

    async def test_cancel_request_twice_fails(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))
        await service.cancel_request(patient, request.id)
        with pytest.raises(InvalidTransitionError):
            await service.cancel_request(patient, request.id)

    async def test_cancelling_appointment_closes_pending_request(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))

        await service.cancel(patient, appointment.id, "No longer needed")
        closed = await service.get_request(request.id)
        assert closed.status == "cancelled"
        assert closed.responder_notes == "Appointment cancelled"

    async def test_direct_reschedule_closes_pending_request(self, database, service, slots, book, patient, doctor):
        appointment = await book(slots[0].id)
        request = await service.create_request(patient, _proposal(appointment.id, slots[4].id))

        moved = await service.reschedule_with_slot(doctor, appointment.id, slots[4].id, "Patient called the desk")
        assert moved.slot_id == slots[4].id

        closed = await service.get_request(request.id)
        assert closed.status == "cancelled"
        assert closed.responder_id == "dr-okafor"
        assert closed.responder_notes == "Appointment rescheduled"

        async with database.transaction() as session:
            rows = await OutboxRepository(session).list_for_appointment(appointment.id)
        cancelled = [row for row in rows if row.event_type == "reschedule.cancelled"]
        assert [row.request_id for row in cancelled] == [request.id]
        assert cancelled[0].payload["notes"] == "Appointment rescheduled"

        again = await service.create_request(patient, _proposal(appointment.id, slots[5].id))
        assert again.status == "pending"
        assert await service.audit() == []


# ------------------------------------------------------------------ listings

class TestRequestListings:
    async def test_filters_by_status(self, service, slots, book, patient, doctor, provider_id, patient_id):
        first = await book(slots[0].id)
        second = await book(slots[1].id)
        kept = await service.create_request(patient, _proposal(first.id, slots[4].id))
        dropped = await service.create_request(patient, _proposal(second.id, slots[5].id))
        await service.reject_request(doctor, dropped.id, "Not possible")

        pending = await service.list_provider_requests(provider_id, RescheduleStatus.PENDING)
        assert [r.id for r in pending] == [kept.id]

        everything = await service.list_patient_requests(patient_id)
        assert {r.id for r in everything} == {kept.id, dropped.id}
