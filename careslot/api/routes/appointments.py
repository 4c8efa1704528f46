"""Appointment endpoints: one route per lifecycle operation."""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from careslot.api.dependencies import get_caller, get_service
from careslot.core.schemas import AppointmentRead, StatusChangeRead
from careslot.scheduling.models import AppointmentStatus, BookingRequest, Caller, Vitals
from careslot.scheduling.service import SchedulingService

router = APIRouter(prefix="/appointments")


class CancelIn(BaseModel):
    reason: str


class NoShowIn(BaseModel):
    reason: Optional[str] = None


class CompleteIn(BaseModel):
    notes: Optional[str] = None


class RescheduleIn(BaseModel):
    new_slot_id: uuid.UUID
    reason: str


class ClinicalDataIn(BaseModel):
    vitals: Optional[Vitals] = None
    notes: Optional[str] = Field(default=None, max_length=20000)
    chief_complaint: Optional[str] = None


@router.post("", response_model=AppointmentRead, status_code=201)
async def book_appointment(
    body: BookingRequest,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    """Create an appointment and reserve its slot in one step."""
    return await service.book(caller, body)


@router.get("/{appointment_id}", response_model=AppointmentRead)
async def get_appointment(appointment_id: uuid.UUID, service: SchedulingService = Depends(get_service)):
    return await service.get_appointment(appointment_id)


@router.get("/{appointment_id}/history", response_model=list[StatusChangeRead])
async def appointment_history(appointment_id: uuid.UUID, service: SchedulingService = Depends(get_service)):
    return await service.appointment_history(appointment_id)


@router.get("/provider/{provider_id}", response_model=list[AppointmentRead])
async def list_provider_appointments(
    provider_id: uuid.UUID,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    status: Optional[AppointmentStatus] = Query(default=None),
    service: SchedulingService = Depends(get_service),
):
    return await service.list_provider_appointments(
        provider_id, start, end, status.value if status else None
    )


@router.get("/patient/{patient_id}", response_model=list[AppointmentRead])
async def list_patient_appointments(
    patient_id: uuid.UUID,
    upcoming_only: bool = Query(default=False),
    service: SchedulingService = Depends(get_service),
):
    return await service.list_patient_appointments(patient_id, upcoming_only)


@router.post("/{appointment_id}/confirm", response_model=AppointmentRead)
async def confirm_appointment(
    appointment_id: uuid.UUID,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.confirm(caller, appointment_id)


@router.post("/{appointment_id}/check-in", response_model=AppointmentRead)
async def check_in_appointment(
    appointment_id: uuid.UUID,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.check_in(caller, appointment_id)


@router.post("/{appointment_id}/start", response_model=AppointmentRead)
async def start_appointment(
    appointment_id: uuid.UUID,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.start(caller, appointment_id)


@router.post("/{appointment_id}/complete", response_model=AppointmentRead)
async def complete_appointment(
    appointment_id: uuid.UUID,
    body: Optional[CompleteIn] = None,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.complete(caller, appointment_id, body.notes if body else None)


@router.post("/{appointment_id}/no-show", response_model=AppointmentRead)
async def no_show_appointment(
    appointment_id: uuid.UUID,
    body: Optional[NoShowIn] = None,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.mark_no_show(caller, appointment_id, body.reason if body else None)


@router.post("/{appointment_id}/cancel", response_model=AppointmentRead)
async def cancel_appointment(
    appointment_id: uuid.UUID,
    body: CancelIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.cancel(caller, appointment_id, body.reason)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentRead)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    body: RescheduleIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    """Move the appointment straight into another open slot."""
    return await service.reschedule_with_slot(caller, appointment_id, body.new_slot_id, body.reason)


@router.put("/{appointment_id}/clinical", response_model=AppointmentRead)
async def record_clinical_data(
    appointment_id: uuid.UUID,
    body: ClinicalDataIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.record_clinical_data(
        caller,
        appointment_id,
        vitals=body.vitals,
        notes=body.notes,
        chief_complaint=body.chief_complaint,
    )
