"""Reschedule request endpoints."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from careslot.api.dependencies import get_caller, get_service
from careslot.core.schemas import RescheduleRequestRead
from careslot.scheduling.models import Caller, RescheduleProposal, RescheduleStatus
from careslot.scheduling.service import SchedulingService

router = APIRouter(prefix="/reschedule-requests")


class ApproveIn(BaseModel):
    notes: Optional[str] = None


class RejectIn(BaseModel):
    notes: str


class AssignSlotIn(BaseModel):
    slot_id: uuid.UUID


@router.post("", response_model=RescheduleRequestRead, status_code=201)
async def create_request(
    body: RescheduleProposal,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.create_request(caller, body)


@router.get("/provider/{provider_id}", response_model=list[RescheduleRequestRead])
async def list_provider_requests(
    provider_id: uuid.UUID,
    status: Optional[RescheduleStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    service: SchedulingService = Depends(get_service),
):
    return await service.list_provider_requests(provider_id, status, limit)


@router.get("/patient/{patient_id}", response_model=list[RescheduleRequestRead])
async def list_patient_requests(
    patient_id: uuid.UUID,
    status: Optional[RescheduleStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    service: SchedulingService = Depends(get_service),
):
    return await service.list_patient_requests(patient_id, status, limit)


@router.get("/{request_id}", response_model=RescheduleRequestRead)
async def get_request(request_id: uuid.UUID, service: SchedulingService = Depends(get_service)):
    return await service.get_request(request_id)


@router.post("/{request_id}/approve", response_model=RescheduleRequestRead)
async def approve_request(
    request_id: uuid.UUID,
    body: Optional[ApproveIn] = None,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.approve_request(caller, request_id, body.notes if body else None)


@router.post("/{request_id}/reject", response_model=RescheduleRequestRead)
async def reject_request(
    request_id: uuid.UUID,
    body: RejectIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.reject_request(caller, request_id, body.notes)


@router.post("/{request_id}/cancel", response_model=RescheduleRequestRead)
async def cancel_request(
    request_id: uuid.UUID,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.cancel_request(caller, request_id)


@router.post("/{request_id}/assign-slot", response_model=RescheduleRequestRead)
async def assign_slot(
    request_id: uuid.UUID,
    body: AssignSlotIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    """Bind a slot to a request that was approved by date-time only."""
    return await service.assign_slot(caller, request_id, body.slot_id)
