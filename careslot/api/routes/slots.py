"""Slot browsing, holds, provider exceptions and publishing."""

import uuid
from datetime import date, datetime, time, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from careslot.api.dependencies import get_caller, get_service
from careslot.core.schemas import (
    AvailabilityTemplateRead,
    BlockResult,
    PublishResult,
    SlotStats,
    TimeSlotRead,
)
from careslot.scheduling.models import AvailabilityWindow, Caller, DateRange
from careslot.scheduling.service import SchedulingService

router = APIRouter()


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class HoldIn(BaseModel):
    holder_id: str = Field(min_length=1)
    ttl_minutes: Optional[int] = Field(default=None, ge=1, le=120)


class BlockIn(BaseModel):
    day: date
    reason: str = Field(min_length=1)
    start_time: Optional[time] = None
    end_time: Optional[time] = None


class UnblockIn(BaseModel):
    day: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None


class SlotIn(BaseModel):
    slot_date: date
    start_time: time
    duration_minutes: int = Field(default=30, ge=5, le=240)


class PublishIn(BaseModel):
    start: date
    end: date


def _date_range(start: date, end: Optional[date], default_days: int) -> DateRange:
    try:
        return DateRange(start=start, end=end or start + timedelta(days=default_days))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------

@router.get("/providers/{provider_id}/slots", response_model=list[TimeSlotRead])
async def list_available_slots(
    provider_id: uuid.UUID,
    start: date = Query(...),
    end: Optional[date] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    service: SchedulingService = Depends(get_service),
):
    """Open slots for a provider, earliest first."""
    slots: list[TimeSlotRead] = []
    async for slot in service.list_available(provider_id, _date_range(start, end, 7)):
        slots.append(slot)
        if len(slots) >= limit:
            break
    return slots


@router.get("/providers/{provider_id}/slots/stats", response_model=SlotStats)
async def slot_stats(
    provider_id: uuid.UUID,
    start: date = Query(...),
    end: Optional[date] = Query(default=None),
    service: SchedulingService = Depends(get_service),
):
    return await service.slot_stats(provider_id, _date_range(start, end, 30))


@router.get("/providers/{provider_id}/slots/next", response_model=Optional[TimeSlotRead])
async def next_available_slot(
    provider_id: uuid.UUID,
    after: Optional[datetime] = Query(default=None),
    service: SchedulingService = Depends(get_service),
):
    return await service.next_available(provider_id, after or datetime.now())


@router.get("/slots/{slot_id}", response_model=TimeSlotRead)
async def get_slot(slot_id: uuid.UUID, service: SchedulingService = Depends(get_service)):
    return await service.get_slot(slot_id)


@router.get("/slots/{slot_id}/alternatives", response_model=list[TimeSlotRead])
async def slot_alternatives(
    slot_id: uuid.UUID,
    limit: int = Query(default=5, ge=1, le=20),
    service: SchedulingService = Depends(get_service),
):
    """Open slots of the same provider closest in time to this one."""
    return await service.find_alternatives(slot_id, limit)


@router.post("/slots/{slot_id}/hold", response_model=TimeSlotRead)
async def hold_slot(
    slot_id: uuid.UUID,
    body: HoldIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    ttl = timedelta(minutes=body.ttl_minutes) if body.ttl_minutes else None
    return await service.hold_slot(slot_id, body.holder_id, ttl)


# ---------------------------------------------------------------------------
# Provider exceptions and publishing
# ---------------------------------------------------------------------------

@router.post("/providers/{provider_id}/slots/block", response_model=BlockResult)
async def block_slots(
    provider_id: uuid.UUID,
    body: BlockIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.block_slots(provider_id, body.day, body.reason, body.start_time, body.end_time)


@router.post("/providers/{provider_id}/slots/unblock", response_model=BlockResult)
async def unblock_slots(
    provider_id: uuid.UUID,
    body: UnblockIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.unblock_slots(provider_id, body.day, body.start_time, body.end_time)


@router.post("/providers/{provider_id}/slots", response_model=TimeSlotRead, status_code=201)
async def add_slot(
    provider_id: uuid.UUID,
    body: SlotIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.add_slot(provider_id, body.slot_date, body.start_time, body.duration_minutes)


@router.put("/providers/{provider_id}/availability", response_model=list[AvailabilityTemplateRead])
async def set_availability(
    provider_id: uuid.UUID,
    body: list[AvailabilityWindow],
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.set_availability(provider_id, body)


@router.post("/providers/{provider_id}/slots/publish", response_model=PublishResult)
async def publish_slots(
    provider_id: uuid.UUID,
    body: PublishIn,
    service: SchedulingService = Depends(get_service),
    caller: Caller = Depends(get_caller),
):
    return await service.publish_slots(provider_id, _date_range(body.start, body.end, 0))
