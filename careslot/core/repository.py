"""Data access for the scheduling store. Repositories never commit."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from careslot.core.models import (
    AppointmentDB,
    AvailabilityTemplate,
    CareRelationship,
    OutboxEvent,
    RescheduleRequestDB,
    StatusChange,
    TimeSlotDB,
)

RELEASED = ("cancelled", "no_show")


def _open_at(now: datetime):
    """Open slots, counting holds that expired before ``now``."""
    return or_(
        TimeSlotDB.state == "open",
        and_(TimeSlotDB.state == "held", TimeSlotDB.held_until <= now),
    )


class SlotRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, slot_id: uuid.UUID, for_update: bool = False) -> Optional[TimeSlotDB]:
        return await self.session.get(TimeSlotDB, slot_id, with_for_update=for_update or None)

    async def add(self, **kwargs) -> TimeSlotDB:
        slot = TimeSlotDB(**kwargs)
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def add_many(self, slots: list[TimeSlotDB]) -> None:
        self.session.add_all(slots)
        await self.session.flush()

    async def has_slots_on(self, provider_id: uuid.UUID, day: date) -> bool:
        stmt = select(func.count(TimeSlotDB.id)).where(
            TimeSlotDB.provider_id == provider_id, TimeSlotDB.slot_date == day
        )
        return (await self.session.scalar(stmt) or 0) > 0

    async def list_open_page(
        self,
        provider_id: uuid.UUID,
        start: date,
        end: date,
        now: datetime,
        after: Optional[tuple[date, time, uuid.UUID]] = None,
        limit: int = 100,
    ) -> Sequence[TimeSlotDB]:
        stmt = select(TimeSlotDB).where(
            TimeSlotDB.provider_id == provider_id,
            TimeSlotDB.slot_date >= start,
            TimeSlotDB.slot_date <= end,
            _open_at(now),
        )
        if after is not None:
            after_date, after_time, after_id = after
            stmt = stmt.where(
                or_(
                    TimeSlotDB.slot_date > after_date,
                    and_(TimeSlotDB.slot_date == after_date, TimeSlotDB.start_time > after_time),
                    and_(
                        TimeSlotDB.slot_date == after_date,
                        TimeSlotDB.start_time == after_time,
                        TimeSlotDB.id > after_id,
                    ),
                )
            )
        stmt = stmt.order_by(TimeSlotDB.slot_date, TimeSlotDB.start_time, TimeSlotDB.id).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_open_between(
        self, provider_id: uuid.UUID, start: date, end: date, now: datetime
    ) -> Sequence[TimeSlotDB]:
        stmt = (
            select(TimeSlotDB)
            .where(
                TimeSlotDB.provider_id == provider_id,
                TimeSlotDB.slot_date >= start,
                TimeSlotDB.slot_date <= end,
                _open_at(now),
            )
            .order_by(TimeSlotDB.slot_date, TimeSlotDB.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_for_day(
        self,
        provider_id: uuid.UUID,
        day: date,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
    ) -> Sequence[TimeSlotDB]:
        stmt = select(TimeSlotDB).where(
            TimeSlotDB.provider_id == provider_id, TimeSlotDB.slot_date == day
        )
        if start_time is not None:
            stmt = stmt.where(TimeSlotDB.start_time >= start_time)
        if end_time is not None:
            stmt = stmt.where(TimeSlotDB.start_time < end_time)
        result = await self.session.execute(stmt.order_by(TimeSlotDB.start_time))
        return result.scalars().all()

    async def count_by_state(self, provider_id: uuid.UUID, start: date, end: date) -> dict[str, int]:
        stmt = (
            select(TimeSlotDB.state, func.count(TimeSlotDB.id))
            .where(
                TimeSlotDB.provider_id == provider_id,
                TimeSlotDB.slot_date >= start,
                TimeSlotDB.slot_date <= end,
            )
            .group_by(TimeSlotDB.state)
        )
        result = await self.session.execute(stmt)
        return {state: count for state, count in result.all()}

    async def list_booked(self) -> Sequence[TimeSlotDB]:
        result = await self.session.execute(select(TimeSlotDB).where(TimeSlotDB.state == "booked"))
        return result.scalars().all()

    async def delete_unused_before(
        self, before: date, now: datetime, provider_id: Optional[uuid.UUID] = None
    ) -> int:
        """Delete open, blocked and lapsed-hold slots dated before ``before``
        that no appointment points at.
        """
        stmt = delete(TimeSlotDB).where(
            TimeSlotDB.slot_date < before,
            or_(_open_at(now), TimeSlotDB.state == "blocked"),
            TimeSlotDB.id.not_in(select(AppointmentDB.slot_id)),
        )
        if provider_id is not None:
            stmt = stmt.where(TimeSlotDB.provider_id == provider_id)
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount


class AvailabilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_for_provider(self, provider_id: uuid.UUID, active_only: bool = True) -> Sequence[AvailabilityTemplate]:
        stmt = select(AvailabilityTemplate).where(AvailabilityTemplate.provider_id == provider_id)
        if active_only:
            stmt = stmt.where(AvailabilityTemplate.active.is_(True))
        result = await self.session.execute(stmt.order_by(AvailabilityTemplate.day_of_week))
        return result.scalars().all()

    async def upsert(self, provider_id: uuid.UUID, day_of_week: int, **fields) -> AvailabilityTemplate:
        stmt = select(AvailabilityTemplate).where(
            AvailabilityTemplate.provider_id == provider_id,
            AvailabilityTemplate.day_of_week == day_of_week,
        )
        template = (await self.session.execute(stmt)).scalar_one_or_none()
        if template is None:
            template = AvailabilityTemplate(provider_id=provider_id, day_of_week=day_of_week, **fields)
            self.session.add(template)
        else:
            for key, value in fields.items():
                setattr(template, key, value)
        await self.session.flush()
        return template


class CareRelationshipRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_or_create(self, provider_id: uuid.UUID, patient_id: uuid.UUID) -> CareRelationship:
        stmt = select(CareRelationship).where(
            CareRelationship.provider_id == provider_id,
            CareRelationship.patient_id == patient_id,
        )
        relationship = (await self.session.execute(stmt)).scalar_one_or_none()
        if relationship is None:
            relationship = CareRelationship(provider_id=provider_id, patient_id=patient_id)
            self.session.add(relationship)
            await self.session.flush()
        elif not relationship.active:
            relationship.active = True
        return relationship


class AppointmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, appointment: AppointmentDB) -> AppointmentDB:
        self.session.add(appointment)
        await self.session.flush()
        return appointment

    async def get(self, appointment_id: uuid.UUID, for_update: bool = False) -> Optional[AppointmentDB]:
        return await self.session.get(AppointmentDB, appointment_id, with_for_update=for_update or None)

    async def list_for_provider(
        self,
        provider_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
        limit: int = 200,
    ) -> Sequence[AppointmentDB]:
        stmt = select(AppointmentDB).where(AppointmentDB.provider_id == provider_id)
        if start is not None:
            stmt = stmt.where(AppointmentDB.scheduled_start >= start)
        if end is not None:
            stmt = stmt.where(AppointmentDB.scheduled_start < end)
        if status is not None:
            stmt = stmt.where(AppointmentDB.status == status)
        stmt = stmt.order_by(AppointmentDB.scheduled_start).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_for_patient(
        self, patient_id: uuid.UUID, after: Optional[datetime] = None, limit: int = 200
    ) -> Sequence[AppointmentDB]:
        stmt = select(AppointmentDB).where(AppointmentDB.patient_id == patient_id)
        if after is not None:
            stmt = stmt.where(
                AppointmentDB.scheduled_start >= after,
                AppointmentDB.status.not_in(("completed", *RELEASED)),
            )
        stmt = stmt.order_by(AppointmentDB.scheduled_start).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_holding_slot(self, slot_id: uuid.UUID) -> Sequence[AppointmentDB]:
        """Appointments whose status still claims ``slot_id``."""
        stmt = select(AppointmentDB).where(
            AppointmentDB.slot_id == slot_id,
            AppointmentDB.status.not_in(RELEASED),
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_all(self) -> Sequence[AppointmentDB]:
        result = await self.session.execute(select(AppointmentDB))
        return result.scalars().all()


class RescheduleRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, request: RescheduleRequestDB) -> RescheduleRequestDB:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get(self, request_id: uuid.UUID, for_update: bool = False) -> Optional[RescheduleRequestDB]:
        return await self.session.get(RescheduleRequestDB, request_id, with_for_update=for_update or None)

    async def list_pending(self, appointment_id: uuid.UUID) -> Sequence[RescheduleRequestDB]:
        stmt = select(RescheduleRequestDB).where(
            RescheduleRequestDB.appointment_id == appointment_id,
            RescheduleRequestDB.status == "pending",
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_pending(self, appointment_id: uuid.UUID) -> Optional[RescheduleRequestDB]:
        pending = await self.list_pending(appointment_id)
        return pending[0] if pending else None

    async def list_for_provider(
        self, provider_id: uuid.UUID, status: Optional[str] = None, limit: int = 50
    ) -> Sequence[RescheduleRequestDB]:
        stmt = select(RescheduleRequestDB).where(RescheduleRequestDB.provider_id == provider_id)
        if status is not None:
            stmt = stmt.where(RescheduleRequestDB.status == status)
        stmt = stmt.order_by(RescheduleRequestDB.requested_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_for_patient(
        self, patient_id: uuid.UUID, status: Optional[str] = None, limit: int = 50
    ) -> Sequence[RescheduleRequestDB]:
        stmt = select(RescheduleRequestDB).where(RescheduleRequestDB.patient_id == patient_id)
        if status is not None:
            stmt = stmt.where(RescheduleRequestDB.status == status)
        stmt = stmt.order_by(RescheduleRequestDB.requested_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def pending_counts(self) -> dict[uuid.UUID, int]:
        stmt = (
            select(RescheduleRequestDB.appointment_id, func.count(RescheduleRequestDB.id))
            .where(RescheduleRequestDB.status == "pending")
            .group_by(RescheduleRequestDB.appointment_id)
        )
        result = await self.session.execute(stmt)
        return {appointment_id: count for appointment_id, count in result.all()}


class StatusChangeRepository:
    """Append-only status trail."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._sequence = 0

    async def log(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        from_status: Optional[str],
        to_status: str,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> StatusChange:
        self._sequence += 1
        entry = StatusChange(
            entity_type=entity_type,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            reason=reason,
            sequence=self._sequence,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_entity(self, entity_type: str, entity_id: uuid.UUID) -> Sequence[StatusChange]:
        stmt = (
            select(StatusChange)
            .where(StatusChange.entity_type == entity_type, StatusChange.entity_id == entity_id)
            .order_by(StatusChange.changed_at, StatusChange.sequence)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, event: OutboxEvent) -> OutboxEvent:
        self.session.add(event)
        await self.session.flush()
        return event

    async def get(self, event_id: uuid.UUID) -> Optional[OutboxEvent]:
        return await self.session.get(OutboxEvent, event_id)

    async def list_undelivered(self, max_attempts: int, limit: int = 100) -> Sequence[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.delivered_at.is_(None), OutboxEvent.attempts < max_attempts)
            .order_by(OutboxEvent.recorded_at, OutboxEvent.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_for_appointment(self, appointment_id: uuid.UUID) -> Sequence[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.appointment_id == appointment_id)
            .order_by(OutboxEvent.recorded_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
