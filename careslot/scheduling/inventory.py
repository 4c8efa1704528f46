"""Slot inventory: the only code that changes a slot's availability state."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from careslot.core.models import TimeSlotDB
from careslot.core.repository import SlotRepository
from careslot.core.schemas import BlockResult, SlotStats, TimeSlotRead
from careslot.scheduling.clock import Clock, utcnow
from careslot.scheduling.errors import SlotNotFoundError, SlotUnavailableError
from careslot.scheduling.guard import ConsistencyGuard
from careslot.scheduling.models import DateRange, SlotState

if TYPE_CHECKING:
    from careslot.core.database import Database

logger = logging.getLogger(__name__)


class SlotInventory:
    """Reserve, release and exchange slots within one transaction."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utcnow,
        hold_ttl: timedelta = timedelta(minutes=10),
    ):
        self.session = session
        self.slots = SlotRepository(session)
        self.clock = clock
        self.hold_ttl = hold_ttl

    async def get(self, slot_id: uuid.UUID) -> TimeSlotDB:
        slot = await self.slots.get(slot_id, for_update=True)
        if slot is None:
            raise SlotNotFoundError(slot_id)
        return slot

    async def lock_pair(self, first_id: uuid.UUID, second_id: uuid.UUID) -> tuple[TimeSlotDB, TimeSlotDB]:
        """Lock two slots in id order so crossing moves cannot deadlock."""
        locked = {slot_id: await self.get(slot_id) for slot_id in sorted({first_id, second_id})}
        return locked[first_id], locked[second_id]

    # ------------------------------------------------------------------
    # Core transitions
    # ------------------------------------------------------------------

    async def reserve(
        self,
        slot_id: uuid.UUID,
        appointment_id: uuid.UUID,
        holder_id: Optional[str] = None,
    ) -> TimeSlotDB:
        """Book ``slot_id`` for ``appointment_id``.

        Re-reserving a slot already booked by the same appointment is a
        no-op, so a retried call returns the same outcome.
        """
        slot = await self.get(slot_id)
        if slot.state == SlotState.BOOKED.value and slot.appointment_id == appointment_id:
            return slot
        self._book(slot, appointment_id, holder_id, self.clock())
        await self.session.flush()
        logger.debug("Reserved slot %s for appointment %s", slot_id, appointment_id)
        return slot

    async def release(self, slot_id: uuid.UUID) -> TimeSlotDB:
        """Return a booked or held slot to the open pool. Open and blocked slots are left alone."""
        slot = await self.get(slot_id)
        if slot.state in (SlotState.BOOKED.value, SlotState.HELD.value):
            self._open(slot)
            await self.session.flush()
            logger.debug("Released slot %s", slot_id)
        return slot

    async def exchange(
        self,
        old_slot_id: uuid.UUID,
        new_slot_id: uuid.UUID,
        appointment_id: uuid.UUID,
    ) -> TimeSlotDB:
        """Move ``appointment_id`` from one slot to another, all or nothing.

        The old slot must be booked by ``appointment_id``.
        """
        if old_slot_id == new_slot_id:
            return await self.reserve(new_slot_id, appointment_id)

        old, new = await self.lock_pair(old_slot_id, new_slot_id)
        if old.state != SlotState.BOOKED.value or old.appointment_id != appointment_id:
            raise SlotUnavailableError(
                old.id, old.state, reason=f"Time slot {old.id} is not booked by appointment {appointment_id}"
            )
        previous = (old.state, old.appointment_id, old.held_by, old.held_until)

        self._open(old)
        try:
            self._book(new, appointment_id, None, self.clock())
        except SlotUnavailableError:
            old.state, old.appointment_id, old.held_by, old.held_until = previous
            raise
        await self.session.flush()
        logger.debug("Moved appointment %s from slot %s to %s", appointment_id, old_slot_id, new_slot_id)
        return new

    def _book(
        self,
        slot: TimeSlotDB,
        appointment_id: uuid.UUID,
        holder_id: Optional[str],
        now: datetime,
    ) -> None:
        if not ConsistencyGuard.can_reserve(slot, appointment_id, holder_id, now):
            raise SlotUnavailableError(slot.id, slot.state)
        slot.state = SlotState.BOOKED.value
        slot.appointment_id = appointment_id
        slot.held_by = None
        slot.held_until = None

    @staticmethod
    def _open(slot: TimeSlotDB) -> None:
        slot.state = SlotState.OPEN.value
        slot.appointment_id = None
        slot.held_by = None
        slot.held_until = None

    # ------------------------------------------------------------------
    # Holds and provider exceptions
    # ------------------------------------------------------------------

    async def hold(
        self,
        slot_id: uuid.UUID,
        holder_id: str,
        ttl: Optional[timedelta] = None,
    ) -> TimeSlotDB:
        """Pre-reserve a slot for ``holder_id`` until the TTL runs out."""
        slot = await self.get(slot_id)
        now = self.clock()
        already_ours = slot.state == SlotState.HELD.value and slot.held_by == holder_id
        if not already_ours and not ConsistencyGuard.is_open(slot, now):
            raise SlotUnavailableError(slot.id, slot.state)
        slot.state = SlotState.HELD.value
        slot.held_by = holder_id
        slot.held_until = now + (ttl or self.hold_ttl)
        await self.session.flush()
        return slot

    async def block(
        self,
        provider_id: uuid.UUID,
        day: date,
        reason: str,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
    ) -> BlockResult:
        """Block open slots in a window. Booked or held slots are reported, not taken."""
        now = self.clock()
        result = BlockResult()
        for slot in await self.slots.list_for_day(provider_id, day, start_time, end_time):
            if slot.state == SlotState.BLOCKED.value:
                continue
            if not ConsistencyGuard.is_open(slot, now):
                result.conflicts.append(slot.id)
                continue
            self._open(slot)
            slot.state = SlotState.BLOCKED.value
            slot.block_reason = reason
            result.changed.append(slot.id)
        await self.session.flush()
        if result.conflicts:
            logger.info("Block on %s for %s skipped %d taken slots", day, provider_id, len(result.conflicts))
        return result

    async def unblock(
        self,
        provider_id: uuid.UUID,
        day: date,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
    ) -> BlockResult:
        result = BlockResult()
        for slot in await self.slots.list_for_day(provider_id, day, start_time, end_time):
            if slot.state != SlotState.BLOCKED.value:
                continue
            slot.state = SlotState.OPEN.value
            slot.block_reason = None
            result.changed.append(slot.id)
        await self.session.flush()
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def stats(self, provider_id: uuid.UUID, date_range: DateRange) -> SlotStats:
        counts = await self.slots.count_by_state(provider_id, date_range.start, date_range.end)
        stats = SlotStats(
            provider_id=provider_id,
            start=date_range.start,
            end=date_range.end,
            open=counts.get(SlotState.OPEN.value, 0),
            held=counts.get(SlotState.HELD.value, 0),
            booked=counts.get(SlotState.BOOKED.value, 0),
            blocked=counts.get(SlotState.BLOCKED.value, 0),
        )
        stats.total = stats.open + stats.held + stats.booked + stats.blocked
        bookable = stats.total - stats.blocked
        if bookable > 0:
            stats.utilization_rate = round(stats.booked / bookable * 100, 1)
        return stats

    async def find_alternatives(
        self,
        slot_id: uuid.UUID,
        limit: int = 5,
        window_days: int = 14,
    ) -> list[TimeSlotDB]:
        """Open slots of the same provider, closest in time to ``slot_id`` first."""
        origin = await self.get(slot_id)
        origin_start = datetime.combine(origin.slot_date, origin.start_time)
        candidates = await self.slots.list_open_between(
            origin.provider_id,
            origin.slot_date - timedelta(days=window_days),
            origin.slot_date + timedelta(days=window_days),
            self.clock(),
        )
        ranked = sorted(
            (s for s in candidates if s.id != origin.id),
            key=lambda s: abs((datetime.combine(s.slot_date, s.start_time) - origin_start).total_seconds()),
        )
        return ranked[:limit]

    async def next_available(
        self,
        provider_id: uuid.UUID,
        after: datetime,
        horizon_days: int = 60,
    ) -> Optional[TimeSlotDB]:
        page = await self.slots.list_open_page(
            provider_id,
            after.date(),
            after.date() + timedelta(days=horizon_days),
            self.clock(),
            after=(after.date(), after.time(), uuid.UUID(int=0)),
            limit=1,
        )
        return page[0] if page else None


class AvailableSlots:
    """Lazy, restartable view over a provider's open slots.

    Each iteration pages through the store with a keyset cursor, one short
    read transaction per page, so a fresh ``async for`` always sees current
    availability.
    """

    def __init__(
        self,
        database: "Database",
        provider_id: uuid.UUID,
        date_range: DateRange,
        page_size: int = 100,
        clock: Clock = utcnow,
    ):
        self.database = database
        self.provider_id = provider_id
        self.date_range = date_range
        self.page_size = page_size
        self.clock = clock

    def __aiter__(self) -> AsyncIterator[TimeSlotRead]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TimeSlotRead]:
        cursor: Optional[tuple[date, time, uuid.UUID]] = None
        while True:
            async with self.database.transaction() as session:
                rows = await SlotRepository(session).list_open_page(
                    self.provider_id,
                    self.date_range.start,
                    self.date_range.end,
                    self.clock(),
                    after=cursor,
                    limit=self.page_size,
                )
                page = [TimeSlotRead.model_validate(row) for row in rows]
            for slot in page:
                yield slot
            if len(page) < self.page_size:
                return
            last = page[-1]
            cursor = (last.slot_date, last.start_time, last.id)

    async def to_list(self) -> list[TimeSlotRead]:
        return [slot async for slot in self]
