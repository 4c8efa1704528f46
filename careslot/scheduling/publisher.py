"""Turns weekly availability templates into concrete open slots."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from careslot.core.models import AvailabilityTemplate, TimeSlotDB
from careslot.core.repository import AvailabilityRepository, SlotRepository
from careslot.core.schemas import PruneResult, PublishResult
from careslot.scheduling.errors import FieldValidationError
from careslot.scheduling.models import AvailabilityWindow, DateRange, SlotState

logger = logging.getLogger(__name__)

# Publishing further ahead than this is almost always a typo.
MAX_PUBLISH_DAYS = 180


def generate_day_slots(
    day: date,
    start: time,
    end: time,
    slot_minutes: int,
    buffer_minutes: int = 0,
    breaks: list[dict] | None = None,
) -> list[time]:
    """Start times of every slot that fits between ``start`` and ``end``.

    Slots overlapping a break are skipped; ``buffer_minutes`` separates
    consecutive slots.
    """
    windows = [
        (
            datetime.combine(day, _as_time(b["start_time"])),
            datetime.combine(day, _as_time(b["end_time"])),
        )
        for b in breaks or []
    ]
    current = datetime.combine(day, start)
    day_end = datetime.combine(day, end)
    length = timedelta(minutes=slot_minutes)
    step = timedelta(minutes=slot_minutes + buffer_minutes)

    starts: list[time] = []
    while current + length <= day_end:
        slot_end = current + length
        if not any(current < b_end and slot_end > b_start for b_start, b_end in windows):
            starts.append(current.time())
        current += step
    return starts


def _as_time(value) -> time:
    return value if isinstance(value, time) else time.fromisoformat(value)


class SlotPublisher:
    """Maintains availability templates and publishes slots from them."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.templates = AvailabilityRepository(session)
        self.slots = SlotRepository(session)

    async def set_availability(
        self, provider_id: uuid.UUID, windows: list[AvailabilityWindow]
    ) -> list[AvailabilityTemplate]:
        days = [w.day_of_week for w in windows]
        if len(days) != len(set(days)):
            raise FieldValidationError("day_of_week", "Each weekday may appear only once")
        saved = []
        for window in windows:
            saved.append(
                await self.templates.upsert(
                    provider_id,
                    window.day_of_week,
                    start_time=window.start_time,
                    end_time=window.end_time,
                    slot_duration_minutes=window.slot_duration_minutes,
                    buffer_minutes=window.buffer_minutes,
                    breaks=[b.model_dump(mode="json") for b in window.breaks],
                    active=window.active,
                )
            )
        return saved

    async def publish(self, provider_id: uuid.UUID, date_range: DateRange) -> PublishResult:
        """Create open slots for every templated day in ``date_range``.

        Days that already have slots are left untouched so publishing twice
        never duplicates or disturbs bookings.
        """
        if (date_range.end - date_range.start).days > MAX_PUBLISH_DAYS:
            raise FieldValidationError(
                "date_range", f"Cannot publish more than {MAX_PUBLISH_DAYS} days at once"
            )
        templates = {t.day_of_week: t for t in await self.templates.list_for_provider(provider_id)}
        if not templates:
            raise FieldValidationError(
                "provider_id",
                f"Provider {provider_id} has no active availability templates",
                provider_id=provider_id,
            )

        result = PublishResult(provider_id=provider_id)
        day = date_range.start
        while day <= date_range.end:
            template = templates.get(day.weekday())
            if template is not None:
                if await self.slots.has_slots_on(provider_id, day):
                    result.skipped_days.append(day)
                else:
                    starts = generate_day_slots(
                        day,
                        template.start_time,
                        template.end_time,
                        template.slot_duration_minutes,
                        template.buffer_minutes,
                        template.breaks,
                    )
                    await self.slots.add_many(
                        [
                            TimeSlotDB(
                                provider_id=provider_id,
                                slot_date=day,
                                start_time=start,
                                duration_minutes=template.slot_duration_minutes,
                                state=SlotState.OPEN.value,
                                generated_from="template",
                            )
                            for start in starts
                        ]
                    )
                    result.created += len(starts)
            day += timedelta(days=1)

        logger.info(
            "Published %d slots for provider %s (%s..%s)",
            result.created,
            provider_id,
            date_range.start,
            date_range.end,
        )
        return result

    async def prune(
        self, before: date, now: datetime, provider_id: Optional[uuid.UUID] = None
    ) -> PruneResult:
        """Delete past slots that were never used. Booked slots and any slot
        an appointment still references are kept as history.
        """
        if before > now.date():
            raise FieldValidationError(
                "before", f"Cannot prune future slots (cutoff {before} is after {now.date()})"
            )
        deleted = await self.slots.delete_unused_before(before, now, provider_id)
        logger.info("Pruned %d unused slots dated before %s", deleted, before)
        return PruneResult(cutoff=before, deleted=deleted, provider_id=provider_id)

    async def add_slot(
        self,
        provider_id: uuid.UUID,
        slot_date: date,
        start_time: time,
        duration_minutes: int = 30,
    ) -> TimeSlotDB:
        """Publish a single ad-hoc slot."""
        if duration_minutes <= 0:
            raise FieldValidationError("duration_minutes", "Duration must be positive")
        existing = await self.slots.list_for_day(provider_id, slot_date, start_time, None)
        if any(s.start_time == start_time for s in existing):
            raise FieldValidationError(
                "start_time",
                f"Provider already has a slot at {slot_date} {start_time}",
                provider_id=provider_id,
            )
        return await self.slots.add(
            provider_id=provider_id,
            slot_date=slot_date,
            start_time=start_time,
            duration_minutes=duration_minutes,
            state=SlotState.OPEN.value,
            generated_from="manual",
        )
