"""Tests for the slot inventory: reserve, release, exchange, holds and blocks."""

import uuid
from datetime import date, datetime, time, timedelta

import pytest

from careslot.core.repository import SlotRepository
from careslot.scheduling.errors import SlotNotFoundError, SlotUnavailableError
from careslot.scheduling.inventory import AvailableSlots
from careslot.scheduling.models import DateRange


# ------------------------------------------------------------------ reserve

class TestReserve:
    async def test_reserve_books_open_slot(self, inventory, slots):
        appointment_id = uuid.uuid4()
        slot = await inventory.reserve(slots[0].id, appointment_id)
        assert slot.state == "booked"
        assert slot.appointment_id == appointment_id

    async def test_reserve_same_appointment_twice_is_noop(self, inventory, slots):
        appointment_id = uuid.uuid4()
        first = await inventory.reserve(slots[0].id, appointment_id)
        second = await inventory.reserve(slots[0].id, appointment_id)
        assert second.state == "booked"
        assert second.version == first.version

    async def test_reserve_taken_slot_fails(self, inventory, slots):
        await inventory.reserve(slots[0].id, uuid.uuid4())
        with pytest.raises(SlotUnavailableError) as exc:
            await inventory.reserve(slots[0].id, uuid.uuid4())
        assert exc.value.state == "booked"
        assert exc.value.to_dict()["error"] == "slot_unavailable"

    async def test_reserve_unknown_slot(self, inventory, slots):
        missing = uuid.uuid4()
        with pytest.raises(SlotNotFoundError) as exc:
            await inventory.reserve(missing, uuid.uuid4())
        assert exc.value.details["slot_id"] == str(missing)


# ------------------------------------------------------------------ release

class TestRelease:
    async def test_release_reopens_unclaimed_booking(self, service, inventory, slots):
        await inventory.reserve(slots[0].id, uuid.uuid4())
        slot = await service.release(slots[0].id)
        assert slot.state == "open"
        assert slot.appointment_id is None
        assert await service.audit() == []

    async def test_release_reopens_held_slot(self, service, slots):
        await service.hold_slot(slots[0].id, "checkout-a")
        slot = await service.release(slots[0].id)
        assert slot.state == "open"
        assert slot.held_by is None

    async def test_release_open_slot_is_noop(self, service, slots):
        slot = await service.release(slots[0].id)
        assert slot.state == "open"
        assert slot.version == slots[0].version

    async def test_release_leaves_blocked_slot_blocked(self, service, slots, provider_id, slot_day):
        await service.block_slots(provider_id, slot_day, "Staff meeting", time(9, 0), time(9, 30))
        slot = await service.release(slots[0].id)
        assert slot.state == "blocked"

    async def test_release_refuses_slot_of_live_appointment(self, service, slots, book):
        appointment = await book(slots[0].id)

        with pytest.raises(SlotUnavailableError) as exc:
            await service.release(slots[0].id)
        assert str(appointment.id) in exc.value.message

        slot = await service.get_slot(slots[0].id)
        assert (slot.state, slot.appointment_id) == ("booked", appointment.id)
        assert (await service.get_appointment(appointment.id)).status == "scheduled"
        assert await service.audit() == []

    async def test_release_after_cancel_is_noop(self, service, slots, book, patient):
        appointment = await book(slots[0].id)
        await service.cancel(patient, appointment.id, "Feeling better")
        slot = await service.release(slots[0].id)
        assert slot.state == "open"


# ------------------------------------------------------------------ exchange

class TestExchange:
    async def test_exchange_moves_booking(self, service, inventory, slots):
        appointment_id = uuid.uuid4()
        await inventory.reserve(slots[0].id, appointment_id)

        new = await inventory.exchange(slots[0].id, slots[1].id, appointment_id)
        assert new.id == slots[1].id
        assert new.appointment_id == appointment_id

        old = await service.get_slot(slots[0].id)
        assert old.state == "open"
        assert old.appointment_id is None

    async def test_exchange_into_taken_slot_changes_nothing(self, service, inventory, slots):
        ours, theirs = uuid.uuid4(), uuid.uuid4()
        await inventory.reserve(slots[0].id, ours)
        await inventory.reserve(slots[1].id, theirs)

        with pytest.raises(SlotUnavailableError):
            await inventory.exchange(slots[0].id, slots[1].id, ours)

        old = await service.get_slot(slots[0].id)
        target = await service.get_slot(slots[1].id)
        assert (old.state, old.appointment_id) == ("booked", ours)
        assert (target.state, target.appointment_id) == ("booked", theirs)

    async def test_exchange_requires_old_slot_owned_by_appointment(self, service, inventory, slots, book):
        appointment = await book(slots[0].id)

        with pytest.raises(SlotUnavailableError) as exc:
            await inventory.exchange(slots[0].id, slots[1].id, uuid.uuid4())
        assert exc.value.slot_id == slots[0].id

        old = await service.get_slot(slots[0].id)
        assert (old.state, old.appointment_id) == ("booked", appointment.id)
        assert (await service.get_slot(slots[1].id)).state == "open"
        assert await service.audit() == []

    async def test_exchange_from_open_slot_fails(self, inventory, slots):
        with pytest.raises(SlotUnavailableError):
            await inventory.exchange(slots[0].id, slots[1].id, uuid.uuid4())

    async def test_exchange_to_same_slot_is_reserve(self, inventory, slots):
        appointment_id = uuid.uuid4()
        await inventory.reserve(slots[0].id, appointment_id)
        slot = await inventory.exchange(slots[0].id, slots[0].id, appointment_id)
        assert slot.appointment_id == appointment_id

    async def test_slots_locked_in_id_order(self, service, slots, book, doctor, monkeypatch):
        appointment = await book(slots[0].id)
        locked = []
        original = SlotRepository.get

        async def recording_get(self, slot_id, for_update=False):
            if for_update:
                locked.append(slot_id)
            return await original(self, slot_id, for_update)

        monkeypatch.setattr(SlotRepository, "get", recording_get)
        await service.reschedule_with_slot(doctor, appointment.id, slots[5].id, "Later in the morning")

        pair = {slots[0].id, slots[5].id}
        first_two = [slot_id for slot_id in locked if slot_id in pair][:2]
        assert first_two == sorted(pair)


# ------------------------------------------------------------------ holds

class TestHolds:
    async def test_held_slot_rejects_other_bookings(self, service, inventory, slots):
        held = await service.hold_slot(slots[0].id, "checkout-a")
        assert held.state == "held"
        assert held.held_by == "checkout-a"

        with pytest.raises(SlotUnavailableError):
            await inventory.reserve(slots[0].id, uuid.uuid4())

    async def test_holder_can_reserve_its_hold(self, service, inventory, slots):
        await service.hold_slot(slots[0].id, "checkout-a")
        slot = await inventory.reserve(slots[0].id, uuid.uuid4(), holder_id="checkout-a")
        assert slot.state == "booked"
        assert slot.held_by is None

    async def test_expired_hold_counts_as_open(self, service, inventory, slots, clock):
        await service.hold_slot(slots[0].id, "checkout-a", ttl=timedelta(minutes=5))
        clock.advance(minutes=6)
        slot = await inventory.reserve(slots[0].id, uuid.uuid4())
        assert slot.state == "booked"

    async def test_second_holder_rejected_while_hold_active(self, service, slots):
        await service.hold_slot(slots[0].id, "checkout-a")
        with pytest.raises(SlotUnavailableError):
            await service.hold_slot(slots[0].id, "checkout-b")

    async def test_holder_can_extend_hold(self, service, slots, clock):
        first = await service.hold_slot(slots[0].id, "checkout-a")
        clock.advance(minutes=3)
        second = await service.hold_slot(slots[0].id, "checkout-a")
        assert second.held_until > first.held_until


# ------------------------------------------------------------------ blocks

class TestBlocks:
    async def test_block_skips_booked_slots(self, service, slots, book, provider_id, slot_day):
        await book(slots[2].id)

        result = await service.block_slots(provider_id, slot_day, "Surgery", time(10, 0), time(11, 0))
        assert result.conflicts == [slots[2].id]
        assert result.changed == [slots[3].id]

        blocked = await service.get_slot(slots[3].id)
        assert blocked.state == "blocked"
        assert blocked.block_reason == "Surgery"

        with pytest.raises(SlotUnavailableError):
            await book(slots[3].id)

    async def test_unblock_reopens(self, service, slots, provider_id, slot_day):
        await service.block_slots(provider_id, slot_day, "Conference")
        result = await service.unblock_slots(provider_id, slot_day)
        assert len(result.changed) == 6

        slot = await service.get_slot(slots[0].id)
        assert slot.state == "open"
        assert slot.block_reason is None


# ------------------------------------------------------------------ queries

class TestQueries:
    async def test_stats(self, service, slots, book, provider_id, slot_day):
        await book(slots[0].id)
        await service.hold_slot(slots[1].id, "checkout-a")
        await service.block_slots(provider_id, slot_day, "Lunch", time(11, 30))

        stats = await service.slot_stats(provider_id, DateRange(start=slot_day, end=slot_day))
        assert stats.total == 6
        assert (stats.open, stats.held, stats.booked, stats.blocked) == (3, 1, 1, 1)
        assert stats.utilization_rate == 20.0

    async def test_stats_empty_range(self, service, provider_id):
        stats = await service.slot_stats(provider_id, DateRange(start=date(2026, 1, 1), end=date(2026, 1, 2)))
        assert stats.total == 0
        assert stats.utilization_rate == 0.0

    async def test_list_available_pages_in_order(self, database, slots, book, provider_id, slot_day, clock):
        await book(slots[1].id)

        available = AvailableSlots(
            database, provider_id, DateRange(start=slot_day, end=slot_day), page_size=2, clock=clock
        )
        listed = await available.to_list()
        assert [s.id for s in listed] == [slots[i].id for i in (0, 2, 3, 4, 5)]

    async def test_list_available_reflects_later_changes(self, service, slots, book, provider_id, slot_day):
        available = service.list_available(provider_id, DateRange(start=slot_day, end=slot_day))
        assert len(await available.to_list()) == 6

        await book(slots[0].id)
        assert len(await available.to_list()) == 5

    async def test_list_available_includes_expired_holds(self, service, slots, provider_id, slot_day, clock):
        await service.hold_slot(slots[0].id, "checkout-a", ttl=timedelta(minutes=5))
        available = service.list_available(provider_id, DateRange(start=slot_day, end=slot_day))
        assert len(await available.to_list()) == 5

        clock.advance(minutes=10)
        assert len(await available.to_list()) == 6

    async def test_find_alternatives_closest_first(self, service, slots, book):
        await book(slots[2].id)
        alternatives = await service.find_alternatives(slots[2].id, limit=2)
        assert {s.id for s in alternatives} == {slots[1].id, slots[3].id}

    async def test_next_available(self, service, slots, book, provider_id, slot_day):
        await book(slots[3].id)
        slot = await service.next_available(provider_id, datetime.combine(slot_day, time(10, 15)))
        assert slot.id == slots[4].id

    async def test_next_available_none(self, service, slots, provider_id, slot_day):
        slot = await service.next_available(provider_id, datetime.combine(slot_day, time(12, 0)))
        assert slot is None
