"""Shared test fixtures for CareSlot."""

import uuid
from datetime import date, datetime, time, timedelta, timezone

import pytest
import pytest_asyncio

from careslot.config import Settings
from careslot.core.database import Database
from careslot.core.schemas import TimeSlotRead
from careslot.scheduling.inventory import SlotInventory
from careslot.scheduling.models import BookingRequest, Caller, CallerRole
from careslot.scheduling.service import SchedulingService


class FakeClock:
    """Settable time source so hold expiry can be tested without sleeping."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# --- Identities ---

@pytest.fixture
def provider_id():
    return uuid.UUID("11111111-1111-4111-8111-111111111111")


@pytest.fixture
def other_provider_id():
    return uuid.UUID("22222222-2222-4222-8222-222222222222")


@pytest.fixture
def patient_id():
    return uuid.UUID("33333333-3333-4333-8333-333333333333")


@pytest.fixture
def doctor():
    return Caller(id="dr-okafor", role=CallerRole.DOCTOR)


@pytest.fixture
def patient():
    return Caller(id="pt-lindqvist", role=CallerRole.PATIENT)


@pytest.fixture
def admin():
    return Caller(id="front-desk", role=CallerRole.ADMIN)


# --- Infrastructure ---

@pytest.fixture
def clock():
    # Monday, a week before the slots created by the ``slots`` fixture
    return FakeClock(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        cas_max_attempts=3,
        cas_backoff_min_seconds=0,
        cas_backoff_max_seconds=0,
    )


@pytest_asyncio.fixture
async def database():
    db = Database("sqlite+aiosqlite://")
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def service(database, settings, clock):
    svc = SchedulingService(database, settings, clock=clock)
    yield svc
    await svc.wait_idle()


# --- Scheduling data ---

@pytest.fixture
def slot_day():
    return date(2026, 3, 9)


@pytest_asyncio.fixture
async def slots(service, provider_id, slot_day):
    """Six open 30-minute slots, 09:00 through 11:30."""
    created = []
    for i in range(6):
        start = time(9 + i // 2, 30 * (i % 2))
        created.append(await service.add_slot(provider_id, slot_day, start))
    return created


@pytest.fixture
def book(service, doctor, provider_id, patient_id):
    """Book a slot for the default patient, returning the appointment snapshot."""

    async def _book(slot_id, caller=None, **overrides):
        fields = {
            "provider_id": provider_id,
            "patient_id": patient_id,
            "slot_id": slot_id,
            "visit_reason": "Follow-up for persistent knee pain",
        }
        fields.update(overrides)
        return await service.book(caller or doctor, BookingRequest(**fields))

    return _book


class InventoryCalls:
    """Runs the slot inventory primitives, one transaction per call."""

    def __init__(self, database, clock):
        self.database = database
        self.clock = clock

    async def _call(self, name, *args):
        async with self.database.transaction() as session:
            slot = await getattr(SlotInventory(session, clock=self.clock), name)(*args)
            return TimeSlotRead.model_validate(slot)

    async def reserve(self, slot_id, appointment_id, holder_id=None):
        return await self._call("reserve", slot_id, appointment_id, holder_id)

    async def release(self, slot_id):
        return await self._call("release", slot_id)

    async def exchange(self, old_slot_id, new_slot_id, appointment_id):
        return await self._call("exchange", old_slot_id, new_slot_id, appointment_id)


@pytest.fixture
def inventory(database, clock):
    return InventoryCalls(database, clock)
