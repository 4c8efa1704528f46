"""Scheduling service: runs each operation as one retried, shielded transaction."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from careslot.config import Settings, get_settings
from careslot.core.database import Database
from careslot.core.repository import AppointmentRepository, StatusChangeRepository
from careslot.core.schemas import (
    AppointmentRead,
    AvailabilityTemplateRead,
    BlockResult,
    PruneResult,
    PublishResult,
    RescheduleRequestRead,
    SlotStats,
    StatusChangeRead,
    TimeSlotRead,
)
from careslot.notifications.outbox import Outbox
from careslot.scheduling.appointments import ENTITY as APPOINTMENT_ENTITY
from careslot.scheduling.appointments import AppointmentStateMachine
from careslot.scheduling.clock import Clock, utcnow, wall_clock_to_utc
from careslot.scheduling.errors import ConflictError, SlotUnavailableError
from careslot.scheduling.guard import ConsistencyGuard, Violation
from careslot.scheduling.inventory import AvailableSlots, SlotInventory
from careslot.scheduling.models import (
    AvailabilityWindow,
    BookingRequest,
    Caller,
    DateRange,
    RescheduleProposal,
    RescheduleStatus,
    Vitals,
)
from careslot.scheduling.publisher import SlotPublisher
from careslot.scheduling.reschedule import RescheduleWorkflow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure and deadlock_detected.
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_contention(exc: BaseException) -> bool:
    """True for failures caused by concurrent writers, which are safe to retry."""
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, DBAPIError) and not exc.connection_invalidated:
        orig = exc.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in _RETRYABLE_SQLSTATES:
            return True
        return "database is locked" in str(orig)
    return False


class UnitOfWork:
    """Components bound to a single transaction."""

    def __init__(self, session: AsyncSession, settings: Settings, clock: Clock):
        self.session = session
        self.guard = ConsistencyGuard(session)
        self.outbox = Outbox(session, clock=clock)
        self.inventory = SlotInventory(
            session, clock=clock, hold_ttl=timedelta(minutes=settings.hold_ttl_minutes)
        )
        self.publisher = SlotPublisher(session)
        self.appointments = AppointmentStateMachine(
            session,
            self.inventory,
            self.guard,
            self.outbox,
            clock=clock,
            default_timezone=settings.default_timezone,
        )
        self.reschedule = RescheduleWorkflow(
            session, self.appointments, self.guard, self.outbox, clock=clock
        )


def _snapshot(value: Any, schema: Optional[type[BaseModel]]) -> Any:
    if schema is None or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [schema.model_validate(item) for item in value]
    return schema.model_validate(value)


class SchedulingService:
    """Public entry point for every scheduling operation.

    Each call opens one transaction, runs the operation over a fresh
    ``UnitOfWork`` and commits; any error rolls everything back. Writes
    that lose to a concurrent writer (stale versions, deadlocks,
    serialization failures) are retried with backoff and surface as
    ``ConflictError`` once ``cas_max_attempts`` is exhausted. The
    transaction runs in its own task behind ``asyncio.shield`` so a caller
    that goes away mid-operation never leaves a half-applied change.
    """

    def __init__(
        self,
        database: Database,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.database = database
        self.settings = settings or get_settings()
        self.clock = clock
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Unit-of-work plumbing
    # ------------------------------------------------------------------

    async def run(
        self,
        name: str,
        work: Callable[[UnitOfWork], Awaitable[Any]],
        schema: Optional[type[BaseModel]] = None,
    ) -> Any:
        task = asyncio.ensure_future(self._run_with_retry(name, work, schema))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _run_with_retry(
        self,
        name: str,
        work: Callable[[UnitOfWork], Awaitable[Any]],
        schema: Optional[type[BaseModel]],
    ) -> Any:
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.cas_max_attempts),
                wait=wait_exponential(
                    multiplier=self.settings.cas_backoff_min_seconds,
                    max=self.settings.cas_backoff_max_seconds,
                ),
                retry=retry_if_exception(is_contention),
                before_sleep=before_sleep_log(logger, logging.INFO),
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    async with self.database.transaction() as session:
                        result = await work(UnitOfWork(session, self.settings, self.clock))
                        await session.flush()
                        snapshot = _snapshot(result, schema)
        except RetryError as e:
            logger.warning("%s gave up after %d contended attempts", name, attempts)
            raise ConflictError(name, attempts) from e
        return snapshot

    async def wait_idle(self) -> None:
        """Wait for units of work whose callers stopped waiting."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Slot inventory
    # ------------------------------------------------------------------

    async def release(self, slot_id: uuid.UUID) -> TimeSlotRead:
        """Reopen a held slot or a booking no live appointment claims.

        A slot bound to a live appointment is freed by cancelling the
        appointment or marking it a no-show, never directly.
        """
        async def work(uow: UnitOfWork):
            slot = await uow.inventory.get(slot_id)
            holders = await AppointmentRepository(uow.session).list_holding_slot(slot.id)
            if holders:
                raise SlotUnavailableError(
                    slot.id,
                    slot.state,
                    reason=f"Time slot {slot.id} is bound to appointment {holders[0].id}",
                )
            slot = await uow.inventory.release(slot_id)
            await uow.guard.verify_slot(slot)
            return slot

        return await self.run("release", work, TimeSlotRead)

    async def hold_slot(
        self, slot_id: uuid.UUID, holder_id: str, ttl: Optional[timedelta] = None
    ) -> TimeSlotRead:
        async def work(uow: UnitOfWork):
            return await uow.inventory.hold(slot_id, holder_id, ttl)

        return await self.run("hold_slot", work, TimeSlotRead)

    async def block_slots(
        self,
        provider_id: uuid.UUID,
        day: date,
        reason: str,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
    ) -> BlockResult:
        async def work(uow: UnitOfWork):
            return await uow.inventory.block(provider_id, day, reason, start_time, end_time)

        return await self.run("block_slots", work)

    async def unblock_slots(
        self,
        provider_id: uuid.UUID,
        day: date,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
    ) -> BlockResult:
        async def work(uow: UnitOfWork):
            return await uow.inventory.unblock(provider_id, day, start_time, end_time)

        return await self.run("unblock_slots", work)

    async def get_slot(self, slot_id: uuid.UUID) -> TimeSlotRead:
        async def work(uow: UnitOfWork):
            return await uow.inventory.get(slot_id)

        return await self.run("get_slot", work, TimeSlotRead)

    def list_available(self, provider_id: uuid.UUID, date_range: DateRange) -> AvailableSlots:
        return AvailableSlots(
            self.database,
            provider_id,
            date_range,
            page_size=self.settings.list_page_size,
            clock=self.clock,
        )

    async def slot_stats(self, provider_id: uuid.UUID, date_range: DateRange) -> SlotStats:
        async def work(uow: UnitOfWork):
            return await uow.inventory.stats(provider_id, date_range)

        return await self.run("slot_stats", work)

    async def find_alternatives(self, slot_id: uuid.UUID, limit: int = 5) -> list[TimeSlotRead]:
        async def work(uow: UnitOfWork):
            return await uow.inventory.find_alternatives(slot_id, limit)

        return await self.run("find_alternatives", work, TimeSlotRead)

    async def next_available(self, provider_id: uuid.UUID, after: datetime) -> Optional[TimeSlotRead]:
        async def work(uow: UnitOfWork):
            return await uow.inventory.next_available(provider_id, after)

        return await self.run("next_available", work, TimeSlotRead)

    # ------------------------------------------------------------------
    # Slot publishing
    # ------------------------------------------------------------------

    async def set_availability(
        self, provider_id: uuid.UUID, windows: list[AvailabilityWindow]
    ) -> list[AvailabilityTemplateRead]:
        async def work(uow: UnitOfWork):
            return await uow.publisher.set_availability(provider_id, windows)

        return await self.run("set_availability", work, AvailabilityTemplateRead)

    async def publish_slots(self, provider_id: uuid.UUID, date_range: DateRange) -> PublishResult:
        async def work(uow: UnitOfWork):
            return await uow.publisher.publish(provider_id, date_range)

        return await self.run("publish_slots", work)

    async def prune_slots(self, before: date, provider_id: Optional[uuid.UUID] = None) -> PruneResult:
        async def work(uow: UnitOfWork):
            return await uow.publisher.prune(before, self.clock(), provider_id)

        return await self.run("prune_slots", work)

    async def add_slot(
        self,
        provider_id: uuid.UUID,
        slot_date: date,
        start_time: time,
        duration_minutes: int = 30,
    ) -> TimeSlotRead:
        async def work(uow: UnitOfWork):
            return await uow.publisher.add_slot(provider_id, slot_date, start_time, duration_minutes)

        return await self.run("add_slot", work, TimeSlotRead)

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    async def book(self, caller: Caller, request: BookingRequest) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            return await uow.appointments.book(caller, request)

        return await self.run("book", work, AppointmentRead)

    async def confirm(self, caller: Caller, appointment_id: uuid.UUID) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            return await uow.appointments.confirm(caller, appointment_id)

        return await self.run("confirm", work, AppointmentRead)

    async def check_in(self, caller: Caller, appointment_id: uuid.UUID) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            return await uow.appointments.check_in(caller, appointment_id)

        return await self.run("check_in", work, AppointmentRead)

    async def start(self, caller: Caller, appointment_id: uuid.UUID) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            return await uow.appointments.start(caller, appointment_id)

        return await self.run("start", work, AppointmentRead)

    async def complete(
        self, caller: Caller, appointment_id: uuid.UUID, notes: Optional[str] = None
    ) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            return await uow.appointments.complete(caller, appointment_id, notes)

        return await self.run("complete", work, AppointmentRead)

    async def mark_no_show(
        self, caller: Caller, appointment_id: uuid.UUID, reason: Optional[str] = None
    ) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            appointment = await uow.appointments.mark_no_show(caller, appointment_id, reason)
            await uow.reschedule.close_pending(caller, appointment)
            return appointment

        return await self.run("mark_no_show", work, AppointmentRead)

    async def cancel(self, caller: Caller, appointment_id: uuid.UUID, reason: str) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            appointment = await uow.appointments.cancel(caller, appointment_id, reason)
            await uow.reschedule.close_pending(caller, appointment)
            return appointment

        return await self.run("cancel", work, AppointmentRead)

    async def reschedule_with_slot(
        self, caller: Caller, appointment_id: uuid.UUID, new_slot_id: uuid.UUID, reason: str
    ) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            appointment = await uow.appointments.reschedule_with_slot(caller, appointment_id, new_slot_id, reason)
            await uow.reschedule.close_pending(caller, appointment, note="Appointment rescheduled")
            return appointment

        return await self.run("reschedule_with_slot", work, AppointmentRead)

    async def record_clinical_data(
        self,
        caller: Caller,
        appointment_id: uuid.UUID,
        vitals: Optional[Vitals] = None,
        notes: Optional[str] = None,
        chief_complaint: Optional[str] = None,
    ) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            return await uow.appointments.record_clinical_data(
                caller, appointment_id, vitals=vitals, notes=notes, chief_complaint=chief_complaint
            )

        return await self.run("record_clinical_data", work, AppointmentRead)

    async def get_appointment(self, appointment_id: uuid.UUID) -> AppointmentRead:
        async def work(uow: UnitOfWork):
            return await uow.appointments.get(appointment_id)

        return await self.run("get_appointment", work, AppointmentRead)

    async def list_provider_appointments(
        self,
        provider_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> list[AppointmentRead]:
        async def work(uow: UnitOfWork):
            return await AppointmentRepository(uow.session).list_for_provider(provider_id, start, end, status)

        return await self.run("list_provider_appointments", work, AppointmentRead)

    async def list_patient_appointments(
        self, patient_id: uuid.UUID, upcoming_only: bool = False
    ) -> list[AppointmentRead]:
        now = self.clock()

        async def work(uow: UnitOfWork):
            repo = AppointmentRepository(uow.session)
            if not upcoming_only:
                return await repo.list_for_patient(patient_id)
            # scheduled_start is provider wall-clock time; widen by the largest
            # UTC offsets, then compare each start in its own zone.
            candidates = await repo.list_for_patient(
                patient_id, after=now.replace(tzinfo=None) - timedelta(hours=14)
            )
            return [a for a in candidates if wall_clock_to_utc(a.scheduled_start, a.timezone) >= now]

        return await self.run("list_patient_appointments", work, AppointmentRead)

    async def appointment_history(self, appointment_id: uuid.UUID) -> list[StatusChangeRead]:
        async def work(uow: UnitOfWork):
            await uow.appointments.get(appointment_id)
            return await StatusChangeRepository(uow.session).get_by_entity(APPOINTMENT_ENTITY, appointment_id)

        return await self.run("appointment_history", work, StatusChangeRead)

    # ------------------------------------------------------------------
    # Reschedule requests
    # ------------------------------------------------------------------

    async def create_request(self, caller: Caller, proposal: RescheduleProposal) -> RescheduleRequestRead:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.create_request(caller, proposal)

        return await self.run("create_request", work, RescheduleRequestRead)

    async def approve_request(
        self, caller: Caller, request_id: uuid.UUID, notes: Optional[str] = None
    ) -> RescheduleRequestRead:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.approve_request(caller, request_id, notes)

        return await self.run("approve_request", work, RescheduleRequestRead)

    async def reject_request(self, caller: Caller, request_id: uuid.UUID, notes: str) -> RescheduleRequestRead:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.reject_request(caller, request_id, notes)

        return await self.run("reject_request", work, RescheduleRequestRead)

    async def cancel_request(self, caller: Caller, request_id: uuid.UUID) -> RescheduleRequestRead:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.cancel_request(caller, request_id)

        return await self.run("cancel_request", work, RescheduleRequestRead)

    async def assign_slot(
        self, caller: Caller, request_id: uuid.UUID, slot_id: uuid.UUID
    ) -> RescheduleRequestRead:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.assign_slot(caller, request_id, slot_id)

        return await self.run("assign_slot", work, RescheduleRequestRead)

    async def get_request(self, request_id: uuid.UUID) -> RescheduleRequestRead:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.get(request_id)

        return await self.run("get_request", work, RescheduleRequestRead)

    async def list_provider_requests(
        self, provider_id: uuid.UUID, status: Optional[RescheduleStatus] = None, limit: int = 50
    ) -> list[RescheduleRequestRead]:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.list_for_provider(provider_id, status, limit)

        return await self.run("list_provider_requests", work, RescheduleRequestRead)

    async def list_patient_requests(
        self, patient_id: uuid.UUID, status: Optional[RescheduleStatus] = None, limit: int = 50
    ) -> list[RescheduleRequestRead]:
        async def work(uow: UnitOfWork):
            return await uow.reschedule.list_for_patient(patient_id, status, limit)

        return await self.run("list_patient_requests", work, RescheduleRequestRead)

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    async def audit(self) -> list[Violation]:
        async def work(uow: UnitOfWork):
            return await uow.guard.audit()

        return await self.run("audit", work)
