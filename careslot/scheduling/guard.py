"""Invariant checks shared by every unit of work, plus a full-store audit."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from careslot.core.models import AppointmentDB, TimeSlotDB
from careslot.core.repository import (
    AppointmentRepository,
    RescheduleRequestRepository,
    SlotRepository,
)
from careslot.scheduling.clock import as_utc
from careslot.scheduling.errors import ConsistencyViolationError
from careslot.scheduling.models import RELEASED_STATUSES, AppointmentStatus, SlotState

logger = logging.getLogger(__name__)


@dataclass
class Violation:
    kind: str
    entity_id: uuid.UUID
    detail: str


class ConsistencyGuard:
    """Checks the slot/appointment/request invariants inside a transaction.

    ``verify_*`` raise ``ConsistencyViolationError`` so the surrounding
    transaction rolls back; ``audit`` only reports.
    """

    def __init__(self, session: AsyncSession):
        self.slots = SlotRepository(session)
        self.appointments = AppointmentRepository(session)
        self.requests = RescheduleRequestRepository(session)

    @staticmethod
    def is_open(slot: TimeSlotDB, now: datetime) -> bool:
        if slot.state == SlotState.OPEN.value:
            return True
        if slot.state == SlotState.HELD.value:
            held_until = as_utc(slot.held_until)
            return held_until is None or held_until <= now
        return False

    @classmethod
    def can_reserve(
        cls,
        slot: TimeSlotDB,
        appointment_id: uuid.UUID,
        holder_id: Optional[str],
        now: datetime,
    ) -> bool:
        if cls.is_open(slot, now):
            return True
        if slot.state == SlotState.HELD.value:
            return slot.held_by is not None and slot.held_by in (holder_id, str(appointment_id))
        return False

    async def check_appointment(self, appointment: AppointmentDB) -> list[Violation]:
        violations: list[Violation] = []
        slot = await self.slots.get(appointment.slot_id)
        if slot is None:
            violations.append(
                Violation("missing_slot", appointment.id, f"slot {appointment.slot_id} does not exist")
            )
            return violations

        status = AppointmentStatus(appointment.status)
        if status in RELEASED_STATUSES:
            if slot.appointment_id == appointment.id and slot.state != SlotState.OPEN.value:
                violations.append(
                    Violation(
                        "slot_not_released",
                        appointment.id,
                        f"{status.value} appointment still holds slot {slot.id} ({slot.state})",
                    )
                )
            return violations

        if slot.state != SlotState.BOOKED.value or slot.appointment_id != appointment.id:
            violations.append(
                Violation(
                    "slot_not_bound",
                    appointment.id,
                    f"{status.value} appointment points at slot {slot.id} which is {slot.state}"
                    f" for {slot.appointment_id}",
                )
            )
        holders = await self.appointments.list_holding_slot(slot.id)
        if len(holders) > 1:
            violations.append(
                Violation(
                    "double_booked",
                    slot.id,
                    "slot claimed by " + ", ".join(str(a.id) for a in holders),
                )
            )
        return violations

    async def verify_appointment(self, appointment: AppointmentDB) -> None:
        violations = await self.check_appointment(appointment)
        if violations:
            first = violations[0]
            raise ConsistencyViolationError(
                first.detail,
                kind=first.kind,
                appointment_id=appointment.id,
                slot_id=appointment.slot_id,
            )

    async def check_slot(self, slot: TimeSlotDB) -> list[Violation]:
        """Check a slot against every live appointment that points at it."""
        violations: list[Violation] = []
        holders = await self.appointments.list_holding_slot(slot.id)
        for appointment in holders:
            if slot.state != SlotState.BOOKED.value or slot.appointment_id != appointment.id:
                violations.append(
                    Violation(
                        "slot_not_bound",
                        appointment.id,
                        f"{appointment.status} appointment points at slot {slot.id} which is {slot.state}",
                    )
                )
        if len(holders) > 1:
            violations.append(
                Violation("double_booked", slot.id, "slot claimed by " + ", ".join(str(a.id) for a in holders))
            )
        if slot.state == SlotState.BOOKED.value and not any(a.id == slot.appointment_id for a in holders):
            violations.append(
                Violation("orphan_booking", slot.id, f"booked for {slot.appointment_id} which does not claim it")
            )
        return violations

    async def verify_slot(self, slot: TimeSlotDB) -> None:
        violations = await self.check_slot(slot)
        if violations:
            first = violations[0]
            raise ConsistencyViolationError(first.detail, kind=first.kind, slot_id=slot.id)

    async def verify_single_pending(self, appointment_id: uuid.UUID) -> None:
        pending = await self.requests.list_pending(appointment_id)
        if len(pending) > 1:
            raise ConsistencyViolationError(
                f"Appointment {appointment_id} has {len(pending)} pending reschedule requests",
                kind="duplicate_pending",
                appointment_id=appointment_id,
            )

    async def audit(self) -> list[Violation]:
        """Scan the whole store and report every invariant violation."""
        violations: list[Violation] = []

        for appointment in await self.appointments.list_all():
            violations.extend(await self.check_appointment(appointment))

        for slot in await self.slots.list_booked():
            if slot.appointment_id is None:
                violations.append(Violation("orphan_booking", slot.id, "booked slot has no appointment"))
                continue
            appointment = await self.appointments.get(slot.appointment_id)
            if (
                appointment is None
                or appointment.slot_id != slot.id
                or AppointmentStatus(appointment.status) in RELEASED_STATUSES
            ):
                violations.append(
                    Violation(
                        "orphan_booking",
                        slot.id,
                        f"booked for {slot.appointment_id} which no longer claims it",
                    )
                )

        for appointment_id, count in (await self.requests.pending_counts()).items():
            if count > 1:
                violations.append(
                    Violation("duplicate_pending", appointment_id, f"{count} pending reschedule requests")
                )

        if violations:
            logger.warning("Consistency audit found %d violations", len(violations))
        return violations
