"""Domain enums, the transition graph and request models for scheduling."""

import uuid
from datetime import date, datetime, time
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SlotState(str, Enum):
    """Availability states of a time slot."""

    OPEN = "open"
    HELD = "held"
    BOOKED = "booked"
    BLOCKED = "blocked"


class AppointmentStatus(str, Enum):
    """Appointment lifecycle statuses."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


class AppointmentType(str, Enum):
    NEW_PATIENT = "new_patient"
    FOLLOW_UP = "follow_up"
    CONSULTATION = "consultation"
    PROCEDURE = "procedure"
    TELEMEDICINE = "telemedicine"
    EMERGENCY = "emergency"


class LocationType(str, Enum):
    IN_PERSON = "in_person"
    TELEMEDICINE = "telemedicine"


class RescheduleStatus(str, Enum):
    """Reschedule request statuses. Only PENDING is non-terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class CallerRole(str, Enum):
    DOCTOR = "doctor"
    PATIENT = "patient"
    ADMIN = "admin"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELLED}
)

# Statuses that give the bound slot back to the inventory.
RELEASED_STATUSES = frozenset({AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELLED})

# Statuses from which a new slot may be bound.
RESCHEDULABLE_STATUSES = frozenset(
    {AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED, AppointmentStatus.RESCHEDULED}
)

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED, AppointmentStatus.RESCHEDULED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.CHECKED_IN,
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.RESCHEDULED,
        }
    ),
    AppointmentStatus.CHECKED_IN: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    # Leaving RESCHEDULED for SCHEDULED requires binding a new slot.
    AppointmentStatus.RESCHEDULED: frozenset(
        {AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[current]


class Caller(BaseModel):
    """Authenticated identity supplied by the auth collaborator."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    role: CallerRole


class Location(BaseModel):
    type: LocationType = LocationType.IN_PERSON
    address: Optional[str] = None
    room: Optional[str] = None
    meeting_link: Optional[str] = None


class Vitals(BaseModel):
    """Vital signs captured during a visit."""

    height_cm: Optional[float] = Field(default=None, gt=0)
    weight_kg: Optional[float] = Field(default=None, gt=0)
    bmi: Optional[float] = Field(default=None, gt=0)
    blood_pressure: Optional[str] = None
    temperature_c: Optional[float] = None
    heart_rate: Optional[int] = Field(default=None, gt=0)
    respiratory_rate: Optional[int] = Field(default=None, gt=0)
    oxygen_saturation: Optional[int] = Field(default=None, ge=0, le=100)


class BookingRequest(BaseModel):
    """Intent to book a patient into a provider's slot."""

    provider_id: uuid.UUID
    patient_id: uuid.UUID
    slot_id: uuid.UUID
    appointment_type: AppointmentType = AppointmentType.FOLLOW_UP
    visit_reason: str
    timezone: Optional[str] = None
    location: Location = Field(default_factory=Location)
    holder_id: Optional[str] = Field(
        default=None,
        description="Holder of a prior hold on the slot, if the client held it first",
    )

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "UTC":
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {value!r}") from e
        return value


class BreakWindow(BaseModel):
    start_time: time
    end_time: time
    reason: Optional[str] = None


class AvailabilityWindow(BaseModel):
    """Weekly working hours used to publish slots for one weekday."""

    day_of_week: int = Field(ge=0, le=6, description="0=Monday .. 6=Sunday")
    start_time: time
    end_time: time
    slot_duration_minutes: int = Field(default=30, ge=5, le=240)
    buffer_minutes: int = Field(default=0, ge=0, le=120)
    breaks: list[BreakWindow] = []
    active: bool = True

    @model_validator(mode="after")
    def _check_times(self) -> "AvailabilityWindow":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        for window in self.breaks:
            if window.end_time <= window.start_time:
                raise ValueError("break end_time must be after its start_time")
            if window.start_time < self.start_time or window.end_time > self.end_time:
                raise ValueError("breaks must fall within working hours")
        return self


class DateRange(BaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("end must not precede start")
        return self


class RescheduleProposal(BaseModel):
    """Intent to move an appointment, by slot or by preferred date-time."""

    appointment_id: uuid.UUID
    reason: str
    requested_slot_id: Optional[uuid.UUID] = None
    requested_start: Optional[datetime] = None
