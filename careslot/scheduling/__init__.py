"""Appointment scheduling: slot inventory, lifecycle and reschedule workflow."""

from careslot.scheduling.errors import (
    AppointmentNotFoundError,
    ConflictError,
    ConsistencyViolationError,
    DuplicatePendingRequestError,
    FieldValidationError,
    InvalidTransitionError,
    RescheduleFailedError,
    RescheduleRequestNotFoundError,
    SchedulingError,
    SlotNotFoundError,
    SlotUnavailableError,
)
from careslot.scheduling.models import (
    AppointmentStatus,
    AppointmentType,
    AvailabilityWindow,
    BookingRequest,
    Caller,
    CallerRole,
    DateRange,
    Location,
    RescheduleProposal,
    RescheduleStatus,
    SlotState,
    Vitals,
)
from careslot.scheduling.service import SchedulingService, UnitOfWork

__all__ = [
    "AppointmentNotFoundError",
    "AppointmentStatus",
    "AppointmentType",
    "AvailabilityWindow",
    "BookingRequest",
    "Caller",
    "CallerRole",
    "ConflictError",
    "ConsistencyViolationError",
    "DateRange",
    "DuplicatePendingRequestError",
    "FieldValidationError",
    "InvalidTransitionError",
    "Location",
    "RescheduleFailedError",
    "RescheduleProposal",
    "RescheduleRequestNotFoundError",
    "RescheduleStatus",
    "SchedulingError",
    "SchedulingService",
    "SlotNotFoundError",
    "SlotState",
    "SlotUnavailableError",
    "UnitOfWork",
    "Vitals",
]
