"""Typed failures raised by scheduling operations."""

import uuid
from typing import Any, Optional


class SchedulingError(Exception):
    """Base error; carries a stable code, a readable message and the ids involved."""

    code = "scheduling_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {
            key: str(value) if isinstance(value, uuid.UUID) else value
            for key, value in details.items()
            if value is not None
        }

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFoundError(SchedulingError):
    code = "not_found"


class SlotNotFoundError(NotFoundError):
    code = "slot_not_found"

    def __init__(self, slot_id: uuid.UUID):
        super().__init__(f"Time slot {slot_id} does not exist", slot_id=slot_id)
        self.slot_id = slot_id


class AppointmentNotFoundError(NotFoundError):
    def __init__(self, appointment_id: uuid.UUID):
        super().__init__(f"Appointment {appointment_id} does not exist", appointment_id=appointment_id)
        self.appointment_id = appointment_id


class RescheduleRequestNotFoundError(NotFoundError):
    def __init__(self, request_id: uuid.UUID):
        super().__init__(f"Reschedule request {request_id} does not exist", request_id=request_id)
        self.request_id = request_id


class SlotUnavailableError(SchedulingError):
    code = "slot_unavailable"

    def __init__(self, slot_id: uuid.UUID, state: str, reason: Optional[str] = None):
        super().__init__(
            reason or f"Time slot {slot_id} is {state}",
            slot_id=slot_id,
            state=state,
        )
        self.slot_id = slot_id
        self.state = state


class InvalidTransitionError(SchedulingError):
    code = "invalid_transition"

    def __init__(self, entity: str, entity_id: uuid.UUID, current: str, requested: str):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current} to {requested}",
            entity=entity,
            entity_id=entity_id,
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class RescheduleFailedError(SchedulingError):
    code = "reschedule_failed"

    def __init__(
        self,
        appointment_id: uuid.UUID,
        reason: str,
        slot_id: Optional[uuid.UUID] = None,
        request_id: Optional[uuid.UUID] = None,
    ):
        super().__init__(
            f"Could not reschedule appointment {appointment_id}: {reason}",
            appointment_id=appointment_id,
            slot_id=slot_id,
            request_id=request_id,
        )
        self.appointment_id = appointment_id


class DuplicatePendingRequestError(SchedulingError):
    code = "duplicate_pending_request"

    def __init__(self, appointment_id: uuid.UUID, existing_request_id: Optional[uuid.UUID] = None):
        super().__init__(
            f"Appointment {appointment_id} already has a pending reschedule request",
            appointment_id=appointment_id,
            existing_request_id=existing_request_id,
        )
        self.appointment_id = appointment_id


class ConflictError(SchedulingError):
    code = "conflict"

    def __init__(self, operation: str, attempts: int):
        super().__init__(
            f"{operation} kept colliding with concurrent updates; gave up after {attempts} attempts",
            operation=operation,
            attempts=attempts,
        )
        self.attempts = attempts


class FieldValidationError(SchedulingError):
    code = "validation_error"

    def __init__(self, field: str, message: str, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field


class ConsistencyViolationError(SchedulingError):
    """A unit of work would commit state that breaks a store invariant."""

    code = "consistency_violation"
