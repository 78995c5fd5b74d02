"""Domain error taxonomy.

Every failure raised by the scheduling core derives from ``DomainError`` and
carries a stable ``code`` so the HTTP layer can map it without string
matching. Persistence failures are not wrapped; they propagate as
``SQLAlchemyError``.
"""
import uuid


class DomainError(Exception):
    code = "domain_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


# ---- 400 ----

class ValidationError(DomainError):
    code = "validation_error"

class InvalidFormat(ValidationError):
    code = "invalid_format"

class InvalidRange(ValidationError):
    code = "invalid_range"

class PastDate(ValidationError):
    code = "past_date"

class InvalidPattern(ValidationError):
    code = "invalid_pattern"

class InvalidTimezone(ValidationError):
    code = "invalid_timezone"

class InvalidAppointmentType(ValidationError):
    code = "invalid_appointment_type"

class InvalidStatus(ValidationError):
    code = "invalid_status"


# ---- 404 ----

class NotFoundError(DomainError):
    code = "not_found"

    def __init__(self, kind: str, ident: uuid.UUID | str):
        super().__init__(f"{kind} not found with ID: {ident}", kind=kind, id=str(ident))


# ---- 409 ----

class ConflictError(DomainError):
    code = "conflict"

class SlotNotAvailable(ConflictError):
    code = "slot_not_available"

class SlotNotBooked(ConflictError):
    code = "slot_not_booked"

class CannotDeleteBooked(ConflictError):
    code = "cannot_delete_booked"

class InvalidTransition(ConflictError):
    code = "invalid_transition"

class ConcurrentModification(ConflictError):
    code = "concurrent_modification"


def http_status_for(exc: DomainError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    return 400
