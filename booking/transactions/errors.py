"""
Booking error taxonomy.

Every failure the coordinator can surface is a BookingError carrying an
``error_code`` (stable, machine readable), a client-facing ``message`` and
the HTTP status the API layer maps it to.

Raised before any write (no cleanup needed):
- ValidationError
- NotFoundError
- SlotUnavailableError

Raised after compensation has run:
- ConflictError
- InternalError

DegradedSideEffect is never raised. It names a best-effort step that failed
(meeting link, slot consumption, package update, notification) so the
failure can be logged consistently.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class BookingError(Exception):
    """Base class for errors surfaced to the booking caller."""

    error_code = "BOOKING_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "error_message": self.message,
            "details": self.details,
        }


class ValidationError(BookingError):
    """Missing or malformed input."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(BookingError):
    """Client, psychologist or package could not be resolved."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource.capitalize()} not found",
            details={"resource": resource, "id": str(identifier)},
        )
        self.resource = resource


class SlotUnavailableError(BookingError):
    """The advisory availability check rejected the slot."""

    error_code = "SLOT_UNAVAILABLE"
    status_code = 409


class ConflictError(BookingError):
    """The session uniqueness constraint rejected the insert (lost race)."""

    error_code = "SLOT_CONFLICT"
    status_code = 409


class InternalError(BookingError):
    """Any other write failure inside the saga."""

    error_code = "INTERNAL_ERROR"
    status_code = 500


class SideEffect(str, Enum):
    """Best-effort steps whose failure never affects the booking."""

    MEETING_LINK = "meeting_link"
    SLOT_CONSUMPTION = "slot_consumption"
    PACKAGE_UPDATE = "package_update"
    EMAIL = "email"
    CLIENT_WHATSAPP = "client_whatsapp"
    PSYCHOLOGIST_WHATSAPP = "psychologist_whatsapp"
    REMINDER_CHECK = "reminder_check"


@dataclass(frozen=True)
class DegradedSideEffect:
    """Record of a swallowed side-effect failure, used as logging ``extra``."""

    side_effect: SideEffect
    error: str

    def log_extra(self, **extra: Any) -> dict[str, Any]:
        return {"degraded_side_effect": self.side_effect.value, "error": self.error, **extra}
