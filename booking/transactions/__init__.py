"""
Booking transactions.

- booking_transaction: ManualBookingTransaction saga coordinator
- compensation: SagaLog and reverse-order undo
- errors: BookingError taxonomy

Import the coordinator from booking.transactions.booking_transaction; this
package only re-exports the error types, which the services import.
"""

from booking.transactions.errors import (
    BookingError,
    ConflictError,
    DegradedSideEffect,
    InternalError,
    NotFoundError,
    SideEffect,
    SlotUnavailableError,
    ValidationError,
)

__all__ = [
    "BookingError",
    "ConflictError",
    "DegradedSideEffect",
    "InternalError",
    "NotFoundError",
    "SideEffect",
    "SlotUnavailableError",
    "ValidationError",
]
