"""
Admin booking endpoints.

- POST /api/admin/bookings/manual - book a session for a payment received offline
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Header, status
from fastapi.responses import JSONResponse

from booking.transactions.booking_transaction import ManualBookingTransaction
from booking.transactions.errors import BookingError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/bookings")


@router.post("/manual", status_code=status.HTTP_201_CREATED)
async def create_manual_booking(
    payload: dict[str, Any] = Body(...),
    admin_user: str | None = Header(default=None, alias="X-Admin-User"),
) -> JSONResponse:
    """
    Create a booking for a payment the admin has already received.

    Returns:
        201 with the joined booking record
        400 validation error, 404 unknown entity, 409 slot taken, 500 internal error
    """
    try:
        result = await ManualBookingTransaction().execute(payload, created_by=admin_user)
    except BookingError as e:
        logger.info(f"Manual booking rejected: {e.error_code} - {e.message}")
        return JSONResponse(status_code=e.status_code, content=e.to_dict())

    return JSONResponse(status_code=status.HTTP_201_CREATED, content=result)
