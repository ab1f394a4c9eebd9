"""
Slot availability gate for psychologist calendars.

Two operations around the per-day ``availability`` rows:

- check_slot_availability / is_slot_available: advisory read used to reject
  obviously-taken slots before anything is written. It is NOT a concurrency
  guarantee; two requests can both pass it. The partial unique index on
  ``sessions`` decides races.
- consume_slot: removes the booked time from the day's slot list once the
  session row exists. Failures are logged and swallowed because the session
  row, not the slot list, is the record of the booking.
"""

import logging
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy import select

from booking.transactions.errors import DegradedSideEffect, SideEffect
from booking.utils.time_format import normalize_time_to_24h, parse_time, same_slot
from database.connection import get_async_session
from database.models import ACTIVE_SESSION_STATUSES, Availability, Session

logger = logging.getLogger(__name__)


def _slot_in(slots: list[str] | None, time_str: str) -> bool:
    return any(same_slot(slot, time_str) for slot in (slots or []))


async def check_slot_availability(
    psychologist_id: UUID,
    slot_date: date,
    time_str: str,
) -> dict[str, Any]:
    """
    Check whether (psychologist, date, time) is currently bookable.

    Checks, in order:
    1. An availability row exists for the day and is flagged available
    2. The time is one of the day's bookable slots
    3. The time was not blocked by the external calendar sync
    4. No active session already occupies the slot

    Args:
        psychologist_id: UUID of the psychologist
        slot_date: Session date
        time_str: Session time, "HH:MM" or "h:MM AM/PM"

    Returns:
        {
            "available": bool,
            "conflict_type": str | None,  # "no_availability", "not_a_slot", "calendar_blocked", "session"
            "conflict_details": str | None,
        }

    Example:
        >>> await check_slot_availability(psychologist_id, date(2025, 3, 10), "14:00")
        {"available": True, "conflict_type": None, "conflict_details": None}
    """
    normalized = normalize_time_to_24h(time_str)

    async with get_async_session() as session:
        result = await session.execute(
            select(Availability).where(
                Availability.psychologist_id == psychologist_id,
                Availability.slot_date == slot_date,
            )
        )
        availability = result.scalar_one_or_none()

        if availability is None or not availability.is_available:
            return {
                "available": False,
                "conflict_type": "no_availability",
                "conflict_details": f"No availability on {slot_date.isoformat()}",
            }

        if not _slot_in(availability.time_slots, normalized):
            return {
                "available": False,
                "conflict_type": "not_a_slot",
                "conflict_details": f"{normalized} is not an open slot on {slot_date.isoformat()}",
            }

        if _slot_in(availability.blocked_slots, normalized):
            return {
                "available": False,
                "conflict_type": "calendar_blocked",
                "conflict_details": f"{normalized} is blocked in the psychologist's calendar",
            }

        result = await session.execute(
            select(Session.id).where(
                Session.psychologist_id == psychologist_id,
                Session.scheduled_date == slot_date,
                Session.scheduled_time == parse_time(normalized),
                Session.status.in_(ACTIVE_SESSION_STATUSES),
            ).limit(1)
        )
        existing_session_id = result.scalar_one_or_none()
        if existing_session_id is not None:
            return {
                "available": False,
                "conflict_type": "session",
                "conflict_details": "This time slot is already booked for the psychologist",
                "conflicting_session_id": str(existing_session_id),
            }

    return {"available": True, "conflict_type": None, "conflict_details": None}


async def is_slot_available(psychologist_id: UUID, slot_date: date, time_str: str) -> bool:
    """Boolean form of check_slot_availability."""
    result = await check_slot_availability(psychologist_id, slot_date, time_str)
    return result["available"]


async def consume_slot(psychologist_id: UUID, slot_date: date, time_str: str) -> bool:
    """
    Remove a booked time from the day's slot list.

    Best effort: never raises.

    Returns:
        True if the slot list was updated, False otherwise
    """
    try:
        async with get_async_session() as session:
            result = await session.execute(
                select(Availability).where(
                    Availability.psychologist_id == psychologist_id,
                    Availability.slot_date == slot_date,
                )
            )
            availability = result.scalar_one_or_none()
            if availability is None:
                logger.info(
                    f"No availability record for {psychologist_id} on {slot_date}, nothing to consume"
                )
                return False

            current_slots = list(availability.time_slots or [])
            updated_slots = [slot for slot in current_slots if not same_slot(slot, time_str)]
            if len(updated_slots) == len(current_slots):
                logger.info(f"Slot {time_str} not present on {slot_date}, nothing to consume")
                return False

            availability.time_slots = updated_slots
            availability.is_available = bool(updated_slots)
            await session.commit()

        logger.info(
            f"Consumed slot {time_str} on {slot_date}: {len(current_slots)} -> {len(updated_slots)} slots",
            extra={"psychologist_id": str(psychologist_id)},
        )
        return True

    except Exception as e:
        degraded = DegradedSideEffect(SideEffect.SLOT_CONSUMPTION, str(e))
        logger.error(
            f"Failed to consume slot {time_str} on {slot_date} (booking still valid)",
            extra=degraded.log_extra(psychologist_id=str(psychologist_id)),
            exc_info=True,
        )
        return False
