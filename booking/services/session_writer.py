"""
Session writer - inserts the canonical session row.

The insert is where concurrent bookings for the same slot are decided: the
partial unique index ``uq_sessions_active_slot`` lets exactly one insert for
an active (psychologist, date, time) through. A unique violation becomes
ConflictError; every other database failure becomes InternalError.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from booking.services.meet_link_service import MeetingResult
from booking.transactions.errors import ConflictError, InternalError
from booking.utils.time_format import parse_time
from database.connection import get_async_session
from database.models import Session, SessionStatus

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION_SQLSTATE = "23505"


def is_unique_violation(error: IntegrityError) -> bool:
    """True when an IntegrityError comes from a unique constraint/index."""
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = str(orig if orig is not None else error).lower()
    return "unique" in message or "duplicate" in message


def meeting_fields(meeting: MeetingResult | None) -> dict[str, Any]:
    """
    Session columns derived from a meeting result.

    Meet link columns are only filled for real links; the placeholder link
    leaves them NULL so the link can be added later.
    """
    if meeting is None:
        return {}

    fields: dict[str, Any] = {}
    if meeting.event_id:
        fields["google_calendar_event_id"] = meeting.event_id
    if meeting.calendar_link:
        fields["google_calendar_link"] = meeting.calendar_link
    if meeting.has_real_link:
        fields["google_meet_link"] = meeting.link
        fields["google_meet_join_url"] = meeting.link
        fields["google_meet_start_url"] = meeting.link
    return fields


async def create_session(
    client_id: UUID,
    psychologist_id: UUID,
    package_id: UUID | None,
    scheduled_date: date,
    scheduled_time: str,
    payment_id: UUID,
    price: Decimal,
    notes: str | None,
    meeting: MeetingResult | None = None,
) -> Session:
    """
    Insert a booked session.

    Raises:
        ConflictError: Another active session holds the same slot
        InternalError: Any other insert failure
    """
    new_session = Session(
        client_id=client_id,
        psychologist_id=psychologist_id,
        package_id=package_id,
        scheduled_date=scheduled_date,
        scheduled_time=parse_time(scheduled_time),
        status=SessionStatus.BOOKED,
        payment_id=payment_id,
        price=price,
        session_notes=notes,
        **meeting_fields(meeting),
    )

    try:
        async with get_async_session() as session:
            session.add(new_session)
            await session.commit()
    except IntegrityError as e:
        if is_unique_violation(e):
            logger.warning(
                f"Double booking detected for {scheduled_date} {scheduled_time}",
                extra={"psychologist_id": str(psychologist_id), "payment_id": str(payment_id)},
            )
            raise ConflictError(
                "This time slot was just booked by another user. Please select another time.",
                details={"scheduled_date": scheduled_date.isoformat(), "scheduled_time": scheduled_time},
            ) from e
        logger.error("Session insert violated a constraint", exc_info=True)
        raise InternalError("Failed to create session", details={"error": str(e.orig)}) from e
    except SQLAlchemyError as e:
        logger.error("Session insert failed", exc_info=True)
        raise InternalError("Failed to create session", details={"error": str(e)}) from e

    logger.info(
        f"Session created for {scheduled_date} {scheduled_time}",
        extra={"session_id": str(new_session.id), "payment_id": str(payment_id)},
    )
    return new_session


async def delete_session(session_id: UUID) -> None:
    """Delete a session row. Only used to compensate an aborted booking."""
    async with get_async_session() as session:
        await session.execute(delete(Session).where(Session.id == session_id))
        await session.commit()

    logger.info(f"Session {session_id} deleted", extra={"session_id": str(session_id)})
