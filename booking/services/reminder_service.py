"""
Session reminders over WhatsApp.

The hourly batch sweep reminds sessions starting in roughly
REMINDER_HOURS_BEFORE hours. A booking made inside that window would be
missed by the next sweep, so the booking transaction also runs
``check_and_send_reminder_for_session`` for the new session.

``reminder_sent_at`` is claimed with a conditional update before sending, so
the sweep and the per-booking check never both remind the same session.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from booking.utils.time_format import to_12h_display
from database.connection import get_async_session
from database.models import ACTIVE_SESSION_STATUSES, Session
from shared.config import get_settings
from shared.whatsapp_client import get_whatsapp_client

logger = logging.getLogger(__name__)

# Half-width of the reminder window around REMINDER_HOURS_BEFORE
REMINDER_WINDOW_HOURS = 0.5


def session_start(session: Session) -> datetime:
    tz = ZoneInfo(get_settings().TIMEZONE)
    return datetime.combine(session.scheduled_date, session.scheduled_time, tzinfo=tz)


def is_within_reminder_window(start: datetime, now: datetime) -> bool:
    """True if ``start`` is REMINDER_HOURS_BEFORE (+/- 30 min) after ``now``."""
    lead = get_settings().REMINDER_HOURS_BEFORE
    hours_until = (start - now).total_seconds() / 3600
    return lead - REMINDER_WINDOW_HOURS <= hours_until <= lead + REMINDER_WINDOW_HOURS


def _client_reminder(session: Session) -> str:
    start = session_start(session)
    message = (
        f"🔔 Reminder: Your therapy session with Dr. {session.psychologist.full_name} is coming up soon.\n\n"
        f"📅 Date: {start.strftime('%d %B %Y')}\n"
        f"⏰ Time: {to_12h_display(start.strftime('%H:%M'))}\n\n"
    )
    if session.google_meet_link:
        message += f"🔗 Join via Google Meet: {session.google_meet_link}\n\n"
    return message + "Please be ready for your session. We look forward to seeing you!"


def _psychologist_reminder(session: Session) -> str:
    start = session_start(session)
    client_name = session.client.display_name
    message = (
        f"🔔 Reminder: You have a session with {client_name} coming up soon.\n\n"
        f"📅 Date: {start.strftime('%d %B %Y')}\n"
        f"⏰ Time: {to_12h_display(start.strftime('%H:%M'))}\n\n"
        f"👤 Client: {client_name}\n"
    )
    if session.google_meet_link:
        message += f"🔗 Join via Google Meet: {session.google_meet_link}\n\n"
    return message + f"Session ID: {session.id}"


async def _claim_reminder(session_id: UUID) -> bool:
    """Mark the reminder as sent; False if someone else already did."""
    async with get_async_session() as db:
        result = await db.execute(
            update(Session)
            .where(Session.id == session_id, Session.reminder_sent_at.is_(None))
            .values(reminder_sent_at=datetime.now(UTC))
        )
        await db.commit()
        return result.rowcount == 1


async def send_session_reminder(session: Session) -> int:
    """
    Send reminders to the client and the psychologist.

    Returns:
        Number of messages delivered (0-2)
    """
    if not await _claim_reminder(session.id):
        logger.info(f"Reminder already sent for session {session.id}, skipping")
        return 0

    whatsapp = get_whatsapp_client()
    sends = []
    if session.client.phone_number:
        sends.append(whatsapp.send_text(session.client.phone_number, _client_reminder(session)))
    else:
        logger.info(f"No phone number for client in session {session.id}")
    if session.psychologist.phone:
        sends.append(whatsapp.send_text(session.psychologist.phone, _psychologist_reminder(session)))
    else:
        logger.info(f"No phone number for psychologist in session {session.id}")

    results = await asyncio.gather(*sends, return_exceptions=True)
    failures = [r for r in results if isinstance(r, Exception)]
    for failure in failures:
        logger.warning(f"Reminder send failed for session {session.id}: {failure}")

    delivered = len(results) - len(failures)
    logger.info(
        f"Reminder for session {session.id}: {delivered}/{len(results)} messages delivered",
        extra={"session_id": str(session.id)},
    )
    return delivered


async def check_and_send_reminder_for_session(session_id: UUID, now: Optional[datetime] = None) -> bool:
    """
    Send the reminder right away if a new session already falls in the window.

    Returns:
        True if a reminder was sent
    """
    async with get_async_session() as db:
        result = await db.execute(
            select(Session)
            .options(selectinload(Session.client), selectinload(Session.psychologist))
            .where(Session.id == session_id, Session.status.in_(ACTIVE_SESSION_STATUSES))
        )
        session = result.scalar_one_or_none()

    if session is None:
        logger.info(f"Session {session_id} not found or not active, no reminder check")
        return False

    now = now or datetime.now(UTC)
    start = session_start(session)
    if not is_within_reminder_window(start, now):
        hours_until = (start - now).total_seconds() / 3600
        logger.debug(f"Session {session_id} is {hours_until:.2f}h away, outside reminder window")
        return False

    logger.info(f"Session {session_id} is inside the reminder window, sending now")
    return await send_session_reminder(session) > 0


async def send_due_reminders(now: Optional[datetime] = None) -> int:
    """
    Batch sweep: remind every active session inside the window.

    Returns:
        Number of sessions reminded
    """
    now = now or datetime.now(UTC)
    settings = get_settings()
    tz = ZoneInfo(settings.TIMEZONE)
    # Only the dates the reminder window can touch
    first_day = (now + timedelta(hours=settings.REMINDER_HOURS_BEFORE - REMINDER_WINDOW_HOURS)).astimezone(tz).date()
    last_day = (now + timedelta(hours=settings.REMINDER_HOURS_BEFORE + REMINDER_WINDOW_HOURS)).astimezone(tz).date()

    async with get_async_session() as db:
        result = await db.execute(
            select(Session)
            .options(selectinload(Session.client), selectinload(Session.psychologist))
            .where(
                Session.scheduled_date.between(first_day, last_day),
                Session.status.in_(ACTIVE_SESSION_STATUSES),
                Session.reminder_sent_at.is_(None),
            )
        )
        sessions = result.scalars().all()

    reminded = 0
    for session in sessions:
        if not is_within_reminder_window(session_start(session), now):
            continue
        try:
            if await send_session_reminder(session):
                reminded += 1
        except Exception as e:
            logger.error(f"Error sending reminder for session {session.id}: {e}", exc_info=True)

    logger.info(f"Reminder sweep finished: {reminded} session(s) reminded")
    return reminded
