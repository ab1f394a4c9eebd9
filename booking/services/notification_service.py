"""
Notification Dispatcher for confirmed bookings.

Runs after the booking is committed, detached from the request. Channels run
in a fixed order (email, client WhatsApp, psychologist WhatsApp, reminder
check) and each one is isolated: a failure is logged as a degraded side
effect and the next channel still runs. Nothing here is ever reported back
to whoever made the booking.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional
from uuid import UUID

from booking.services.meet_link_service import MeetingResult, is_real_meet_link
from booking.services.reminder_service import check_and_send_reminder_for_session
from booking.transactions.errors import DegradedSideEffect, SideEffect
from booking.utils.time_format import parse_time, to_12h_display
from shared.email_client import get_email_client
from shared.whatsapp_client import get_whatsapp_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingContext:
    """Everything the channels need, copied out of the ORM objects."""

    session_id: UUID
    scheduled_date: date
    scheduled_time: str
    client_name: str
    client_email: Optional[str]
    client_phone: Optional[str]
    psychologist_name: str
    psychologist_email: Optional[str]
    psychologist_phone: Optional[str]
    meet_link: Optional[str]
    requires_reauth: bool
    transaction_id: str
    amount: Decimal
    trace_id: str = "-"

    @classmethod
    def from_booking(
        cls,
        session_id: UUID,
        client,
        psychologist,
        scheduled_date: date,
        scheduled_time: str,
        meeting: Optional[MeetingResult],
        transaction_id: str,
        amount: Decimal,
        trace_id: str = "-",
    ) -> "BookingContext":
        return cls(
            session_id=session_id,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            client_name=client.display_name,
            client_email=client.email,
            client_phone=client.phone_number,
            psychologist_name=psychologist.full_name,
            psychologist_email=psychologist.email,
            psychologist_phone=psychologist.phone,
            meet_link=meeting.link if meeting else None,
            requires_reauth=bool(meeting and meeting.requires_reauth),
            transaction_id=transaction_id,
            amount=amount,
            trace_id=trace_id,
        )

    @property
    def has_real_link(self) -> bool:
        return is_real_meet_link(self.meet_link)

    @property
    def when(self) -> str:
        """Human readable session start, e.g. "10 March 2025, 2:00 PM"."""
        start = datetime.combine(self.scheduled_date, parse_time(self.scheduled_time))
        return f"{start.strftime('%d %B %Y')}, {to_12h_display(self.scheduled_time)}"


# ============================================================================
# Message text
# ============================================================================


def client_meet_link_text(context: BookingContext) -> str:
    if context.has_real_link:
        return f"🔗 Google Meet Link: {context.meet_link}"
    if context.requires_reauth:
        return "⚠️ Note: Google Meet link will be shared once available."
    return "🔗 Google Meet Link: Will be shared shortly"


def psychologist_meet_link_text(context: BookingContext) -> str:
    if context.has_real_link:
        return f"🔗 Google Meet Link: {context.meet_link}"
    if context.requires_reauth:
        return (
            "⚠️ IMPORTANT: Please connect your Google Calendar in your profile "
            "to enable automatic Meet link creation."
        )
    return "🔗 Google Meet Link: Will be shared shortly"


def client_whatsapp_message(context: BookingContext) -> str:
    return (
        f"🎉 Your session with Dr. {context.psychologist_name} is confirmed!\n\n"
        f"📅 Date: {context.when}\n"
        f"{client_meet_link_text(context)}\n\n"
        f"We look forward to seeing you!"
    )


def psychologist_whatsapp_message(context: BookingContext) -> str:
    return (
        f"🔔 New session booked with {context.client_name}.\n\n"
        f"📅 Date: {context.when}\n"
        f"{psychologist_meet_link_text(context)}\n\n"
        f"Session ID: {context.session_id}"
    )


def confirmation_email_html(context: BookingContext, for_psychologist: bool) -> str:
    greeting = (
        f"<p>A new session has been booked with {context.client_name}.</p>"
        if for_psychologist
        else f"<p>Your session with Dr. {context.psychologist_name} is confirmed.</p>"
    )
    link_text = psychologist_meet_link_text(context) if for_psychologist else client_meet_link_text(context)
    return (
        f"{greeting}"
        f"<p><strong>Date:</strong> {context.when}</p>"
        f"<p>{link_text}</p>"
        f"<p><strong>Transaction:</strong> {context.transaction_id} ({context.amount})</p>"
    )


# ============================================================================
# Channels
# ============================================================================


async def send_confirmation_emails(context: BookingContext) -> None:
    """Email the client and the psychologist; raises the first failure after trying both."""
    email = get_email_client()
    sends = []
    if context.client_email:
        sends.append(
            email.send_email(
                context.client_email,
                "Your therapy session is confirmed",
                confirmation_email_html(context, for_psychologist=False),
            )
        )
    if context.psychologist_email:
        sends.append(
            email.send_email(
                context.psychologist_email,
                f"New session booked with {context.client_name}",
                confirmation_email_html(context, for_psychologist=True),
            )
        )

    for result in await asyncio.gather(*sends, return_exceptions=True):
        if isinstance(result, Exception):
            raise result


async def send_client_whatsapp(context: BookingContext) -> None:
    if not context.client_phone:
        logger.info(f"[{context.trace_id}] Client has no phone number, skipping WhatsApp")
        return
    await get_whatsapp_client().send_text(context.client_phone, client_whatsapp_message(context))


async def send_psychologist_whatsapp(context: BookingContext) -> None:
    if not context.psychologist_phone:
        logger.info(f"[{context.trace_id}] Psychologist has no phone number, skipping WhatsApp")
        return
    await get_whatsapp_client().send_text(context.psychologist_phone, psychologist_whatsapp_message(context))


async def run_reminder_check(context: BookingContext) -> None:
    await check_and_send_reminder_for_session(context.session_id)


CHANNELS: tuple[tuple[SideEffect, Callable[[BookingContext], Awaitable[None]]], ...] = (
    (SideEffect.EMAIL, send_confirmation_emails),
    (SideEffect.CLIENT_WHATSAPP, send_client_whatsapp),
    (SideEffect.PSYCHOLOGIST_WHATSAPP, send_psychologist_whatsapp),
    (SideEffect.REMINDER_CHECK, run_reminder_check),
)


async def dispatch_booking_notifications(context: BookingContext) -> dict[str, bool]:
    """
    Run every notification channel for a new booking.

    Never raises.

    Returns:
        Channel name -> whether it completed without error
    """
    outcome: dict[str, bool] = {}

    for side_effect, channel in CHANNELS:
        try:
            await channel(context)
            outcome[side_effect.value] = True
        except Exception as e:
            degraded = DegradedSideEffect(side_effect, str(e))
            logger.warning(
                f"[{context.trace_id}] {side_effect.value} failed for session {context.session_id}: {e}",
                extra=degraded.log_extra(trace_id=context.trace_id, session_id=str(context.session_id)),
            )
            outcome[side_effect.value] = False

    logger.info(
        f"[{context.trace_id}] Notifications dispatched for session {context.session_id}: {outcome}",
        extra={"trace_id": context.trace_id, "session_id": str(context.session_id)},
    )
    return outcome
