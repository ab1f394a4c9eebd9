"""
Meeting Link Provisioner - Google Calendar event + Google Meet link.

Creates the calendar event for a booked session and tries to obtain a real
Google Meet link for it. Best effort throughout: ``provision_meeting`` never
raises, a failure only means the session is stored without a link.

Credential priority:
1. Psychologist OAuth credentials (token valid for more than 5 minutes, or
   expired with a refresh token so google-auth can refresh it)
2. Service account. It can create the calendar event but Google does not
   let service accounts create Meet conferences, so this path normally
   ends with method ``service_account_limitation`` and ``requires_reauth``.

The ``https://meet.google.com/new?...`` URL is a placeholder that only opens
a fresh, unrelated meeting. It is never treated as a real link.

Usage:
    from booking.services.meet_link_service import build_meeting_request, provision_meeting

    request = build_meeting_request(client, psychologist, scheduled_date, "14:00")
    result = await provision_meeting(request, psychologist.google_calendar_credentials)
    if result.has_real_link:
        ...
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from google.oauth2 import service_account
from google.oauth2.credentials import Credentials as OAuthCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy import update

from booking.utils.time_format import parse_time
from database.connection import get_async_session
from database.models import Psychologist
from shared.config import get_settings

logger = logging.getLogger(__name__)

PLACEHOLDER_MEET_LINK = "https://meet.google.com/new?hs=122&authuser=0"
_PLACEHOLDER_MARKER = "meet.google.com/new"

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Access tokens expiring within this window are treated as expired
TOKEN_EXPIRY_BUFFER_MS = 5 * 60 * 1000

# Retry configuration for GCal API calls
GCAL_MAX_RETRIES = 3
GCAL_RETRY_BASE_DELAY = 1.0  # seconds

# Conference polling: first check immediately, then 2s, 4s, then every 8s
CONFERENCE_POLL_DELAYS = (0.0, 2.0, 4.0)
CONFERENCE_POLL_MAX_DELAY = 8.0

METHOD_OAUTH = "oauth"
METHOD_SERVICE_ACCOUNT = "service_account"
METHOD_SERVICE_ACCOUNT_LIMITATION = "service_account_limitation"
METHOD_FALLBACK = "fallback"
METHOD_ERROR = "error"


def is_real_meet_link(link: Optional[str]) -> bool:
    """True for an actual Meet URL; False for None, empty or the placeholder."""
    return bool(link) and _PLACEHOLDER_MARKER not in link


@dataclass(frozen=True)
class MeetingRequest:
    summary: str
    description: str
    start: datetime
    end: datetime
    attendees: tuple[str, ...] = ()


@dataclass
class MeetingResult:
    """Outcome of a provisioning attempt. ``link`` is only ever a real link."""

    link: Optional[str]
    event_id: Optional[str]
    calendar_link: Optional[str]
    method: str
    requires_reauth: bool = False
    error: Optional[str] = None
    calendar_id: Optional[str] = None
    refreshed_credentials: Optional[dict[str, Any]] = field(default=None, repr=False)

    def __post_init__(self):
        if not is_real_meet_link(self.link):
            self.link = None

    @property
    def has_real_link(self) -> bool:
        return is_real_meet_link(self.link)

    @property
    def created_with_oauth(self) -> bool:
        return self.method == METHOD_OAUTH

    def to_dict(self) -> dict[str, Any]:
        return {
            "meet_link": self.link,
            "event_id": self.event_id,
            "calendar_link": self.calendar_link,
            "method": self.method,
            "requires_reauth": self.requires_reauth,
        }


def build_meeting_request(client, psychologist, scheduled_date: date, scheduled_time: str) -> MeetingRequest:
    """Build the calendar event payload for a session."""
    settings = get_settings()
    tz = ZoneInfo(settings.TIMEZONE)
    start = datetime.combine(scheduled_date, parse_time(scheduled_time), tzinfo=tz)
    end = start + timedelta(minutes=settings.SESSION_DURATION_MINUTES)

    attendees = tuple(email for email in (client.email, psychologist.email) if email)
    return MeetingRequest(
        summary=f"Therapy Session - {client.display_name} with {psychologist.first_name}",
        description=f"Online therapy session between {client.display_name} and {psychologist.full_name}",
        start=start,
        end=end,
        attendees=attendees,
    )


def select_user_auth(credentials: Optional[dict[str, Any]], now_ms: Optional[int] = None) -> Optional[dict[str, Any]]:
    """
    Decide whether stored psychologist credentials are usable.

    Returns the credential dict to use, or None to fall back to the
    service account.
    """
    if not credentials or not isinstance(credentials, dict):
        return None

    access_token = credentials.get("access_token")
    refresh_token = credentials.get("refresh_token")
    expiry_date = credentials.get("expiry_date")
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000

    user_auth = {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expiry_date": expiry_date,
    }

    if access_token and (not expiry_date or int(expiry_date) > now_ms + TOKEN_EXPIRY_BUFFER_MS):
        return user_auth
    if refresh_token:
        logger.info("Psychologist OAuth token expired, refresh token available")
        return user_auth

    logger.info("Psychologist OAuth credentials unusable, falling back to service account")
    return None


async def _retry_with_backoff(
    operation: Callable,
    operation_name: str,
    max_retries: int = GCAL_MAX_RETRIES,
    base_delay: float = GCAL_RETRY_BASE_DELAY,
) -> Any:
    """
    Execute an async operation with exponential backoff retry.

    4xx responses are not retried, they will not succeed on a second try.
    """
    last_exception = None

    for attempt in range(max_retries):
        try:
            return await operation()
        except HttpError as e:
            if 400 <= e.resp.status < 500:
                raise
            last_exception = e
        except Exception as e:
            last_exception = e

        if attempt < max_retries - 1:
            delay = base_delay * (2 ** attempt)
            logger.warning(
                f"GCal {operation_name} failed (attempt {attempt + 1}/{max_retries}), "
                f"retrying in {delay}s: {last_exception}"
            )
            await asyncio.sleep(delay)

    logger.error(f"GCal {operation_name} failed after {max_retries} attempts")
    raise last_exception


def _build_oauth_calendar_service(user_auth: dict[str, Any]):
    """Create a Calendar API client acting as the psychologist."""
    settings = get_settings()

    expiry = None
    if user_auth.get("expiry_date"):
        # google-auth compares against naive UTC
        expiry = datetime.fromtimestamp(int(user_auth["expiry_date"]) / 1000, tz=UTC).replace(tzinfo=None)

    credentials = OAuthCredentials(
        token=user_auth.get("access_token"),
        refresh_token=user_auth.get("refresh_token"),
        token_uri=GOOGLE_TOKEN_URI,
        client_id=settings.GOOGLE_CLIENT_ID or None,
        client_secret=settings.GOOGLE_CLIENT_SECRET or None,
        scopes=CALENDAR_SCOPES,
        expiry=expiry,
    )
    return build("calendar", "v3", credentials=credentials, cache_discovery=False), credentials


def _build_service_account_calendar_service():
    """Create a Calendar API client with the platform service account."""
    settings = get_settings()

    try:
        credentials = service_account.Credentials.from_service_account_file(
            settings.GOOGLE_SERVICE_ACCOUNT_JSON,
            scopes=CALENDAR_SCOPES,
        )
        return build("calendar", "v3", credentials=credentials, cache_discovery=False)
    except Exception as e:
        logger.error(f"Failed to create Google Calendar service: {e}")
        raise


def _extract_meet_link(event: dict[str, Any]) -> Optional[str]:
    """Pull the video entry point (or hangoutLink) out of an event resource."""
    conference = event.get("conferenceData") or {}
    for entry in conference.get("entryPoints") or []:
        uri = entry.get("uri") or ""
        if entry.get("entryPointType") == "video" or "meet.google.com" in uri:
            if is_real_meet_link(uri):
                return uri

    hangout_link = event.get("hangoutLink")
    if is_real_meet_link(hangout_link):
        return hangout_link
    return None


def _event_body(request: MeetingRequest, with_attendees: bool) -> dict[str, Any]:
    settings = get_settings()
    body: dict[str, Any] = {
        "summary": request.summary,
        "description": request.description,
        "start": {"dateTime": request.start.isoformat(), "timeZone": settings.TIMEZONE},
        "end": {"dateTime": request.end.isoformat(), "timeZone": settings.TIMEZONE},
        "conferenceData": {
            "createRequest": {
                "requestId": f"meet-{secrets.token_hex(8)}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        },
    }
    # Service accounts cannot invite attendees without domain-wide delegation
    if with_attendees and request.attendees:
        body["attendees"] = [{"email": email} for email in request.attendees]
    return body


async def _insert_event(service, calendar_id: str, body: dict[str, Any], send_updates: str) -> dict[str, Any]:
    async def insert_with_retry():
        def insert():
            return service.events().insert(
                calendarId=calendar_id,
                body=body,
                conferenceDataVersion=1,
                sendUpdates=send_updates,
            ).execute()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, insert)

    return await _retry_with_backoff(insert_with_retry, "create_event")


def _poll_delays(timeout_seconds: float) -> list[float]:
    """Sleep before each conference check, capped so the total stays within the timeout."""
    delays: list[float] = []
    total = 0.0
    attempt = 0
    while True:
        delay = CONFERENCE_POLL_DELAYS[attempt] if attempt < len(CONFERENCE_POLL_DELAYS) else CONFERENCE_POLL_MAX_DELAY
        if delays and total + delay > timeout_seconds:
            return delays
        delays.append(delay)
        total += delay
        attempt += 1


async def _wait_for_meet_link(service, calendar_id: str, event_id: str, timeout_seconds: float) -> Optional[str]:
    """
    Poll the event until Google attaches the Meet conference.

    Bounded by ``timeout_seconds``; returns None on timeout, on conference
    failure, or on any API error.
    """
    loop = asyncio.get_running_loop()

    def get_event():
        return service.events().get(
            calendarId=calendar_id,
            eventId=event_id,
            conferenceDataVersion=1,
        ).execute()

    try:
        for attempt, delay in enumerate(_poll_delays(timeout_seconds), start=1):
            if delay:
                await asyncio.sleep(delay)

            event = await loop.run_in_executor(None, get_event)
            link = _extract_meet_link(event)
            if link:
                logger.info(f"Meet link ready for event {event_id} after {attempt} checks")
                return link

            status = (
                ((event.get("conferenceData") or {}).get("createRequest") or {})
                .get("status", {})
                .get("statusCode")
            )
            if status == "failure":
                logger.warning(f"Conference creation failed for event {event_id}")
                return None

        logger.warning(f"Conference for event {event_id} still pending after {timeout_seconds}s")
        return None

    except Exception as e:
        logger.error(f"Error waiting for conference on event {event_id}: {e}")
        return None


async def _provision_with_oauth(request: MeetingRequest, user_auth: dict[str, Any]) -> MeetingResult:
    settings = get_settings()
    service, credentials = _build_oauth_calendar_service(user_auth)
    calendar_id = "primary"

    event = await _insert_event(service, calendar_id, _event_body(request, with_attendees=True), "all")
    link = _extract_meet_link(event) or await _wait_for_meet_link(
        service, calendar_id, event["id"], settings.MEET_LINK_WAIT_SECONDS
    )

    refreshed = None
    if credentials.token and credentials.token != user_auth.get("access_token"):
        refreshed = {
            "access_token": credentials.token,
            "refresh_token": credentials.refresh_token,
            "expiry_date": int(credentials.expiry.replace(tzinfo=UTC).timestamp() * 1000) if credentials.expiry else None,
        }

    return MeetingResult(
        link=link,
        event_id=event.get("id"),
        calendar_link=event.get("htmlLink"),
        method=METHOD_OAUTH,
        calendar_id=calendar_id,
        refreshed_credentials=refreshed,
    )


async def _provision_with_service_account(request: MeetingRequest) -> MeetingResult:
    settings = get_settings()
    service = _build_service_account_calendar_service()
    calendar_id = settings.GOOGLE_CALENDAR_ID

    try:
        event = await _insert_event(service, calendar_id, _event_body(request, with_attendees=False), "none")
    except HttpError as e:
        if e.resp.status in (400, 403):
            logger.warning(f"Service account cannot create Meet conferences: {e}")
            return MeetingResult(
                link=None,
                event_id=None,
                calendar_link=None,
                method=METHOD_SERVICE_ACCOUNT_LIMITATION,
                requires_reauth=True,
                error=str(e),
            )
        raise

    link = _extract_meet_link(event) or await _wait_for_meet_link(
        service, calendar_id, event["id"], settings.MEET_LINK_WAIT_SECONDS
    )
    if link:
        return MeetingResult(
            link=link,
            event_id=event.get("id"),
            calendar_link=event.get("htmlLink"),
            method=METHOD_SERVICE_ACCOUNT,
            calendar_id=calendar_id,
        )

    return MeetingResult(
        link=None,
        event_id=event.get("id"),
        calendar_link=event.get("htmlLink"),
        method=METHOD_SERVICE_ACCOUNT_LIMITATION,
        requires_reauth=True,
        calendar_id=calendar_id,
        error="Service accounts cannot create Meet conferences - OAuth required for real Meet links",
    )


async def provision_meeting(
    request: MeetingRequest,
    credentials: Optional[dict[str, Any]] = None,
    trace_id: str = "-",
) -> MeetingResult:
    """
    Create the calendar event and try to get a real Meet link.

    Never raises. Any unexpected failure yields ``method="error"`` and no link.
    """
    try:
        user_auth = select_user_auth(credentials)
        if user_auth is not None:
            try:
                result = await _provision_with_oauth(request, user_auth)
                logger.info(
                    f"[{trace_id}] OAuth event created (real link: {result.has_real_link})",
                    extra={"trace_id": trace_id},
                )
                return result
            except Exception as e:
                logger.warning(
                    f"[{trace_id}] OAuth Meet creation failed, trying service account: {e}",
                    extra={"trace_id": trace_id},
                )

        try:
            result = await _provision_with_service_account(request)
        except Exception as e:
            logger.error(f"[{trace_id}] Service account event creation failed: {e}", extra={"trace_id": trace_id})
            return MeetingResult(
                link=None,
                event_id=None,
                calendar_link=None,
                method=METHOD_FALLBACK,
                requires_reauth=user_auth is None,
                error=str(e),
            )

        if user_auth is None:
            result.requires_reauth = result.requires_reauth or not result.has_real_link
        logger.info(
            f"[{trace_id}] Meeting provisioned via {result.method} (real link: {result.has_real_link})",
            extra={"trace_id": trace_id},
        )
        return result

    except Exception as e:
        logger.error(f"[{trace_id}] Meeting provisioning failed: {e}", extra={"trace_id": trace_id}, exc_info=True)
        return MeetingResult(link=None, event_id=None, calendar_link=None, method=METHOD_ERROR, error=str(e))


async def delete_calendar_event(
    event_id: str,
    credentials: Optional[dict[str, Any]] = None,
    via_service_account: bool = False,
    calendar_id: Optional[str] = None,
) -> bool:
    """
    Delete a calendar event created for an aborted booking.

    Args:
        event_id: Google Calendar event id
        credentials: Psychologist OAuth credentials (ignored with via_service_account)
        via_service_account: The event was created by the service account
        calendar_id: Calendar holding the event (defaults to the one the chosen auth writes to)

    Returns:
        True if deleted (or already gone), False otherwise
    """
    settings = get_settings()
    try:
        user_auth = None if via_service_account else select_user_auth(credentials)
        if user_auth is not None:
            service, _ = _build_oauth_calendar_service(user_auth)
            calendar_id = calendar_id or "primary"
        else:
            service = _build_service_account_calendar_service()
            calendar_id = calendar_id or settings.GOOGLE_CALENDAR_ID

        def delete_event():
            service.events().delete(calendarId=calendar_id, eventId=event_id).execute()

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, delete_event)

        logger.info(f"Deleted Google Calendar event: {event_id}")
        return True

    except HttpError as e:
        if e.resp.status in (404, 410):
            logger.warning(f"Event {event_id} not found in Google Calendar (already deleted?)")
            return True
        logger.error(f"Google Calendar API error deleting event {event_id}: {e}")
        return False
    except Exception as e:
        logger.error(f"Error deleting Google Calendar event {event_id}: {e}", exc_info=True)
        return False


async def cancel_meeting(meeting: MeetingResult, credentials: Optional[dict[str, Any]] = None) -> bool:
    """Delete the event behind ``meeting`` with the same auth and calendar that created it."""
    if not meeting.event_id:
        return True
    return await delete_calendar_event(
        meeting.event_id,
        credentials,
        via_service_account=not meeting.created_with_oauth,
        calendar_id=meeting.calendar_id,
    )


async def persist_refreshed_credentials(psychologist_id, credentials: dict[str, Any]) -> None:
    """Store tokens google-auth refreshed while provisioning, so the next booking reuses them."""
    async with get_async_session() as session:
        await session.execute(
            update(Psychologist)
            .where(Psychologist.id == psychologist_id)
            .values(google_calendar_credentials=credentials)
        )
        await session.commit()

    logger.info(f"Stored refreshed Google credentials for psychologist {psychologist_id}")
