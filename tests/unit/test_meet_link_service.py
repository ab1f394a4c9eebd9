"""
Unit tests for booking/services/meet_link_service.py - Meeting Link Provisioner.

Tests coverage:
- Placeholder link detection
- Credential selection (5 minute buffer, refresh-token path)
- OAuth provisioning, service-account limitation, fallback and error results
- Bounded conference polling
- Calendar event deletion used by compensation
"""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from zoneinfo import ZoneInfo

import httplib2
import pytest
from googleapiclient.errors import HttpError

from booking.services.meet_link_service import (
    METHOD_ERROR,
    METHOD_FALLBACK,
    METHOD_OAUTH,
    METHOD_SERVICE_ACCOUNT_LIMITATION,
    PLACEHOLDER_MEET_LINK,
    MeetingRequest,
    MeetingResult,
    _poll_delays,
    _wait_for_meet_link,
    cancel_meeting,
    delete_calendar_event,
    is_real_meet_link,
    provision_meeting,
    select_user_auth,
)

MODULE = "booking.services.meet_link_service"
REAL_LINK = "https://meet.google.com/abc-defg-hij"
NOW_MS = 1_741_000_000_000


def _http_error(status):
    return HttpError(httplib2.Response({"status": str(status)}), b"{}")


def _calendar_service(insert_result=None, get_results=None, insert_error=None):
    service = MagicMock()
    events = service.events.return_value
    if insert_error is not None:
        events.insert.return_value.execute.side_effect = insert_error
    else:
        events.insert.return_value.execute.return_value = insert_result
    if get_results is not None:
        events.get.return_value.execute.side_effect = get_results
    return service


def _event(event_id="evt-1", link=None):
    event = {"id": event_id, "htmlLink": f"https://calendar.google.com/event?eid={event_id}"}
    if link:
        event["conferenceData"] = {"entryPoints": [{"entryPointType": "video", "uri": link}]}
    else:
        event["conferenceData"] = {"createRequest": {"status": {"statusCode": "pending"}}}
    return event


@pytest.fixture
def meeting_request():
    start = datetime(2025, 3, 10, 14, 0, tzinfo=ZoneInfo("Asia/Kolkata"))
    return MeetingRequest(
        summary="Therapy Session - Asha Rao with Meera",
        description="Online therapy session",
        start=start,
        end=start + timedelta(minutes=50),
        attendees=("asha@example.com", "meera@example.com"),
    )


# ============================================================================
# Link and credential helpers
# ============================================================================


class TestIsRealMeetLink:
    def test_real_link(self):
        assert is_real_meet_link(REAL_LINK)

    @pytest.mark.parametrize("link", [None, "", PLACEHOLDER_MEET_LINK, "https://meet.google.com/new"])
    def test_not_real(self, link):
        assert not is_real_meet_link(link)


class TestSelectUserAuth:
    def test_valid_token(self):
        credentials = {"access_token": "a", "refresh_token": "r", "expiry_date": NOW_MS + 60 * 60 * 1000}
        assert select_user_auth(credentials, now_ms=NOW_MS)["access_token"] == "a"

    def test_token_without_expiry_is_used(self):
        assert select_user_auth({"access_token": "a"}, now_ms=NOW_MS) is not None

    def test_expiring_token_with_refresh_token(self):
        credentials = {"access_token": "a", "refresh_token": "r", "expiry_date": NOW_MS + 60 * 1000}
        assert select_user_auth(credentials, now_ms=NOW_MS)["refresh_token"] == "r"

    def test_expiring_token_without_refresh_token(self):
        credentials = {"access_token": "a", "expiry_date": NOW_MS + 4 * 60 * 1000}
        assert select_user_auth(credentials, now_ms=NOW_MS) is None

    @pytest.mark.parametrize("credentials", [None, {}, "not-a-dict"])
    def test_missing_credentials(self, credentials):
        assert select_user_auth(credentials, now_ms=NOW_MS) is None


# ============================================================================
# provision_meeting
# ============================================================================


class TestProvisionMeeting:
    @pytest.mark.asyncio
    async def test_oauth_creates_real_link(self, meeting_request):
        service = _calendar_service(insert_result=_event(link=REAL_LINK))
        oauth_credentials = MagicMock(token="a", refresh_token="r", expiry=None)

        with patch(f"{MODULE}._build_oauth_calendar_service", return_value=(service, oauth_credentials)):
            result = await provision_meeting(meeting_request, {"access_token": "a", "refresh_token": "r"})

        assert result.method == METHOD_OAUTH
        assert result.link == REAL_LINK
        assert result.event_id == "evt-1"
        assert result.requires_reauth is False
        assert result.refreshed_credentials is None

        insert_kwargs = service.events.return_value.insert.call_args.kwargs
        assert insert_kwargs["conferenceDataVersion"] == 1
        assert insert_kwargs["calendarId"] == "primary"
        assert [a["email"] for a in insert_kwargs["body"]["attendees"]] == ["asha@example.com", "meera@example.com"]

    @pytest.mark.asyncio
    async def test_oauth_reports_refreshed_tokens(self, meeting_request):
        service = _calendar_service(insert_result=_event(link=REAL_LINK))
        oauth_credentials = MagicMock(token="fresh", refresh_token="r", expiry=datetime(2030, 1, 1))

        with patch(f"{MODULE}._build_oauth_calendar_service", return_value=(service, oauth_credentials)):
            result = await provision_meeting(meeting_request, {"access_token": "stale", "refresh_token": "r"})

        assert result.refreshed_credentials["access_token"] == "fresh"
        assert result.refreshed_credentials["expiry_date"] == int(datetime(2030, 1, 1, tzinfo=UTC).timestamp() * 1000)

    @pytest.mark.asyncio
    async def test_service_account_cannot_produce_link(self, meeting_request):
        service = _calendar_service(insert_result=_event(), get_results=[_event()])

        with patch(f"{MODULE}._build_service_account_calendar_service", return_value=service):
            result = await provision_meeting(meeting_request, None)

        assert result.method == METHOD_SERVICE_ACCOUNT_LIMITATION
        assert result.link is None
        assert result.event_id == "evt-1"
        assert result.requires_reauth is True
        assert "attendees" not in service.events.return_value.insert.call_args.kwargs["body"]

    @pytest.mark.asyncio
    async def test_service_account_rejected_by_google(self, meeting_request):
        service = _calendar_service(insert_error=_http_error(403))

        with patch(f"{MODULE}._build_service_account_calendar_service", return_value=service):
            result = await provision_meeting(meeting_request, None)

        assert result.method == METHOD_SERVICE_ACCOUNT_LIMITATION
        assert result.event_id is None
        assert result.requires_reauth is True

    @pytest.mark.asyncio
    async def test_oauth_failure_falls_back_to_service_account(self, meeting_request):
        service = _calendar_service(insert_result=_event(event_id="evt-sa"), get_results=[_event(event_id="evt-sa")])

        with patch(f"{MODULE}._build_oauth_calendar_service", side_effect=RuntimeError("token revoked")), \
             patch(f"{MODULE}._build_service_account_calendar_service", return_value=service):
            result = await provision_meeting(meeting_request, {"access_token": "a"})

        assert result.event_id == "evt-sa"
        assert result.method == METHOD_SERVICE_ACCOUNT_LIMITATION

    @pytest.mark.asyncio
    async def test_no_provider_available_gives_fallback(self, meeting_request):
        with patch(f"{MODULE}._build_service_account_calendar_service", side_effect=FileNotFoundError("key.json")):
            result = await provision_meeting(meeting_request, None)

        assert result.method == METHOD_FALLBACK
        assert result.link is None
        assert result.event_id is None

    @pytest.mark.asyncio
    async def test_never_raises(self, meeting_request):
        with patch(f"{MODULE}.select_user_auth", side_effect=ValueError("corrupt credentials")):
            result = await provision_meeting(meeting_request, {"access_token": "a"})

        assert result.method == METHOD_ERROR
        assert result.link is None
        assert "corrupt credentials" in result.error


# ============================================================================
# Conference polling
# ============================================================================


class TestWaitForMeetLink:
    def test_poll_schedule_is_bounded(self):
        assert _poll_delays(30) == [0.0, 2.0, 4.0, 8.0, 8.0, 8.0]
        assert sum(_poll_delays(30)) <= 30
        assert _poll_delays(0) == [0.0]

    @pytest.mark.asyncio
    async def test_returns_link_once_ready(self):
        service = _calendar_service(get_results=[_event(), _event(link=REAL_LINK)])

        with patch(f"{MODULE}.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            link = await _wait_for_meet_link(service, "primary", "evt-1", 30)

        assert link == REAL_LINK
        mock_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_gives_up_after_timeout(self):
        service = _calendar_service(get_results=[_event() for _ in range(10)])

        with patch(f"{MODULE}.asyncio.sleep", new_callable=AsyncMock):
            link = await _wait_for_meet_link(service, "primary", "evt-1", 10)

        assert link is None
        assert service.events.return_value.get.return_value.execute.call_count == len(_poll_delays(10))

    @pytest.mark.asyncio
    async def test_conference_failure_stops_polling(self):
        failed = {"id": "evt-1", "conferenceData": {"createRequest": {"status": {"statusCode": "failure"}}}}
        service = _calendar_service(get_results=[failed])

        assert await _wait_for_meet_link(service, "primary", "evt-1", 30) is None


# ============================================================================
# delete_calendar_event
# ============================================================================


class TestDeleteCalendarEvent:
    @pytest.mark.asyncio
    async def test_deletes_with_service_account(self):
        service = MagicMock()

        with patch(f"{MODULE}._build_service_account_calendar_service", return_value=service):
            assert await delete_calendar_event("evt-1") is True

        service.events.return_value.delete.assert_called_once_with(calendarId="primary", eventId="evt-1")

    @pytest.mark.asyncio
    async def test_already_deleted_counts_as_success(self):
        service = MagicMock()
        service.events.return_value.delete.return_value.execute.side_effect = _http_error(404)

        with patch(f"{MODULE}._build_service_account_calendar_service", return_value=service):
            assert await delete_calendar_event("evt-1") is True

    @pytest.mark.asyncio
    async def test_api_error_returns_false(self):
        service = MagicMock()
        service.events.return_value.delete.return_value.execute.side_effect = _http_error(500)

        with patch(f"{MODULE}._build_service_account_calendar_service", return_value=service):
            assert await delete_calendar_event("evt-1") is False


# ============================================================================
# cancel_meeting
# ============================================================================

SHARED_CALENDAR = "bookings@group.calendar.google.com"


def _settings():
    return SimpleNamespace(
        GOOGLE_CALENDAR_ID=SHARED_CALENDAR,
        MEET_LINK_WAIT_SECONDS=0,
        TIMEZONE="Asia/Kolkata",
    )


class TestCancelMeeting:
    @pytest.mark.asyncio
    async def test_service_account_event_deleted_with_service_account(self, meeting_request):
        """OAuth fails, the service account creates the event; undo must target the shared calendar."""
        created_by = _calendar_service(insert_result=_event(event_id="sa-evt"), get_results=[_event(event_id="sa-evt")])
        deleter = MagicMock()
        credentials = {"access_token": "a"}

        with patch(f"{MODULE}.get_settings", return_value=_settings()), \
             patch(f"{MODULE}._build_oauth_calendar_service", side_effect=RuntimeError("token revoked")) as oauth, \
             patch(f"{MODULE}._build_service_account_calendar_service", side_effect=[created_by, deleter]):
            result = await provision_meeting(meeting_request, credentials)
            oauth.reset_mock()

            assert await cancel_meeting(result, credentials) is True

        assert result.calendar_id == SHARED_CALENDAR
        assert result.created_with_oauth is False
        oauth.assert_not_called()
        deleter.events.return_value.delete.assert_called_once_with(calendarId=SHARED_CALENDAR, eventId="sa-evt")

    @pytest.mark.asyncio
    async def test_oauth_event_deleted_with_oauth(self, meeting_request):
        created_by = _calendar_service(insert_result=_event(link=REAL_LINK))
        created_by_credentials = MagicMock(token="a")
        deleter = MagicMock()
        credentials = {"access_token": "a"}

        with patch(f"{MODULE}.get_settings", return_value=_settings()), \
             patch(
                 f"{MODULE}._build_oauth_calendar_service",
                 side_effect=[(created_by, created_by_credentials), (deleter, created_by_credentials)],
             ), \
             patch(f"{MODULE}._build_service_account_calendar_service") as service_account:
            result = await provision_meeting(meeting_request, credentials)
            assert await cancel_meeting(result, credentials) is True

        assert result.calendar_id == "primary"
        service_account.assert_not_called()
        deleter.events.return_value.delete.assert_called_once_with(calendarId="primary", eventId="evt-1")

    @pytest.mark.asyncio
    async def test_nothing_to_cancel_without_event(self):
        with patch(f"{MODULE}._build_service_account_calendar_service") as service_account:
            assert await cancel_meeting(MeetingResult(None, None, None, METHOD_FALLBACK)) is True

        service_account.assert_not_called()
