"""Tests for the Google Calendar gateway."""

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse
from zoneinfo import ZoneInfo

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from app.core.scheduling.calendar_gateway import (
    AuthorizedCalendar,
    GoogleCalendarGateway,
    expiry_to_datetime,
)
from app.core.scheduling.errors import ErrorKind
from app.models.database import Counselor

KOLKATA = ZoneInfo("Asia/Kolkata")


def make_response(status_code: int, payload=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    return response


def make_counselor(**overrides) -> Counselor:
    fields = dict(
        id=15,
        name="Dr. Rao",
        email="counselor@uni.edu",
        timezone="Asia/Kolkata",
        google_connected=True,
        google_access_token="access-1",
        google_refresh_token="refresh-1",
        google_token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        google_calendar_id=None,
    )
    fields.update(overrides)
    return Counselor(**fields)


class TestExpiryToDatetime:
    """Test token expiry normalization."""

    def test_epoch_milliseconds(self):
        result = expiry_to_datetime(1760793105956)

        assert result == datetime(2025, 10, 18, 13, 11, 45, 956000, tzinfo=timezone.utc)

    def test_epoch_milliseconds_as_string(self):
        assert expiry_to_datetime("1760793105956") == expiry_to_datetime(1760793105956)

    def test_iso_string(self):
        result = expiry_to_datetime("2025-10-18T13:11:45Z")

        assert result == datetime(2025, 10, 18, 13, 11, 45, tzinfo=timezone.utc)

    def test_naive_datetime_assumed_utc(self):
        result = expiry_to_datetime(datetime(2025, 10, 18, 13, 0))

        assert result.tzinfo == timezone.utc

    def test_unusable_values(self):
        assert expiry_to_datetime(None) is None
        assert expiry_to_datetime("") is None
        assert expiry_to_datetime("next tuesday-ish") is None


class TestGatewayBase:
    """Shared fixtures."""

    @pytest.fixture
    def counselor(self):
        return make_counselor()

    @pytest.fixture
    def counselors(self, counselor):
        repo = AsyncMock()
        repo.get_by_id.return_value = counselor
        repo.set_oauth_state.return_value = True
        repo.store_tokens.return_value = True
        repo.update_access_token.return_value = True
        repo.clear_google_connection.return_value = True
        return repo

    @pytest.fixture
    def mock_httpx_client(self):
        """Create mock httpx client."""
        return AsyncMock()

    @pytest.fixture
    def gateway(self, counselors, mock_httpx_client):
        gateway = GoogleCalendarGateway(counselors, timeout=2.0)
        gateway._client = mock_httpx_client
        return gateway

    @pytest.fixture
    def auth(self, counselor):
        return AuthorizedCalendar(
            counselor=counselor,
            access_token="access-1",
            calendar_id="counselor@uni.edu",
            timezone=KOLKATA,
        )


class TestAuthUrl(TestGatewayBase):
    """Test consent URL generation."""

    @pytest.mark.asyncio
    async def test_generate_auth_url(self, gateway, counselors):
        """Test offline access, forced consent and a stored state nonce."""
        result = await gateway.generate_auth_url(15)

        assert result.success
        state = result.value["state"]
        assert len(state) == 32
        int(state, 16)

        query = parse_qs(urlparse(result.value["url"]).query)
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["state"] == [state]
        assert "https://www.googleapis.com/auth/calendar" in query["scope"][0].split(" ")
        counselors.set_oauth_state.assert_awaited_once_with(15, state)

    @pytest.mark.asyncio
    async def test_states_are_unique(self, gateway):
        first = await gateway.generate_auth_url(15)
        second = await gateway.generate_auth_url(15)

        assert first.value["state"] != second.value["state"]

    @pytest.mark.asyncio
    async def test_unknown_counselor(self, gateway, counselors):
        counselors.set_oauth_state.return_value = False

        result = await gateway.generate_auth_url(999)

        assert not result.success
        assert result.error == ErrorKind.COUNSELOR_NOT_FOUND


class TestCodeExchange(TestGatewayBase):
    """Test authorization code exchange."""

    @pytest.mark.asyncio
    async def test_exchange_by_state(self, gateway, counselors, counselor, mock_httpx_client):
        counselors.find_by_oauth_state.return_value = counselor
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(
                200,
                {"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3599},
            )
        )

        result = await gateway.exchange_code_and_store_tokens("auth-code", state="abc123")

        assert result.success
        assert result.value == {"saved": True, "hasRefreshToken": True}
        args, kwargs = counselors.store_tokens.call_args
        assert args[:3] == (15, "access-2", "refresh-2")
        assert args[3] > datetime.now(timezone.utc)
        assert kwargs["calendar_id"] == "counselor@uni.edu"

        sent = mock_httpx_client.post.call_args.kwargs["data"]
        assert sent["grant_type"] == "authorization_code"
        assert sent["code"] == "auth-code"

    @pytest.mark.asyncio
    async def test_exchange_without_refresh_token(self, gateway, counselors, counselor, mock_httpx_client):
        """Test a missing refresh token is reported to the caller."""
        counselors.find_by_oauth_state.return_value = counselor
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(200, {"access_token": "access-2", "expiry_date": 1760793105956})
        )

        result = await gateway.exchange_code_and_store_tokens("auth-code", state="abc123")

        assert result.value["hasRefreshToken"] is False
        args, _ = counselors.store_tokens.call_args
        assert args[3] == expiry_to_datetime(1760793105956)

    @pytest.mark.asyncio
    async def test_unknown_state(self, gateway, counselors, mock_httpx_client):
        counselors.find_by_oauth_state.return_value = None
        mock_httpx_client.post = AsyncMock()

        result = await gateway.exchange_code_and_store_tokens("auth-code", state="stale")

        assert result.error == ErrorKind.INVALID_STATE
        mock_httpx_client.post.assert_not_called()
        counselors.store_tokens.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_state_or_counselor(self, gateway):
        result = await gateway.exchange_code_and_store_tokens("auth-code")

        assert result.error == ErrorKind.MISSING_STATE

    @pytest.mark.asyncio
    async def test_exchange_by_counselor_id(self, gateway, counselors, mock_httpx_client):
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(200, {"access_token": "a", "refresh_token": "r", "expires_in": 60})
        )

        result = await gateway.exchange_code_and_store_tokens("auth-code", counselor_id=15)

        assert result.success
        counselors.get_by_id.assert_awaited_with(15)

    @pytest.mark.asyncio
    async def test_exchange_rejected(self, gateway, counselors, counselor, mock_httpx_client):
        counselors.find_by_oauth_state.return_value = counselor
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(400, {"error": "invalid_grant", "error_description": "Bad Request"})
        )

        result = await gateway.exchange_code_and_store_tokens("used-code", state="abc123")

        assert result.error == ErrorKind.INVALID_GRANT
        counselors.store_tokens.assert_not_called()


class TestAuthorizedClient(TestGatewayBase):
    """Test token refresh handling."""

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, gateway, counselors, mock_httpx_client):
        """Test a stale connected flag without a refresh token never refreshes."""
        counselors.get_by_id.return_value = make_counselor(google_refresh_token=None)
        mock_httpx_client.post = AsyncMock()

        result = await gateway.get_authorized_client(15)

        assert result.error == ErrorKind.NO_REFRESH_TOKEN
        assert result.requires_reauthorization
        mock_httpx_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_token_is_reused(self, gateway, mock_httpx_client):
        mock_httpx_client.post = AsyncMock()

        result = await gateway.get_authorized_client(15)

        assert result.success
        assert result.value.access_token == "access-1"
        assert result.value.calendar_id == "counselor@uni.edu"
        assert result.value.timezone.key == "Asia/Kolkata"
        mock_httpx_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, gateway, counselors, mock_httpx_client):
        counselors.get_by_id.return_value = make_counselor(
            google_token_expiry=datetime.now(timezone.utc) - timedelta(minutes=5),
            google_calendar_id="shared-calendar@group.calendar.google.com",
        )
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(200, {"access_token": "access-2", "expires_in": 3600})
        )

        result = await gateway.get_authorized_client(15)

        assert result.success
        assert result.value.access_token == "access-2"
        assert result.value.calendar_id == "shared-calendar@group.calendar.google.com"
        sent = mock_httpx_client.post.call_args.kwargs["data"]
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "refresh-1"
        args, _ = counselors.update_access_token.call_args
        assert args[:2] == (15, "access-2")

    @pytest.mark.asyncio
    async def test_token_inside_leeway_is_refreshed(self, gateway, counselors, mock_httpx_client):
        counselors.get_by_id.return_value = make_counselor(
            google_token_expiry=datetime.now(timezone.utc) + timedelta(seconds=10),
        )
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(200, {"access_token": "access-2", "expires_in": 3600})
        )

        await gateway.get_authorized_client(15)

        mock_httpx_client.post.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_grant(self, gateway, counselors, mock_httpx_client):
        """Test a revoked refresh token is distinguished from other auth errors."""
        counselors.get_by_id.return_value = make_counselor(google_access_token=None)
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(
                400,
                {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
            )
        )

        result = await gateway.get_authorized_client(15)

        assert result.error == ErrorKind.INVALID_GRANT
        assert result.requires_reauthorization
        counselors.update_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_auth_error(self, gateway, counselors, mock_httpx_client):
        counselors.get_by_id.return_value = make_counselor(google_access_token=None)
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(401, {"error": "unauthorized_client"})
        )

        result = await gateway.get_authorized_client(15)

        assert result.error == ErrorKind.AUTH_ERROR
        assert not result.requires_reauthorization

    @pytest.mark.asyncio
    async def test_refresh_timeout(self, gateway, counselors, mock_httpx_client):
        counselors.get_by_id.return_value = make_counselor(google_access_token=None)
        mock_httpx_client.post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

        result = await gateway.get_authorized_client(15)

        assert result.error == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_unknown_counselor(self, gateway, counselors):
        counselors.get_by_id.return_value = None

        result = await gateway.get_authorized_client(404)

        assert result.error == ErrorKind.COUNSELOR_NOT_FOUND

    @pytest.mark.asyncio
    async def test_refresh_lock_released(self, gateway, counselors, mock_httpx_client):
        counselors.get_by_id.return_value = make_counselor(google_access_token=None)
        mock_httpx_client.post = AsyncMock(
            return_value=make_response(200, {"access_token": "access-2", "expires_in": 3600})
        )

        results = await asyncio.gather(
            gateway.get_authorized_client(15),
            gateway.get_authorized_client(15),
        )

        assert all(result.success for result in results)
        assert 15 not in GoogleCalendarGateway._refresh_locks
        assert 15 not in GoogleCalendarGateway._refresh_users

    @pytest.mark.asyncio
    async def test_refresh_lock_released_on_failure(self, gateway, counselors, mock_httpx_client):
        counselors.get_by_id.return_value = make_counselor(google_access_token=None)
        mock_httpx_client.post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

        result = await gateway.get_authorized_client(15)

        assert result.error == ErrorKind.TIMEOUT
        assert 15 not in GoogleCalendarGateway._refresh_locks


class TestFreeBusy(TestGatewayBase):
    """Test free/busy queries."""

    @pytest.mark.asyncio
    async def test_busy_ranges(self, gateway, auth, mock_httpx_client):
        """Test busy entries are parsed and unusable ones dropped."""
        mock_httpx_client.request = AsyncMock(
            return_value=make_response(
                200,
                {
                    "calendars": {
                        "counselor@uni.edu": {
                            "busy": [
                                {"start": "2025-10-20T04:00:00Z", "end": "2025-10-20T05:00:00Z"},
                                {"start": "garbage", "end": "2025-10-20T06:00:00Z"},
                            ]
                        }
                    }
                },
            )
        )
        time_min = datetime(2025, 10, 20, tzinfo=KOLKATA)

        result = await gateway.query_free_busy(
            auth, "counselor@uni.edu", time_min, time_min + timedelta(days=1), KOLKATA
        )

        assert result.success
        assert len(result.value) == 1
        assert result.value[0].start == datetime(2025, 10, 20, 9, 30, tzinfo=KOLKATA)

        method, url = mock_httpx_client.request.call_args.args
        body = mock_httpx_client.request.call_args.kwargs["json"]
        assert method == "POST"
        assert url.endswith("/freeBusy")
        assert body["items"] == [{"id": "counselor@uni.edu"}]
        assert body["timeZone"] == "Asia/Kolkata"
        assert mock_httpx_client.request.call_args.kwargs["headers"]["Authorization"] == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_calendar_missing_from_response(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(return_value=make_response(200, {"calendars": {}}))
        now = datetime.now(KOLKATA)

        result = await gateway.query_free_busy(auth, "counselor@uni.edu", now, now, KOLKATA)

        assert result.success
        assert result.value == []

    @pytest.mark.asyncio
    async def test_calendar_level_errors(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(
            return_value=make_response(
                200,
                {"calendars": {"counselor@uni.edu": {"errors": [{"domain": "global", "reason": "notFound"}]}}},
            )
        )
        now = datetime.now(KOLKATA)

        result = await gateway.query_free_busy(auth, "counselor@uni.edu", now, now, KOLKATA)

        assert result.error == ErrorKind.FREEBUSY_QUERY_FAILED

    @pytest.mark.asyncio
    async def test_provider_failure(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(
            return_value=make_response(500, {"error": {"code": 500, "message": "Backend Error"}})
        )
        now = datetime.now(KOLKATA)

        result = await gateway.query_free_busy(auth, "counselor@uni.edu", now, now, KOLKATA)

        assert result.error == ErrorKind.FREEBUSY_QUERY_FAILED
        assert "Backend Error" in result.message

    @pytest.mark.asyncio
    async def test_timeout(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(side_effect=httpx.ConnectTimeout("slow"))
        now = datetime.now(KOLKATA)

        result = await gateway.query_free_busy(auth, "counselor@uni.edu", now, now, KOLKATA)

        assert result.error == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(side_effect=httpx.ConnectError("refused"))
        now = datetime.now(KOLKATA)

        result = await gateway.query_free_busy(auth, "counselor@uni.edu", now, now, KOLKATA)

        assert result.error == ErrorKind.FREEBUSY_QUERY_FAILED


class TestEvents(TestGatewayBase):
    """Test event CRUD wrappers."""

    @pytest.mark.asyncio
    async def test_create_event(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(
            return_value=make_response(200, {"id": "evt-1", "status": "confirmed"})
        )

        result = await gateway.create_event(auth, {"summary": "Counselling session"})

        assert result.success
        assert result.value["id"] == "evt-1"
        method, url = mock_httpx_client.request.call_args.args
        assert method == "POST"
        assert url.endswith("/calendars/counselor%40uni.edu/events")
        assert mock_httpx_client.request.call_args.kwargs["params"] == {"sendUpdates": "all"}

    @pytest.mark.asyncio
    async def test_create_event_failure(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(
            return_value=make_response(403, {"error": {"code": 403, "message": "Forbidden"}})
        )

        result = await gateway.create_event(auth, {})

        assert result.error == ErrorKind.EVENT_CREATE_FAILED
        assert result.detail["status_code"] == 403

    @pytest.mark.asyncio
    async def test_get_missing_event(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(return_value=make_response(404, {"error": {"code": 404}}))

        result = await gateway.get_event(auth, "gone")

        assert result.error == ErrorKind.EVENT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_patch_deleted_event(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(
            return_value=make_response(410, {"error": {"code": 410, "message": "Resource has been deleted"}})
        )

        result = await gateway.patch_event(auth, "evt-1", {"start": {}})

        assert result.error == ErrorKind.EVENT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_patch_event(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(return_value=make_response(200, {"id": "evt-1"}))

        result = await gateway.patch_event(auth, "evt-1", {"start": {"dateTime": "x"}})

        assert result.success
        method, url = mock_httpx_client.request.call_args.args
        assert method == "PATCH"
        assert url.endswith("/events/evt-1")

    @pytest.mark.asyncio
    async def test_list_events(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(
            return_value=make_response(200, {"items": [{"id": "a"}, {"id": "b"}]})
        )
        start = datetime(2025, 10, 20, 9, tzinfo=KOLKATA)

        result = await gateway.list_events_in_window(auth, start, start + timedelta(days=1), query="s@uni.edu")

        assert [e["id"] for e in result.value] == ["a", "b"]
        params = mock_httpx_client.request.call_args.kwargs["params"]
        assert params["singleEvents"] == "true"
        assert params["orderBy"] == "startTime"
        assert params["q"] == "s@uni.edu"
        assert params["maxResults"] == 50

    @pytest.mark.asyncio
    async def test_delete_event(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(return_value=make_response(204))

        result = await gateway.delete_event(auth, "evt-1")

        assert result.success

    @pytest.mark.asyncio
    async def test_delete_already_deleted_event(self, gateway, auth, mock_httpx_client):
        mock_httpx_client.request = AsyncMock(return_value=make_response(410, {"error": {"code": 410}}))

        result = await gateway.delete_event(auth, "evt-1")

        assert result.success
        assert result.detail["alreadyDeleted"] is True


class TestConnectionManagement(TestGatewayBase):
    """Test status and disconnect."""

    @pytest.mark.asyncio
    async def test_status_connected(self, gateway):
        result = await gateway.connection_status(15)

        assert result.value["connected"] is True
        assert result.value["tokenExpiry"] is not None

    @pytest.mark.asyncio
    async def test_status_requires_refresh_token(self, gateway, counselors):
        counselors.get_by_id.return_value = make_counselor(google_refresh_token=None)

        result = await gateway.connection_status(15)

        assert result.value["connected"] is False

    @pytest.mark.asyncio
    async def test_disconnect_revokes_and_clears(self, gateway, counselors, mock_httpx_client):
        mock_httpx_client.post = AsyncMock(return_value=make_response(200))

        result = await gateway.disconnect(15)

        assert result.value == {"disconnected": True, "revoked": True}
        assert mock_httpx_client.post.call_args.kwargs["params"] == {"token": "refresh-1"}
        counselors.clear_google_connection.assert_awaited_once_with(15)

    @pytest.mark.asyncio
    async def test_disconnect_when_revoke_fails(self, gateway, counselors, mock_httpx_client):
        """Test local credentials are cleared even if Google is unreachable."""
        mock_httpx_client.post = AsyncMock(side_effect=httpx.ConnectError("down"))

        result = await gateway.disconnect(15)

        assert result.success
        assert result.value["revoked"] is False
        counselors.clear_google_connection.assert_awaited_once_with(15)
