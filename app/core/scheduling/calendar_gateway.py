"""
Google Calendar gateway.

Talks to Google's OAuth and Calendar v3 REST APIs over httpx and keeps the
counselor's stored credentials current. Every public operation returns a
CalendarResult; provider errors are mapped onto ErrorKind and never leak
httpx types to callers.

Endpoints used:
- POST {token_url}                               code exchange / refresh
- POST {revoke_url}                              disconnect
- POST {api}/freeBusy                            busy ranges
- GET/POST/PATCH/DELETE {api}/calendars/{id}/events[/{eventId}]
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional, Union
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo

import httpx
from dateutil import parser as date_parser

from app.config import get_settings
from app.core.scheduling.errors import CalendarResult, ErrorKind
from app.core.scheduling.slots import BusyRange
from app.core.scheduling.time_parser import resolve_timezone
from app.models.database import Counselor
from app.repositories.counselor import CounselorRepository

logger = logging.getLogger(__name__)

# Anything below this is treated as epoch seconds, not milliseconds
_EPOCH_MS_THRESHOLD = 10_000_000_000


def expiry_to_datetime(value: Union[None, int, float, str, datetime]) -> Optional[datetime]:
    """
    Normalize a token expiry to an aware UTC datetime.

    Accepts epoch milliseconds (number or numeric string), epoch seconds,
    ISO-8601 strings and datetimes. Returns None for anything else.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, str):
        stripped = value.strip()
        try:
            value = float(stripped)
        except ValueError:
            try:
                parsed = date_parser.isoparse(stripped)
            except (ValueError, OverflowError):
                logger.warning(f"Unparseable token expiry: {stripped!r}")
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value >= _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def _as_aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass
class AuthorizedCalendar:
    """Handle returned by ``get_authorized_client``."""

    counselor: Counselor
    access_token: str
    calendar_id: str
    timezone: ZoneInfo

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


class GoogleCalendarGateway:
    """
    Google Calendar access for one request.

    Token refreshes are serialized per counselor inside this process so a
    burst of requests does not fan out into redundant refresh calls.
    """

    _refresh_locks: dict[int, asyncio.Lock] = {}
    _refresh_users: dict[int, int] = {}

    def __init__(
        self,
        counselors: CounselorRepository,
        timeout: Optional[float] = None,
    ):
        """Initialize gateway.

        Args:
            counselors: Repository holding the credential columns
            timeout: Per-call timeout in seconds (defaults to settings)
        """
        self.settings = get_settings()
        self.counselors = counselors
        self.timeout = timeout or self.settings.calendar_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @classmethod
    @asynccontextmanager
    async def _refresh_lock(cls, counselor_id: int) -> AsyncIterator[None]:
        """Hold the counselor's refresh lock; it is dropped once nobody uses it."""
        lock = cls._refresh_locks.setdefault(counselor_id, asyncio.Lock())
        cls._refresh_users[counselor_id] = cls._refresh_users.get(counselor_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = cls._refresh_users[counselor_id] - 1
            if remaining:
                cls._refresh_users[counselor_id] = remaining
            else:
                del cls._refresh_users[counselor_id]
                cls._refresh_locks.pop(counselor_id, None)

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{self.settings.google_calendar_api}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    # === Provider plumbing ===

    @staticmethod
    def _error_payload(response: httpx.Response) -> tuple[Optional[str], str]:
        """Extract ``(error_code, message)`` from a Google error response."""
        try:
            data = response.json()
        except ValueError:
            return None, f"HTTP {response.status_code}"

        if not isinstance(data, dict):
            return None, f"HTTP {response.status_code}"

        error = data.get("error")
        if isinstance(error, dict):
            # Calendar API: {"error": {"code": 404, "message": "Not Found", ...}}
            return str(error.get("status") or error.get("code") or ""), str(
                error.get("message") or f"HTTP {response.status_code}"
            )
        if error:
            # OAuth endpoints: {"error": "invalid_grant", "error_description": "..."}
            return str(error), str(data.get("error_description") or error)
        return None, f"HTTP {response.status_code}"

    async def _call(
        self,
        method: str,
        url: str,
        failure: ErrorKind,
        operation: str,
        **kwargs: Any,
    ) -> CalendarResult[dict]:
        """
        Issue one provider request and map the outcome.

        404 and 410 map to EVENT_NOT_FOUND; other non-2xx responses map to
        ``failure``; timeouts map to TIMEOUT.
        """
        client = await self._get_client()

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Google {operation} timed out after {self.timeout}s: {e}")
            return CalendarResult.fail(
                ErrorKind.TIMEOUT, f"Google {operation} timed out", operation=operation
            )
        except httpx.HTTPError as e:
            logger.error(f"Google {operation} failed: {e}")
            return CalendarResult.fail(failure, f"Google {operation} failed: {e}")

        if response.status_code == 204:
            return CalendarResult.ok({})

        if 200 <= response.status_code < 300:
            try:
                data = response.json()
            except ValueError:
                data = {}
            return CalendarResult.ok(data if isinstance(data, dict) else {"items": data})

        _, message = self._error_payload(response)
        logger.error(f"Google {operation} returned {response.status_code}: {message}")

        if response.status_code in (404, 410) and failure in (
            ErrorKind.EVENT_NOT_FOUND,
            ErrorKind.EVENT_PATCH_FAILED,
            ErrorKind.EVENT_DELETE_FAILED,
        ):
            return CalendarResult.fail(
                ErrorKind.EVENT_NOT_FOUND,
                f"Google {operation} failed: {message}",
                status_code=response.status_code,
            )

        return CalendarResult.fail(
            failure,
            f"Google {operation} failed: {message}",
            status_code=response.status_code,
        )

    async def _token_request(self, data: dict[str, str], operation: str) -> CalendarResult[dict]:
        """POST to the OAuth token endpoint, mapping invalid_grant separately."""
        client = await self._get_client()

        try:
            response = await client.post(self.settings.google_token_url, data=data)
        except httpx.TimeoutException as e:
            logger.error(f"Google {operation} timed out: {e}")
            return CalendarResult.fail(ErrorKind.TIMEOUT, f"Google {operation} timed out")
        except httpx.HTTPError as e:
            logger.error(f"Google {operation} failed: {e}")
            return CalendarResult.fail(ErrorKind.AUTH_ERROR, f"Google auth failure: {e}")

        if response.status_code != 200:
            code, message = self._error_payload(response)
            if code == "invalid_grant" or "invalid_grant" in message.lower():
                logger.warning(f"Google {operation} rejected with invalid_grant")
                return CalendarResult.fail(
                    ErrorKind.INVALID_GRANT,
                    "Google refresh token invalid or revoked (invalid_grant). "
                    "Reauthorization required.",
                )
            logger.error(f"Google {operation} failed ({response.status_code}): {message}")
            return CalendarResult.fail(ErrorKind.AUTH_ERROR, f"Google auth failure: {message}")

        try:
            tokens = response.json()
        except ValueError:
            return CalendarResult.fail(ErrorKind.AUTH_ERROR, "Google auth failure: malformed token response")
        return CalendarResult.ok(tokens)

    def _token_expiry(self, tokens: dict) -> Optional[datetime]:
        if tokens.get("expiry_date") is not None:
            return expiry_to_datetime(tokens["expiry_date"])
        expires_in = tokens.get("expires_in")
        if expires_in is None:
            return None
        try:
            return datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError):
            return None

    # === OAuth ===

    async def generate_auth_url(self, counselor_id: int) -> CalendarResult[dict]:
        """
        Build the consent URL and store a fresh single-use ``state``.

        Offline access with forced consent makes Google issue a refresh
        token even when the counselor has authorized before.
        """
        state = secrets.token_hex(16)
        stored = await self.counselors.set_oauth_state(counselor_id, state)
        if not stored:
            return CalendarResult.fail(ErrorKind.COUNSELOR_NOT_FOUND, "Counselor not found")

        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.settings.google_scopes_list),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        url = f"{self.settings.google_auth_url}?{urlencode(params)}"
        logger.info(f"Generated Google auth URL for counselor {counselor_id}")
        return CalendarResult.ok({"url": url, "state": state})

    async def exchange_code_and_store_tokens(
        self,
        code: str,
        counselor_id: Optional[int] = None,
        state: Optional[str] = None,
    ) -> CalendarResult[dict]:
        """
        Exchange an authorization code and persist the tokens.

        The counselor is resolved from ``state`` when given, otherwise from
        ``counselor_id``.

        Returns:
            ``{"saved": True, "hasRefreshToken": bool}`` on success
        """
        if not code:
            return CalendarResult.fail(ErrorKind.MISSING_FIELDS, "Authorization code is required")
        if not counselor_id and not state:
            return CalendarResult.fail(
                ErrorKind.MISSING_STATE, "Either counselorId or state must be provided"
            )

        counselor: Optional[Counselor]
        if state:
            counselor = await self.counselors.find_by_oauth_state(state)
            if counselor is None:
                logger.warning("OAuth callback with unknown state")
                return CalendarResult.fail(ErrorKind.INVALID_STATE, "Invalid OAuth state")
            if counselor_id and counselor_id != counselor.id:
                counselor = await self.counselors.get_by_id(counselor_id)
        else:
            counselor = await self.counselors.get_by_id(counselor_id)

        if counselor is None:
            return CalendarResult.fail(ErrorKind.COUNSELOR_NOT_FOUND, "Counselor not found")

        exchanged = await self._token_request(
            {
                "code": code,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": self.settings.google_redirect_uri,
                "grant_type": "authorization_code",
            },
            operation="code exchange",
        )
        if not exchanged.success:
            return exchanged.cast()

        tokens = exchanged.value or {}
        refresh_token = tokens.get("refresh_token")
        await self.counselors.store_tokens(
            counselor.id,
            tokens.get("access_token"),
            refresh_token,
            self._token_expiry(tokens),
            calendar_id=counselor.email,
        )

        if not refresh_token:
            logger.warning(
                f"Google granted no refresh token for counselor {counselor.id}; "
                f"reauthorization will be needed"
            )
        return CalendarResult.ok({"saved": True, "hasRefreshToken": bool(refresh_token)})

    async def get_authorized_client(self, counselor_id: int) -> CalendarResult[AuthorizedCalendar]:
        """
        Return a usable access token for the counselor, refreshing if needed.

        Fails with NO_REFRESH_TOKEN when no refresh token is on file (even if
        the stored connected flag says otherwise), INVALID_GRANT when Google
        has revoked it, and AUTH_ERROR for any other auth failure.
        """
        counselor = await self.counselors.get_by_id(counselor_id)
        if counselor is None:
            return CalendarResult.fail(ErrorKind.COUNSELOR_NOT_FOUND, "Counselor not found")

        if not counselor.google_refresh_token:
            return CalendarResult.fail(
                ErrorKind.NO_REFRESH_TOKEN,
                "Counselor has not connected Google Calendar or refresh token missing",
            )

        async with self._refresh_lock(counselor_id):
            # Another request may have refreshed while we waited
            counselor = await self.counselors.get_by_id(counselor_id) or counselor
            if not counselor.google_refresh_token:
                return CalendarResult.fail(
                    ErrorKind.NO_REFRESH_TOKEN,
                    "Counselor has not connected Google Calendar or refresh token missing",
                )

            access_token = counselor.google_access_token
            expiry = _as_aware(counselor.google_token_expiry)
            leeway = timedelta(seconds=self.settings.token_refresh_leeway_seconds)

            if not access_token or expiry is None or expiry <= datetime.now(timezone.utc) + leeway:
                logger.info(f"Refreshing Google access token for counselor {counselor_id}")
                refreshed = await self._token_request(
                    {
                        "client_id": self.settings.google_client_id,
                        "client_secret": self.settings.google_client_secret,
                        "refresh_token": counselor.google_refresh_token,
                        "grant_type": "refresh_token",
                    },
                    operation="token refresh",
                )
                if not refreshed.success:
                    return refreshed.cast()

                tokens = refreshed.value or {}
                access_token = tokens.get("access_token")
                if not access_token:
                    return CalendarResult.fail(
                        ErrorKind.AUTH_ERROR, "Google auth failure: no access token in refresh response"
                    )
                await self.counselors.update_access_token(
                    counselor_id, access_token, self._token_expiry(tokens)
                )

        return CalendarResult.ok(
            AuthorizedCalendar(
                counselor=counselor,
                access_token=access_token,
                calendar_id=counselor.google_calendar_id or counselor.email,
                timezone=resolve_timezone(counselor.timezone, self.settings.default_timezone),
            )
        )

    async def connection_status(self, counselor_id: int) -> CalendarResult[dict]:
        """Report whether the counselor has a usable calendar connection."""
        counselor = await self.counselors.get_by_id(counselor_id)
        if counselor is None:
            return CalendarResult.fail(ErrorKind.COUNSELOR_NOT_FOUND, "Counselor not found")

        expiry = _as_aware(counselor.google_token_expiry)
        return CalendarResult.ok(
            {
                "connected": counselor.calendar_connected,
                "calendarId": counselor.google_calendar_id,
                "tokenExpiry": expiry.isoformat() if expiry else None,
            }
        )

    async def disconnect(self, counselor_id: int) -> CalendarResult[dict]:
        """
        Revoke the counselor's token at Google and clear stored credentials.

        Revocation is best effort; local credentials are cleared regardless.
        """
        counselor = await self.counselors.get_by_id(counselor_id)
        if counselor is None:
            return CalendarResult.fail(ErrorKind.COUNSELOR_NOT_FOUND, "Counselor not found")

        token = counselor.google_refresh_token or counselor.google_access_token
        revoked = False
        if token:
            client = await self._get_client()
            try:
                response = await client.post(
                    self.settings.google_revoke_url,
                    params={"token": token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
                revoked = response.status_code == 200
                if not revoked:
                    logger.warning(
                        f"Google token revoke for counselor {counselor_id} "
                        f"returned {response.status_code}"
                    )
            except httpx.HTTPError as e:
                logger.warning(f"Google token revoke failed for counselor {counselor_id}: {e}")

        await self.counselors.clear_google_connection(counselor_id)
        return CalendarResult.ok({"disconnected": True, "revoked": revoked})

    # === Free/busy ===

    async def query_free_busy(
        self,
        auth: AuthorizedCalendar,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        tz: ZoneInfo,
    ) -> CalendarResult[list[BusyRange]]:
        """
        Busy ranges for ``calendar_id`` in ``[time_min, time_max)``.

        Entries with unparseable timestamps are dropped.
        """
        result = await self._call(
            "POST",
            f"{self.settings.google_calendar_api}/freeBusy",
            ErrorKind.FREEBUSY_QUERY_FAILED,
            "freebusy query",
            headers=auth.headers,
            json={
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "timeZone": tz.key,
                "items": [{"id": calendar_id}],
            },
        )
        if not result.success:
            return result.cast()

        calendar = (result.value or {}).get("calendars", {}).get(calendar_id, {})
        if calendar.get("errors"):
            reasons = ", ".join(str(e.get("reason")) for e in calendar["errors"])
            logger.error(f"Google freebusy reported errors for {calendar_id}: {reasons}")
            return CalendarResult.fail(
                ErrorKind.FREEBUSY_QUERY_FAILED,
                f"Failed to query Google freebusy: {reasons}",
            )

        busy = []
        for entry in calendar.get("busy", []) or []:
            busy_range = BusyRange.from_dict(entry, tz)
            if busy_range is not None:
                busy.append(busy_range)
        return CalendarResult.ok(busy)

    # === Events ===

    async def create_event(self, auth: AuthorizedCalendar, event: dict) -> CalendarResult[dict]:
        """Insert an event and notify attendees."""
        result = await self._call(
            "POST",
            self._events_url(auth.calendar_id),
            ErrorKind.EVENT_CREATE_FAILED,
            "event creation",
            headers=auth.headers,
            params={"sendUpdates": "all"},
            json=event,
        )
        if result.success:
            logger.info(f"Created Google event {(result.value or {}).get('id')}")
        return result

    async def get_event(self, auth: AuthorizedCalendar, event_id: str) -> CalendarResult[dict]:
        return await self._call(
            "GET",
            self._events_url(auth.calendar_id, event_id),
            ErrorKind.EVENT_NOT_FOUND,
            "event fetch",
            headers=auth.headers,
        )

    async def patch_event(
        self,
        auth: AuthorizedCalendar,
        event_id: str,
        changes: dict,
    ) -> CalendarResult[dict]:
        """Patch selected fields of an event and notify attendees."""
        return await self._call(
            "PATCH",
            self._events_url(auth.calendar_id, event_id),
            ErrorKind.EVENT_PATCH_FAILED,
            "event patch",
            headers=auth.headers,
            params={"sendUpdates": "all"},
            json=changes,
        )

    async def list_events_in_window(
        self,
        auth: AuthorizedCalendar,
        time_min: datetime,
        time_max: datetime,
        query: Optional[str] = None,
        max_results: int = 50,
    ) -> CalendarResult[list[dict]]:
        """Expanded single events in a window, ordered by start time."""
        params: dict[str, Any] = {
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": max_results,
        }
        if query:
            params["q"] = query

        result = await self._call(
            "GET",
            self._events_url(auth.calendar_id),
            ErrorKind.EVENT_LIST_FAILED,
            "event list",
            headers=auth.headers,
            params=params,
        )
        if not result.success:
            return result.cast()
        return CalendarResult.ok(list((result.value or {}).get("items", []) or []))

    async def delete_event(self, auth: AuthorizedCalendar, event_id: str) -> CalendarResult[dict]:
        """
        Delete an event and notify attendees.

        An event that is already gone counts as deleted.
        """
        result = await self._call(
            "DELETE",
            self._events_url(auth.calendar_id, event_id),
            ErrorKind.EVENT_DELETE_FAILED,
            "event deletion",
            headers=auth.headers,
            params={"sendUpdates": "all"},
        )
        if not result.success and result.error == ErrorKind.EVENT_NOT_FOUND:
            return CalendarResult.ok({}, alreadyDeleted=True)
        return result
