"""
Google Calendar Service
Handles OAuth token exchange, busy-time queries and event creation/deletion
"""
import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import Optional
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from ...config import CALENDAR_HTTP_TIMEOUT_SECONDS
from .errors import AuthError, ProviderError, ProviderErrorKind
from .provider import CalendarProvider, TokenGrant
from .schemas import BusyInterval

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
EVENTS_PAGE_SIZE = 250
MAX_ERROR_MESSAGE_LENGTH = 200


def _error_payload(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _sanitize(message: str) -> str:
    return " ".join(str(message).split())[:MAX_ERROR_MESSAGE_LENGTH]


def provider_error_from_response(response: httpx.Response) -> ProviderError:
    """Map a failed Google Calendar API response onto the provider error kinds"""
    error = _error_payload(response).get("error") or {}
    if isinstance(error, str):
        message, reasons = error, set()
    else:
        message = error.get("message") or response.reason_phrase
        reasons = {e.get("reason") for e in error.get("errors") or [] if isinstance(e, dict)}

    status = response.status_code
    if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
        kind = ProviderErrorKind.RATE_LIMITED
    elif status in (401, 403):
        kind = ProviderErrorKind.REAUTHORIZE
    elif status >= 500:
        kind = ProviderErrorKind.RETRYABLE
    else:
        kind = ProviderErrorKind.INVALID_REQUEST
    return ProviderError(kind, _sanitize(message), status_code=status)


def _zone(name: Optional[str]) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"⚠️ Unknown calendar timezone {name!r}, treating as UTC")
        return timezone.utc


def parse_event_time(value: dict, calendar_tz: Optional[str]) -> Optional[datetime]:
    """Parse a Google event start/end object into an aware UTC datetime"""
    if not value:
        return None
    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=_zone(value.get("timeZone") or calendar_tz))
        return parsed.astimezone(timezone.utc)
    if value.get("date"):
        # All-day events: midnight in the calendar's own zone, end date exclusive
        day = date.fromisoformat(value["date"])
        return datetime.combine(day, time.min, tzinfo=_zone(calendar_tz)).astimezone(timezone.utc)
    return None


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def build_event_body(
    summary: str,
    start: datetime,
    end: datetime,
    timezone_name: str,
    attendee_email: str,
    attendee_name: str,
    description: Optional[str] = None,
    owner_email: Optional[str] = None,
    reminder_minutes: Optional[list[int]] = None,
) -> dict:
    """Build a Google Calendar event payload for an appointment"""
    overrides = []
    if owner_email:
        for minutes in reminder_minutes or []:
            overrides.append({"method": "email", "minutes": minutes})
            overrides.append({"method": "popup", "minutes": minutes})
    if not overrides:
        overrides.append({"method": "popup", "minutes": 30})

    attendees = [{"email": attendee_email, "displayName": attendee_name}]
    if owner_email:
        attendees.append({"email": owner_email, "displayName": "Calendar Owner"})

    return {
        "summary": summary,
        "description": description or "Appointment booked via AI agent",
        "start": {"dateTime": _rfc3339(start), "timeZone": timezone_name},
        "end": {"dateTime": _rfc3339(end), "timeZone": timezone_name},
        "attendees": attendees,
        "guestsCanSeeOtherGuests": True,
        "guestsCanInviteOthers": False,
        "guestsCanModify": False,
        "reminders": {"useDefault": False, "overrides": overrides},
    }


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 over httpx, with a bounded timeout on every call"""

    name = "google"

    def __init__(
        self,
        timeout: float = CALENDAR_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url += f"/{quote(event_id, safe='')}"
        return url

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(self, client_id: str, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: dict, action: str) -> TokenGrant:
        try:
            async with self._client() as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            logger.error(f"❌ Google token {action} failed: {type(e).__name__}")
            raise AuthError(f"Token {action} failed: could not reach Google") from e

        if response.status_code != 200:
            payload = _error_payload(response)
            reason = payload.get("error_description") or payload.get("error") or response.reason_phrase
            logger.error(f"❌ Google token {action} rejected ({response.status_code}): {_sanitize(reason)}")
            raise AuthError(f"Token {action} rejected: {_sanitize(reason)}")

        tokens = _error_payload(response)
        access_token = tokens.get("access_token")
        if not access_token:
            logger.error(f"❌ No access token in {action} response")
            raise AuthError(f"Token {action} returned no access token")

        scope = tokens.get("scope")
        return TokenGrant(
            access_token=access_token,
            expires_in=int(tokens.get("expires_in") or 3600),
            refresh_token=tokens.get("refresh_token"),
            scopes=scope.split() if scope else None,
        )

    async def exchange_code(
        self, client_id: str, client_secret: str, code: str, redirect_uri: str
    ) -> TokenGrant:
        return await self._token_request(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            "exchange",
        )

    async def refresh_access_token(
        self, client_id: str, client_secret: str, refresh_token: str
    ) -> TokenGrant:
        return await self._token_request(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            "refresh",
        )

    async def fetch_account_email(self, access_token: str) -> Optional[str]:
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
                )
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ Failed to fetch Google user info: {type(e).__name__}")
            return None
        if response.status_code != 200:
            logger.warning(f"⚠️ Failed to fetch Google user info ({response.status_code})")
            return None
        return _error_payload(response).get("email")

    async def revoke_token(self, token: str) -> None:
        try:
            async with self._client() as client:
                await client.post(GOOGLE_REVOKE_URL, params={"token": token})
        except httpx.HTTPError as e:
            logger.warning(f"Failed to revoke Google token: {type(e).__name__}")

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    async def list_busy_intervals(
        self, access_token: str, calendar_id: str, window_start: datetime, window_end: datetime
    ) -> list[BusyInterval]:
        params = {
            "timeMin": _rfc3339(window_start),
            "timeMax": _rfc3339(window_end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(EVENTS_PAGE_SIZE),
        }
        headers = {"Authorization": f"Bearer {access_token}"}
        intervals: list[BusyInterval] = []
        pages = 0

        try:
            async with self._client() as client:
                while True:
                    response = await client.get(
                        self._events_url(calendar_id), headers=headers, params=params
                    )
                    if response.status_code != 200:
                        raise provider_error_from_response(response)

                    payload = response.json()
                    pages += 1
                    calendar_tz = payload.get("timeZone")
                    for item in payload.get("items") or []:
                        interval = self._busy_interval(item, calendar_tz)
                        if interval:
                            intervals.append(interval)

                    page_token = payload.get("nextPageToken")
                    if not page_token:
                        break
                    params["pageToken"] = page_token
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderErrorKind.RETRYABLE, "Google Calendar request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(
                ProviderErrorKind.RETRYABLE, f"Google Calendar unreachable: {type(e).__name__}"
            ) from e

        intervals.sort(key=lambda b: (b.start, b.end))
        logger.debug(f"Fetched {len(intervals)} busy intervals for {calendar_id} ({pages} page(s))")
        return intervals

    @staticmethod
    def _busy_interval(item: dict, calendar_tz: Optional[str]) -> Optional[BusyInterval]:
        if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
            return None
        start = parse_event_time(item.get("start") or {}, calendar_tz)
        end = parse_event_time(item.get("end") or {}, calendar_tz)
        if not start or not end or end <= start:
            return None
        return BusyInterval(start=start, end=end, event_id=item.get("id"))

    async def create_event(self, access_token: str, calendar_id: str, event: dict) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    self._events_url(calendar_id),
                    headers={"Authorization": f"Bearer {access_token}"},
                    params={"sendUpdates": "all"},
                    json=event,
                )
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderErrorKind.RETRYABLE, "Google Calendar request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(
                ProviderErrorKind.RETRYABLE, f"Google Calendar unreachable: {type(e).__name__}"
            ) from e

        if response.status_code not in (200, 201):
            error = provider_error_from_response(response)
            logger.error(f"❌ Failed to create calendar event: {error}")
            raise error

        event_id = response.json().get("id")
        logger.info(f"✅ Google Calendar event created: {event_id}")
        return event_id

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> bool:
        try:
            async with self._client() as client:
                response = await client.delete(
                    self._events_url(calendar_id, event_id),
                    headers={"Authorization": f"Bearer {access_token}"},
                    params={"sendUpdates": "all"},
                )
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderErrorKind.RETRYABLE, "Google Calendar request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(
                ProviderErrorKind.RETRYABLE, f"Google Calendar unreachable: {type(e).__name__}"
            ) from e

        if response.status_code in (404, 410):
            logger.info(f"ℹ️ Google Calendar event already gone: {event_id}")
            return False
        if response.status_code not in (200, 204):
            error = provider_error_from_response(response)
            logger.error(f"❌ Failed to delete calendar event: {error}")
            raise error

        logger.info(f"✅ Google Calendar event deleted: {event_id}")
        return True
