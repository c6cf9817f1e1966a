import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.domain.calendar.errors import AuthError, ProviderError, ProviderErrorKind
from app.domain.calendar.google_calendar import (
    GoogleCalendarProvider,
    build_event_body,
    parse_event_time,
    provider_error_from_response,
)
from tests.conftest import utc

WINDOW = (utc(2026, 3, 2, 9, 0), utc(2026, 3, 2, 17, 0))


def google_provider(handler) -> GoogleCalendarProvider:
    return GoogleCalendarProvider(timeout=5, transport=httpx.MockTransport(handler))


def error_response(status, reason=None, message="boom"):
    errors = [{"reason": reason}] if reason else []
    return httpx.Response(status, json={"error": {"code": status, "message": message, "errors": errors}})


async def test_busy_intervals_follow_pagination_and_skip_free_events():
    requests = []
    pages = {
        None: {
            "timeZone": "America/New_York",
            "items": [
                {"id": "a", "start": {"dateTime": "2026-03-02T10:00:00-05:00"}, "end": {"dateTime": "2026-03-02T10:30:00-05:00"}},
                {"id": "cancelled", "status": "cancelled", "start": {"dateTime": "2026-03-02T11:00:00Z"}, "end": {"dateTime": "2026-03-02T12:00:00Z"}},
                {"id": "free", "transparency": "transparent", "start": {"dateTime": "2026-03-02T12:00:00Z"}, "end": {"dateTime": "2026-03-02T13:00:00Z"}},
            ],
            "nextPageToken": "page-2",
        },
        "page-2": {
            "timeZone": "America/New_York",
            "items": [
                {"id": "all-day", "start": {"date": "2026-03-02"}, "end": {"date": "2026-03-03"}},
            ],
        },
    }

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        token = request.url.params.get("pageToken")
        return httpx.Response(200, json=pages[token])

    intervals = await google_provider(handler).list_busy_intervals("token", "primary", *WINDOW)

    assert len(requests) == 2
    assert requests[0].headers["Authorization"] == "Bearer token"
    assert requests[0].url.params["singleEvents"] == "true"
    assert requests[0].url.params["timeMin"] == "2026-03-02T09:00:00Z"
    assert requests[1].url.params["pageToken"] == "page-2"

    assert [b.event_id for b in intervals] == ["all-day", "a"]
    all_day, meeting = intervals
    assert all_day.start == utc(2026, 3, 2, 5, 0)
    assert all_day.end == utc(2026, 3, 3, 5, 0)
    assert meeting.start == utc(2026, 3, 2, 15, 0)


@pytest.mark.parametrize(
    "response, kind",
    [
        (error_response(401), ProviderErrorKind.REAUTHORIZE),
        (error_response(403, "forbidden"), ProviderErrorKind.REAUTHORIZE),
        (error_response(403, "rateLimitExceeded"), ProviderErrorKind.RATE_LIMITED),
        (error_response(403, "userRateLimitExceeded"), ProviderErrorKind.RATE_LIMITED),
        (error_response(429), ProviderErrorKind.RATE_LIMITED),
        (error_response(500), ProviderErrorKind.RETRYABLE),
        (error_response(503), ProviderErrorKind.RETRYABLE),
        (error_response(400), ProviderErrorKind.INVALID_REQUEST),
        (error_response(404), ProviderErrorKind.INVALID_REQUEST),
    ],
)
async def test_failed_listing_maps_to_provider_error_kind(response, kind):
    with pytest.raises(ProviderError) as excinfo:
        await google_provider(lambda request: response).list_busy_intervals("token", "primary", *WINDOW)

    assert excinfo.value.kind == kind
    assert excinfo.value.status_code == response.status_code


async def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as excinfo:
        await google_provider(handler).list_busy_intervals("token", "primary", *WINDOW)

    assert excinfo.value.kind == ProviderErrorKind.RETRYABLE


def test_error_message_is_sanitized():
    response = httpx.Response(500, json={"error": {"message": "line one\nline two " + "x" * 500}})

    error = provider_error_from_response(response)

    assert "\n" not in error.message
    assert len(error.message) <= 200


async def test_refresh_posts_form_encoded_grant():
    seen = {}

    def handler(request):
        seen["body"] = parse_qs(request.content.decode())
        seen["content_type"] = request.headers["content-type"]
        return httpx.Response(200, json={"access_token": "new", "expires_in": 1800, "scope": "a b"})

    grant = await google_provider(handler).refresh_access_token("cid", "secret", "refresh")

    assert seen["content_type"].startswith("application/x-www-form-urlencoded")
    assert seen["body"]["grant_type"] == ["refresh_token"]
    assert seen["body"]["refresh_token"] == ["refresh"]
    assert grant.access_token == "new"
    assert grant.expires_in == 1800
    assert grant.refresh_token is None
    assert grant.scopes == ["a", "b"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been revoked"}),
        httpx.Response(200, json={"expires_in": 3600}),
    ],
)
async def test_refresh_failures_raise_auth_error(response):
    with pytest.raises(AuthError):
        await google_provider(lambda request: response).refresh_access_token("cid", "secret", "refresh")


async def test_refresh_network_failure_raises_auth_error():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(AuthError):
        await google_provider(handler).refresh_access_token("cid", "secret", "refresh")


async def test_create_event_notifies_attendees():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        seen["body"] = json.loads(request.content)
        seen["path"] = request.url.path
        return httpx.Response(200, json={"id": "evt-123"})

    body = build_event_body(
        "Appointment with Jane", *WINDOW, "UTC", attendee_email="jane@example.com", attendee_name="Jane"
    )
    event_id = await google_provider(handler).create_event("token", "team@group.calendar.google.com", body)

    assert event_id == "evt-123"
    assert seen["params"]["sendUpdates"] == "all"
    assert seen["path"] == "/calendar/v3/calendars/team@group.calendar.google.com/events"
    assert seen["body"]["attendees"][0]["email"] == "jane@example.com"


@pytest.mark.parametrize("status, expected", [(204, True), (200, True), (404, False), (410, False)])
async def test_delete_event_tolerates_missing_events(status, expected):
    deleted = await google_provider(lambda request: httpx.Response(status)).delete_event("token", "primary", "evt-1")

    assert deleted is expected


async def test_delete_event_raises_on_server_error():
    with pytest.raises(ProviderError) as excinfo:
        await google_provider(lambda request: error_response(502)).delete_event("token", "primary", "evt-1")

    assert excinfo.value.kind == ProviderErrorKind.RETRYABLE


def test_authorization_url_requests_offline_access():
    url = GoogleCalendarProvider().build_authorization_url("cid", "https://app.example.com/cb", "nonce-1")
    params = parse_qs(urlparse(url).query)

    assert params["access_type"] == ["offline"]
    assert params["prompt"] == ["consent"]
    assert params["state"] == ["nonce-1"]
    assert "https://www.googleapis.com/auth/calendar" in params["scope"][0].split()


def test_event_body_reminders_and_owner():
    body = build_event_body(
        "Appointment with Jane",
        *WINDOW,
        "UTC",
        attendee_email="jane@example.com",
        attendee_name="Jane",
        owner_email="owner@example.com",
        reminder_minutes=[60, 1440],
    )

    assert [a["email"] for a in body["attendees"]] == ["jane@example.com", "owner@example.com"]
    assert {"method": "email", "minutes": 1440} in body["reminders"]["overrides"]
    assert body["start"] == {"dateTime": "2026-03-02T09:00:00Z", "timeZone": "UTC"}


def test_event_body_defaults_to_popup_reminder():
    body = build_event_body("Appointment", *WINDOW, "UTC", attendee_email="a@example.com", attendee_name="A")

    assert body["reminders"]["overrides"] == [{"method": "popup", "minutes": 30}]


def test_parse_event_time_uses_event_timezone_for_naive_values():
    parsed = parse_event_time({"dateTime": "2026-03-02T09:00:00", "timeZone": "Europe/Berlin"}, "UTC")

    assert parsed == utc(2026, 3, 2, 8, 0)
