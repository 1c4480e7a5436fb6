"""
Tests for the Microsoft Graph client against a mocked transport.
"""

import json
from datetime import UTC, datetime

import httpx
import pytest

from calsync.models.domain.calendar_domain import RESPONSE_ACCEPTED, RESPONSE_NONE, ViewCalendarParams
from calsync.services.calendar.graph_client import GraphCalendarClient, parse_event
from calsync.services.calendar.remote_client import RemoteCalendarError, RemoteErrorKind, TokenSource

START = datetime(2024, 5, 6, 0, 0, tzinfo=UTC)
END = datetime(2024, 5, 7, 0, 0, tzinfo=UTC)

GRAPH_EVENT = {
    "id": "AAMk-1",
    "iCalUId": "ical-1",
    "subject": "Design review",
    "bodyPreview": "Agenda",
    "start": {"dateTime": "2024-05-06T09:00:00.0000000", "timeZone": "UTC"},
    "end": {"dateTime": "2024-05-06T09:30:00.0000000", "timeZone": "UTC"},
    "isCancelled": False,
    "isOrganizer": False,
    "responseRequested": True,
    "showAs": "busy",
    "responseStatus": {"response": "notResponded", "time": "0001-01-01T00:00:00Z"},
    "location": {"displayName": "Room 1"},
    "organizer": {"emailAddress": {"name": "Ada", "address": "ada@example.com"}},
    "attendees": [
        {"type": "required", "emailAddress": {"name": "Ada", "address": "ada@example.com"}},
        {"type": "required", "emailAddress": {"name": "Bob", "address": "bob@example.com"}},
    ],
    "webLink": "https://outlook.office365.com/owa/?itemid=AAMk-1",
}


class StaticToken(TokenSource):
    async def access_token(self) -> str:
        return "test-token"


def _client(handler) -> GraphCalendarClient:
    return GraphCalendarClient(StaticToken(), client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_parse_event():
    event = parse_event(GRAPH_EVENT)

    assert event.ical_uid == "ical-1"
    assert event.start == datetime(2024, 5, 6, 9, 0, tzinfo=UTC)
    assert event.end_utc() == datetime(2024, 5, 6, 9, 30, tzinfo=UTC)
    assert event.response_status.response == RESPONSE_NONE
    assert event.location.display_name == "Room 1"
    assert [a.email_address.name for a in event.attendees] == ["Ada", "Bob"]


@pytest.mark.asyncio
async def test_calendar_view_sends_bearer_and_prefers_utc():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"value": [GRAPH_EVENT]})

    events = await _client(handler).get_events_between_dates("remote-1", START, END)

    assert [e.id for e in events] == ["AAMk-1"]
    request = seen[0]
    assert request.url.path == "/v1.0/users/remote-1/calendarView"
    assert request.url.params["startDateTime"] == "2024-05-06T00:00:00Z"
    assert request.headers["Authorization"] == "Bearer test-token"
    assert request.headers["Prefer"] == 'outlook.timezone="UTC"'


@pytest.mark.asyncio
async def test_not_found_maps_to_error_kind():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": "ResourceNotFound", "message": "gone"}})

    with pytest.raises(RemoteCalendarError) as exc_info:
        await _client(handler).get_mailbox_settings("remote-1")

    assert exc_info.value.kind == RemoteErrorKind.NOT_FOUND
    assert exc_info.value.error_code == "ResourceNotFound"


@pytest.mark.asyncio
async def test_batch_reports_per_user_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert [r["id"] for r in body["requests"]] == ["0", "1"]
        return httpx.Response(
            200,
            json={
                "responses": [
                    {"id": "1", "status": 403, "body": {"error": {"code": "ErrorAccessDenied", "message": "denied"}}},
                    {"id": "0", "status": 200, "body": {"value": [GRAPH_EVENT]}},
                ]
            },
        )

    views = await _client(handler).do_batch_view_calendar_requests(
        [
            ViewCalendarParams(remote_user_id="remote-1", start_time=START, end_time=END),
            ViewCalendarParams(remote_user_id="remote-2", start_time=START, end_time=END),
        ]
    )

    assert views[0].remote_user_id == "remote-1"
    assert views[0].error is None
    assert len(views[0].events) == 1
    assert views[1].error.code == "ErrorAccessDenied"


@pytest.mark.asyncio
async def test_respond_to_event_posts_action():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    await _client(handler).respond_to_event("remote-1", "AAMk-1", RESPONSE_ACCEPTED)

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/v1.0/users/remote-1/events/AAMk-1/accept"
    assert json.loads(seen[0].content) == {"sendResponse": True}


@pytest.mark.asyncio
async def test_respond_with_not_responded_is_unsupported():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(RemoteCalendarError) as exc_info:
        await _client(handler).respond_to_event("remote-1", "AAMk-1", RESPONSE_NONE)

    assert exc_info.value.kind == RemoteErrorKind.UNSUPPORTED


@pytest.mark.asyncio
async def test_create_subscription_keeps_client_state():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["resource"] == "/users/remote-1/events"
        return httpx.Response(
            201,
            json={
                "id": "sub-1",
                "resource": body["resource"],
                "changeType": body["changeType"],
                "notificationUrl": body["notificationUrl"],
                "expirationDateTime": body["expirationDateTime"],
            },
        )

    sub = await _client(handler).create_subscription("https://calsync.test/notifications/msgraph", "remote-1")

    assert sub.id == "sub-1"
    assert sub.creator_id == "remote-1"
    assert len(sub.client_state) == 32
