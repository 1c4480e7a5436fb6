"""
Tests for the Google Calendar client against a mocked transport.
"""

import json

import httpx
import pytest

from calsync.models.domain.calendar_domain import (
    RESPONSE_ACCEPTED,
    RESPONSE_DECLINED,
    RESPONSE_NONE,
    SHOW_AS_FREE,
)
from calsync.services.calendar.google_client import GoogleCalendarClient, parse_event
from calsync.services.calendar.remote_client import RemoteCalendarError, RemoteErrorKind, TokenSource

GOOGLE_EVENT = {
    "id": "g-1",
    "iCalUID": "g-1@google.com",
    "summary": "Sprint planning",
    "status": "confirmed",
    "transparency": "transparent",
    "start": {"dateTime": "2024-05-06T09:00:00+02:00"},
    "end": {"dateTime": "2024-05-06T10:00:00+02:00"},
    "organizer": {"email": "lead@example.com"},
    "attendees": [
        {"email": "lead@example.com", "responseStatus": "accepted"},
        {"email": "me@example.com", "self": True, "responseStatus": "needsAction"},
    ],
}


class StaticToken(TokenSource):
    async def access_token(self) -> str:
        return "test-token"


def _client(handler) -> GoogleCalendarClient:
    return GoogleCalendarClient(StaticToken(), client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_parse_event():
    event = parse_event(GOOGLE_EVENT)

    assert event.subject == "Sprint planning"
    assert event.show_as == SHOW_AS_FREE
    assert event.response_status.response == RESPONSE_NONE
    assert event.response_requested is True
    assert event.attendees[0].status.response == RESPONSE_ACCEPTED


def test_parse_all_day_event():
    event = parse_event({"id": "g-2", "start": {"date": "2024-05-06"}, "end": {"date": "2024-05-07"}})

    assert event.is_all_day is True


@pytest.mark.asyncio
async def test_respond_updates_own_attendee():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=GOOGLE_EVENT)
        return httpx.Response(200, json={})

    await _client(handler).respond_to_event("me@example.com", "g-1", RESPONSE_DECLINED)

    patch = seen[1]
    assert patch.method == "PATCH"
    assert patch.url.params["sendUpdates"] == "all"
    attendees = json.loads(patch.content)["attendees"]
    assert attendees[1]["responseStatus"] == "declined"
    assert attendees[0]["responseStatus"] == "accepted"


@pytest.mark.asyncio
async def test_subscriptions_unsupported():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(RemoteCalendarError) as exc_info:
        await _client(handler).create_subscription("https://calsync.test/notifications/google", "me")

    assert exc_info.value.kind == RemoteErrorKind.UNSUPPORTED
