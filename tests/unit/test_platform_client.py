"""
Tests for the chat platform REST client against a mocked transport.
"""

import json

import httpx
import pytest

from calsync.models.domain.chat_domain import SlackAttachment
from calsync.services.chat.platform_client import ChatPlatformClient, ChatPlatformError, Poster
from calsync.services.infrastructure import http_client

SITE = "https://chat.example.com"


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=SITE, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_statuses_by_ids():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v4/users/status/ids"
        assert json.loads(request.content) == ["u1", "u2"]
        assert request.headers["Authorization"] == "Bearer bot-token"
        return httpx.Response(
            200,
            json=[
                {"user_id": "u1", "status": "online", "manual": False},
                {"user_id": "u2", "status": "dnd", "manual": True},
            ],
        )

    client = ChatPlatformClient(SITE, "bot-token", client=_http(handler))

    statuses = await client.get_user_statuses_by_ids(["u1", "u2"])

    assert [(s.user_id, s.status, s.manual) for s in statuses] == [("u1", "online", False), ("u2", "dnd", True)]


@pytest.mark.asyncio
async def test_api_error_carries_status_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "no permission"})

    client = ChatPlatformClient(SITE, "bot-token", client=_http(handler))

    with pytest.raises(ChatPlatformError) as exc_info:
        await client.update_user_status("u1", "dnd")

    assert exc_info.value.status_code == 403
    assert "no permission" in str(exc_info.value)


@pytest.mark.asyncio
async def test_dm_with_attachments_opens_direct_channel():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/api/v4/channels/direct":
            assert json.loads(request.content) == ["bot-1", "u1"]
            return httpx.Response(201, json={"id": "dm-channel"})
        return httpx.Response(201, json={"id": "post-1"})

    poster = Poster(SITE, "bot-token", bot_user_id="bot-1", client=_http(handler))

    post_id = await poster.dm_with_attachments("u1", SlackAttachment(title="Standup", text="soon"))

    assert post_id == "post-1"
    body = json.loads(seen[1].content)
    assert body["channel_id"] == "dm-channel"
    assert body["props"]["attachments"][0]["title"] == "Standup"


@pytest.fixture
def no_backoff(monkeypatch):
    async def instant(_seconds):
        return None

    monkeypatch.setattr(http_client.asyncio, "sleep", instant)


@pytest.mark.asyncio
async def test_create_post_is_not_resent_after_gateway_error(no_backoff):
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v4/channels/direct":
            return httpx.Response(201, json={"id": "dm-channel"})
        posts.append(request)
        return httpx.Response(502, text="Bad Gateway")

    poster = Poster(SITE, "bot-token", bot_user_id="bot-1", client=_http(handler))

    with pytest.raises(ChatPlatformError) as exc_info:
        await poster.dm("u1", "Standup in 10 minutes")

    assert exc_info.value.status_code == 502
    assert len(posts) == 1


@pytest.mark.asyncio
async def test_status_update_is_retried_after_gateway_error(no_backoff):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(502, text="Bad Gateway")
        return httpx.Response(200, json={"user_id": "u1", "status": "dnd", "manual": False})

    client = ChatPlatformClient(SITE, "bot-token", client=_http(handler))

    status = await client.update_user_status("u1", "dnd")

    assert status.status == "dnd"
    assert len(attempts) == 2
