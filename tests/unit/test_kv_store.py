"""
Tests for the key-value store layer over Redis.
"""

import pytest

from calsync.models.domain.calendar_domain import RemoteUser
from calsync.models.domain.user_domain import StoredUser
from calsync.services.store.kv_store import (
    OAUTH2_KEY_PREFIX,
    KVStore,
    StoreError,
    StoreNotFoundError,
)


class BrokenRedis:
    async def get(self, key):
        raise ConnectionError("redis down")

    async def set_with_ttl(self, key, value, ttl_s=None):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")

    async def ping(self):
        raise ConnectionError("redis down")


def _user(chat_user_id: str = "user-1", remote_id: str = "remote-1") -> StoredUser:
    return StoredUser(chat_user_id=chat_user_id, remote=RemoteUser(id=remote_id, mail="a@example.com"))


@pytest.mark.asyncio
async def test_missing_user_raises_not_found(env):
    with pytest.raises(StoreNotFoundError):
        await env.store.load_user("nobody")


@pytest.mark.asyncio
async def test_backend_failure_is_store_error(test_settings):
    store = KVStore(BrokenRedis(), test_settings.ENCRYPTION_KEY)

    with pytest.raises(StoreError) as exc_info:
        await store.load_user("user-1")

    assert not isinstance(exc_info.value, StoreNotFoundError)
    assert await store.ping() is False


@pytest.mark.asyncio
async def test_index_add_is_idempotent_and_removable(env):
    await env.store.add_user_to_index(_user())
    await env.store.add_user_to_index(_user())
    await env.store.add_user_to_index(_user("user-2", "remote-2"))

    assert [e.chat_user_id for e in await env.store.load_user_index()] == ["user-1", "user-2"]
    assert (await env.store.load_user_from_index_by_remote_id("remote-2")).chat_user_id == "user-2"

    await env.store.remove_user_from_index("user-1")

    assert [e.chat_user_id for e in await env.store.load_user_index()] == ["user-2"]
    with pytest.raises(StoreNotFoundError):
        await env.store.load_user_from_index("user-1")


@pytest.mark.asyncio
async def test_active_events_replace(env):
    await env.store.store_user(_user())

    await env.store.store_user_active_events("user-1", ["a 2024-05-06T09:00:00Z"])
    await env.store.store_user_active_events("user-1", [])

    assert (await env.store.load_user("user-1")).active_events == []


@pytest.mark.asyncio
async def test_last_channel_unlink_deletes_metadata(env):
    await env.store.link_channel_to_event("uid-1", "channel-a")
    await env.store.link_channel_to_event("uid-1", "channel-b")

    await env.store.unlink_channel_from_event("uid-1", "channel-a")
    assert (await env.store.load_event_metadata("uid-1")).linked_channel_ids == {"channel-b"}

    await env.store.unlink_channel_from_event("uid-1", "channel-b")
    with pytest.raises(StoreNotFoundError):
        await env.store.load_event_metadata("uid-1")


@pytest.mark.asyncio
async def test_oauth_token_encrypted_at_rest(env, fake_redis):
    token = {"access_token": "plain-access", "refresh_token": "plain-refresh"}

    await env.store.store_oauth_token("user-1", token)

    raw = fake_redis.store[OAUTH2_KEY_PREFIX + "user-1"]
    assert "plain-access" not in raw
    assert await env.store.load_oauth_token("user-1") == token


@pytest.mark.asyncio
async def test_delete_user_drops_token(env):
    await env.store.store_user(_user())
    await env.store.store_oauth_token("user-1", {"access_token": "x"})

    await env.store.delete_user("user-1")

    with pytest.raises(StoreNotFoundError):
        await env.store.load_oauth_token("user-1")
