import pytest

from calsync.engine.subscriptions import Subscriptions
from calsync.engine.users import STATUS_NOT_CHANGED_MESSAGE, Users, UsersError
from calsync.engine.views import sign_action_context
from calsync.models.domain.calendar_domain import RESPONSE_ACCEPTED, RESPONSE_TENTATIVE
from calsync.models.domain.chat_domain import STATUS_AWAY, STATUS_DND, STATUS_ONLINE
from calsync.services.store.kv_store import StoreNotFoundError

SECRET = "test-action-secret"


def _yes(change_to: str = STATUS_DND, user_id: str = "user-1") -> dict:
    return sign_action_context({"value": True, "change_to": change_to, "user_id": user_id}, SECRET)


@pytest.mark.asyncio
async def test_disconnect_removes_everything(env, remote_client, link_user):
    await link_user()
    await Subscriptions(env).create_my_event_subscription("user-1")
    users = Users(env)
    await users.link_channel_to_event("user-1", "uid-1", "channel-a")

    await users.disconnect_user("user-1")

    assert remote_client.deleted == ["sub-1"]
    with pytest.raises(StoreNotFoundError):
        await env.store.load_user("user-1")
    with pytest.raises(StoreNotFoundError):
        await env.store.load_subscription("sub-1")
    with pytest.raises(StoreNotFoundError):
        await env.store.load_event_metadata("uid-1")
    assert await env.store.load_user_index() == []


@pytest.mark.asyncio
async def test_link_and_unlink_channel(env, link_user):
    await link_user()
    users = Users(env)

    await users.link_channel_to_event("user-1", "uid-1", "channel-a")
    await users.link_channel_to_event("user-1", "uid-1", "channel-b")

    metadata = await env.store.load_event_metadata("uid-1")
    assert metadata.linked_channel_ids == {"channel-b"}
    assert (await env.store.load_user("user-1")).channel_events == {"uid-1": "channel-b"}

    await users.unlink_channel_from_event("user-1", "uid-1")

    assert (await env.store.load_user("user-1")).channel_events == {}
    with pytest.raises(UsersError):
        await users.unlink_channel_from_event("user-1", "uid-1")


@pytest.mark.asyncio
async def test_confirm_yes_changes_status_and_remembers_manual(env, chat, link_user):
    await link_user()
    chat.set_status("user-1", STATUS_AWAY, manual=True)

    text = await Users(env).confirm_status_change("user-1", _yes())

    assert text == "Status changed to Do Not Disturb."
    assert chat.status_calls == [("user-1", STATUS_DND)]
    assert (await env.store.load_user("user-1")).last_status == STATUS_AWAY


@pytest.mark.asyncio
async def test_confirm_online_does_not_touch_last_status(env, chat, link_user):
    await link_user()
    user = await env.store.load_user("user-1")
    user.last_status = STATUS_AWAY
    await env.store.store_user(user)

    await Users(env).confirm_status_change("user-1", _yes(STATUS_ONLINE))

    assert chat.status_calls == [("user-1", STATUS_ONLINE)]
    assert (await env.store.load_user("user-1")).last_status == STATUS_AWAY


@pytest.mark.asyncio
async def test_confirm_no_leaves_status(env, chat, link_user):
    await link_user()
    context = sign_action_context({"value": False, "user_id": "user-1"}, SECRET)

    assert await Users(env).confirm_status_change("user-1", context) == STATUS_NOT_CHANGED_MESSAGE
    assert chat.status_calls == []


@pytest.mark.asyncio
async def test_confirm_rejects_tampered_context(env, chat, link_user):
    await link_user()
    context = _yes()
    context["change_to"] = STATUS_AWAY

    with pytest.raises(UsersError):
        await Users(env).confirm_status_change("user-1", context)
    assert chat.status_calls == []


@pytest.mark.asyncio
async def test_confirm_rejects_other_users_context(env, link_user):
    await link_user()

    with pytest.raises(UsersError):
        await Users(env).confirm_status_change("user-1", _yes(user_id="user-2"))


@pytest.mark.asyncio
async def test_respond_to_event(env, remote_client, link_user):
    await link_user()
    context = sign_action_context({"user_id": "user-1", "event_id": "e1"}, SECRET)
    users = Users(env)

    await users.respond_to_event("user-1", context, "Yes")
    await users.respond_to_event("user-1", context, "Maybe")

    assert remote_client.responses == [("remote-1", "e1", RESPONSE_ACCEPTED), ("remote-1", "e1", RESPONSE_TENTATIVE)]


@pytest.mark.asyncio
async def test_respond_not_responded_is_rejected(env, remote_client, link_user):
    await link_user()
    context = sign_action_context({"user_id": "user-1", "event_id": "e1"}, SECRET)

    with pytest.raises(UsersError):
        await Users(env).respond_to_event("user-1", context, "Not responded")
    assert remote_client.responses == []


@pytest.mark.asyncio
async def test_get_timezone(env, remote_client, link_user):
    await link_user()
    remote_client.timezone = "Asia/Tokyo"

    assert await Users(env).get_timezone("user-1") == "Asia/Tokyo"
