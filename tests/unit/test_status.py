"""
Tests for presence status decisions.
"""

import pytest

from calsync.engine.events import event_fingerprints
from calsync.engine.status import StatusUpdateError, set_status_from_calendar_view
from calsync.models.domain.chat_domain import (
    STATUS_AWAY,
    STATUS_DND,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    UserStatus,
)


def _status(status: str, manual: bool = False) -> UserStatus:
    return UserStatus(user_id="user-1", status=status, manual=manual)


@pytest.mark.asyncio
async def test_free_user_goes_busy(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    events = [event_factory("meeting")]

    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), events)

    assert changed is True
    assert "now busy" in message
    assert chat.status_calls == [("user-1", STATUS_DND)]
    stored = await env.store.load_user("user-1")
    assert stored.active_events == event_fingerprints(events)


@pytest.mark.asyncio
async def test_unchanged_events_make_no_status_calls(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    events = [event_factory("meeting")]
    await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), events)
    chat.status_calls.clear()

    user = await env.store.load_user("user-1")
    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_DND), events)

    assert changed is False
    assert message == "No changes in active events. Total number of events: 1"
    assert chat.status_calls == []


@pytest.mark.asyncio
async def test_meeting_end_sets_online(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), [event_factory("meeting")])
    chat.status_calls.clear()

    user = await env.store.load_user("user-1")
    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_DND), [])

    assert changed is True
    assert message == "User is no longer busy in calendar. Set status to online."
    assert chat.status_calls == [("user-1", STATUS_ONLINE)]
    assert (await env.store.load_user("user-1")).active_events == []


@pytest.mark.asyncio
async def test_manual_status_restored_after_meeting(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    await set_status_from_calendar_view(
        env, user, _status(STATUS_AWAY, manual=True), [event_factory("meeting")]
    )
    assert (await env.store.load_user("user-1")).last_status == STATUS_AWAY

    user = await env.store.load_user("user-1")
    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_DND), [])

    assert changed is True
    assert "previous status (away)" in message
    assert chat.status_calls[-1] == ("user-1", STATUS_AWAY)
    assert (await env.store.load_user("user-1")).last_status == ""


@pytest.mark.asyncio
async def test_automatic_status_is_not_remembered(env, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")

    await set_status_from_calendar_view(env, user, _status(STATUS_AWAY, manual=False), [event_factory("m")])

    assert (await env.store.load_user("user-1")).last_status == ""


@pytest.mark.asyncio
async def test_confirmation_asks_instead_of_applying(env, chat, poster, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd", get_confirmation=True)

    _, changed = await set_status_from_calendar_view(
        env, user, _status(STATUS_AWAY, manual=True), [event_factory("meeting")]
    )

    assert changed is True
    assert chat.status_calls == []
    assert len(poster.dms) == 1
    attachment = poster.dms[0][1][0]
    assert [a.name for a in attachment.actions] == ["Yes", "No"]
    assert attachment.actions[0].integration.context["change_to"] == STATUS_DND
    stored = await env.store.load_user("user-1")
    assert stored.last_status == ""
    assert len(stored.active_events) == 1


@pytest.mark.asyncio
async def test_already_busy_adopts_events_without_status_call(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    events = [event_factory("meeting")]

    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_DND, manual=True), events)

    assert changed is False
    assert message == "User is already busy. No status change."
    assert chat.status_calls == []
    stored = await env.store.load_user("user-1")
    assert stored.active_events == event_fingerprints(events)
    assert stored.last_status == STATUS_DND


@pytest.mark.asyncio
async def test_free_but_not_busy_status_only_clears_events(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="away")
    await env.store.store_user_active_events("user-1", event_fingerprints([event_factory("old")]))
    user = await env.store.load_user("user-1")

    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), [])

    assert changed is False
    assert "is not set to busy (away)" in message
    assert chat.status_calls == []
    assert (await env.store.load_user("user-1")).active_events == []


@pytest.mark.asyncio
async def test_new_event_while_busy_refreshes_fingerprints(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    first = [event_factory("first")]
    await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), first)
    chat.status_calls.clear()

    user = await env.store.load_user("user-1")
    both = first + [event_factory("second")]
    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_DND), both)

    assert changed is False
    assert message == "User is already busy. No status change."
    assert chat.status_calls == []
    assert (await env.store.load_user("user-1")).active_events == event_fingerprints(both)


@pytest.mark.asyncio
async def test_no_events_anywhere_is_noop(env, chat, link_user):
    user = await link_user(update_status_from_options="dnd")

    message, changed = await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), [])

    assert changed is False
    assert message == "No events in local or remote. No status change."
    assert chat.status_calls == []


@pytest.mark.asyncio
async def test_offline_user_without_confirmation_is_skipped(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")

    _, changed = await set_status_from_calendar_view(env, user, _status(STATUS_OFFLINE), [event_factory("m")])

    assert changed is False
    assert chat.status_calls == []


@pytest.mark.asyncio
async def test_failed_status_call_keeps_active_events(env, chat, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    chat.fail_update = True

    with pytest.raises(StatusUpdateError):
        await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), [event_factory("meeting")])

    assert (await env.store.load_user("user-1")).active_events == []


@pytest.mark.asyncio
async def test_failed_user_write_aborts_before_status_call(env, chat, fake_redis, link_user, event_factory):
    user = await link_user(update_status_from_options="dnd")
    fake_redis.fail_writes = True

    with pytest.raises(StatusUpdateError):
        await set_status_from_calendar_view(env, user, _status(STATUS_ONLINE), [event_factory("meeting")])

    assert chat.status_calls == []
    assert (await env.store.load_user("user-1")).active_events == []
