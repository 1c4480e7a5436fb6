import time
from datetime import UTC, datetime, timedelta

import pytest
from cryptography.fernet import Fernet

from calsync.config import Settings
from calsync.engine.env import Env, UserLocks
from calsync.models.domain.calendar_domain import (
    SHOW_AS_BUSY,
    Attendee,
    EmailAddress,
    Event,
    MailboxSettings,
    Notification,
    RemoteSubscription,
    RemoteUser,
)
from calsync.models.domain.chat_domain import ChatUser, CustomStatus, UserStatus
from calsync.models.domain.user_domain import StoredUser, UserSettings
from calsync.services.calendar.remote_client import (
    RemoteCalendarClient,
    RemoteCalendarError,
    RemoteCalendarProvider,
    RemoteErrorKind,
)
from calsync.services.chat.platform_client import ChatPlatformError
from calsync.services.store.kv_store import KVStore


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.fail_writes = False

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        if self.fail_writes:
            raise ConnectionError("redis unavailable")
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None

    async def ping(self) -> bool:
        return True


class FakeChat:
    """Presence API double; status updates change the reported status."""

    def __init__(self):
        self.statuses: dict[str, UserStatus] = {}
        self.status_calls: list[tuple[str, str]] = []
        self.custom_statuses: dict[str, CustomStatus] = {}
        self.foreign_custom_status: set[str] = set()
        self.custom_status_removals: list[str] = []
        self.fail_update = False

    def set_status(self, user_id: str, status: str, manual: bool = False) -> None:
        self.statuses[user_id] = UserStatus(user_id=user_id, status=status, manual=manual)

    async def get_user_statuses_by_ids(self, user_ids: list[str]) -> list[UserStatus]:
        return [self.statuses[uid] for uid in user_ids if uid in self.statuses]

    async def update_user_status(self, user_id: str, status: str) -> UserStatus:
        if self.fail_update:
            raise ChatPlatformError("update failed", status_code=500)
        self.status_calls.append((user_id, status))
        self.statuses[user_id] = UserStatus(user_id=user_id, status=status, manual=False)
        return self.statuses[user_id]

    async def get_user(self, user_id: str) -> ChatUser:
        props = {}
        if user_id in self.foreign_custom_status:
            props["customStatus"] = '{"emoji": "palm_tree", "text": "On vacation"}'
        elif user_id in self.custom_statuses:
            props["customStatus"] = self.custom_statuses[user_id].model_dump_json()
        return ChatUser(id=user_id, props=props)

    async def update_user_custom_status(self, user_id: str, custom_status: CustomStatus) -> None:
        self.custom_statuses[user_id] = custom_status

    async def remove_user_custom_status(self, user_id: str) -> None:
        self.custom_status_removals.append(user_id)
        self.custom_statuses.pop(user_id, None)


class FakePoster:
    def __init__(self):
        self.dms: list[tuple[str, object]] = []
        self.posts = []
        self.fail_dm = False

    async def dm(self, user_id: str, message: str) -> str:
        if self.fail_dm:
            raise ChatPlatformError("dm failed")
        self.dms.append((user_id, message))
        return "post-id"

    async def dm_with_attachments(self, user_id: str, *attachments) -> str:
        if self.fail_dm:
            raise ChatPlatformError("dm failed")
        self.dms.append((user_id, list(attachments)))
        return "post-id"

    async def create_post(self, post) -> str:
        self.posts.append(post)
        return "post-id"


class FakeRemoteClient(RemoteCalendarClient):
    """In-memory calendar keyed by remote user id."""

    def __init__(self):
        self.events: dict[str, list[Event]] = {}
        self.errors: dict[str, RemoteCalendarError] = {}
        self.timezone = "UTC"
        self.timezone_error: RemoteCalendarError | None = None
        self.notification_events: dict[str, Event] = {}
        self.renew_error: RemoteCalendarError | None = None
        self.created: list[RemoteSubscription] = []
        self.renewed: list[str] = []
        self.deleted: list[str] = []
        self.responses: list[tuple[str, str, str]] = []
        self.calls: list[str] = []

    async def get_me(self) -> RemoteUser:
        return RemoteUser(id="me")

    async def get_events_between_dates(self, remote_user_id, start, end) -> list[Event]:
        self.calls.append(remote_user_id)
        if remote_user_id in self.errors:
            raise self.errors[remote_user_id]
        return [e.model_copy() for e in self.events.get(remote_user_id, [])]

    async def create_subscription(self, notification_url, remote_user_id) -> RemoteSubscription:
        sub = RemoteSubscription(
            id=f"sub-{len(self.created) + 1}",
            client_state="client-state",
            notification_url=notification_url,
            creator_id=remote_user_id,
        )
        self.created.append(sub)
        return sub

    async def renew_subscription(self, notification_url, remote_user_id, subscription) -> RemoteSubscription:
        if self.renew_error is not None:
            raise self.renew_error
        self.renewed.append(subscription.id)
        return subscription.model_copy(update={"expiration_datetime": "2030-01-01T00:00:00Z"})

    async def delete_subscription(self, subscription) -> None:
        self.deleted.append(subscription.id)

    async def list_subscriptions(self) -> list[RemoteSubscription]:
        return list(self.created)

    async def get_mailbox_settings(self, remote_user_id) -> MailboxSettings:
        if self.timezone_error is not None:
            raise self.timezone_error
        return MailboxSettings(time_zone=self.timezone)

    async def get_notification_data(self, notification: Notification) -> Notification:
        notification.event = self.notification_events[notification.event_id].model_copy()
        notification.is_bare = False
        return notification

    async def respond_to_event(self, remote_user_id, event_id, response) -> None:
        self.responses.append((remote_user_id, event_id, response))


class FakeProvider(RemoteCalendarProvider):
    name = "msgraph"

    def __init__(self, client: FakeRemoteClient, superuser: bool = False):
        self.client = client
        self.superuser = superuser

    def make_user_client(self, token, on_refresh=None) -> RemoteCalendarClient:
        return self.client

    def make_superuser_client(self) -> RemoteCalendarClient:
        if not self.superuser:
            return super().make_superuser_client()
        return self.client

    async def refresh_token(self, refresh_token: str) -> dict:
        raise RemoteCalendarError("not used", kind=RemoteErrorKind.UNKNOWN)


@pytest.fixture
def test_settings():
    return Settings(
        ENCRYPTION_KEY=Fernet.generate_key().decode(),
        ACTION_SECRET="test-action-secret",
        ADMIN_API_KEY="test-admin-key",
        PUBLIC_URL="https://calsync.test",
        CALENDAR_PROVIDER="msgraph",
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def remote_client():
    return FakeRemoteClient()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def poster():
    return FakePoster()


@pytest.fixture
def env(test_settings, fake_redis, chat, poster, remote_client):
    return Env(
        settings=test_settings,
        store=KVStore(fake_redis, test_settings.ENCRYPTION_KEY),
        chat=chat,
        poster=poster,
        remote=FakeProvider(remote_client),
        user_locks=UserLocks(),
    )


@pytest.fixture
def link_user(env):
    """Store a linked user with an OAuth token and index entry."""

    async def _link(chat_user_id: str = "user-1", remote_id: str = "remote-1", **user_settings) -> StoredUser:
        user = StoredUser(
            chat_user_id=chat_user_id,
            remote=RemoteUser(id=remote_id, mail=f"{chat_user_id}@example.com"),
            settings=UserSettings(**user_settings),
        )
        await env.store.store_user(user)
        await env.store.add_user_to_index(user)
        await env.store.store_oauth_token(
            chat_user_id,
            {"access_token": "access", "refresh_token": "refresh", "expires_at": int(time.time()) + 3600},
        )
        return user

    return _link


def make_event(
    ical_uid: str = "uid-1",
    start: datetime | None = None,
    minutes: int = 30,
    attendees: int = 2,
    show_as: str = SHOW_AS_BUSY,
    **kwargs,
) -> Event:
    start = start or datetime.now(UTC) + timedelta(minutes=5)
    return Event(
        id=kwargs.pop("id", f"id-{ical_uid}"),
        ical_uid=ical_uid,
        subject=kwargs.pop("subject", "Standup"),
        start=start,
        end=start + timedelta(minutes=minutes),
        show_as=show_as,
        attendees=[
            Attendee(email_address=EmailAddress(address=f"a{i}@example.com", name=f"A{i}"))
            for i in range(attendees)
        ],
        **kwargs,
    )


@pytest.fixture
def event_factory():
    return make_event
