"""
Key-value persistence for linked users, subscriptions and event snapshots.

Values are pydantic models serialized as JSON on top of the pooled Redis
client. Missing keys raise StoreNotFoundError so callers can tell "nothing
stored yet" apart from a backend failure.
"""

import json
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.user_domain import (
    EventMetadata,
    StoredEvent,
    StoredSubscription,
    StoredUser,
    UserIndexEntry,
)
from calsync.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
)

logger = get_logger(__name__)

USER_KEY_PREFIX = "user:"
USER_INDEX_KEY = "user_index"
SUBSCRIPTION_KEY_PREFIX = "sub:"
EVENT_KEY_PREFIX = "event:"
EVENT_METADATA_KEY_PREFIX = "event_metadata:"
OAUTH2_KEY_PREFIX = "oauth2:"

# Event snapshots only matter while the event can still change
EVENT_TTL_SECONDS = 60 * 60 * 24 * 30

M = TypeVar("M", bound=BaseModel)


class StoreError(Exception):
    """Custom exception for key-value store operations."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class StoreNotFoundError(StoreError):
    """Raised when the requested key holds no value."""

    pass


class KeyValueBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def ping(self) -> bool: ...


class KVStore:
    """Typed store over a string key-value backend."""

    def __init__(self, backend: KeyValueBackend, encryption_key: str | None = None):
        self._backend = backend
        self._encryption_key = encryption_key

    async def ping(self) -> bool:
        """Backend reachability for readiness checks; never raises."""
        try:
            return bool(await self._backend.ping())
        except Exception as e:
            logger.warning("Store ping failed", error=str(e))
            return False

    # Generic helpers

    async def _get_raw(self, key: str) -> str:
        try:
            value = await self._backend.get(key)
        except Exception as e:
            raise StoreError(f"Failed to read {key}: {e}", key=key) from e
        if value is None:
            raise StoreNotFoundError("not found", key=key)
        return value

    async def _set_raw(self, key: str, value: str, ttl_s: int | None = None) -> None:
        try:
            await self._backend.set_with_ttl(key, value, ttl_s)
        except Exception as e:
            raise StoreError(f"Failed to write {key}: {e}", key=key) from e

    async def _delete(self, key: str) -> None:
        try:
            await self._backend.delete(key)
        except Exception as e:
            raise StoreError(f"Failed to delete {key}: {e}", key=key) from e

    async def _load_model(self, key: str, model: type[M]) -> M:
        raw = await self._get_raw(key)
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StoreError(f"Corrupt value at {key}: {e}", key=key) from e

    async def _store_model(self, key: str, value: BaseModel, ttl_s: int | None = None) -> None:
        await self._set_raw(key, value.model_dump_json(), ttl_s)

    # Users

    async def load_user(self, chat_user_id: str) -> StoredUser:
        return await self._load_model(USER_KEY_PREFIX + chat_user_id, StoredUser)

    async def store_user(self, user: StoredUser) -> None:
        await self._store_model(USER_KEY_PREFIX + user.chat_user_id, user)

    async def delete_user(self, chat_user_id: str) -> None:
        await self._delete(USER_KEY_PREFIX + chat_user_id)
        await self._delete(OAUTH2_KEY_PREFIX + chat_user_id)

    async def store_user_active_events(self, chat_user_id: str, fingerprints: list[str]) -> None:
        """Replace the user's active event fingerprints."""
        user = await self.load_user(chat_user_id)
        user.active_events = list(fingerprints)
        await self.store_user(user)

    async def store_user_custom_status_updates(self, chat_user_id: str, is_set: bool) -> None:
        user = await self.load_user(chat_user_id)
        user.is_custom_status_set = is_set
        await self.store_user(user)

    # User index

    async def load_user_index(self) -> list[UserIndexEntry]:
        raw = await self._get_raw(USER_INDEX_KEY)
        try:
            return [UserIndexEntry.model_validate(item) for item in json.loads(raw)]
        except (ValueError, ValidationError) as e:
            raise StoreError(f"Corrupt user index: {e}", key=USER_INDEX_KEY) from e

    async def _store_user_index(self, entries: list[UserIndexEntry]) -> None:
        payload = json.dumps([e.model_dump() for e in entries])
        await self._set_raw(USER_INDEX_KEY, payload)

    async def load_user_from_index(self, chat_user_id: str) -> UserIndexEntry:
        for entry in await self.load_user_index():
            if entry.chat_user_id == chat_user_id:
                return entry
        raise StoreNotFoundError("not found", key=USER_INDEX_KEY)

    async def load_user_from_index_by_remote_id(self, remote_id: str) -> UserIndexEntry:
        for entry in await self.load_user_index():
            if entry.remote_id == remote_id:
                return entry
        raise StoreNotFoundError("not found", key=USER_INDEX_KEY)

    async def add_user_to_index(self, user: StoredUser) -> None:
        try:
            entries = await self.load_user_index()
        except StoreNotFoundError:
            entries = []
        entries = [e for e in entries if e.chat_user_id != user.chat_user_id]
        entries.append(
            UserIndexEntry(
                chat_user_id=user.chat_user_id,
                remote_id=user.remote.id,
                remote_mail=user.remote.mail,
                chat_display_name=user.chat_display_name,
            )
        )
        await self._store_user_index(entries)

    async def remove_user_from_index(self, chat_user_id: str) -> None:
        try:
            entries = await self.load_user_index()
        except StoreNotFoundError:
            return
        await self._store_user_index([e for e in entries if e.chat_user_id != chat_user_id])

    # Subscriptions

    async def load_subscription(self, subscription_id: str) -> StoredSubscription:
        return await self._load_model(SUBSCRIPTION_KEY_PREFIX + subscription_id, StoredSubscription)

    async def store_subscription(self, subscription: StoredSubscription) -> None:
        await self._store_model(SUBSCRIPTION_KEY_PREFIX + subscription.remote.id, subscription)

    async def delete_subscription(self, subscription_id: str) -> None:
        await self._delete(SUBSCRIPTION_KEY_PREFIX + subscription_id)

    async def store_user_subscription(self, user: StoredUser, subscription: StoredSubscription) -> None:
        """Persist a subscription and point the owning user at it."""
        await self.store_subscription(subscription)
        user.settings.event_subscription_id = subscription.remote.id
        await self.store_user(user)

    async def delete_user_subscription(self, user: StoredUser, subscription_id: str) -> None:
        await self.delete_subscription(subscription_id)
        if user.settings.event_subscription_id == subscription_id:
            user.settings.event_subscription_id = ""
            await self.store_user(user)

    # Event snapshots

    async def load_user_event(self, chat_user_id: str, ical_uid: str) -> StoredEvent:
        return await self._load_model(f"{EVENT_KEY_PREFIX}{chat_user_id}:{ical_uid}", StoredEvent)

    async def store_user_event(self, chat_user_id: str, event: StoredEvent) -> None:
        key = f"{EVENT_KEY_PREFIX}{chat_user_id}:{event.remote.ical_uid}"
        await self._store_model(key, event, EVENT_TTL_SECONDS)

    # Event metadata (linked channels)

    async def load_event_metadata(self, ical_uid: str) -> EventMetadata:
        return await self._load_model(EVENT_METADATA_KEY_PREFIX + ical_uid, EventMetadata)

    async def store_event_metadata(self, ical_uid: str, metadata: EventMetadata) -> None:
        await self._store_model(EVENT_METADATA_KEY_PREFIX + ical_uid, metadata)

    async def delete_event_metadata(self, ical_uid: str) -> None:
        await self._delete(EVENT_METADATA_KEY_PREFIX + ical_uid)

    async def link_channel_to_event(self, ical_uid: str, channel_id: str) -> None:
        try:
            metadata = await self.load_event_metadata(ical_uid)
        except StoreNotFoundError:
            metadata = EventMetadata()
        metadata.linked_channel_ids.add(channel_id)
        await self.store_event_metadata(ical_uid, metadata)

    async def unlink_channel_from_event(self, ical_uid: str, channel_id: str) -> None:
        metadata = await self.load_event_metadata(ical_uid)
        metadata.linked_channel_ids.discard(channel_id)
        if metadata.linked_channel_ids:
            await self.store_event_metadata(ical_uid, metadata)
        else:
            await self.delete_event_metadata(ical_uid)

    # OAuth tokens live under their own key, Fernet-encrypted

    async def load_oauth_token(self, chat_user_id: str) -> dict:
        raw = await self._get_raw(OAUTH2_KEY_PREFIX + chat_user_id)
        try:
            return json.loads(decrypt_token(raw, self._encryption_key))
        except (EncryptionError, ValueError) as e:
            raise StoreError(f"Unreadable token for {chat_user_id}: {e}") from e

    async def store_oauth_token(self, chat_user_id: str, token: dict) -> None:
        try:
            encrypted = encrypt_token(json.dumps(token), self._encryption_key)
        except EncryptionError as e:
            raise StoreError(f"Failed to encrypt token for {chat_user_id}: {e}") from e
        await self._set_raw(OAUTH2_KEY_PREFIX + chat_user_id, encrypted)
