"""
Engine environment: the collaborators every engine component works with.

Env is immutable. Reconfiguration builds a new Env and swaps the reference
held by long-lived components (see NotificationProcessor.configure).
"""

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from calsync.config import Settings
from calsync.infrastructure.observability.logging import get_logger
from calsync.services.calendar.providers import get_provider
from calsync.services.calendar.remote_client import (
    RemoteCalendarClient,
    RemoteCalendarError,
    RemoteCalendarProvider,
    RemoteErrorKind,
)
from calsync.services.chat.platform_client import ChatPlatformClient, Poster
from calsync.services.infrastructure.redis_client import FastRedisClient
from calsync.services.store.kv_store import KVStore, StoreNotFoundError

logger = get_logger(__name__)


class UserLocks:
    """
    One asyncio.Lock per chat user id, shared by the sync and webhook paths.

    Locks are held weakly: an entry lives only while a caller holds or waits
    on it, so the table does not grow with every user ever seen.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock(self, chat_user_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_user_id)
        if lock is None:
            lock = self._locks[chat_user_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class Env:
    settings: Settings
    store: KVStore
    chat: ChatPlatformClient
    poster: Poster
    remote: RemoteCalendarProvider
    user_locks: UserLocks


async def make_user_client(env: Env, chat_user_id: str) -> RemoteCalendarClient:
    """Build a calendar client acting as the given user; refreshed tokens are persisted."""
    try:
        token = await env.store.load_oauth_token(chat_user_id)
    except StoreNotFoundError as e:
        raise RemoteCalendarError(
            f"No OAuth token stored for {chat_user_id}",
            kind=RemoteErrorKind.REFRESH_TOKEN_NOT_SET,
        ) from e

    async def on_refresh(new_token: dict) -> None:
        await env.store.store_oauth_token(chat_user_id, new_token)
        logger.debug("Stored refreshed OAuth token", user_id=chat_user_id)

    return env.remote.make_user_client(token, on_refresh)


def make_superuser_client(env: Env) -> RemoteCalendarClient | None:
    """
    Application-credential client, or None when the provider cannot read
    other users' calendars and callers must fetch per user.
    """
    try:
        return env.remote.make_superuser_client()
    except RemoteCalendarError as e:
        if e.kind == RemoteErrorKind.SUPERUSER_NOT_SUPPORTED:
            return None
        raise


@asynccontextmanager
async def open_env(settings: Settings) -> AsyncIterator[Env]:
    """Connect every collaborator, yield the Env, close them on exit."""
    redis_client = FastRedisClient(settings.REDIS_URL, settings.REDIS_MAX_CONNECTIONS)
    await redis_client.initialize()

    chat = ChatPlatformClient(settings.CHAT_SITE_URL, settings.CHAT_BOT_TOKEN)
    poster = Poster(settings.CHAT_SITE_URL, settings.CHAT_BOT_TOKEN, bot_user_id=settings.CHAT_BOT_USER_ID)
    env = Env(
        settings=settings,
        store=KVStore(redis_client, settings.ENCRYPTION_KEY),
        chat=chat,
        poster=poster,
        remote=get_provider(settings.CALENDAR_PROVIDER, settings),
        user_locks=UserLocks(),
    )
    logger.info("Engine environment ready", provider=settings.CALENDAR_PROVIDER)
    try:
        yield env
    finally:
        await chat.close()
        await poster.close()
        await redis_client.close()
