"""
Push-notification subscription lifecycle for linked users.

Subscriptions are created with the user's own token and recorded both
under their own key and on the user's settings, which is what the webhook
path checks to reject orphaned subscriptions.
"""

from calsync.engine.env import Env, make_user_client
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import RemoteSubscription
from calsync.models.domain.user_domain import StoredSubscription, StoredUser
from calsync.services.calendar.remote_client import RemoteCalendarError, RemoteErrorKind
from calsync.services.store.kv_store import StoreError

logger = get_logger(__name__)


class SubscriptionError(Exception):
    """Custom exception for subscription lifecycle operations."""

    def __init__(self, message: str, user_id: str | None = None, subscription_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id
        self.subscription_id = subscription_id


class Subscriptions:
    def __init__(self, env: Env):
        self.env = env

    def _stored(self, remote: RemoteSubscription, user: StoredUser) -> StoredSubscription:
        return StoredSubscription(
            remote=remote,
            chat_creator_id=user.chat_user_id,
            service_version=self.env.settings.SERVICE_VERSION,
        )

    async def create_my_event_subscription(self, chat_user_id: str) -> StoredSubscription:
        user = await self.env.store.load_user(chat_user_id)
        client = await make_user_client(self.env, chat_user_id)
        try:
            remote = await client.create_subscription(self.env.settings.notification_url(), user.remote.id)
        finally:
            await client.close()

        stored = self._stored(remote, user)
        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            await self.env.store.store_user_subscription(user, stored)
        logger.info("Event subscription created", user_id=chat_user_id, subscription_id=remote.id)
        return stored

    async def load_my_event_subscription(self, chat_user_id: str) -> StoredSubscription:
        user = await self.env.store.load_user(chat_user_id)
        if not user.settings.event_subscription_id:
            raise SubscriptionError("User has no event subscription", user_id=chat_user_id)
        return await self.env.store.load_subscription(user.settings.event_subscription_id)

    async def list_remote_subscriptions(self, chat_user_id: str) -> list[RemoteSubscription]:
        client = await make_user_client(self.env, chat_user_id)
        try:
            return await client.list_subscriptions()
        finally:
            await client.close()

    async def renew_my_event_subscription(self, chat_user_id: str) -> StoredSubscription | None:
        """
        Extend the user's subscription. A subscription the provider no longer
        knows about is dropped locally and replaced with a fresh one.

        Returns None when the user has no subscription.
        """
        user = await self.env.store.load_user(chat_user_id)
        subscription_id = user.settings.event_subscription_id
        if not subscription_id:
            return None

        try:
            stored = await self.env.store.load_subscription(subscription_id)
        except StoreError as e:
            raise SubscriptionError(
                f"Error loading subscription: {e}", user_id=chat_user_id, subscription_id=subscription_id
            ) from e

        client = await make_user_client(self.env, chat_user_id)
        try:
            renewed = await client.renew_subscription(
                self.env.settings.notification_url(), user.remote.id, stored.remote
            )
        except RemoteCalendarError as e:
            if e.kind != RemoteErrorKind.NOT_FOUND:
                raise
            async with self.env.user_locks.lock(chat_user_id):
                user = await self.env.store.load_user(chat_user_id)
                await self.env.store.delete_user_subscription(user, subscription_id)
            logger.info(
                "Subscription expired, creating a new one",
                user_id=chat_user_id,
                subscription_id=subscription_id,
            )
            return await self.create_my_event_subscription(chat_user_id)
        finally:
            await client.close()

        stored.remote = renewed
        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            await self.env.store.store_user_subscription(user, stored)
        return stored

    async def delete_orphaned_subscription(self, chat_user_id: str, subscription: StoredSubscription) -> None:
        client = await make_user_client(self.env, chat_user_id)
        try:
            await client.delete_subscription(subscription.remote)
        except RemoteCalendarError as e:
            raise SubscriptionError(
                f"Failed to delete subscription {subscription.remote.id}: {e}",
                user_id=chat_user_id,
                subscription_id=subscription.remote.id,
            ) from e
        finally:
            await client.close()

    async def delete_my_event_subscription(self, chat_user_id: str) -> None:
        user = await self.env.store.load_user(chat_user_id)
        subscription_id = user.settings.event_subscription_id
        try:
            stored = await self.env.store.load_subscription(subscription_id)
        except StoreError as e:
            raise SubscriptionError(
                f"Error loading subscription: {e}", user_id=chat_user_id, subscription_id=subscription_id
            ) from e

        await self.delete_orphaned_subscription(chat_user_id, stored)

        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            await self.env.store.delete_user_subscription(user, subscription_id)
