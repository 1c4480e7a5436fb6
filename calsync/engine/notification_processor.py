"""
Webhook change-notification processing.

Notifications are queued by the HTTP route and handled one at a time by a
single worker task. Reconfiguration and shutdown travel on a separate
control queue that the worker drains before picking up the next
notification, so a new Env never takes effect mid-notification.
"""

import asyncio
import contextlib

from calsync.engine.env import Env, make_user_client
from calsync.engine.notification_format import new_event_attachment, updated_event_attachment
from calsync.engine.views import RESPOND_PATH
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import Notification
from calsync.models.domain.user_domain import StoredEvent, StoredSubscription
from calsync.services.store.kv_store import StoreNotFoundError

logger = get_logger(__name__)

MAX_QUEUE_SIZE = 1024

_QUIT = object()


class QueueFullError(Exception):
    """Raised when a notification cannot be queued without blocking."""

    pass


class NotificationError(Exception):
    """A notification was rejected before any processing happened."""

    def __init__(self, message: str, subscription_id: str):
        super().__init__(message)
        self.subscription_id = subscription_id


class NotificationProcessor:
    def __init__(self, env: Env, max_queue_size: int = MAX_QUEUE_SIZE):
        self.env = env
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=max_queue_size)
        self._control: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._work(), name="notification-processor")
            logger.info("Notification processor started", queue_size=self._queue.maxsize)

    def enqueue(self, *notifications: Notification) -> None:
        """Queue notifications without blocking; raises QueueFullError when full."""
        for n in notifications:
            try:
                self._queue.put_nowait(n)
            except asyncio.QueueFull:
                raise QueueFullError("webhook notification: queue full, dropped notification") from None

    def configure(self, env: Env) -> None:
        self._control.put_nowait(env)

    async def quit(self) -> None:
        if self._task is None:
            return
        self._control.put_nowait(_QUIT)
        await self._task
        self._task = None
        logger.info("Notification processor stopped")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _work(self) -> None:
        next_control = asyncio.ensure_future(self._control.get())
        next_notification = asyncio.ensure_future(self._queue.get())
        try:
            while True:
                await asyncio.wait({next_control, next_notification}, return_when=asyncio.FIRST_COMPLETED)

                if next_control.done():
                    message = next_control.result()
                    if message is _QUIT:
                        return
                    self.env = message
                    logger.info("Notification processor reconfigured")
                    next_control = asyncio.ensure_future(self._control.get())
                    continue

                n = next_notification.result()
                next_notification = asyncio.ensure_future(self._queue.get())
                try:
                    await self.process_notification(n)
                except Exception as e:
                    logger.info(
                        "Webhook notification failed",
                        subscription_id=n.subscription_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
        finally:
            for pending in (next_control, next_notification):
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pending

    async def process_notification(self, n: Notification) -> None:
        """
        Turn one change notification into a DM for the subscription's owner.

        Raises:
            NotificationError: Orphaned subscription or client state mismatch
            StoreError, RemoteCalendarError, ChatPlatformError: From collaborators
        """
        env = self.env
        sub = await env.store.load_subscription(n.subscription_id)

        async with env.user_locks.lock(sub.chat_creator_id):
            creator = await env.store.load_user(sub.chat_creator_id)
            if sub.remote.id != creator.settings.event_subscription_id:
                raise NotificationError("subscription is orphaned", n.subscription_id)
            if sub.remote.client_state and sub.remote.client_state != n.client_state:
                raise NotificationError("unauthorized webhook", n.subscription_id)

            n.subscription = sub.remote
            n.subscription_creator = creator.remote

            client = await make_user_client(env, creator.chat_user_id)
            try:
                if n.recommend_renew:
                    renewed = await client.renew_subscription(
                        env.settings.notification_url(), sub.remote.creator_id, n.subscription
                    )
                    stored = StoredSubscription(
                        remote=renewed,
                        chat_creator_id=creator.chat_user_id,
                        service_version=env.settings.SERVICE_VERSION,
                    )
                    await env.store.store_user_subscription(creator, stored)
                    logger.debug(
                        "Webhook notification: renewed user subscription",
                        user_id=creator.chat_user_id,
                        subscription_id=n.subscription_id,
                    )

                if n.is_bare:
                    n = await client.get_notification_data(n)

                try:
                    prior = await env.store.load_user_event(creator.chat_user_id, n.event.ical_uid)
                except StoreNotFoundError:
                    prior = None

                timezone = (await client.get_mailbox_settings(sub.remote.creator_id)).time_zone
            finally:
                await client.close()

            respond_url = env.settings.action_url(RESPOND_PATH)
            secret = env.settings.ACTION_SECRET
            if prior is not None:
                attachment = updated_event_attachment(
                    n.event, prior.remote, timezone, respond_url, creator.chat_user_id, secret
                )
                if attachment is None:
                    logger.debug(
                        "Webhook notification: no changes detected in event",
                        user_id=creator.chat_user_id,
                        subscription_id=n.subscription_id,
                        change_type=n.change_type,
                        event_id=n.event.id,
                        event_ical_uid=n.event.ical_uid,
                    )
                    return
            else:
                attachment = new_event_attachment(n.event, timezone, respond_url, creator.chat_user_id, secret)

            await env.poster.dm_with_attachments(creator.chat_user_id, attachment)

            snapshot = StoredEvent(remote=n.event)
            await env.store.store_user_event(creator.chat_user_id, snapshot)

            logger.debug(
                "Notification sent",
                user_id=creator.chat_user_id,
                subscription_id=n.subscription_id,
                title=attachment.title,
            )
