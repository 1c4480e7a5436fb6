"""
Upcoming event reminders delivered during the status sync pass.
"""

from datetime import UTC, datetime, timedelta

from calsync.engine.env import Env
from calsync.engine.events import STATUS_SYNC_JOB_INTERVAL
from calsync.engine.views import render_event_attachment, render_upcoming_event_attachment
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import Event
from calsync.models.domain.chat_domain import Post
from calsync.models.domain.user_domain import StoredUser
from calsync.services.calendar.remote_client import RemoteCalendarClient, RemoteCalendarError
from calsync.services.chat.platform_client import ChatPlatformError
from calsync.services.store.kv_store import StoreError, StoreNotFoundError

logger = get_logger(__name__)

UPCOMING_EVENT_NOTIFICATION_TIME = timedelta(minutes=10)
# 110% of the sync interval
UPCOMING_EVENT_NOTIFICATION_WINDOW = STATUS_SYNC_JOB_INTERVAL * 11 / 10

CHANNEL_REMINDER_MESSAGE = "Upcoming event"


def is_upcoming(event: Event, now: datetime) -> bool:
    if event.is_cancelled or event.start is None:
        return False
    diff = event.start_utc() - (now + UPCOMING_EVENT_NOTIFICATION_TIME)
    return -UPCOMING_EVENT_NOTIFICATION_WINDOW < diff < UPCOMING_EVENT_NOTIFICATION_WINDOW


async def notify_upcoming_events(
    env: Env,
    client: RemoteCalendarClient,
    user: StoredUser,
    events: list[Event],
    now: datetime | None = None,
) -> int:
    """
    DM the user about events starting in about ten minutes and post to the
    channels linked to each event. Returns the number of DMs sent.
    """
    now = now or datetime.now(UTC)
    uid = user.chat_user_id
    timezone = ""
    sent = 0

    for event in events:
        if not is_upcoming(event, now):
            continue

        if not timezone:
            try:
                timezone = (await client.get_mailbox_settings(user.remote.id)).time_zone
            except (RemoteCalendarError, StoreError) as e:
                logger.warning("Error getting timezone for reminders", user_id=uid, error=str(e))
                return sent

        try:
            await env.poster.dm_with_attachments(uid, render_upcoming_event_attachment(event, timezone, now))
            sent += 1
        except ChatPlatformError as e:
            logger.warning("Error sending upcoming event DM", user_id=uid, event_id=event.id, error=str(e))
            continue

        try:
            metadata = await env.store.load_event_metadata(event.ical_uid)
        except StoreNotFoundError:
            continue
        except StoreError as e:
            logger.warning("Error loading event metadata for channel reminders", event_id=event.id, error=str(e))
            continue

        for channel_id in sorted(metadata.linked_channel_ids):
            post = Post(channel_id=channel_id, message=CHANNEL_REMINDER_MESSAGE)
            post.add_attachments([render_event_attachment(event, timezone, show_timezone=True)])
            try:
                await env.poster.create_post(post)
            except ChatPlatformError as e:
                logger.warning("Error posting channel reminder", channel_id=channel_id, error=str(e))

    return sent
