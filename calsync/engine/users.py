"""
Linked user operations outside the sync pass: timezone lookup, disconnect,
channel reminders for events, and answers to status change prompts.
"""

from calsync.engine.env import Env, make_user_client
from calsync.engine.notification_format import RESPONSE_OPTIONS
from calsync.engine.views import verify_action_context
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import RESPONSE_NONE
from calsync.models.domain.chat_domain import PRETTY_STATUSES, STATUS_ONLINE
from calsync.services.calendar.remote_client import RemoteCalendarError
from calsync.services.store.kv_store import StoreError, StoreNotFoundError

logger = get_logger(__name__)

STATUS_NOT_CHANGED_MESSAGE = "Status will not be changed."

# Only real answers; "Not responded" cannot be sent
OPTION_RESPONSES = {option: response for response, option in RESPONSE_OPTIONS.items() if response != RESPONSE_NONE}


class UsersError(Exception):
    """Custom exception for linked user operations."""

    def __init__(self, message: str, user_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id


class Users:
    def __init__(self, env: Env):
        self.env = env

    def _check_action(self, chat_user_id: str, context: dict) -> None:
        if not verify_action_context(context, self.env.settings.ACTION_SECRET):
            raise UsersError("Invalid action signature", user_id=chat_user_id)
        if context.get("user_id") != chat_user_id:
            raise UsersError("Action belongs to another user", user_id=chat_user_id)

    async def get_timezone(self, chat_user_id: str) -> str:
        user = await self.env.store.load_user(chat_user_id)
        client = await make_user_client(self.env, chat_user_id)
        try:
            return (await client.get_mailbox_settings(user.remote.id)).time_zone
        finally:
            await client.close()

    async def disconnect_user(self, chat_user_id: str) -> None:
        """
        Remove everything stored for the user: channel links, the event
        subscription (locally and remotely), the user record and its index entry.

        Channel links that cannot be removed are kept on the user record and
        the disconnect stops there so it can be retried.
        """
        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)

            left: dict[str, str] = {}
            for ical_uid, channel_id in user.channel_events.items():
                try:
                    await self.env.store.unlink_channel_from_event(ical_uid, channel_id)
                except StoreNotFoundError:
                    continue
                except StoreError as e:
                    logger.warning("Error unlinking channel from event", event_id=ical_uid, error=str(e))
                    left[ical_uid] = channel_id
            if left:
                user.channel_events = left
                try:
                    await self.env.store.store_user(user)
                except StoreError as e:
                    logger.error(
                        "Error storing user after failing to unlink channels",
                        user_id=chat_user_id,
                        linked_channels_left=left,
                        error=str(e),
                    )
                raise UsersError("Error deleting linked channels from events", user_id=chat_user_id)

            subscription_id = user.settings.event_subscription_id
            if subscription_id:
                stored = await self.env.store.load_subscription(subscription_id)
                await self.env.store.delete_user_subscription(user, subscription_id)

                try:
                    client = await make_user_client(self.env, chat_user_id)
                    try:
                        await client.delete_subscription(stored.remote)
                    finally:
                        await client.close()
                except RemoteCalendarError as e:
                    logger.warning(
                        "Failed to delete remote subscription",
                        user_id=chat_user_id,
                        subscription_id=subscription_id,
                        error=str(e),
                    )

            await self.env.store.delete_user(chat_user_id)
            await self.env.store.remove_user_from_index(chat_user_id)

        logger.info("User disconnected", user_id=chat_user_id)

    async def link_channel_to_event(self, chat_user_id: str, ical_uid: str, channel_id: str) -> None:
        """Post reminders for the event to the channel as well."""
        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            previous = user.channel_events.get(ical_uid)
            if previous and previous != channel_id:
                await self.env.store.unlink_channel_from_event(ical_uid, previous)
            await self.env.store.link_channel_to_event(ical_uid, channel_id)
            user.channel_events[ical_uid] = channel_id
            await self.env.store.store_user(user)

    async def unlink_channel_from_event(self, chat_user_id: str, ical_uid: str) -> None:
        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            channel_id = user.channel_events.pop(ical_uid, None)
            if channel_id is None:
                raise UsersError(f"Event {ical_uid} is not linked to a channel", user_id=chat_user_id)
            await self.env.store.unlink_channel_from_event(ical_uid, channel_id)
            await self.env.store.store_user(user)

    async def confirm_status_change(self, chat_user_id: str, context: dict) -> str:
        """
        Apply the user's answer to a status change prompt.

        Going busy on "yes" remembers a manually set status so it can be
        restored when the meeting ends.

        Returns:
            The text that replaces the prompt

        Raises:
            UsersError: Context not signed by this service or for another user
        """
        self._check_action(chat_user_id, context)

        if not context.get("value"):
            return STATUS_NOT_CHANGED_MESSAGE

        change_to = context.get("change_to")
        if change_to not in PRETTY_STATUSES:
            raise UsersError(f"Unknown status: {change_to}", user_id=chat_user_id)

        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            if change_to != STATUS_ONLINE:
                statuses = await self.env.chat.get_user_statuses_by_ids([chat_user_id])
                current = statuses[0] if statuses else None
                user.last_status = current.status if current is not None and current.manual else ""
                await self.env.store.store_user(user)
            await self.env.chat.update_user_status(chat_user_id, change_to)

        logger.info("Status change confirmed", user_id=chat_user_id, status=change_to)
        return f"Status changed to {PRETTY_STATUSES[change_to]}."

    async def respond_to_event(self, chat_user_id: str, context: dict, selected_option: str) -> str:
        """Send the user's answer to an invitation picked from a notification."""
        self._check_action(chat_user_id, context)

        response = OPTION_RESPONSES.get(selected_option)
        if response is None:
            raise UsersError(f"Cannot respond with {selected_option!r}", user_id=chat_user_id)

        user = await self.env.store.load_user(chat_user_id)
        client = await make_user_client(self.env, chat_user_id)
        try:
            await client.respond_to_event(user.remote.id, context.get("event_id", ""), response)
        finally:
            await client.close()
        return f"You have responded {selected_option!r} to the event."
