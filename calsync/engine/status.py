"""
Presence status decisions driven by a user's merged busy events.

Active event fingerprints are only replaced once the status action for a
pass has gone through, so a failed pass is retried by the next one.
"""

from calsync.engine.env import Env
from calsync.engine.events import event_fingerprints
from calsync.engine.views import CONFIRM_STATUS_CHANGE_PATH, render_status_change_notification_view
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import Event
from calsync.models.domain.chat_domain import STATUS_OFFLINE, STATUS_ONLINE, UserStatus
from calsync.models.domain.user_domain import StoredUser
from calsync.services.chat.platform_client import ChatPlatformError
from calsync.services.store.kv_store import StoreError

logger = get_logger(__name__)


class StatusUpdateError(Exception):
    """A status or custom status decision could not be completed for one user."""

    def __init__(self, message: str, user_id: str, status_changed: bool = False):
        super().__init__(message)
        self.user_id = user_id
        self.status_changed = status_changed


async def _store_active_events(env: Env, user: StoredUser, fingerprints: list[str], status_changed: bool) -> None:
    try:
        await env.store.store_user_active_events(user.chat_user_id, fingerprints)
    except StoreError as e:
        raise StatusUpdateError(
            f"Error storing active events for user {user.chat_user_id}: {e}",
            user_id=user.chat_user_id,
            status_changed=status_changed,
        ) from e
    user.active_events = list(fingerprints)


async def set_status_or_ask_user(
    env: Env, user: StoredUser, current: UserStatus, events: list[Event], is_free: bool
) -> None:
    """
    Apply the free/busy status, or DM a confirmation prompt when the user
    asked to confirm changes.

    ``user.last_status`` holds the manual status to restore once the user is
    free again. It is only captured when going busy without confirmation.
    """
    to_set = STATUS_ONLINE
    if is_free and user.last_status:
        to_set = user.last_status
        user.last_status = ""

    if not is_free:
        to_set = user.busy_status()
        if not user.settings.get_confirmation:
            user.last_status = current.status if current.manual else ""

    await env.store.store_user(user)

    if not user.settings.get_confirmation:
        await env.chat.update_user_status(user.chat_user_id, to_set)
        return

    attachment = render_status_change_notification_view(
        events,
        to_set,
        env.settings.action_url(CONFIRM_STATUS_CHANGE_PATH),
        user.chat_user_id,
        env.settings.ACTION_SECRET,
    )
    await env.poster.dm_with_attachments(user.chat_user_id, attachment)


async def _set_or_ask(env, user, current, events, is_free) -> None:
    try:
        await set_status_or_ask_user(env, user, current, events, is_free)
    except (StoreError, ChatPlatformError) as e:
        raise StatusUpdateError(
            f"Error setting user status for user {user.chat_user_id}: {e}",
            user_id=user.chat_user_id,
        ) from e


async def set_status_from_calendar_view(
    env: Env, user: StoredUser, status: UserStatus, events: list[Event]
) -> tuple[str, bool]:
    """
    Decide and apply the presence change for one user.

    Args:
        user: Freshly loaded user record
        status: The user's current presence
        events: Merged busy events for the current window

    Returns:
        (message, status_changed)

    Raises:
        StatusUpdateError: If any step fails; remaining steps are skipped
    """
    current_status = status.status
    if not user.is_configured_for_status_updates():
        return "No value set from options", False

    if current_status == STATUS_OFFLINE and not user.settings.get_confirmation:
        return "User is offline and does not want status change confirmations. No status change", False

    busy_status = user.busy_status()

    if not user.active_events and not events:
        return "No events in local or remote. No status change.", False

    if user.active_events and not events:
        message = f"User is no longer busy in calendar, but is not set to busy ({busy_status}). No status change."
        status_changed = False
        if current_status == busy_status:
            message = "User is no longer busy in calendar. Set status to online."
            if user.last_status:
                message = f"User is no longer busy in calendar. Set status to previous status ({user.last_status})"
            await _set_or_ask(env, user, status, events, is_free=True)
            status_changed = True

        await _store_active_events(env, user, [], status_changed)
        return message, status_changed

    fingerprints = event_fingerprints(events)

    if not user.active_events:
        if current_status == busy_status:
            user.last_status = current_status if status.manual else ""
            try:
                await env.store.store_user(user)
            except StoreError as e:
                raise StatusUpdateError(
                    f"Error storing user {user.chat_user_id}: {e}", user_id=user.chat_user_id
                ) from e
            await _store_active_events(env, user, fingerprints, False)
            return "User is already busy. No status change.", False

        await _set_or_ask(env, user, status, events, is_free=False)
        await _store_active_events(env, user, fingerprints, True)
        return f"User was free, but is now busy ({busy_status}). Set status to busy.", True

    new_event_exists = any(f not in user.active_events for f in fingerprints)
    if not new_event_exists:
        return f"No changes in active events. Total number of events: {len(events)}", False

    message = "User is already busy. No status change."
    status_changed = False
    if current_status != busy_status:
        await _set_or_ask(env, user, status, events, is_free=False)
        status_changed = True
        message = f"User was free, but is now busy. Set status to busy ({busy_status})."

    await _store_active_events(env, user, fingerprints, status_changed)
    return message, status_changed
