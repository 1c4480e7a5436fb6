from calsync.engine.env import Env
from calsync.engine.status import StatusUpdateError
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import Event
from calsync.models.domain.chat_domain import CustomStatus
from calsync.models.domain.user_domain import StoredUser
from calsync.services.chat.platform_client import ChatPlatformError
from calsync.services.store.kv_store import StoreError

logger = get_logger(__name__)

CUSTOM_STATUS_EMOJI = "calendar"
CUSTOM_STATUS_TEXT = "In a meeting"
CUSTOM_STATUS_DURATION = "date_and_time"


def meeting_custom_status(events: list[Event]) -> CustomStatus:
    return CustomStatus(
        emoji=CUSTOM_STATUS_EMOJI,
        text=CUSTOM_STATUS_TEXT,
        expires_at=events[0].end_utc(),
        duration=CUSTOM_STATUS_DURATION,
    )


async def set_custom_status_from_calendar_view(
    env: Env, user: StoredUser, events: list[Event]
) -> tuple[str, bool]:
    """
    Set or clear the "In a meeting" custom status.

    A custom status the user set themselves is never overwritten. Returns
    (message, status_changed); raises StatusUpdateError on failure.
    """
    uid = user.chat_user_id
    if not user.is_configured_for_custom_status_updates():
        return "User doesn't want to set custom status", False

    if not events:
        if user.is_custom_status_set:
            try:
                await env.chat.remove_user_custom_status(uid)
            except ChatPlatformError as e:
                logger.warning("Error removing custom status", user_id=uid, error=str(e))

            try:
                await env.store.store_user_custom_status_updates(uid, False)
            except StoreError as e:
                raise StatusUpdateError(f"Error storing custom status flag: {e}", user_id=uid) from e
            user.is_custom_status_set = False

        return "No events to set custom status", False

    try:
        chat_user = await env.chat.get_user(uid)
        if chat_user.get_custom_status() is not None and not user.is_custom_status_set:
            return "User has already set a custom status. Ignoring custom status change", False

        await env.chat.update_user_custom_status(uid, meeting_custom_status(events))
    except ChatPlatformError as e:
        raise StatusUpdateError(f"Error setting custom status: {e}", user_id=uid) from e

    try:
        await env.store.store_user_custom_status_updates(uid, True)
    except StoreError as e:
        raise StatusUpdateError(
            f"Error storing custom status flag: {e}", user_id=uid, status_changed=True
        ) from e
    user.is_custom_status_set = True

    return "", True
