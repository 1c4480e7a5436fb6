from typing import Literal

from pydantic import BaseModel, Field

from calsync.models.domain.calendar_domain import Event, RemoteSubscription, RemoteUser
from calsync.models.domain.chat_domain import STATUS_AWAY, STATUS_DND

AWAY_STATUS_OPTION = "away"
DND_STATUS_OPTION = "dnd"
NOT_SET_STATUS_OPTION = "notset"

StatusOption = Literal["away", "dnd", "notset"]


class DailySummarySettings(BaseModel):
    """Per-user daily agenda delivery settings."""

    post_time: str = "8:00AM"  # kitchen format, e.g. "9:15AM"
    timezone: str = "UTC"
    enable: bool = False
    last_post_time: str = ""  # RFC3339


class UserSettings(BaseModel):
    """Per-user feature switches."""

    event_subscription_id: str = ""
    update_status_from_options: StatusOption = NOT_SET_STATUS_OPTION
    get_confirmation: bool = False
    set_custom_status: bool = False
    receive_reminders: bool = False
    daily_summary: DailySummarySettings | None = None


class StoredUser(BaseModel):
    """Persisted record for a chat user linked to a remote calendar account."""

    chat_user_id: str
    chat_display_name: str = ""
    remote: RemoteUser
    settings: UserSettings = Field(default_factory=UserSettings)

    # Fingerprints of the busy events the user was last known to be in
    active_events: list[str] = Field(default_factory=list)
    # Manually set status to restore when the user becomes free
    last_status: str = ""
    # Whether the current custom status was set by this service
    is_custom_status_set: bool = False
    # event ical uid -> channel id, for channels this user linked
    channel_events: dict[str, str] = Field(default_factory=dict)

    def is_configured_for_status_updates(self) -> bool:
        return self.settings.update_status_from_options != NOT_SET_STATUS_OPTION

    def is_configured_for_custom_status_updates(self) -> bool:
        return self.settings.set_custom_status

    def busy_status(self) -> str:
        """Presence value applied while the user is in a meeting."""
        if self.settings.update_status_from_options == AWAY_STATUS_OPTION:
            return STATUS_AWAY
        return STATUS_DND


class UserIndexEntry(BaseModel):
    chat_user_id: str
    remote_id: str
    remote_mail: str = ""
    chat_display_name: str = ""


class StoredSubscription(BaseModel):
    remote: RemoteSubscription
    chat_creator_id: str
    service_version: str = ""


class StoredEvent(BaseModel):
    """Last-known snapshot of an event, used to diff change notifications."""

    remote: Event


class EventMetadata(BaseModel):
    """Chat channels that receive a reminder post for one event."""

    linked_channel_ids: set[str] = Field(default_factory=set)
