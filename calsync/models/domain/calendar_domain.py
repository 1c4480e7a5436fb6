# calsync/models/domain/calendar_domain.py
"""
Calendar Domain Models
Provider-neutral shapes for events, calendar views, subscriptions and
change notifications. Remote clients convert their wire formats into these.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from pydantic import BaseModel, Field

RESPONSE_ACCEPTED = "accepted"
RESPONSE_TENTATIVE = "tentativelyAccepted"
RESPONSE_DECLINED = "declined"
RESPONSE_NONE = "notResponded"

SHOW_AS_BUSY = "busy"
SHOW_AS_FREE = "free"


class EmailAddress(BaseModel):
    address: str = ""
    name: str = ""


class ResponseStatus(BaseModel):
    response: str = ""
    time: datetime | None = None


class Attendee(BaseModel):
    type: str = ""
    email_address: EmailAddress = Field(default_factory=EmailAddress)
    status: ResponseStatus | None = None


class Location(BaseModel):
    display_name: str = ""


class Event(BaseModel):
    """Domain model for a single calendar event instance."""

    id: str = ""
    ical_uid: str = ""
    subject: str = ""
    body_preview: str = ""
    importance: str = ""
    start: datetime | None = None
    end: datetime | None = None
    is_all_day: bool = False
    is_cancelled: bool = False
    is_organizer: bool = False
    response_requested: bool = False
    show_as: str = ""
    response_status: ResponseStatus | None = None
    location: Location = Field(default_factory=Location)
    organizer: Attendee = Field(default_factory=Attendee)
    attendees: list[Attendee] = Field(default_factory=list)
    weblink: str = ""

    def start_utc(self) -> datetime | None:
        """Start time normalized to UTC (naive values are assumed UTC)."""
        return _as_utc(self.start)

    def end_utc(self) -> datetime | None:
        return _as_utc(self.end)

    def duration(self):
        if not self.start or not self.end:
            return None
        return self.end_utc() - self.start_utc()

    def is_declined(self) -> bool:
        return self.response_status is not None and self.response_status.response == RESPONSE_DECLINED


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class RemoteUser(BaseModel):
    """Identity of the linked account on the calendar provider."""

    id: str
    mail: str = ""
    display_name: str = ""


class RemoteSubscription(BaseModel):
    """Push-notification registration held by the calendar provider."""

    id: str
    resource: str = ""
    change_type: str = ""
    client_state: str = ""
    notification_url: str = ""
    expiration_datetime: str = ""
    creator_id: str = ""


class MailboxSettings(BaseModel):
    time_zone: str = "UTC"


@dataclass(slots=True)
class RemoteError:
    """Per-user error returned inside an otherwise successful batch response."""

    code: str
    message: str


@dataclass(slots=True)
class ViewCalendarParams:
    remote_user_id: str
    start_time: datetime
    end_time: datetime


@dataclass(slots=True)
class CalendarView:
    """Events fetched for one remote user over one time window."""

    remote_user_id: str
    events: list[Event] = field(default_factory=list)
    error: RemoteError | None = None

    def to_dict(self) -> dict:
        return {
            "remote_user_id": self.remote_user_id,
            "events": [e.model_dump(mode="json") for e in self.events],
            "error": {"code": self.error.code, "message": self.error.message} if self.error else None,
        }


@dataclass(slots=True)
class Notification:
    """Inbound change notification, hydrated in place while it is processed."""

    subscription_id: str
    change_type: str = ""
    client_state: str = ""
    resource: str = ""
    event_id: str = ""
    event: Event | None = None
    is_bare: bool = True
    recommend_renew: bool = False
    subscription: RemoteSubscription | None = None
    subscription_creator: RemoteUser | None = None
