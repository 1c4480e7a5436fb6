"""
Google Calendar API client.
Low-level Calendar API client mapped onto the provider-neutral interface.
Google has no application-wide calendar reader and push channels are not
wired up, so views are fetched per user and subscriptions are unsupported.
"""

from datetime import datetime

from calsync.config import settings
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import (
    RESPONSE_ACCEPTED,
    RESPONSE_DECLINED,
    RESPONSE_NONE,
    RESPONSE_TENTATIVE,
    SHOW_AS_BUSY,
    SHOW_AS_FREE,
    Attendee,
    EmailAddress,
    Event,
    Location,
    MailboxSettings,
    Notification,
    RemoteSubscription,
    RemoteUser,
    ResponseStatus,
)
from calsync.services.calendar.remote_client import (
    HTTPRemoteClient,
    ProviderFeatures,
    RemoteCalendarClient,
    RemoteCalendarError,
    RemoteCalendarProvider,
    RemoteErrorKind,
    TokenRefreshCallback,
    UserTokenSource,
    post_token_request,
)
from calsync.utils.tz import parse_datetime

logger = get_logger(__name__)

# Google Calendar API configuration
CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"  # User's primary calendar
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

BODY_PREVIEW_LENGTH = 255

_RESPONSE_MAP = {
    "accepted": RESPONSE_ACCEPTED,
    "tentative": RESPONSE_TENTATIVE,
    "declined": RESPONSE_DECLINED,
    "needsAction": RESPONSE_NONE,
}


def _parse_event_time(data: dict | None) -> tuple[datetime | None, bool]:
    """Return (start, is_all_day) for a Google start/end object."""
    if not data:
        return None, False
    if data.get("dateTime"):
        return parse_datetime(data["dateTime"], data.get("timeZone", "UTC")), False
    if data.get("date"):
        return parse_datetime(data["date"] + "T00:00:00", data.get("timeZone", "UTC")), True
    return None, False


def _parse_person(data: dict | None) -> Attendee:
    data = data or {}
    response = data.get("responseStatus")
    return Attendee(
        type="optional" if data.get("optional") else "required",
        email_address=EmailAddress(address=data.get("email", ""), name=data.get("displayName", "")),
        status=ResponseStatus(response=_RESPONSE_MAP.get(response, RESPONSE_NONE)) if response else None,
    )


def parse_event(data: dict) -> Event:
    """Convert a Google Calendar event resource into the domain Event."""
    start, is_all_day = _parse_event_time(data.get("start"))
    end, _ = _parse_event_time(data.get("end"))
    organizer = data.get("organizer") or {}
    attendees = data.get("attendees") or []

    own = next((a for a in attendees if a.get("self")), None)
    is_organizer = bool(organizer.get("self"))
    response_status = None
    if own is not None:
        response_status = ResponseStatus(
            response=_RESPONSE_MAP.get(own.get("responseStatus"), RESPONSE_NONE)
        )

    return Event(
        id=data.get("id", ""),
        ical_uid=data.get("iCalUID", ""),
        subject=data.get("summary") or "",
        body_preview=(data.get("description") or "")[:BODY_PREVIEW_LENGTH],
        importance="normal",
        start=start,
        end=end,
        is_all_day=is_all_day,
        is_cancelled=data.get("status") == "cancelled",
        is_organizer=is_organizer,
        response_requested=bool(attendees) and not is_organizer,
        show_as=SHOW_AS_FREE if data.get("transparency") == "transparent" else SHOW_AS_BUSY,
        response_status=response_status,
        location=Location(display_name=data.get("location") or ""),
        organizer=_parse_person(organizer),
        attendees=[_parse_person(a) for a in attendees],
        weblink=data.get("htmlLink", ""),
    )


class GoogleCalendarClient(HTTPRemoteClient):
    """
    Client for Google Calendar API operations.

    Only the token owner's primary calendar is readable, so the remote user
    id passed in is used for logging and for labelling views.
    """

    base_url = CALENDAR_API_BASE_URL

    async def get_me(self) -> RemoteUser:
        data = await self._call("GET", f"/calendars/{CALENDAR_PRIMARY}", "get_calendar")
        return RemoteUser(id=data["id"], mail=data["id"], display_name=data.get("summary", ""))

    async def get_events_between_dates(
        self, remote_user_id: str, start: datetime, end: datetime
    ) -> list[Event]:
        params = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "false",
        }
        data = await self._call(
            "GET", f"/calendars/{CALENDAR_PRIMARY}/events", "list_events", params=params
        )
        events = [parse_event(item) for item in data.get("items", [])]
        logger.debug("Events listed successfully", remote_user_id=remote_user_id, event_count=len(events))
        return events

    async def create_subscription(
        self, notification_url: str, remote_user_id: str
    ) -> RemoteSubscription:
        raise RemoteCalendarError(
            "Event subscriptions are not supported for Google Calendar",
            kind=RemoteErrorKind.UNSUPPORTED,
        )

    async def renew_subscription(
        self, notification_url: str, remote_user_id: str, subscription: RemoteSubscription
    ) -> RemoteSubscription:
        raise RemoteCalendarError(
            "Event subscriptions are not supported for Google Calendar",
            kind=RemoteErrorKind.UNSUPPORTED,
        )

    async def delete_subscription(self, subscription: RemoteSubscription) -> None:
        raise RemoteCalendarError(
            "Event subscriptions are not supported for Google Calendar",
            kind=RemoteErrorKind.UNSUPPORTED,
        )

    async def list_subscriptions(self) -> list[RemoteSubscription]:
        return []

    async def get_mailbox_settings(self, remote_user_id: str) -> MailboxSettings:
        data = await self._call("GET", "/users/me/settings/timezone", "get_timezone")
        return MailboxSettings(time_zone=data.get("value") or "UTC")

    async def get_notification_data(self, notification: Notification) -> Notification:
        data = await self._call(
            "GET",
            f"/calendars/{CALENDAR_PRIMARY}/events/{notification.event_id}",
            "get_event",
        )
        notification.event = parse_event(data)
        notification.is_bare = False
        return notification

    async def respond_to_event(self, remote_user_id: str, event_id: str, response: str) -> None:
        google_response = next((k for k, v in _RESPONSE_MAP.items() if v == response), None)
        if google_response is None or response == RESPONSE_NONE:
            raise RemoteCalendarError(
                f"Cannot respond to event with {response!r}", kind=RemoteErrorKind.UNSUPPORTED
            )

        path = f"/calendars/{CALENDAR_PRIMARY}/events/{event_id}"
        data = await self._call("GET", path, "get_event")
        attendees = data.get("attendees") or []
        own = next((a for a in attendees if a.get("self")), None)
        if own is None:
            raise RemoteCalendarError(
                f"User is not invited to event {event_id}", kind=RemoteErrorKind.NOT_FOUND
            )
        own["responseStatus"] = google_response

        await self._call(
            "PATCH", path, "respond_to_event", params={"sendUpdates": "all"}, json={"attendees": attendees}
        )
        logger.info("Event response sent", remote_user_id=remote_user_id, event_id=event_id, response=response)


class GoogleProvider(RemoteCalendarProvider):
    name = "google"
    features = ProviderFeatures(event_notifications=False, superuser=False)

    def __init__(self, app_settings=None):
        self._settings = app_settings or settings

    def make_user_client(
        self, token: dict, on_refresh: TokenRefreshCallback | None = None
    ) -> RemoteCalendarClient:
        return GoogleCalendarClient(UserTokenSource(self, token, on_refresh))

    async def refresh_token(self, refresh_token: str) -> dict:
        logger.info("Refreshing access token", refresh_token_preview=refresh_token[:12] + "...")
        token = await post_token_request(
            GOOGLE_TOKEN_URL,
            {
                "client_id": self._settings.GOOGLE_CLIENT_ID or "",
                "client_secret": self._settings.GOOGLE_CLIENT_SECRET or "",
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            operation="token_refresh",
        )
        # Google may not return a new refresh token on refresh
        token["refresh_token"] = token["refresh_token"] or refresh_token
        return token
