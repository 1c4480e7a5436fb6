"""
Microsoft Graph calendar client.
Calendar views, JSON batching, change-notification subscriptions and
mailbox settings.
"""

import secrets
import time
from datetime import UTC, datetime, timedelta

from calsync.config import settings
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import (
    RESPONSE_ACCEPTED,
    RESPONSE_DECLINED,
    RESPONSE_TENTATIVE,
    Attendee,
    CalendarView,
    EmailAddress,
    Event,
    Location,
    MailboxSettings,
    Notification,
    RemoteError,
    RemoteSubscription,
    RemoteUser,
    ResponseStatus,
    ViewCalendarParams,
)
from calsync.services.calendar.remote_client import (
    HTTPRemoteClient,
    ProviderFeatures,
    RemoteCalendarClient,
    RemoteCalendarError,
    RemoteCalendarProvider,
    RemoteErrorKind,
    TokenRefreshCallback,
    TokenSource,
    UserTokenSource,
    post_token_request,
)
from calsync.utils.tz import format_utc, parse_datetime

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE_DEFAULT = "https://graph.microsoft.com/.default"
GRAPH_USER_SCOPES = "offline_access User.Read Calendars.ReadWrite MailboxSettings.Read"

# Graph caps event subscriptions at just under three days
SUBSCRIPTION_EXPIRATION = timedelta(minutes=4230)
SUBSCRIPTION_CHANGE_TYPE = "created,updated,deleted"
BATCH_SIZE = 20
CALENDAR_VIEW_PAGE_SIZE = 50

PREFER_UTC = {"Prefer": 'outlook.timezone="UTC"'}

RESPONSE_ACTIONS = {
    RESPONSE_ACCEPTED: "accept",
    RESPONSE_DECLINED: "decline",
    RESPONSE_TENTATIVE: "tentativelyAccept",
}


def token_url(tenant_id: str) -> str:
    return f"https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"


def _calendar_view_path(remote_user_id: str, start: datetime, end: datetime) -> str:
    return (
        f"/users/{remote_user_id}/calendarView"
        f"?startDateTime={format_utc(start)}&endDateTime={format_utc(end)}"
        f"&$top={CALENDAR_VIEW_PAGE_SIZE}"
    )


def _parse_event_time(data: dict | None) -> datetime | None:
    if not data or not data.get("dateTime"):
        return None
    return parse_datetime(data["dateTime"], data.get("timeZone", "UTC"))


def _parse_attendee(data: dict | None) -> Attendee:
    data = data or {}
    email = data.get("emailAddress") or {}
    status = data.get("status")
    return Attendee(
        type=data.get("type", ""),
        email_address=EmailAddress(address=email.get("address", ""), name=email.get("name", "")),
        status=ResponseStatus(response=status.get("response", "")) if status else None,
    )


def parse_event(data: dict) -> Event:
    """Convert a Graph event resource into the domain Event."""
    response_status = data.get("responseStatus")
    return Event(
        id=data.get("id", ""),
        ical_uid=data.get("iCalUId", ""),
        subject=data.get("subject") or "",
        body_preview=data.get("bodyPreview") or "",
        importance=data.get("importance") or "",
        start=_parse_event_time(data.get("start")),
        end=_parse_event_time(data.get("end")),
        is_all_day=bool(data.get("isAllDay")),
        is_cancelled=bool(data.get("isCancelled")),
        is_organizer=bool(data.get("isOrganizer")),
        response_requested=bool(data.get("responseRequested")),
        show_as=data.get("showAs") or "",
        response_status=ResponseStatus(response=response_status.get("response", ""))
        if response_status
        else None,
        location=Location(display_name=(data.get("location") or {}).get("displayName", "")),
        organizer=_parse_attendee(data.get("organizer")),
        attendees=[_parse_attendee(a) for a in data.get("attendees") or []],
        weblink=data.get("webLink", ""),
    )


def _parse_subscription(data: dict, creator_id: str = "") -> RemoteSubscription:
    return RemoteSubscription(
        id=data["id"],
        resource=data.get("resource", ""),
        change_type=data.get("changeType", ""),
        client_state=data.get("clientState") or "",
        notification_url=data.get("notificationUrl", ""),
        expiration_datetime=data.get("expirationDateTime", ""),
        creator_id=creator_id or data.get("creatorId", ""),
    )


class GraphCalendarClient(HTTPRemoteClient):
    """Calendar operations against Microsoft Graph v1.0."""

    base_url = GRAPH_BASE_URL

    async def get_me(self) -> RemoteUser:
        data = await self._call("GET", "/me", "get_me")
        return RemoteUser(
            id=data["id"],
            mail=data.get("mail") or data.get("userPrincipalName", ""),
            display_name=data.get("displayName", ""),
        )

    async def get_events_between_dates(
        self, remote_user_id: str, start: datetime, end: datetime
    ) -> list[Event]:
        data = await self._call(
            "GET",
            _calendar_view_path(remote_user_id, start, end),
            "calendar_view",
            headers=PREFER_UTC,
        )
        events = [parse_event(item) for item in data.get("value", [])]
        logger.debug("Calendar view fetched", remote_user_id=remote_user_id, event_count=len(events))
        return events

    async def do_batch_view_calendar_requests(
        self, params: list[ViewCalendarParams]
    ) -> list[CalendarView]:
        views: list[CalendarView] = []
        for offset in range(0, len(params), BATCH_SIZE):
            chunk = params[offset : offset + BATCH_SIZE]
            requests = [
                {
                    "id": str(i),
                    "method": "GET",
                    "url": _calendar_view_path(p.remote_user_id, p.start_time, p.end_time),
                    "headers": PREFER_UTC,
                }
                for i, p in enumerate(chunk)
            ]
            data = await self._call(
                "POST", "/$batch", "batch_calendar_view", json={"requests": requests}, retry_server_errors=True
            )

            by_id = {r.get("id"): r for r in data.get("responses", [])}
            for i, p in enumerate(chunk):
                item = by_id.get(str(i))
                views.append(self._view_from_batch_response(p.remote_user_id, item))

        logger.info("Batched calendar views fetched", view_count=len(views))
        return views

    def _view_from_batch_response(self, remote_user_id: str, item: dict | None) -> CalendarView:
        if item is None:
            return CalendarView(
                remote_user_id=remote_user_id,
                error=RemoteError(code="missing", message="No response in batch"),
            )
        body = item.get("body") or {}
        status = int(item.get("status", 0))
        if status >= 400 or "error" in body:
            error = body.get("error") or {}
            return CalendarView(
                remote_user_id=remote_user_id,
                error=RemoteError(
                    code=str(error.get("code", status)),
                    message=error.get("message", f"HTTP {status}"),
                ),
            )
        return CalendarView(
            remote_user_id=remote_user_id,
            events=[parse_event(e) for e in body.get("value", [])],
        )

    async def create_subscription(
        self, notification_url: str, remote_user_id: str
    ) -> RemoteSubscription:
        payload = {
            "changeType": SUBSCRIPTION_CHANGE_TYPE,
            "notificationUrl": notification_url,
            "resource": f"/users/{remote_user_id}/events",
            "expirationDateTime": format_utc(datetime.now(UTC) + SUBSCRIPTION_EXPIRATION),
            "clientState": secrets.token_hex(16),
        }
        data = await self._call("POST", "/subscriptions", "create_subscription", json=payload)
        subscription = _parse_subscription(data, creator_id=remote_user_id)
        # Graph does not echo clientState back
        subscription.client_state = subscription.client_state or payload["clientState"]
        logger.info("Subscription created", subscription_id=subscription.id, remote_user_id=remote_user_id)
        return subscription

    async def renew_subscription(
        self, notification_url: str, remote_user_id: str, subscription: RemoteSubscription
    ) -> RemoteSubscription:
        expiration = format_utc(datetime.now(UTC) + SUBSCRIPTION_EXPIRATION)
        await self._call(
            "PATCH",
            f"/subscriptions/{subscription.id}",
            "renew_subscription",
            json={"expirationDateTime": expiration},
        )
        renewed = subscription.model_copy(update={"expiration_datetime": expiration})
        logger.info("Subscription renewed", subscription_id=subscription.id, expires=expiration)
        return renewed

    async def delete_subscription(self, subscription: RemoteSubscription) -> None:
        await self._call("DELETE", f"/subscriptions/{subscription.id}", "delete_subscription")
        logger.info("Subscription deleted", subscription_id=subscription.id)

    async def list_subscriptions(self) -> list[RemoteSubscription]:
        data = await self._call("GET", "/subscriptions", "list_subscriptions")
        return [_parse_subscription(item) for item in data.get("value", [])]

    async def get_mailbox_settings(self, remote_user_id: str) -> MailboxSettings:
        data = await self._call("GET", f"/users/{remote_user_id}/mailboxSettings", "mailbox_settings")
        return MailboxSettings(time_zone=data.get("timeZone") or "UTC")

    async def get_notification_data(self, notification: Notification) -> Notification:
        """Hydrate a bare change notification with the full event."""
        resource = notification.resource
        if not resource.startswith("/"):
            resource = "/" + resource
        data = await self._call("GET", resource, "get_notification_data", headers=PREFER_UTC)
        notification.event = parse_event(data)
        notification.is_bare = False
        return notification

    async def respond_to_event(self, remote_user_id: str, event_id: str, response: str) -> None:
        try:
            action = RESPONSE_ACTIONS[response]
        except KeyError:
            raise RemoteCalendarError(
                f"Cannot respond to event with {response!r}", kind=RemoteErrorKind.UNSUPPORTED
            ) from None
        await self._call(
            "POST",
            f"/users/{remote_user_id}/events/{event_id}/{action}",
            "respond_to_event",
            json={"sendResponse": True},
        )
        logger.info("Event response sent", remote_user_id=remote_user_id, event_id=event_id, response=response)


class AppTokenSource(TokenSource):
    """Client-credentials token for the application itself."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str):
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._token: dict = {}

    async def access_token(self) -> str:
        if self._token and self._token["expires_at"] - 60 > time.time():
            return self._token["access_token"]
        self._token = await post_token_request(
            token_url(self._tenant_id),
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": GRAPH_SCOPE_DEFAULT,
                "grant_type": "client_credentials",
            },
            operation="client_credentials",
        )
        return self._token["access_token"]


class GraphProvider(RemoteCalendarProvider):
    name = "msgraph"
    features = ProviderFeatures(event_notifications=True, superuser=True)

    def __init__(self, app_settings=None):
        self._settings = app_settings or settings
        self._app_tokens: AppTokenSource | None = None

    def make_user_client(
        self, token: dict, on_refresh: TokenRefreshCallback | None = None
    ) -> RemoteCalendarClient:
        return GraphCalendarClient(UserTokenSource(self, token, on_refresh))

    def make_superuser_client(self) -> RemoteCalendarClient:
        if not self._settings.superuser_configured():
            raise RemoteCalendarError(
                "Superuser client is not configured",
                kind=RemoteErrorKind.SUPERUSER_NOT_SUPPORTED,
            )
        if self._app_tokens is None:
            self._app_tokens = AppTokenSource(
                self._settings.MSGRAPH_TENANT_ID,
                self._settings.MSGRAPH_CLIENT_ID,
                self._settings.MSGRAPH_CLIENT_SECRET,
            )
        return GraphCalendarClient(self._app_tokens)

    async def refresh_token(self, refresh_token: str) -> dict:
        token = await post_token_request(
            token_url(self._settings.MSGRAPH_TENANT_ID or "common"),
            {
                "client_id": self._settings.MSGRAPH_CLIENT_ID or "",
                "client_secret": self._settings.MSGRAPH_CLIENT_SECRET or "",
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": GRAPH_USER_SCOPES,
            },
            operation="token_refresh",
        )
        token["refresh_token"] = token["refresh_token"] or refresh_token
        return token
