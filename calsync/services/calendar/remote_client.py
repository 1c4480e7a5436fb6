"""
Provider-neutral remote calendar interfaces.

A RemoteCalendarProvider is selected once at startup and hands out clients:
per-user clients authenticated with the user's OAuth token, and (where the
provider supports it) a superuser client using application credentials that
can read many users' calendars in one batched call.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import httpx

from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import (
    CalendarView,
    Event,
    MailboxSettings,
    Notification,
    RemoteError,
    RemoteSubscription,
    RemoteUser,
    ViewCalendarParams,
)
from calsync.services.infrastructure.http_client import (
    create_async_client,
    decode_json,
    request_with_retry,
)

logger = get_logger(__name__)

# Refresh access tokens this many seconds before they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class RemoteErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    REFRESH_TOKEN_NOT_SET = "refresh_token_not_set"
    SUPERUSER_NOT_SUPPORTED = "superuser_not_supported"
    THROTTLED = "throttled"
    TRANSIENT = "transient"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


class RemoteCalendarError(Exception):
    """Custom exception for remote calendar API errors."""

    def __init__(
        self,
        message: str,
        kind: RemoteErrorKind = RemoteErrorKind.UNKNOWN,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.error_code = error_code


def kind_for_status(status_code: int) -> RemoteErrorKind:
    if status_code == 404:
        return RemoteErrorKind.NOT_FOUND
    if status_code in (401, 403):
        return RemoteErrorKind.UNAUTHORIZED
    if status_code == 429:
        return RemoteErrorKind.THROTTLED
    if status_code >= 500:
        return RemoteErrorKind.TRANSIENT
    return RemoteErrorKind.UNKNOWN


@dataclass(frozen=True, slots=True)
class ProviderFeatures:
    event_notifications: bool
    superuser: bool


TokenRefreshCallback = Callable[[dict], Awaitable[None]]


class TokenSource(ABC):
    @abstractmethod
    async def access_token(self) -> str: ...


class UserTokenSource(TokenSource):
    """
    Access token for one user, refreshed through the provider when stale.

    ``token`` is the stored OAuth blob: access_token, refresh_token and
    expires_at (unix seconds). Refreshed blobs are handed to ``on_refresh``
    for persistence.
    """

    def __init__(
        self,
        provider: "RemoteCalendarProvider",
        token: dict,
        on_refresh: TokenRefreshCallback | None = None,
    ):
        self._provider = provider
        self._token = dict(token)
        self._on_refresh = on_refresh

    async def access_token(self) -> str:
        expires_at = self._token.get("expires_at") or 0
        if self._token.get("access_token") and expires_at - TOKEN_EXPIRY_MARGIN_SECONDS > time.time():
            return self._token["access_token"]

        refresh_token = self._token.get("refresh_token")
        if not refresh_token:
            raise RemoteCalendarError(
                "Refresh token not set", kind=RemoteErrorKind.REFRESH_TOKEN_NOT_SET
            )

        self._token = await self._provider.refresh_token(refresh_token)
        if self._on_refresh is not None:
            await self._on_refresh(self._token)
        return self._token["access_token"]


class RemoteCalendarClient(ABC):
    """Operations the sync engine needs from a calendar provider."""

    @abstractmethod
    async def get_me(self) -> RemoteUser: ...

    @abstractmethod
    async def get_events_between_dates(
        self, remote_user_id: str, start: datetime, end: datetime
    ) -> list[Event]: ...

    async def get_default_calendar_view(
        self, remote_user_id: str, start: datetime, end: datetime
    ) -> list[Event]:
        return await self.get_events_between_dates(remote_user_id, start, end)

    async def do_batch_view_calendar_requests(
        self, params: list[ViewCalendarParams]
    ) -> list[CalendarView]:
        """Fetch several calendar views, reporting per-user failures inside each view."""
        views = []
        for p in params:
            try:
                events = await self.get_events_between_dates(p.remote_user_id, p.start_time, p.end_time)
                views.append(CalendarView(remote_user_id=p.remote_user_id, events=events))
            except RemoteCalendarError as e:
                views.append(
                    CalendarView(
                        remote_user_id=p.remote_user_id,
                        error=RemoteError(code=e.kind.value, message=str(e)),
                    )
                )
        return views

    @abstractmethod
    async def create_subscription(
        self, notification_url: str, remote_user_id: str
    ) -> RemoteSubscription: ...

    @abstractmethod
    async def renew_subscription(
        self, notification_url: str, remote_user_id: str, subscription: RemoteSubscription
    ) -> RemoteSubscription: ...

    @abstractmethod
    async def delete_subscription(self, subscription: RemoteSubscription) -> None: ...

    @abstractmethod
    async def list_subscriptions(self) -> list[RemoteSubscription]: ...

    @abstractmethod
    async def get_mailbox_settings(self, remote_user_id: str) -> MailboxSettings: ...

    @abstractmethod
    async def get_notification_data(self, notification: Notification) -> Notification: ...

    @abstractmethod
    async def respond_to_event(self, remote_user_id: str, event_id: str, response: str) -> None:
        """Answer an invitation with one of the RESPONSE_* values."""

    async def close(self) -> None:
        pass


class HTTPRemoteClient(RemoteCalendarClient):
    """Shared httpx transport: bearer auth, retry, error mapping."""

    base_url = ""

    def __init__(self, token_source: TokenSource, client: httpx.AsyncClient | None = None):
        self._tokens = token_source
        self._client = client or create_async_client()
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _auth_headers(self, extra: dict | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {await self._tokens.access_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _call(self, method: str, path: str, operation: str, headers: dict | None = None, **kwargs) -> dict:
        url = path if path.startswith("http") else self.base_url + path
        try:
            response = await request_with_retry(
                self._client, method, url, headers=await self._auth_headers(headers), **kwargs
            )
        except httpx.RequestError as e:
            logger.warning("Calendar API request error", operation=operation, error=str(e))
            raise RemoteCalendarError(
                f"{operation} failed: {e}", kind=RemoteErrorKind.TRANSIENT
            ) from e
        return self._handle_api_response(response, operation)

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        if response.is_success:
            try:
                return decode_json(response)
            except ValueError as e:
                raise RemoteCalendarError(f"Invalid response format: {e}") from e

        error_code, error_message = "", ""
        try:
            error_info = decode_json(response).get("error", {})
            if isinstance(error_info, dict):
                error_code = str(error_info.get("code", ""))
                error_message = error_info.get("message", "")
            else:
                error_code = str(error_info)
        except ValueError:
            error_message = response.text[:200] if response.text else ""

        logger.warning(
            "Calendar API error",
            operation=operation,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )
        raise RemoteCalendarError(
            f"{operation} failed (HTTP {response.status_code}): {error_message or error_code}",
            kind=kind_for_status(response.status_code),
            status_code=response.status_code,
            error_code=error_code,
        )


class RemoteCalendarProvider(ABC):
    """Factory for calendar clients of one provider."""

    name: str = ""
    features = ProviderFeatures(event_notifications=False, superuser=False)

    @abstractmethod
    def make_user_client(
        self, token: dict, on_refresh: TokenRefreshCallback | None = None
    ) -> RemoteCalendarClient: ...

    def make_superuser_client(self) -> RemoteCalendarClient:
        raise RemoteCalendarError(
            f"Superuser client is not supported by {self.name}",
            kind=RemoteErrorKind.SUPERUSER_NOT_SUPPORTED,
        )

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> dict: ...


async def post_token_request(url: str, data: dict, operation: str) -> dict:
    """POST a form-encoded OAuth token request and normalize the response."""
    async with create_async_client() as client:
        try:
            response = await request_with_retry(
                client,
                "POST",
                url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.RequestError as e:
            raise RemoteCalendarError(
                f"Network error during {operation}: {e}", kind=RemoteErrorKind.TRANSIENT
            ) from e

    try:
        body = decode_json(response)
    except ValueError:
        body = {}

    if not response.is_success or "access_token" not in body:
        error = body.get("error", "unknown_error")
        logger.warning("OAuth token request failed", operation=operation, status_code=response.status_code, error=error)
        kind = RemoteErrorKind.UNAUTHORIZED if error == "invalid_grant" else kind_for_status(response.status_code)
        raise RemoteCalendarError(f"{operation} failed: {error}", kind=kind, status_code=response.status_code)

    return {
        "access_token": body["access_token"],
        "refresh_token": body.get("refresh_token", ""),
        "token_type": body.get("token_type", "Bearer"),
        "expires_at": int(time.time()) + int(body.get("expires_in", 3600)),
    }
