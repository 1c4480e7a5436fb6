"""
Batch status sync across linked users.

One pass loads the user index, fetches a short calendar window for every
eligible user (one batched call with application credentials, or one call
per user with their own token), delivers reminders, then reconciles
presence and custom status per user. Per-user failures are counted and
logged with a bounded number of lines; they never abort the pass.
"""

from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from calsync.engine.custom_status import set_custom_status_from_calendar_view
from calsync.engine.env import Env, make_superuser_client, make_user_client
from calsync.engine.events import (
    CALENDAR_VIEW_TIME_WINDOW,
    exclude_declined_events,
    filter_busy_and_attendee_events,
    get_merged_events,
    sort_events,
)
from calsync.engine.reminders import notify_upcoming_events
from calsync.engine.status import StatusUpdateError, set_status_from_calendar_view
from calsync.engine.views import json_block
from calsync.infrastructure.observability.logging import LogLimiter, get_logger
from calsync.models.domain.calendar_domain import CalendarView, ViewCalendarParams
from calsync.models.domain.user_domain import NOT_SET_STATUS_OPTION, StoredUser, UserIndexEntry
from calsync.services.calendar.remote_client import RemoteCalendarClient, RemoteCalendarError
from calsync.services.chat.platform_client import ChatPlatformError
from calsync.services.store.kv_store import StoreError, StoreNotFoundError

logger = get_logger(__name__)

NO_USERS_IN_INDEX = "No users found in user index"
NO_CONNECTED_USERS = "No connected users found"
NO_USERS_NEED_SYNC = "No users need to be synced"
NO_CALENDAR_VIEWS = "No calendar views found"
NO_USERS_WANT_STATUS_UPDATES = "No users want their status updated"


@dataclass(slots=True)
class StatusSyncJobSummary:
    users_processed: int = 0
    users_status_changed: int = 0
    users_failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class AvailabilityError(Exception):
    """
    A sync pass failed as a whole.

    ``result`` carries the human readable outcome when one was produced,
    ``summary`` the counters collected up to the failure.
    """

    def __init__(self, message: str, result: str = "", summary: StatusSyncJobSummary | None = None):
        super().__init__(message)
        self.result = result
        self.summary = summary or StatusSyncJobSummary()


class _PassClients:
    """Calendar clients opened during one pass, closed together at the end."""

    def __init__(self, env: Env, superuser: RemoteCalendarClient | None):
        self._env = env
        self.superuser = superuser
        self._per_user: dict[str, RemoteCalendarClient] = {}

    @property
    def fetch_individually(self) -> bool:
        return self.superuser is None

    async def for_user(self, chat_user_id: str) -> RemoteCalendarClient:
        if self.superuser is not None:
            return self.superuser
        client = self._per_user.get(chat_user_id)
        if client is None:
            client = self._per_user[chat_user_id] = await make_user_client(self._env, chat_user_id)
        return client

    async def close(self) -> None:
        for client in self._per_user.values():
            await client.close()
        if self.superuser is not None:
            await self.superuser.close()


class Availability:
    """Status sync entry points used by the scheduled job and the admin API."""

    def __init__(self, env: Env):
        self.env = env

    async def sync(self, chat_user_id: str) -> tuple[str, StatusSyncJobSummary]:
        """Run a sync pass for a single user."""
        try:
            entry = await self.env.store.load_user_from_index(chat_user_id)
        except StoreError as e:
            raise AvailabilityError(f"Error loading user {chat_user_id} from index: {e}") from e

        return await self._sync_users([entry], self._superuser_client())

    async def sync_all(self) -> tuple[str, StatusSyncJobSummary]:
        """
        Run a sync pass for every indexed user.

        A pass that fails after producing a result message is reported as
        that result instead of raising.
        """
        try:
            index = await self.env.store.load_user_index()
        except StoreNotFoundError:
            return NO_USERS_IN_INDEX, StatusSyncJobSummary()
        except StoreError as e:
            raise AvailabilityError(f"Error loading users from user index: {e}") from e

        try:
            return await self._sync_users(index, self._superuser_client())
        except AvailabilityError as e:
            if e.result:
                return e.result, e.summary
            raise

    def _superuser_client(self) -> RemoteCalendarClient | None:
        try:
            return make_superuser_client(self.env)
        except RemoteCalendarError as e:
            raise AvailabilityError(f"Error creating superuser client: {e}") from e

    async def get_calendar_views(
        self, client: RemoteCalendarClient, users: list[StoredUser], now: datetime | None = None
    ) -> list[CalendarView]:
        start = now or datetime.now(UTC)
        end = start + CALENDAR_VIEW_TIME_WINDOW
        params = [ViewCalendarParams(remote_user_id=u.remote.id, start_time=start, end_time=end) for u in users]
        return await client.do_batch_view_calendar_requests(params)

    async def _sync_users(
        self, index: list[UserIndexEntry], superuser: RemoteCalendarClient | None
    ) -> tuple[str, StatusSyncJobSummary]:
        summary = StatusSyncJobSummary()
        clients = _PassClients(self.env, superuser)
        try:
            if not index:
                return NO_CONNECTED_USERS, summary
            summary.users_processed = len(index)
            limiter = LogLimiter(logger)

            try:
                users, views = await self._retrieve_users_to_sync(index, summary, limiter, clients)
            except AvailabilityError as e:
                raise AvailabilityError(
                    f"Error retrieving users to sync (individually={clients.fetch_individually}): {e}",
                    result=str(e),
                    summary=summary,
                ) from e

            await self._deliver_reminders(users, views, limiter, clients)

            out, changed, failed = await self._set_user_statuses(users, views, limiter, summary)
            summary.users_failed += failed
            summary.users_status_changed = changed
            return out, summary
        finally:
            await clients.close()

    async def _retrieve_users_to_sync(
        self,
        index: list[UserIndexEntry],
        summary: StatusSyncJobSummary,
        limiter: LogLimiter,
        clients: _PassClients,
    ) -> tuple[list[StoredUser], list[CalendarView]]:
        start = datetime.now(UTC)
        end = start + CALENDAR_VIEW_TIME_WINDOW

        users: list[StoredUser] = []
        views: list[CalendarView] = []
        for entry in index:
            try:
                user = await self.env.store.load_user(entry.chat_user_id)
            except StoreError as e:
                summary.users_failed += 1
                limiter.warning("Error loading user from index", user_id=entry.chat_user_id, error=str(e))
                continue

            if not (
                user.is_configured_for_status_updates()
                or user.is_configured_for_custom_status_updates()
                or user.settings.receive_reminders
            ):
                continue

            if clients.fetch_individually:
                try:
                    client = await clients.for_user(user.chat_user_id)
                    events = await client.get_events_between_dates(user.remote.id, start, end)
                except RemoteCalendarError as e:
                    summary.users_failed += 1
                    limiter.warning(
                        "Error getting calendar events", user_id=user.chat_user_id, kind=e.kind.value, error=str(e)
                    )
                    continue
                except StoreError as e:
                    summary.users_failed += 1
                    limiter.warning("Error reading user OAuth token", user_id=user.chat_user_id, error=str(e))
                    continue
                views.append(CalendarView(remote_user_id=user.remote.id, events=exclude_declined_events(events)))

            users.append(user)

        if not users:
            raise AvailabilityError(NO_USERS_NEED_SYNC)

        if not clients.fetch_individually:
            try:
                views = await self.get_calendar_views(clients.superuser, users, start)
            except RemoteCalendarError as e:
                raise AvailabilityError(f"Error getting calendar views for connected users: {e}") from e

        if not views:
            raise AvailabilityError(NO_CALENDAR_VIEWS)

        for view in views:
            view.events = sort_events(view.events)

        return users, views

    async def _deliver_reminders(
        self,
        users: list[StoredUser],
        views: list[CalendarView],
        limiter: LogLimiter,
        clients: _PassClients,
    ) -> None:
        by_remote_id = {u.remote.id: u for u in users if u.settings.receive_reminders}
        if not by_remote_id:
            return

        for view in views:
            user = by_remote_id.get(view.remote_user_id)
            if user is None:
                continue
            if view.error is not None:
                limiter.warning(
                    "Error getting availability", user_id=user.chat_user_id, error=view.error.message
                )
                continue

            try:
                client = await clients.for_user(user.chat_user_id)
            except (RemoteCalendarError, StoreError) as e:
                limiter.warning("Error getting calendar client for reminders", user_id=user.chat_user_id, error=str(e))
                continue
            await notify_upcoming_events(self.env, client, user, view.events)

    async def _set_user_statuses(
        self,
        users: list[StoredUser],
        views: list[CalendarView],
        limiter: LogLimiter,
        summary: StatusSyncJobSummary,
    ) -> tuple[str, int, int]:
        changed_count, failed_count = 0, 0
        to_update = [
            u for u in users if u.is_configured_for_status_updates() or u.is_configured_for_custom_status_updates()
        ]
        if not to_update:
            return NO_USERS_WANT_STATUS_UPDATES, changed_count, failed_count

        by_remote_id = {u.remote.id: u for u in to_update}
        try:
            statuses = await self.env.chat.get_user_statuses_by_ids([u.chat_user_id for u in to_update])
        except ChatPlatformError as e:
            raise AvailabilityError(
                f"Error getting chat user statuses for connected users: {e}", summary=summary
            ) from e
        status_by_user = {s.user_id: s for s in statuses}

        res = ""
        for view in views:
            user = by_remote_id.get(view.remote_user_id)
            if user is None:
                continue
            uid = user.chat_user_id
            if view.error is not None:
                limiter.warning("Error getting availability", user_id=uid, error=view.error.message)
                failed_count += 1
                continue

            status = status_by_user.get(uid)
            if status is None:
                continue

            events = get_merged_events(filter_busy_and_attendee_events(view.events))

            async with self.env.user_locks.lock(uid):
                # Reload under the lock; webhook writes may have landed since the pass started
                try:
                    user = await self.env.store.load_user(uid)
                except StoreError as e:
                    limiter.warning("Error reloading user before status update", user_id=uid, error=str(e))
                    failed_count += 1
                    continue

                if user.is_configured_for_status_updates():
                    try:
                        res, status_changed = await set_status_from_calendar_view(self.env, user, status, events)
                    except StatusUpdateError as e:
                        res, status_changed = "", e.status_changed
                        limiter.warning("Error setting user status", user_id=uid, error=str(e))
                        failed_count += 1
                    if status_changed:
                        changed_count += 1

                if user.is_configured_for_custom_status_updates():
                    try:
                        res, status_changed = await set_custom_status_from_calendar_view(self.env, user, events)
                    except StatusUpdateError as e:
                        res, status_changed = "", e.status_changed
                        limiter.warning("Error setting user custom status", user_id=uid, error=str(e))
                        failed_count += 1
                    # Count per user: presence updates already counted this user
                    if status_changed and user.settings.update_status_from_options == NOT_SET_STATUS_OPTION:
                        changed_count += 1

        if res:
            return res, changed_count, failed_count

        return json_block([v.to_dict() for v in views]), changed_count, failed_count
