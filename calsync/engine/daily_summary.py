"""
Daily agenda delivery at each user's configured post time.
"""

import re
from datetime import UTC, datetime, time, timedelta

from calsync.engine.env import Env, make_superuser_client, make_user_client
from calsync.engine.events import exclude_declined_events, sort_events
from calsync.engine.views import render_calendar_view
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.domain.calendar_domain import CalendarView, ViewCalendarParams
from calsync.models.domain.user_domain import DailySummarySettings, StoredUser
from calsync.services.calendar.remote_client import RemoteCalendarClient, RemoteCalendarError
from calsync.services.chat.platform_client import ChatPlatformError
from calsync.services.store.kv_store import StoreError, StoreNotFoundError
from calsync.utils.tz import get_zone

logger = get_logger(__name__)

DAILY_SUMMARY_TIME_WINDOW = timedelta(minutes=2)
DAILY_SUMMARY_JOB_INTERVAL = timedelta(minutes=15)

_KITCHEN = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")


class DailySummaryError(Exception):
    """Custom exception for daily summary settings and delivery."""

    def __init__(self, message: str, user_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id


def convert_meridiem_to_upper_case(time_str: str) -> str:
    if len(time_str) < 2:
        return time_str
    meridiem = time_str[-2:].upper()
    if meridiem in ("AM", "PM"):
        return time_str[:-2] + meridiem
    return time_str


def parse_kitchen(time_str: str) -> time:
    """Parse a clock time like 9:15AM."""
    match = _KITCHEN.match(time_str)
    if not match:
        raise DailySummaryError(f"Invalid time value: {time_str}")
    hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3).upper()
    if not 1 <= hour <= 12 or minute > 59:
        raise DailySummaryError(f"Invalid time value: {time_str}")
    hour = hour % 12 + (12 if meridiem == "PM" else 0)
    return time(hour, minute)


def should_post_daily_summary(dsum: DailySummarySettings | None, now: datetime) -> bool:
    """
    Whether the summary is due: enabled, a weekday in the user's timezone,
    within two minutes of the post time, and not posted in the last two minutes.

    Raises:
        DailySummaryError: If the stored settings cannot be parsed
    """
    if dsum is None or not dsum.enable:
        return False

    if dsum.last_post_time:
        try:
            last_post = datetime.fromisoformat(dsum.last_post_time.replace("Z", "+00:00"))
        except ValueError as e:
            raise DailySummaryError(f"Failed to parse last post time: {dsum.last_post_time}") from e
        if now - last_post < DAILY_SUMMARY_TIME_WINDOW:
            return False

    zone = get_zone(dsum.timezone)
    post_time = parse_kitchen(dsum.post_time)

    local_now = now.astimezone(zone)
    if local_now.weekday() >= 5:
        return False

    target = local_now.replace(hour=post_time.hour, minute=post_time.minute, second=0, microsecond=0)
    return abs(local_now - target) < DAILY_SUMMARY_TIME_WINDOW


def get_today_hours_for_timezone(now: datetime, timezone: str) -> tuple[datetime, datetime]:
    local = now.astimezone(get_zone(timezone))
    start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(hours=24)


class DailySummary:
    def __init__(self, env: Env):
        self.env = env

    async def _get_timezone(self, client: RemoteCalendarClient, user: StoredUser) -> str:
        return (await client.get_mailbox_settings(user.remote.id)).time_zone

    async def get_day_summary_for_user(self, now: datetime, chat_user_id: str) -> str:
        """Render the agenda for the day containing ``now`` in the user's timezone."""
        user = await self.env.store.load_user(chat_user_id)
        client = await make_user_client(self.env, chat_user_id)
        try:
            timezone = await self._get_timezone(client, user)
            start, end = get_today_hours_for_timezone(now, timezone)
            events = await client.get_default_calendar_view(user.remote.id, start, end)
        finally:
            await client.close()
        return render_calendar_view(sort_events(exclude_declined_events(events)), timezone)

    async def get_daily_summary_settings_for_user(self, chat_user_id: str) -> DailySummarySettings | None:
        user = await self.env.store.load_user(chat_user_id)
        return user.settings.daily_summary

    async def set_daily_summary_post_time(self, chat_user_id: str, time_str: str) -> DailySummarySettings:
        """Store a new post time (multiple of the job interval) and the user's current timezone."""
        time_str = convert_meridiem_to_upper_case(time_str.strip())
        post_time = parse_kitchen(time_str)
        interval_minutes = int(DAILY_SUMMARY_JOB_INTERVAL.total_seconds() // 60)
        if post_time.minute % interval_minutes != 0:
            raise DailySummaryError(f"Time must be a multiple of {interval_minutes} minutes", chat_user_id)

        client = await make_user_client(self.env, chat_user_id)
        try:
            user = await self.env.store.load_user(chat_user_id)
            timezone = await self._get_timezone(client, user)
        finally:
            await client.close()

        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            dsum = user.settings.daily_summary or DailySummarySettings()
            dsum.post_time = time_str
            dsum.timezone = timezone
            user.settings.daily_summary = dsum
            await self.env.store.store_user(user)
        return dsum

    async def set_daily_summary_enabled(self, chat_user_id: str, enable: bool) -> DailySummarySettings:
        async with self.env.user_locks.lock(chat_user_id):
            user = await self.env.store.load_user(chat_user_id)
            dsum = user.settings.daily_summary or DailySummarySettings()
            dsum.enable = enable
            user.settings.daily_summary = dsum
            await self.env.store.store_user(user)
        return dsum

    async def process_all_daily_summary(self, now: datetime | None = None) -> int:
        """
        Post due daily summaries for every indexed user.

        Returns the number of summaries posted. Per-user failures are logged
        and skipped; index and batch failures raise.
        """
        now = now or datetime.now(UTC)
        try:
            index = await self.env.store.load_user_index()
        except StoreNotFoundError:
            return 0
        if not index:
            return 0

        superuser = make_superuser_client(self.env)
        try:
            views, by_remote_id = await self._collect_views(index, now, superuser)
        finally:
            if superuser is not None:
                await superuser.close()

        posted = 0
        for view in views:
            user = by_remote_id.get(view.remote_user_id)
            if user is None or user.settings.daily_summary is None:
                continue
            if view.error is not None:
                logger.warning(
                    "Error fetching calendar for daily summary",
                    user_id=user.chat_user_id,
                    code=view.error.code,
                    error=view.error.message,
                )
                continue

            dsum = user.settings.daily_summary
            message = render_calendar_view(sort_events(view.events), dsum.timezone)
            try:
                await self.env.poster.dm(user.chat_user_id, message)
            except ChatPlatformError as e:
                logger.warning("Error sending daily summary", user_id=user.chat_user_id, error=str(e))
                continue
            posted += 1

            await self._record_post(user.chat_user_id)

        logger.info("Processed daily summary", users=posted)
        return posted

    async def _record_post(self, chat_user_id: str) -> None:
        async with self.env.user_locks.lock(chat_user_id):
            try:
                user = await self.env.store.load_user(chat_user_id)
                if user.settings.daily_summary is None:
                    return
                user.settings.daily_summary.last_post_time = datetime.now(UTC).isoformat(timespec="seconds")
                await self.env.store.store_user(user)
            except StoreError as e:
                logger.warning("Error storing daily summary last post time", user_id=chat_user_id, error=str(e))

    async def _collect_views(
        self, index, now: datetime, superuser: RemoteCalendarClient | None
    ) -> tuple[list[CalendarView], dict[str, StoredUser]]:
        views: list[CalendarView] = []
        requests: list[ViewCalendarParams] = []
        by_remote_id: dict[str, StoredUser] = {}

        for entry in index:
            try:
                user = await self.env.store.load_user(entry.chat_user_id)
            except StoreError as e:
                logger.warning("Error loading user for daily summary", user_id=entry.chat_user_id, error=str(e))
                continue
            by_remote_id[user.remote.id] = user

            dsum = user.settings.daily_summary
            try:
                if not should_post_daily_summary(dsum, now):
                    continue
            except DailySummaryError as e:
                logger.warning("Error checking daily summary should be posted", user_id=user.chat_user_id, error=str(e))
                continue

            if superuser is None:
                view = await self._fetch_individually(user, now)
                if view is not None:
                    views.append(view)
            else:
                start, end = get_today_hours_for_timezone(now, dsum.timezone)
                requests.append(ViewCalendarParams(remote_user_id=user.remote.id, start_time=start, end_time=end))

        if requests:
            views = await superuser.do_batch_view_calendar_requests(requests)
        return views, by_remote_id

    async def _fetch_individually(self, user: StoredUser, now: datetime) -> CalendarView | None:
        try:
            client = await make_user_client(self.env, user.chat_user_id)
        except (RemoteCalendarError, StoreError) as e:
            logger.error("Error creating user client", user_id=user.chat_user_id, error=str(e))
            return None
        try:
            timezone = await self._get_timezone(client, user)
            start, end = get_today_hours_for_timezone(now, timezone)
            events = await client.get_default_calendar_view(user.remote.id, start, end)
        except (RemoteCalendarError, StoreError) as e:
            logger.error("Error getting calendar events for daily summary", user_id=user.chat_user_id, error=str(e))
            return None
        finally:
            await client.close()
        return CalendarView(remote_user_id=user.remote.id, events=events)
