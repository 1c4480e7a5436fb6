"""
Tests for the scheduled job wrappers.
"""

from datetime import UTC, datetime

import pytest

from calsync.engine.subscriptions import Subscriptions
from calsync.jobs.daily_summary_job import DailySummaryJob
from calsync.jobs.status_sync_job import StatusSyncJob
from calsync.jobs.subscription_renewal_job import SubscriptionRenewalJob
from calsync.models.domain.chat_domain import STATUS_ONLINE
from calsync.models.domain.user_domain import DailySummarySettings
from calsync.services.calendar.remote_client import RemoteCalendarError, RemoteErrorKind


@pytest.mark.asyncio
async def test_status_sync_job_reports_summary(env, chat, remote_client, link_user, event_factory):
    await link_user(update_status_from_options="dnd")
    chat.set_status("user-1", STATUS_ONLINE)
    remote_client.events["remote-1"] = [event_factory("meeting")]
    job = StatusSyncJob(env)

    metrics = await job.run_once()

    assert metrics["job_run"] == "status_sync"
    assert metrics["users_processed"] == 1
    assert metrics["users_status_changed"] == 1
    assert job.is_running is False
    assert job.last_run_time is not None


@pytest.mark.asyncio
async def test_status_sync_job_skips_overlapping_run(env):
    job = StatusSyncJob(env)
    job.is_running = True

    assert await job.run_once() == {"skipped": True, "reason": "already_running"}


@pytest.mark.asyncio
async def test_daily_summary_job_counts_posts(env, poster, link_user):
    await link_user(daily_summary=DailySummarySettings(enable=True, post_time="9:00AM", timezone="UTC"))

    metrics = await DailySummaryJob(env).run_once(datetime(2024, 5, 6, 9, 0, tzinfo=UTC))

    assert metrics["summaries_posted"] == 1
    assert len(poster.dms) == 1


@pytest.mark.asyncio
async def test_renewal_job_counts_outcomes(env, remote_client, link_user):
    await link_user("user-1", "remote-1")
    await link_user("user-2", "remote-2")
    await link_user("user-3", "remote-3")
    subscriptions = Subscriptions(env)
    await subscriptions.create_my_event_subscription("user-1")
    await subscriptions.create_my_event_subscription("user-2")
    await env.store.delete_subscription("sub-2")

    metrics = await SubscriptionRenewalJob(env).run_once()

    assert metrics["users_processed"] == 3
    assert metrics["subscriptions_renewed"] == 1
    assert metrics["renewal_failures"] == 1
    assert metrics["users_without_subscription"] == 1


@pytest.mark.asyncio
async def test_renewal_job_survives_remote_errors(env, remote_client, link_user):
    await link_user()
    await Subscriptions(env).create_my_event_subscription("user-1")
    remote_client.renew_error = RemoteCalendarError("denied", kind=RemoteErrorKind.UNAUTHORIZED)

    metrics = await SubscriptionRenewalJob(env).run_once()

    assert metrics["renewal_failures"] == 1
    assert metrics["subscriptions_renewed"] == 0
