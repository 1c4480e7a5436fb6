"""
Subscription Renewal Job.
Extends every linked user's event subscription well before it lapses.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from calsync.config import settings
from calsync.engine.env import Env, open_env
from calsync.engine.subscriptions import SubscriptionError, Subscriptions
from calsync.infrastructure.observability.logging import LogLimiter, get_logger, log_job_summary
from calsync.services.calendar.remote_client import RemoteCalendarError
from calsync.services.store.kv_store import StoreError, StoreNotFoundError

logger = get_logger(__name__)

JOB_NAME = "subscription_renewal"

# Subscriptions last just under three days
JOB_INTERVAL = timedelta(hours=24)


class RenewalMetrics:
    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.users_processed = 0
        self.subscriptions_renewed = 0
        self.users_without_subscription = 0
        self.renewal_failures = 0

    def to_dict(self) -> dict:
        return {
            "job_run": JOB_NAME,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round((datetime.now(UTC) - self.start_time).total_seconds(), 2),
            "users_processed": self.users_processed,
            "subscriptions_renewed": self.subscriptions_renewed,
            "users_without_subscription": self.users_without_subscription,
            "renewal_failures": self.renewal_failures,
        }


class SubscriptionRenewalJob:
    def __init__(self, env: Env):
        self.env = env
        self.subscriptions = Subscriptions(env)
        self.job_metrics = RenewalMetrics()

    async def run_once(self) -> dict:
        """Renew each indexed user's subscription; per-user failures are counted, not raised."""
        self.job_metrics.reset()
        try:
            index = await self.env.store.load_user_index()
        except StoreNotFoundError:
            index = []

        limiter = LogLimiter(logger)
        for entry in index:
            self.job_metrics.users_processed += 1
            try:
                renewed = await self.subscriptions.renew_my_event_subscription(entry.chat_user_id)
            except (StoreError, RemoteCalendarError, SubscriptionError) as e:
                self.job_metrics.renewal_failures += 1
                limiter.warning("Error renewing subscription", user_id=entry.chat_user_id, error=str(e))
                continue

            if renewed is None:
                self.job_metrics.users_without_subscription += 1
            else:
                self.job_metrics.subscriptions_renewed += 1

        metrics = self.job_metrics.to_dict()
        log_job_summary(JOB_NAME, metrics)
        return metrics


async def start_subscription_renewal_scheduler():
    interval = JOB_INTERVAL.total_seconds()
    logger.info("Starting subscription renewal job scheduler", interval_seconds=interval)

    async with open_env(settings) as env:
        job = SubscriptionRenewalJob(env)
        while True:
            try:
                await job.run_once()
            except Exception as e:
                log_job_summary(JOB_NAME, {"job_run": JOB_NAME}, error=f"{type(e).__name__}: {e}")
                await asyncio.sleep(60)
                continue

            await asyncio.sleep(interval)
