"""
Daily Summary Job.
Checks every few minutes for users whose daily agenda is due and posts it.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from calsync.config import settings
from calsync.engine.daily_summary import DailySummary
from calsync.engine.env import Env, open_env
from calsync.infrastructure.observability.logging import get_logger, log_job_summary

logger = get_logger(__name__)

JOB_NAME = "daily_summary"

# Must stay below the two minute posting window
JOB_INTERVAL = timedelta(minutes=1)


class DailySummaryJob:
    def __init__(self, env: Env):
        self.daily_summary = DailySummary(env)
        self.is_running = False
        self.last_run_time: datetime | None = None

    async def run_once(self, now: datetime | None = None) -> dict:
        if self.is_running:
            logger.warning("Daily summary job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        start_time = datetime.now(UTC)
        try:
            self.is_running = True
            posted = await self.daily_summary.process_all_daily_summary(now or start_time)
            self.last_run_time = datetime.now(UTC)
            metrics = {
                "job_run": JOB_NAME,
                "start_time": start_time.isoformat(),
                "total_duration_seconds": round((self.last_run_time - start_time).total_seconds(), 2),
                "summaries_posted": posted,
            }
            log_job_summary(JOB_NAME, metrics)
            return metrics
        finally:
            self.is_running = False


async def start_daily_summary_scheduler():
    interval = JOB_INTERVAL.total_seconds()
    logger.info("Starting daily summary job scheduler", interval_seconds=interval)

    async with open_env(settings) as env:
        job = DailySummaryJob(env)
        while True:
            try:
                await job.run_once()
            except Exception as e:
                log_job_summary(JOB_NAME, {"job_run": JOB_NAME}, error=f"{type(e).__name__}: {e}")

            await asyncio.sleep(interval)
