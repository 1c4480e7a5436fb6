"""
Status Sync Job.
Runs the availability sync pass for every linked user on a fixed interval.
"""

import asyncio
from datetime import UTC, datetime

from calsync.config import settings
from calsync.engine.availability import Availability, AvailabilityError, StatusSyncJobSummary
from calsync.engine.env import Env, open_env
from calsync.engine.events import STATUS_SYNC_JOB_INTERVAL
from calsync.infrastructure.observability.logging import get_logger, log_job_summary

logger = get_logger(__name__)

JOB_NAME = "status_sync"


class StatusSyncMetrics:
    """Metrics tracking for status sync runs."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = datetime.now(UTC)
        self.summary = StatusSyncJobSummary()
        self.result = ""
        self.total_duration_seconds = 0.0

    def finalize(self, result: str, summary: StatusSyncJobSummary):
        self.result = result
        self.summary = summary
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": JOB_NAME,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            **self.summary.to_dict(),
        }


class StatusSyncJob:
    def __init__(self, env: Env):
        self.availability = Availability(env)
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = StatusSyncMetrics()

    async def run_once(self) -> dict:
        """
        Run a single status sync pass.

        Raises:
            AvailabilityError: If the pass failed as a whole
        """
        if self.is_running:
            logger.warning("Status sync job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            result, summary = await self.availability.sync_all()

            self.job_metrics.finalize(result, summary)
            self.last_run_time = datetime.now(UTC)
            metrics = self.job_metrics.to_dict()
            log_job_summary(JOB_NAME, metrics)
            return metrics

        except AvailabilityError as e:
            self.job_metrics.finalize("", e.summary)
            log_job_summary(JOB_NAME, self.job_metrics.to_dict(), error=str(e))
            raise

        finally:
            self.is_running = False


async def start_status_sync_scheduler():
    """Run the status sync pass every sync interval until cancelled."""
    interval = STATUS_SYNC_JOB_INTERVAL.total_seconds()
    logger.info("Starting status sync job scheduler", interval_seconds=interval)

    async with open_env(settings) as env:
        job = StatusSyncJob(env)
        while True:
            try:
                await job.run_once()
            except AvailabilityError as e:
                logger.error("Status sync pass failed", error=str(e))
            except Exception as e:
                logger.error("Error in status sync job scheduler", error=str(e), error_type=type(e).__name__)

            await asyncio.sleep(interval)


async def run_status_sync_once():
    """Single pass for cron-style schedulers."""
    async with open_env(settings) as env:
        await StatusSyncJob(env).run_once()
