"""
Background job runner.

``calsync-worker [job]`` runs one registered job. Without an argument the
WORKER_JOB setting picks it; the default ``all`` runs the status sync,
daily summary and subscription renewal schedulers side by side.
"""

import asyncio
import sys
from collections.abc import Awaitable, Callable, Sequence

from calsync.config import settings
from calsync.infrastructure.observability.logging import get_logger, setup_logging
from calsync.jobs.daily_summary_job import start_daily_summary_scheduler
from calsync.jobs.status_sync_job import run_status_sync_once, start_status_sync_scheduler
from calsync.jobs.subscription_renewal_job import start_subscription_renewal_scheduler

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

SCHEDULED_JOBS = ("status_sync", "daily_summary", "subscription_renewal")


async def run_all_schedulers() -> None:
    """Run every looping scheduler; the first one to fail stops the worker."""
    await asyncio.gather(*(JOB_REGISTRY[name]() for name in SCHEDULED_JOBS))


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "all": run_all_schedulers,
    "status_sync": start_status_sync_scheduler,
    "status_sync_once": run_status_sync_once,
    "daily_summary": start_daily_summary_scheduler,
    "subscription_renewal": start_subscription_renewal_scheduler,
}


def resolve_job_name(argv: Sequence[str] | None = None) -> str:
    """Job named on the command line, else the WORKER_JOB setting."""
    args = sys.argv[1:] if argv is None else argv
    name = args[0] if args else settings.WORKER_JOB
    return name.strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    name = (job_name or resolve_job_name()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}")

    logger.info("Starting background worker", job=name, provider=settings.CALENDAR_PROVIDER)
    await job()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    asyncio.run(run_worker(resolve_job_name()))


if __name__ == "__main__":
    main()
