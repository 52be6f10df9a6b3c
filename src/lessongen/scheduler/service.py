"""APScheduler wrapper running the seeding and pruning jobs."""

import logging
from typing import Any, Callable

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

# A seed run can outlast its interval; the DB leader lock covers other processes.
JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 300,
}


class SchedulerService:
    """
    Interval jobs for the worker process.

    With a persistent job store the registered callables must be importable
    module-level functions. ``database_url=None`` keeps jobs in memory.
    """

    def __init__(
        self,
        database_url: str | None = "sqlite:///data/scheduler.db",
        max_workers: int = 2,
        timezone: str = "UTC",
    ) -> None:
        jobstore = SQLAlchemyJobStore(url=database_url) if database_url else MemoryJobStore()
        self._scheduler = BackgroundScheduler(
            jobstores={"default": jobstore},
            executors={"default": ThreadPoolExecutor(max_workers=max_workers)},
            job_defaults=JOB_DEFAULTS,
            timezone=timezone,
        )
        logger.info(
            f"Scheduler using {'persistent' if database_url else 'in-memory'} job store, "
            f"{max_workers} workers, timezone={timezone}"
        )

    @property
    def is_running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self._scheduler.running:
            logger.warning("Scheduler is already running")
            return
        self._scheduler.start()
        logger.info(f"Scheduler started with jobs: {[j.id for j in self._scheduler.get_jobs()]}")

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop the scheduler.

        Args:
            wait: Block until a running seed or prune finishes
        """
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def add_job(self, job_id: str, func: Callable[..., Any] | str, interval_minutes: int) -> None:
        """
        Register (or replace) an interval job.

        Raises:
            ValueError: If the interval is not positive
        """
        if interval_minutes <= 0:
            raise ValueError(f"Job '{job_id}' needs a positive interval")

        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        logger.info(f"Job '{job_id}' scheduled every {interval_minutes}m")

    def remove_job(self, job_id: str) -> bool:
        """Remove a job. Returns False if it was not registered."""
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Job '{job_id}' removed")
        return True

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {"id": job.id, "name": job.name, "next_run_time": getattr(job, "next_run_time", None)}
            for job in self._scheduler.get_jobs()
        ]
