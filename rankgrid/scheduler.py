"""Background scheduler that wakes the run dispatcher on a cron, backed by APScheduler."""

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from rankgrid.config import SchedulerSettings
from rankgrid.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "rankgrid_dispatch"


def parse_cron(cron: str, timezone: str = "UTC") -> CronTrigger:
    """Build a CronTrigger from a 5-field expression (min hour day month weekday)."""
    parts = cron.strip().split()
    if len(parts) != 5:
        raise ConfigurationError(
            f"Cron expression must have 5 fields, got {len(parts)}: {cron!r}"
        )
    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone,
    )


class RankScheduler:
    """Wrapper around APScheduler that runs the due-work dispatcher.

    The scheduler only decides *when* to look for due work; which configs and
    schedules actually run is decided by ``next_scheduled_at`` in the database.

    Usage::

        sched = RankScheduler(settings.scheduler)
        sched.start()
        sched.register_dispatcher(config_path="config/settings.yaml")
        sched.list_jobs()
        sched.stop()
    """

    def __init__(self, settings: Optional[SchedulerSettings] = None):
        self._settings = settings or SchedulerSettings()
        job_store_url = self._settings.job_store

        if job_store_url.startswith("sqlite:///"):
            db_path = job_store_url.replace("sqlite:///", "")
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._scheduler = BackgroundScheduler(
            jobstores={"default": SQLAlchemyJobStore(url=job_store_url)},
            executors={"default": ThreadPoolExecutor(max_workers=self._settings.max_workers)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 3600,
            },
            timezone=self._settings.timezone,
        )
        self._running = False
        logger.info(
            "RankScheduler initialized (store=%s, tz=%s, workers=%d)",
            job_store_url, self._settings.timezone, self._settings.max_workers,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("Scheduler is already running.")
            return
        self._scheduler.start()
        self._running = True
        logger.info("Scheduler started.")

    def stop(self, wait: bool = True) -> None:
        if not self._running:
            return
        self._scheduler.shutdown(wait=wait)
        self._running = False
        logger.info("Scheduler stopped.")

    def add_job(
        self,
        job_id: str,
        func: Callable | str,
        cron: str,
        kwargs: Optional[dict[str, Any]] = None,
        replace_existing: bool = True,
    ) -> None:
        """Add or replace a cron-triggered job.

        Args:
            job_id: Unique identifier for the job.
            func: Callable, or a ``module:function`` reference for persistent stores.
            cron: Cron expression string (5 fields).
            kwargs: Keyword arguments for func.
            replace_existing: Overwrite if job_id already exists.
        """
        trigger = parse_cron(cron, self._settings.timezone)
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            kwargs=kwargs or {},
            replace_existing=replace_existing,
        )
        logger.info("Job added: %s [%s]", job_id, cron)

    def register_dispatcher(self, config_path: str = "config/settings.yaml") -> None:
        """Schedule :func:`rankgrid.workflows.run_due_job` on the dispatch cron."""
        self.add_job(
            DISPATCH_JOB_ID,
            "rankgrid.workflows:run_due_job",
            self._settings.dispatch_cron,
            kwargs={"config_path": config_path},
        )

    def remove_job(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.warning("Job not found: %s", job_id)
            return False
        logger.info("Job removed: %s", job_id)
        return True

    @staticmethod
    def _job_info(job) -> dict[str, Any]:
        # pending jobs have no next_run_time until the scheduler starts
        next_run = getattr(job, "next_run_time", None)
        return {
            "id": job.id,
            "name": job.name,
            "trigger": str(job.trigger),
            "next_run_time": next_run.isoformat() if next_run else None,
        }

    def list_jobs(self) -> list[dict[str, Any]]:
        return [self._job_info(job) for job in self._scheduler.get_jobs()]

    def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        job = self._scheduler.get_job(job_id)
        return self._job_info(job) if job is not None else None
