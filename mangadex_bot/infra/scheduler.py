"""
Scheduler infrastructure for the poll loop and housekeeping jobs.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter


logger = logging.getLogger(__name__)


def validate_cron_expression(cron_expression: str) -> bool:
    """Validate a five-field cron expression using croniter."""
    if len(cron_expression.split()) != 5:
        return False
    try:
        croniter(cron_expression)
        return True
    except (ValueError, KeyError) as e:
        logger.error(f"Invalid cron expression '{cron_expression}': {e}")
        return False


class Scheduler:
    """Async task scheduler wrapper around APScheduler.

    Jobs live in memory only; the poll schedule is rebuilt from configuration at
    every start. Each job runs at most once at a time and missed runs coalesce
    into one.
    """

    def __init__(self, timezone: str = "UTC", misfire_grace_time: int = 60):
        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": misfire_grace_time,
        }
        self._scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone=timezone)
        self._started = False

    async def start(self) -> None:
        """Start the scheduler."""
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler without waiting for running jobs."""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        func: Callable,
        seconds: int,
        job_id: Optional[str] = None,
        jitter: Optional[int] = None,
        run_immediately: bool = True,
        **kwargs,
    ) -> None:
        """Add a job that runs every ``seconds`` (plus up to ``jitter`` seconds)."""
        if seconds <= 0:
            raise ValueError("Interval must be a positive number of seconds")

        trigger = IntervalTrigger(seconds=seconds, jitter=jitter or None)
        if run_immediately:
            kwargs.setdefault("next_run_time", datetime.now(timezone.utc))

        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.info(f"Added interval job: {job_id or func.__name__} (every {seconds}s, jitter {jitter or 0}s)")

    def add_cron_job(
        self,
        func: Callable,
        cron_expression: str,
        job_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        """Add a job that runs on a cron schedule (minute hour day month day_of_week)."""
        if not validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")

        trigger = CronTrigger.from_crontab(cron_expression, timezone=self._scheduler.timezone)
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.info(f"Added cron job: {job_id or func.__name__} ({cron_expression})")

    def list_jobs(self) -> Dict[str, Any]:
        """List all scheduled jobs."""
        jobs = {}
        for job in self._scheduler.get_jobs():
            jobs[job.id] = {
                "name": job.name,
                "next_run": getattr(job, "next_run_time", None),
                "trigger": str(job.trigger),
            }
        return jobs
