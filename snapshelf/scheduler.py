"""
APScheduler-backed scheduler for recurring backups.

The BackupManager only registers and unregisters triggers here; the
scheduler owns the timer loop and calls back into the manager.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from snapshelf.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class BackupScheduler:
    """Registers cron-style triggers on an AsyncIOScheduler."""

    def __init__(self, timezone: str = 'UTC'):
        self.timezone = timezone

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }

        self.scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone=timezone)

    def register_schedule(self, cron_expr: str, callback: Callable, job_id: str,
                          name: Optional[str] = None, kwargs: Optional[Dict[str, Any]] = None) -> str:
        """
        Register a recurring callback.

        Args:
            cron_expr: Five-field crontab expression
            callback: Function or coroutine function to run
            job_id: Job id; an existing job with the same id is replaced
            name: Human readable job name
            kwargs: Keyword arguments passed to the callback

        Returns:
            The job id

        Raises:
            ConfigurationError: If the cron expression is invalid
        """
        try:
            trigger = CronTrigger.from_crontab(cron_expr, timezone=self.timezone)
        except ValueError as e:
            raise ConfigurationError(f"Invalid cron expression {cron_expr!r}: {e}")

        # replace_existing only applies once the scheduler is running
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)

        self.scheduler.add_job(
            func=callback,
            trigger=trigger,
            id=job_id,
            name=name or job_id,
            kwargs=kwargs or {},
            replace_existing=True
        )

        logger.info(f"Scheduled {name or job_id} ({cron_expr})")
        return job_id

    def unregister(self, job_id: str) -> bool:
        """
        Remove a recurring callback.

        Returns:
            True if the job existed
        """
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"No scheduled job to remove: {job_id}")
            return False

        logger.info(f"Removed scheduled job: {job_id}")
        return True

    def start(self):
        """Start the scheduler. Must be called with an asyncio loop available."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"Scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self):
        """Stop the scheduler without waiting for running jobs."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        """Next fire time of a job, or None if it is not scheduled."""
        job = self.scheduler.get_job(job_id)
        if job is None:
            return None
        # Jobs added before start() have no next_run_time yet
        next_run = getattr(job, 'next_run_time', None)
        if next_run is None:
            next_run = job.trigger.get_next_fire_time(None, datetime.now(timezone.utc))
        return next_run

    def get_scheduled_jobs(self) -> List[Dict[str, Any]]:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        jobs = []

        for job in self.scheduler.get_jobs():
            next_run = self.next_run_time(job.id)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })

        return jobs
