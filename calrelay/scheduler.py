"""Scheduler for periodic calendar refreshes."""
import logging
from datetime import datetime
from typing import Callable, Awaitable, Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JOB_ID = "refresh_all"


class FetchScheduler:
    """Runs the refresh cycle at start-up and then on a fixed interval."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler()

    def start(self):
        """Start the scheduler."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self):
        """Shutdown the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def schedule(
        self,
        refresh_func: Callable[[], Awaitable[Any]],
        interval_minutes: int,
        run_now: bool = True,
    ):
        """Schedule the refresh cycle, optionally running it right away."""
        options = {}
        if run_now:
            # An explicit None would add the job paused
            options['next_run_time'] = datetime.now()

        self.scheduler.add_job(
            refresh_func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **options,
        )
        logger.info(f"Scheduled calendar refresh every {interval_minutes} minutes")

    def reschedule(self, interval_minutes: int) -> bool:
        """Change the refresh interval; returns False when no job is scheduled."""
        if self.scheduler.get_job(JOB_ID) is None:
            return False
        self.scheduler.reschedule_job(JOB_ID, trigger=IntervalTrigger(minutes=interval_minutes))
        logger.info(f"Rescheduled calendar refresh every {interval_minutes} minutes")
        return True

    def get_next_run_time(self):
        """Get the next scheduled run time."""
        job = self.scheduler.get_job(JOB_ID)
        return getattr(job, 'next_run_time', None) if job else None
