"""Sweep scheduler - runs the cron-mode trigger scan in process.

The HTTP sweep endpoint covers deployments with an external cron; this
scheduler covers single-process deployments. Both call the same scanner.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from typing import Callable, Optional
from loguru import logger
from config.settings import Settings, settings as default_settings
import asyncio

from .scanner import TimeTriggerScanner


class Scheduler:
    """Task scheduler.

    Generic over the job callables; ``register_sweeps`` wires the scanner's
    hourly and nightly sweeps.
    """

    def __init__(self):
        try:
            loop = asyncio.get_event_loop()
            if loop.is_closed():
                loop = asyncio.new_event_loop()
                asyncio.set_event_loop(loop)
        except RuntimeError:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
        self.scheduler = AsyncIOScheduler(event_loop=loop)

    def add_daily_task(
        self,
        task_func: Callable,
        hour: int = 23,
        minute: int = 59,
        task_id: str = 'daily_task',
        task_name: str = 'Daily task'
    ):
        """Add a job that runs every day at hour:minute.

        Args:
            task_func: job callable (async or sync)
            hour: hour (0-23)
            minute: minute (0-59)
            task_id: job id
            task_name: job name
        """
        self.scheduler.add_job(
            task_func,
            trigger=CronTrigger(hour=hour, minute=minute),
            id=task_id,
            name=task_name,
            replace_existing=True
        )
        logger.info(f"Added daily task '{task_name}' at {hour:02d}:{minute:02d}")

    def add_interval_task(
        self,
        task_func: Callable,
        minutes: int = 60,
        task_id: str = 'interval_task',
        task_name: str = 'Interval task'
    ):
        """Add a job that runs every ``minutes``.

        A 60 minute interval is scheduled on the hour rather than relative
        to start-up.
        """
        if minutes == 60:
            trigger = CronTrigger(minute=0)
        else:
            trigger = IntervalTrigger(minutes=minutes)
        self.scheduler.add_job(
            task_func,
            trigger=trigger,
            id=task_id,
            name=task_name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Added interval task '{task_name}' every {minutes} min")

    def register_sweeps(self, scanner: TimeTriggerScanner,
                        config: Optional[Settings] = None):
        """Schedule the hourly cron sweep and the nightly sweep.

        The scanner is synchronous, so each run is pushed to a worker
        thread to keep the event loop free.
        """
        config = config or default_settings

        async def hourly_sweep():
            summary = await asyncio.to_thread(scanner.run_cron)
            logger.info(f"Scheduled sweep: {summary.to_response()}")

        async def nightly_sweep():
            summary = await asyncio.to_thread(scanner.run_cron, None, True)
            logger.info(f"Nightly sweep: {summary.to_response()}")

        self.add_interval_task(
            hourly_sweep,
            minutes=config.sweep_interval_minutes,
            task_id='trigger_sweep',
            task_name='Trigger sweep',
        )
        self.add_daily_task(
            nightly_sweep,
            hour=config.nightly_sweep_hour,
            minute=config.nightly_sweep_minute,
            task_id='nightly_sweep',
            task_name='Nightly sweep',
        )

    def get_job_ids(self):
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Scheduler stopped")

    def remove_job(self, job_id: str):
        """Remove a job.

        Args:
            job_id: job id
        """
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job {job_id} removed")
        except Exception as e:
            logger.warning(f"Failed to remove job {job_id}: {e}")
