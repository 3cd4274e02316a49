import asyncio
from collections.abc import Awaitable, Callable
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from catalog_updater.config import Settings
from catalog_updater.job_store import JobTracker


logger = logging.getLogger(__name__)


def _sweep_jobs(tracker: JobTracker) -> None:
    removed = tracker.sweep()
    if removed:
        logger.info("job retention sweep", extra={"removed": removed})


def _run_coroutine(job_id: int, factory: Callable[[], Awaitable[None]]) -> None:
    logger.info("background job started", extra={"job_id": job_id})
    asyncio.run(factory())
    logger.info("background job finished", extra={"job_id": job_id})


class JobScheduler:
    """Owns the background thread pool for the retention sweep and job runs.

    Nothing is scheduled until ``start`` is called, and ``shutdown`` stops
    both the sweep and any queued background runs.
    """

    def __init__(self, settings: Settings, tracker: JobTracker) -> None:
        self.settings = settings
        self.tracker = tracker
        self._scheduler = BackgroundScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        self._scheduler.add_job(
            _sweep_jobs,
            "interval",
            args=[self.tracker],
            seconds=self.settings.job_cleanup_interval_seconds,
            id="job_retention_sweep",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler started",
            extra={
                "cleanup_interval_seconds": self.settings.job_cleanup_interval_seconds,
                "retention_seconds": self.settings.job_retention_seconds,
            },
        )

    def dispatch(self, job_id: int, factory: Callable[[], Awaitable[None]]) -> None:
        """Run ``factory()`` on a worker thread with its own event loop."""
        if not self._scheduler.running:
            raise RuntimeError("scheduler is not running")
        self._scheduler.add_job(
            _run_coroutine,
            args=[job_id, factory],
            id=f"csv-job-{job_id}",
            misfire_grace_time=None,
        )

    def shutdown(self, *, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("scheduler stopped")
