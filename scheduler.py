"""APScheduler job trigger for the price check and the history cleanup."""

import asyncio
import logging
import signal
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import settings
from database import PriceStore
from scraper import Fetcher
from tracker import run_check, cleanup_old_prices

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "price_check"
CLEANUP_JOB_ID = "history_cleanup"


class JobTrigger:
    """
    Runs the price check and the history cleanup on independent cron schedules.

    Overlapping runs of the same job are not allowed: APScheduler skips a run
    that comes due while the previous one is still in progress
    (max_instances=1), and a manual run_job() call during an in-flight run
    returns None. Results and errors of the latest run of each job are kept in
    last_results / last_errors.
    """

    def __init__(
        self,
        store: PriceStore,
        fetcher: Optional[Fetcher] = None,
        check_cron: Optional[str] = None,
        cleanup_cron: Optional[str] = None,
        retention_days: Optional[int] = None,
        run_on_start: Optional[bool] = None,
        shutdown_grace_seconds: Optional[float] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.check_cron = check_cron or settings.check_cron
        self.cleanup_cron = cleanup_cron or settings.cleanup_cron
        self.retention_days = retention_days if retention_days is not None else settings.retention_days
        self.run_on_start = settings.run_on_start if run_on_start is None else run_on_start
        self.shutdown_grace_seconds = (
            shutdown_grace_seconds if shutdown_grace_seconds is not None else settings.shutdown_grace_seconds
        )

        self.jobs: dict[str, Callable[[], Awaitable[Any]]] = {
            CHECK_JOB_ID: self._check,
            CLEANUP_JOB_ID: self._cleanup,
        }
        self.last_results: dict[str, Any] = {}
        self.last_errors: dict[str, BaseException] = {}
        self.last_run_start: dict[str, datetime] = {}

        self._in_flight: dict[str, asyncio.Task] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def _check(self) -> dict:
        return await run_check(self.store, fetcher=self.fetcher)

    async def _cleanup(self) -> int:
        # Synchronous delete, run in a thread to keep the event loop free
        return await asyncio.to_thread(cleanup_old_prices, self.store, self.retention_days)

    def is_running(self, job_id: str) -> bool:
        """Check if a job is currently in progress."""
        task = self._in_flight.get(job_id)
        return task is not None and not task.done()

    async def run_job(self, job_id: str) -> Any:
        """
        Run a job now and return its result.

        Returns None without running if the job is already in progress. Errors
        are recorded in last_errors and re-raised to the caller.
        """
        if self.is_running(job_id):
            logger.warning(f"Job {job_id} is still running - skipping this run")
            return None

        self._in_flight[job_id] = asyncio.current_task()
        self.last_run_start[job_id] = datetime.now()
        try:
            result = await self.jobs[job_id]()
        except Exception as e:
            self.last_errors[job_id] = e
            raise
        else:
            self.last_results[job_id] = result
            self.last_errors.pop(job_id, None)
            return result
        finally:
            self._in_flight.pop(job_id, None)

    def _on_job_event(self, event: JobExecutionEvent):
        if event.code == EVENT_JOB_ERROR:
            logger.error(f"Job {event.job_id} failed: {event.exception!r}")
        elif event.code == EVENT_JOB_MISSED:
            logger.warning(f"Job {event.job_id} missed its run time ({event.scheduled_run_time})")
        else:
            logger.info(f"Job {event.job_id} finished: {event.retval}")

    def start(self):
        """Create the scheduler, register both jobs and start it. Must be called inside a running event loop."""
        if self._scheduler is not None:
            return

        scheduler = AsyncIOScheduler()
        scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

        check_kwargs = {}
        if self.run_on_start:
            check_kwargs["next_run_time"] = datetime.now()  # Run immediately on start
        scheduler.add_job(
            self.run_job,
            trigger=CronTrigger.from_crontab(self.check_cron),
            args=[CHECK_JOB_ID],
            id=CHECK_JOB_ID,
            name="Price check",
            max_instances=1,
            coalesce=True,
            **check_kwargs,
        )
        scheduler.add_job(
            self.run_job,
            trigger=CronTrigger.from_crontab(self.cleanup_cron),
            args=[CLEANUP_JOB_ID],
            id=CLEANUP_JOB_ID,
            name="Price history cleanup",
            max_instances=1,
            coalesce=True,
        )

        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Scheduler started - price check '{self.check_cron}', cleanup '{self.cleanup_cron}' "
            f"(retention {self.retention_days} days)"
        )

    async def stop(self):
        """Let in-flight jobs finish (up to the grace period), then shut the scheduler down."""
        if self._scheduler is None:
            return

        # No new runs from here on
        self._scheduler.pause()

        pending = [t for t in self._in_flight.values() if not t.done()]
        if pending:
            logger.info(f"Waiting up to {self.shutdown_grace_seconds}s for {len(pending)} running job(s)...")
            done, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
            for task in still_running:
                logger.warning("Job did not finish within the grace period - cancelling")
                task.cancel()

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")

    def request_stop(self):
        """Ask run_forever() to return. Safe to call from a signal handler."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self, install_signal_handlers: bool = True):
        """Start the scheduler and keep running until request_stop() or SIGINT/SIGTERM."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        if install_signal_handlers:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.request_stop)
                except (NotImplementedError, RuntimeError):
                    # Not supported on this platform (e.g. Windows); KeyboardInterrupt still applies
                    logger.debug(f"Signal handler for {sig.name} not installed")

        self.start()
        try:
            await self._stop_event.wait()
            logger.info("Shutdown requested")
        finally:
            await self.stop()
            if install_signal_handlers:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    try:
                        loop.remove_signal_handler(sig)
                    except (NotImplementedError, RuntimeError):
                        pass
