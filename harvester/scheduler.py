"""
Job scheduler: fires PROFILE_FETCHER and QUOTA_RESET jobs on cron schedules.

Job configs live in the cron_job_configs table; each enabled config is
registered as one APScheduler cron job keyed by its job name.
"""
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.exceptions import ConfigurationError, JobAlreadyRunningError, QuotaExceededError, StorageError
from harvester.config import get_settings
from harvester.database import session_scope
from harvester.models import CronJobConfig, EntryStatus, JobType, ProfileEntry
from services.fetch_service import ProfileFetcher
from services.job_service import JobService
from services.quota_service import QuotaManager

logger = logging.getLogger(__name__)


def _job_key(job_name: str) -> str:
    return f"job_{job_name}"


def _as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class JobScheduler:
    """Owns the cron registrations for every configured job."""

    def __init__(self, fetcher: ProfileFetcher, quota_manager: QuotaManager, settings=None):
        self.scheduler = AsyncIOScheduler()
        self.fetcher = fetcher
        self.quota = quota_manager
        self.settings = settings or get_settings()
        self._registrations: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._cancel_event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    def start(self):
        """Recover crashed entries, load enabled job configs and start the timer."""
        self._cancel_event.clear()
        self.scheduler.start()
        self._recover_stuck_entries()
        JobService.ensure_default_configs(self.settings)
        self._load_jobs_from_db()
        logger.info("[SCHEDULER] Started with %d jobs", len(self.scheduler.get_jobs()))

    async def stop(self):
        """Signal running jobs to cancel, wait for them to wind down, then stop the timer.

        The executor cancels its pending coroutines on shutdown, so cron-fired
        runs must be drained before it is shut down.
        """
        self._cancel_event.set()
        if self.scheduler.running:
            self.scheduler.pause()

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        if pending:
            logger.info("[SCHEDULER] Waiting for %d running job(s) to stop", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        with self._lock:
            self._registrations.clear()
        logger.info("[SCHEDULER] Shutdown complete")

    def _recover_stuck_entries(self):
        """
        Entries left in FETCHING by a crash are returned to PENDING so the
        next run picks them up again.
        """
        with session_scope() as session:
            count = session.query(ProfileEntry).filter(
                ProfileEntry.status == EntryStatus.FETCHING
            ).update(
                {ProfileEntry.status: EntryStatus.PENDING, ProfileEntry.updated_at: datetime.utcnow()},
                synchronize_session=False,
            )
            session.commit()
        if count:
            logger.warning("[SCHEDULER] Recovered %d entries stuck in FETCHING", count)

    def _load_jobs_from_db(self):
        with session_scope() as session:
            configs = [
                c.to_dict()
                for c in session.query(CronJobConfig).filter(CronJobConfig.enabled == True).all()  # noqa: E712
            ]
        for config in configs:
            try:
                self.register_job(config)
            except ConfigurationError as e:
                logger.error("[SCHEDULER] Failed to register job '%s': %s", config["job_name"], e)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_job(self, config: Dict[str, Any]):
        """Add or replace the cron trigger for one job config."""
        job_name = config["job_name"]
        job_type = config["job_type"]
        if job_type not in (JobType.PROFILE_FETCHER, JobType.QUOTA_RESET):
            raise ConfigurationError(f"Unknown job type '{job_type}' for job '{job_name}'")

        try:
            trigger = CronTrigger.from_crontab(config["schedule"])
        except ValueError as e:
            raise ConfigurationError(f"Invalid cron expression '{config['schedule']}' for job '{job_name}': {e}") from e

        with self._lock:
            job = self.scheduler.add_job(
                self._scheduled_run,
                trigger=trigger,
                id=_job_key(job_name),
                name=job_name,
                args=[job_name, job_type],
                replace_existing=True,
                misfire_grace_time=60,
                coalesce=True,
                max_instances=1,
            )
            self._registrations[job_name] = job.id

        self._set_next_run(job_name, getattr(job, "next_run_time", None))
        logger.info("[SCHEDULER] Registered job '%s' (type=%s, cron=%s)", job_name, job_type, config["schedule"])

    def remove_job(self, job_name: str) -> bool:
        """Drop the trigger for a job. Returns False when none was registered."""
        with self._lock:
            job_key = self._registrations.pop(job_name, None)
            if job_key is None or not self.scheduler.get_job(job_key):
                return False
            self.scheduler.remove_job(job_key)
        logger.info("[SCHEDULER] Removed job '%s'", job_name)
        return True

    def is_registered(self, job_name: str) -> bool:
        with self._lock:
            return job_name in self._registrations

    def reload_schedule(self, job_name: str):
        """Re-read a job config and re-register it; disabled or missing jobs end up unregistered."""
        self.remove_job(job_name)

        with session_scope() as session:
            config = session.query(CronJobConfig).filter(CronJobConfig.job_name == job_name).first()
            config = config.to_dict() if config else None

        if config is None:
            logger.info("[SCHEDULER] Job '%s' no longer configured, nothing to reload", job_name)
            return
        if not config["enabled"]:
            self._set_next_run(job_name, None)
            logger.info("[SCHEDULER] Job '%s' is disabled, not scheduling", job_name)
            return

        self.register_job(config)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def trigger_now(self, job_name: str):
        """Run a job immediately and return its result.

        Raises LookupError for an unknown job and JobAlreadyRunningError when
        the job is already in flight.
        """
        config = JobService.get_config(job_name)
        return await self._dispatch(job_name, config["job_type"])

    def start_now(self, job_name: str) -> asyncio.Task:
        """Kick off a job in the background (admin trigger)."""
        config = JobService.get_config(job_name)
        if config["job_type"] == JobType.PROFILE_FETCHER and self.fetcher.is_running(job_name):
            raise JobAlreadyRunningError(job_name)
        return asyncio.create_task(self._scheduled_run(job_name, config["job_type"]))

    async def _scheduled_run(self, job_name: str, job_type: str):
        """APScheduler callback: run the job and log, never raise."""
        try:
            await self._dispatch(job_name, job_type)
        except JobAlreadyRunningError:
            logger.info("[SCHEDULER] Skip '%s', previous run still in progress", job_name)
        except QuotaExceededError as e:
            logger.warning("[SCHEDULER] Job '%s' stopped by quota: %s", job_name, e)
        except Exception as e:
            logger.error("[SCHEDULER] Job '%s' failed: %s", job_name, e)

    async def _dispatch(self, job_name: str, job_type: str):
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            self._mark_last_run(job_name)
            logger.info("[SCHEDULER] Executing job '%s' (%s)", job_name, job_type)
            if job_type == JobType.PROFILE_FETCHER:
                return await self.fetcher.execute(job_name, cancel_event=self._cancel_event)
            if job_type == JobType.QUOTA_RESET:
                return self.quota.reset_monthly()
            raise ConfigurationError(f"Unknown job type '{job_type}' for job '{job_name}'")
        finally:
            if task is not None:
                self._tasks.discard(task)
            self._refresh_next_run(job_name)

    def _mark_last_run(self, job_name: str):
        try:
            with session_scope() as session:
                session.query(CronJobConfig).filter(CronJobConfig.job_name == job_name).update(
                    {CronJobConfig.last_run_at: datetime.utcnow()}, synchronize_session=False
                )
                session.commit()
        except StorageError as e:
            logger.warning("[SCHEDULER] Could not stamp last run for '%s': %s", job_name, e)

    def _set_next_run(self, job_name: str, next_run: Optional[datetime]):
        with session_scope() as session:
            session.query(CronJobConfig).filter(CronJobConfig.job_name == job_name).update(
                {CronJobConfig.next_run_at: _as_utc_naive(next_run)}, synchronize_session=False
            )
            session.commit()

    def _refresh_next_run(self, job_name: str):
        with self._lock:
            job_key = self._registrations.get(job_name)
            job = self.scheduler.get_job(job_key) if job_key else None
        if job is None:
            return
        try:
            self._set_next_run(job_name, job.next_run_time)
        except StorageError as e:
            logger.warning("[SCHEDULER] Could not record next run for '%s': %s", job_name, e)

    def get_next_runs(self) -> list:
        """Get upcoming scheduled runs."""
        result = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            result.append({
                "job_key": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return result


def build_scheduler(settings=None) -> JobScheduler:
    """Wire the scheduler with the production collaborators."""
    settings = settings or get_settings()
    fetcher = ProfileFetcher.from_settings(settings)
    return JobScheduler(fetcher, fetcher.quota, settings)
