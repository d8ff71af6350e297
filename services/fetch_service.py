"""
Profile fetch orchestrator.

One ``execute`` call is one run of a PROFILE_FETCHER job: reserve quota,
take the oldest PENDING entries, fetch each through the retry/backoff loop,
store the raw and cleaned payloads, upsert the profile and finally write a
single JobExecutionHistory record summarising the run.
"""
import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from core.backoff import BackoffPolicy, cancellable_sleep
from core.blob_store import BlobStore, LocalBlobStore
from core.exceptions import (
    ConfigurationError, JobAlreadyRunningError, ProfileFetchError,
    QuotaExceededError, RunCancelledError, StorageError,
)
from core.notifier import Notifier
from core.profile_client import ExternalProfile, FetchOutcome, FetchResult, ProfileClient
from harvester.database import SessionLocal, session_scope
from harvester.models import (
    CronJobConfig, EntryStatus, JobExecutionHistory, Profile, ProfileEntry,
    RunStatus, PROFILE_FETCHER_JOB,
)
from services.quota_service import QuotaManager

logger = logging.getLogger(__name__)

RUN_CANCELLED_MESSAGE = "Run cancelled"


def extract_profile_data(profile: ExternalProfile) -> Dict[str, Any]:
    """The subset of the API payload stored on the entry and as the cleaned blob."""
    return {
        "urn": profile.urn,
        "username": profile.username,
        "firstName": profile.first_name,
        "lastName": profile.last_name,
        "headline": profile.headline,
        "geo": profile.geo,
        "educations": profile.educations,
        "fullPositions": profile.positions,
        "skills": profile.skills,
    }


def profile_fields(profile: ExternalProfile) -> Dict[str, Any]:
    """Column values for the normalized Profile row."""
    values = {
        "username": profile.username,
        "first_name": profile.first_name,
        "last_name": profile.last_name,
        "headline": profile.headline,
        "title": profile.headline,
        "educations": profile.educations,
        "positions": profile.positions,
        "skills": profile.skills,
    }
    if profile.geo:
        country = profile.geo.get("country") or profile.geo.get("country_name") or ""
        city = profile.geo.get("city") or profile.geo.get("city_name") or ""
        values["country"] = country
        values["city"] = city
        values["geo_data"] = {
            "country_name": country,
            "city_name": city,
            "full": profile.geo.get("full") or "",
            "country_code": profile.geo.get("countryCode") or "",
        }
    return values


def blob_keys(urn: str, timestamp: int) -> Tuple[str, str]:
    return f"profiles/{urn}-{timestamp}-raw.json", f"profiles/{urn}-{timestamp}-cleaned.json"


def derive_status(successful: int, failed: int, quota_limited: bool) -> str:
    if failed > 0 and successful == 0:
        return RunStatus.FAILED
    if failed > 0 or quota_limited:
        return RunStatus.PARTIAL
    return RunStatus.SUCCESS


@dataclass
class RunStats:
    started_at: datetime
    successful: int = 0
    failed: int = 0
    api_calls_made: int = 0
    errors: List[str] = field(default_factory=list)
    quota_limited: bool = False
    cancelled: bool = False
    attempted: Set[int] = field(default_factory=set)

    @property
    def total_processed(self) -> int:
        return self.successful + self.failed

    def cancel(self):
        if not self.cancelled:
            self.cancelled = True
            self.errors.append(RUN_CANCELLED_MESSAGE)


@dataclass
class ItemResult:
    attempts: int
    error: Optional[str] = None
    kind: str = ""


class ProfileFetcher:
    def __init__(
        self,
        client: ProfileClient,
        blob_store: BlobStore,
        quota_manager: QuotaManager,
        session_factory: Callable = SessionLocal,
        notifier: Optional[Notifier] = None,
        policy: Optional[BackoffPolicy] = None,
        item_delay: float = 5.0,
        run_log_dir: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.client = client
        self.blob_store = blob_store
        self.quota = quota_manager
        self.session_factory = session_factory
        self.notifier = notifier
        self.policy = policy or BackoffPolicy()
        self.item_delay = item_delay
        self.run_log_dir = run_log_dir
        self.clock = clock
        self._running: Set[str] = set()
        self._running_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, quota_manager: Optional[QuotaManager] = None,
                      notifier: Optional[Notifier] = None) -> "ProfileFetcher":
        notifier = notifier or Notifier.from_settings(settings)
        return cls(
            client=ProfileClient.from_settings(settings),
            blob_store=LocalBlobStore(settings.blob_dir),
            quota_manager=quota_manager or QuotaManager(notifier=notifier, default_limit=settings.monthly_quota),
            notifier=notifier,
            policy=BackoffPolicy(
                base=settings.backoff_base,
                ceiling=settings.backoff_max,
                retry_delay=settings.retry_delay,
                max_retries=settings.max_retries,
            ),
            item_delay=settings.item_delay,
            run_log_dir=settings.run_log_dir,
        )

    # ------------------------------------------------------------------
    # Single-flight guard
    # ------------------------------------------------------------------

    def is_running(self, job_name: str) -> bool:
        with self._running_lock:
            return job_name in self._running

    def _acquire(self, job_name: str):
        with self._running_lock:
            if job_name in self._running:
                raise JobAlreadyRunningError(job_name)
            self._running.add(job_name)

    def _release(self, job_name: str):
        with self._running_lock:
            self._running.discard(job_name)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(self, job_name: str = PROFILE_FETCHER_JOB,
                      cancel_event: Optional[asyncio.Event] = None) -> JobExecutionHistory:
        """Run one batch-fetch job to completion and return its history record.

        The record is only persisted when the run processed at least one item
        or was stopped by the quota.
        """
        self._acquire(job_name)
        handler = None
        try:
            config = self._load_config(job_name)
            handler = self._attach_run_log()
            logger.info(
                "[FETCHER] Starting %s (batch_size=%d, respect_quota=%s)",
                job_name, config["batch_size"], config["respect_quota"],
            )
            return await self._run(job_name, config, cancel_event or asyncio.Event())
        finally:
            if handler is not None:
                logging.getLogger().removeHandler(handler)
                handler.close()
            self._release(job_name)

    def _load_config(self, job_name: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            config = session.query(CronJobConfig).filter(CronJobConfig.job_name == job_name).first()
            if not config:
                raise ConfigurationError(f"No job configuration found for '{job_name}'")
            return {
                "batch_size": config.batch_size,
                "respect_quota": config.respect_quota,
                "admin_email": config.admin_email or None,
            }

    def _attach_run_log(self) -> Optional[logging.Handler]:
        if not self.run_log_dir:
            return None
        os.makedirs(self.run_log_dir, exist_ok=True)
        filename = f"profile_fetcher_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log"
        handler = logging.FileHandler(os.path.join(self.run_log_dir, filename))
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logging.getLogger().addHandler(handler)
        logger.info("[FETCHER] Logging run to %s", handler.baseFilename)
        return handler

    async def _run(self, job_name: str, config: Dict[str, Any], cancel_event: asyncio.Event) -> JobExecutionHistory:
        stats = RunStats(started_at=self.clock())
        batch_size = config["batch_size"]

        while not stats.cancelled:
            if cancel_event.is_set():
                stats.cancel()
                break

            try:
                allowed = self.quota.reserve(batch_size)
            except QuotaExceededError as e:
                if not config["respect_quota"]:
                    logger.warning("[FETCHER] Quota check failed but respect_quota is off, continuing: %s", e)
                    allowed = batch_size
                elif stats.total_processed == 0:
                    logger.warning("[FETCHER] Quota exceeded before any progress: %s", e)
                    history = self._save_history(job_name, stats, RunStatus.QUOTA_EXCEEDED, str(e))
                    raise QuotaExceededError(str(e), history=history) from e
                else:
                    logger.warning("[FETCHER] Stopping run, quota exhausted: %s", e)
                    stats.errors.append(f"Stopped due to quota: {e}")
                    stats.quota_limited = True
                    break

            batch = self._pending_batch(allowed, exclude=stats.attempted)
            if not batch:
                logger.info("[FETCHER] No pending entries left")
                break

            logger.info("[FETCHER] Processing batch of %d entries", len(batch))
            for position, (entry_id, urn) in enumerate(batch):
                if cancel_event.is_set():
                    stats.cancel()
                    break
                await self._process_one(entry_id, urn, stats, cancel_event)
                if stats.cancelled:
                    break
                # Courtesy delay between items only
                if position < len(batch) - 1 and not await cancellable_sleep(self.item_delay, cancel_event):
                    stats.cancel()
                    break

        return self._finish(job_name, stats, config["admin_email"])

    async def _process_one(self, entry_id: int, urn: str, stats: RunStats, cancel_event: asyncio.Event):
        stats.attempted.add(entry_id)
        try:
            if not self._claim(entry_id):
                logger.info("[FETCHER] Entry %s (%s) already claimed, skipping", entry_id, urn)
                return
            item = await self._fetch_and_store(entry_id, urn, cancel_event)
        except RunCancelledError as e:
            stats.api_calls_made += e.attempts
            try:
                self._unclaim(entry_id)
                logger.info("[FETCHER] Run cancelled while fetching %s, entry returned to PENDING", urn)
            except StorageError as unclaim_error:
                logger.error("[FETCHER] Failed to return %s to PENDING: %s", urn, unclaim_error)
            stats.cancel()
            return
        except StorageError as e:
            logger.error("[FETCHER] Storage failure on %s: %s", urn, e)
            stats.failed += 1
            stats.errors.append(f"URN {urn}: {e}")
            return

        stats.api_calls_made += item.attempts
        if item.error:
            stats.failed += 1
            stats.errors.append(f"URN {urn}: {item.error}")
        else:
            stats.successful += 1

    async def _fetch_and_store(self, entry_id: int, urn: str,
                               cancel_event: Optional[asyncio.Event]) -> ItemResult:
        """Fetch one claimed entry and persist the outcome on it. Raises RunCancelledError."""
        result, attempts = await self.fetch_with_retry(urn, cancel_event)
        if not result.ok:
            self._record_failure(entry_id, result.detail)
            return ItemResult(attempts, result.detail, result.outcome.value)

        try:
            self.quota.record_calls(1)
        except StorageError as e:
            logger.error("[FETCHER] Failed to record API call for %s: %s", urn, e)

        profile = result.profile
        cleaned = extract_profile_data(profile)
        raw_key, cleaned_key = blob_keys(urn, int(time.time()))

        try:
            await asyncio.to_thread(self.blob_store.put, raw_key, result.raw)
            await asyncio.to_thread(self.blob_store.put, cleaned_key, json.dumps(cleaned).encode("utf-8"))
        except StorageError as e:
            error = f"Blob upload failed: {e}"
            self._record_failure(entry_id, error)
            return ItemResult(attempts, error, "storage")

        try:
            self._upsert_profile(urn, profile, raw_key, cleaned_key)
        except StorageError as e:
            error = f"DB upsert failed: {e}"
            self._record_failure(entry_id, error)
            return ItemResult(attempts, error, "storage")

        try:
            self._mark_completed(entry_id, cleaned, raw_key, cleaned_key)
        except StorageError as e:
            # Profile and blobs are stored; the entry is reset to PENDING at the next scheduler start
            logger.error("[FETCHER] Failed to mark %s completed: %s", urn, e)
        logger.info("[FETCHER] Fetched %s after %d attempt(s)", urn, attempts)
        return ItemResult(attempts)

    async def fetch_with_retry(self, urn: str,
                               cancel_event: Optional[asyncio.Event] = None) -> Tuple[FetchResult, int]:
        """Call the API until it succeeds or gives up. Returns (last result, attempts made).

        Rate-limited responses are retried without bound. Any other failure
        counts against ``policy.max_retries``.
        """
        policy = self.policy
        backoff = policy.base
        failures = 0
        attempts = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError(attempts)

            attempts += 1
            result = await asyncio.to_thread(self.client.fetch_profile, urn)
            if result.ok:
                return result, attempts

            if result.outcome is FetchOutcome.RATE_LIMITED:
                delay = policy.rate_limit_delay(backoff, result.retry_after)
                logger.warning(
                    "[FETCHER] Rate limited on %s (attempt %d), waiting %.1fs", urn, attempts, delay
                )
                if not await cancellable_sleep(delay, cancel_event):
                    raise RunCancelledError(attempts)
                backoff = policy.next_backoff(backoff)
                continue

            failures += 1
            if failures >= policy.max_retries:
                logger.error("[FETCHER] Giving up on %s after %d failures: %s", urn, failures, result.detail)
                return result, attempts

            logger.warning(
                "[FETCHER] Attempt %d for %s failed (%s), retrying in %.1fs",
                attempts, urn, result.detail, policy.retry_delay,
            )
            if not await cancellable_sleep(policy.retry_delay, cancel_event):
                raise RunCancelledError(attempts)

    async def fetch_entry(self, entry_id: int) -> Dict[str, Any]:
        """Fetch a single PENDING entry outside of a run. No history record is written."""
        with session_scope(self.session_factory) as session:
            entry = session.query(ProfileEntry).filter(ProfileEntry.id == entry_id).first()
            if not entry:
                raise LookupError(f"Profile entry {entry_id} not found")
            urn = entry.urn

        if not self._claim(entry_id):
            raise ValueError(f"Profile entry {entry_id} is not PENDING")

        item = await self._fetch_and_store(entry_id, urn, None)
        if item.error:
            raise ProfileFetchError(urn, item.kind, item.error)
        return {"id": entry_id, "urn": urn, "status": EntryStatus.COMPLETED, "api_calls_made": item.attempts}

    # ------------------------------------------------------------------
    # Entry persistence
    # ------------------------------------------------------------------

    def _pending_batch(self, limit: int, exclude: Iterable[int] = ()) -> List[Tuple[int, str]]:
        """Oldest PENDING entries, skipping ids this run already tried."""
        exclude = list(exclude)
        with session_scope(self.session_factory) as session:
            query = session.query(ProfileEntry.id, ProfileEntry.urn).filter(
                ProfileEntry.status == EntryStatus.PENDING
            )
            if exclude:
                query = query.filter(ProfileEntry.id.notin_(exclude))
            rows = query.order_by(ProfileEntry.created_at.asc(), ProfileEntry.id.asc()).limit(limit).all()
            return [(row.id, row.urn) for row in rows]

    def _claim(self, entry_id: int) -> bool:
        """PENDING -> FETCHING, only if nobody else got there first."""
        with session_scope(self.session_factory) as session:
            claimed = session.query(ProfileEntry).filter(
                ProfileEntry.id == entry_id,
                ProfileEntry.status == EntryStatus.PENDING,
            ).update(
                {ProfileEntry.status: EntryStatus.FETCHING, ProfileEntry.updated_at: self.clock()},
                synchronize_session=False,
            )
            session.commit()
            return claimed == 1

    def _unclaim(self, entry_id: int):
        with session_scope(self.session_factory) as session:
            session.query(ProfileEntry).filter(
                ProfileEntry.id == entry_id,
                ProfileEntry.status == EntryStatus.FETCHING,
            ).update(
                {ProfileEntry.status: EntryStatus.PENDING, ProfileEntry.updated_at: self.clock()},
                synchronize_session=False,
            )
            session.commit()

    def _record_failure(self, entry_id: int, error: str):
        try:
            self._mark_failed(entry_id, error)
        except StorageError as e:
            logger.error("[FETCHER] Failed to mark entry %s failed: %s", entry_id, e)

    def _mark_failed(self, entry_id: int, error: str):
        with session_scope(self.session_factory) as session:
            session.query(ProfileEntry).filter(ProfileEntry.id == entry_id).update(
                {
                    ProfileEntry.status: EntryStatus.FAILED,
                    ProfileEntry.error_message: error,
                    ProfileEntry.updated_at: self.clock(),
                },
                synchronize_session=False,
            )
            session.commit()

    def _mark_completed(self, entry_id: int, cleaned: Dict[str, Any], raw_key: str, cleaned_key: str):
        now = self.clock()
        with session_scope(self.session_factory) as session:
            session.query(ProfileEntry).filter(ProfileEntry.id == entry_id).update(
                {
                    ProfileEntry.status: EntryStatus.COMPLETED,
                    ProfileEntry.profile_data: cleaned,
                    ProfileEntry.raw_response_key: raw_key,
                    ProfileEntry.cleaned_data_key: cleaned_key,
                    ProfileEntry.fetch_count: ProfileEntry.fetch_count + 1,
                    ProfileEntry.last_fetched_at: now,
                    ProfileEntry.error_message: None,
                    ProfileEntry.updated_at: now,
                },
                synchronize_session=False,
            )
            session.commit()

    def _upsert_profile(self, urn: str, profile: ExternalProfile, raw_key: str, cleaned_key: str):
        values = profile_fields(profile)
        values["raw_data_key"] = raw_key
        values["cleaned_data_key"] = cleaned_key

        with session_scope(self.session_factory) as session:
            row = session.query(Profile).filter(Profile.urn == urn).first()
            if row is None:
                row = Profile(urn=urn)
                session.add(row)
            for key, value in values.items():
                setattr(row, key, value)
            session.commit()

    # ------------------------------------------------------------------
    # Run record
    # ------------------------------------------------------------------

    def _quota_snapshot(self) -> int:
        try:
            return self.quota.current_status().remaining
        except StorageError as e:
            logger.error("[FETCHER] Could not read quota status: %s", e)
            return 0

    def _build_history(self, job_name: str, stats: RunStats, status: str,
                       error_summary: Optional[str]) -> JobExecutionHistory:
        completed_at = self.clock()
        return JobExecutionHistory(
            job_name=job_name,
            status=status,
            started_at=stats.started_at,
            completed_at=completed_at,
            duration_seconds=int((completed_at - stats.started_at).total_seconds()),
            total_processed=stats.total_processed,
            successful_count=stats.successful,
            failed_count=stats.failed,
            api_calls_made=stats.api_calls_made,
            quota_remaining=self._quota_snapshot(),
            error_summary=error_summary,
        )

    def _save_history(self, job_name: str, stats: RunStats, status: str,
                      error_summary: Optional[str]) -> JobExecutionHistory:
        history = self._build_history(job_name, stats, status, error_summary)
        with session_scope(self.session_factory) as session:
            session.add(history)
            session.commit()
            session.refresh(history)
            session.expunge(history)
        return history

    def _finish(self, job_name: str, stats: RunStats, admin_email: Optional[str]) -> JobExecutionHistory:
        status = derive_status(stats.successful, stats.failed, stats.quota_limited or stats.cancelled)
        error_summary = "; ".join(stats.errors) if stats.errors else None

        logger.info(
            "[FETCHER] %s finished: status=%s processed=%d ok=%d failed=%d api_calls=%d",
            job_name, status, stats.total_processed, stats.successful, stats.failed, stats.api_calls_made,
        )

        if stats.total_processed == 0 and not stats.quota_limited:
            return self._build_history(job_name, stats, status, error_summary)

        history = self._save_history(job_name, stats, status, error_summary)
        if self.notifier is not None:
            try:
                self.notifier.run_summary(
                    job_name=job_name,
                    status=history.status,
                    duration_seconds=history.duration_seconds,
                    total_processed=history.total_processed,
                    successful=history.successful_count,
                    failed=history.failed_count,
                    api_calls_made=history.api_calls_made,
                    quota_remaining=history.quota_remaining,
                    errors=stats.errors,
                    recipient=admin_email,
                )
            except Exception as e:
                logger.error("[FETCHER] Failed to send run summary: %s", e)
        return history
