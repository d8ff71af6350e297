"""
Job Management Service: read and edit job configurations, inspect run
history and profile entry state for the admin API.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import func

from core.exceptions import ConfigurationError
from harvester.database import session_scope
from harvester.models import (
    CronJobConfig, EntryStatus, JobExecutionHistory, JobType, ProfileEntry, RunStatus,
    PROFILE_FETCHER_JOB, QUOTA_RESET_JOB,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("schedule", "enabled", "batch_size", "respect_quota", "admin_email")


def validate_schedule(schedule: str) -> str:
    try:
        CronTrigger.from_crontab(schedule)
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron expression '{schedule}': {e}") from e
    return schedule


def default_job_configs(settings) -> List[Dict[str, Any]]:
    """Configs created on first start when the table has no row for them."""
    return [
        {
            "job_name": PROFILE_FETCHER_JOB,
            "job_type": JobType.PROFILE_FETCHER,
            "schedule": settings.profile_fetcher_schedule,
            "enabled": True,
            "batch_size": settings.batch_size,
            "respect_quota": settings.respect_quota,
            "admin_email": settings.admin_email,
        },
        {
            "job_name": QUOTA_RESET_JOB,
            "job_type": JobType.QUOTA_RESET,
            "schedule": settings.quota_reset_schedule,
            "enabled": True,
            "batch_size": 1,
            "respect_quota": False,
            "admin_email": settings.admin_email,
        },
    ]


class JobService:
    @staticmethod
    def _get(session, job_name: str) -> CronJobConfig:
        config = session.query(CronJobConfig).filter(CronJobConfig.job_name == job_name).first()
        if not config:
            raise LookupError(f"Job '{job_name}' not found")
        return config

    # ------------------------------------------------------------------
    # Job configs
    # ------------------------------------------------------------------

    @staticmethod
    def ensure_default_configs(settings) -> int:
        """Insert any missing default job config. Returns how many were created."""
        created = 0
        with session_scope() as session:
            for defaults in default_job_configs(settings):
                exists = session.query(CronJobConfig.id).filter(
                    CronJobConfig.job_name == defaults["job_name"]
                ).first()
                if exists:
                    continue
                session.add(CronJobConfig(**defaults))
                created += 1
                logger.info("[JOBS] Created default config for '%s'", defaults["job_name"])
            session.commit()
        return created

    @staticmethod
    def list_configs() -> List[Dict[str, Any]]:
        with session_scope() as session:
            configs = session.query(CronJobConfig).order_by(CronJobConfig.job_name).all()
            return [c.to_dict() for c in configs]

    @staticmethod
    def get_config(job_name: str) -> Dict[str, Any]:
        with session_scope() as session:
            return JobService._get(session, job_name).to_dict()

    @staticmethod
    def update_config(job_name: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update. The caller reloads the schedule afterwards."""
        unknown = set(updates) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ConfigurationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "schedule" in updates:
            validate_schedule(updates["schedule"])
        if "batch_size" in updates and updates["batch_size"] <= 0:
            raise ConfigurationError("batch_size must be > 0")

        with session_scope() as session:
            config = JobService._get(session, job_name)
            for field, value in updates.items():
                setattr(config, field, value)
            config.updated_at = datetime.utcnow()
            session.commit()
            logger.info("[JOBS] Updated '%s': %s", job_name, ", ".join(sorted(updates)))
            return config.to_dict()

    @staticmethod
    def toggle_config(job_name: str, enabled: bool) -> Dict[str, Any]:
        return JobService.update_config(job_name, {"enabled": enabled})

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    @staticmethod
    def list_runs(job_name: Optional[str] = None, status: Optional[str] = None,
                  limit: int = 20) -> List[Dict[str, Any]]:
        with session_scope() as session:
            query = session.query(JobExecutionHistory)
            if job_name:
                query = query.filter(JobExecutionHistory.job_name == job_name)
            if status:
                query = query.filter(JobExecutionHistory.status == status)
            runs = query.order_by(
                JobExecutionHistory.started_at.desc(), JobExecutionHistory.id.desc()
            ).limit(limit).all()
            return [r.to_dict() for r in runs]

    @staticmethod
    def latest_run(job_name: str) -> Optional[Dict[str, Any]]:
        runs = JobService.list_runs(job_name=job_name, limit=1)
        return runs[0] if runs else None

    @staticmethod
    def run_stats(job_name: str, days: int = 0) -> Dict[str, Any]:
        """Aggregate the last 100 runs of a job, or every run within ``days``."""
        with session_scope() as session:
            query = session.query(JobExecutionHistory).filter(
                JobExecutionHistory.job_name == job_name
            ).order_by(JobExecutionHistory.started_at.desc())
            if days > 0:
                since = datetime.utcnow() - timedelta(days=days)
                query = query.filter(JobExecutionHistory.started_at >= since)
            else:
                query = query.limit(100)
            runs = query.all()

            total = len(runs)
            successes = sum(1 for r in runs if r.status == RunStatus.SUCCESS)
            return {
                "job_name": job_name,
                "total_executions": total,
                "success_rate": (successes / total * 100) if total else 0.0,
                "average_duration": (sum(r.duration_seconds for r in runs) // total) if total else 0,
                "total_profiles": sum(r.successful_count for r in runs),
                "total_api_calls_made": sum(r.api_calls_made for r in runs),
            }

    # ------------------------------------------------------------------
    # Profile entries
    # ------------------------------------------------------------------

    @staticmethod
    def entry_status_counts() -> Dict[str, int]:
        with session_scope() as session:
            rows = session.query(ProfileEntry.status, func.count(ProfileEntry.id)).group_by(
                ProfileEntry.status
            ).all()
            counts = {
                EntryStatus.PENDING: 0,
                EntryStatus.FETCHING: 0,
                EntryStatus.COMPLETED: 0,
                EntryStatus.FAILED: 0,
            }
            counts.update({status: count for status, count in rows})
            counts["TOTAL"] = sum(count for _, count in rows)
            return counts

    @staticmethod
    def requeue_failed(limit: Optional[int] = None) -> int:
        """Move FAILED entries back to PENDING, oldest first."""
        with session_scope() as session:
            ids = session.query(ProfileEntry.id).filter(
                ProfileEntry.status == EntryStatus.FAILED
            ).order_by(ProfileEntry.created_at.asc())
            if limit:
                ids = ids.limit(limit)
            entry_ids = [row.id for row in ids.all()]
            if not entry_ids:
                return 0

            count = session.query(ProfileEntry).filter(
                ProfileEntry.id.in_(entry_ids),
                ProfileEntry.status == EntryStatus.FAILED,
            ).update(
                {
                    ProfileEntry.status: EntryStatus.PENDING,
                    ProfileEntry.error_message: None,
                    ProfileEntry.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
            session.commit()
            logger.info("[JOBS] Re-queued %d failed entries", count)
            return count
