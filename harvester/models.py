"""
SQLAlchemy models for profile acquisition, quota tracking and job scheduling.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, JSON,
    UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class EntryStatus:
    PENDING = "PENDING"
    FETCHING = "FETCHING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RunStatus:
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"


class JobType:
    PROFILE_FETCHER = "PROFILE_FETCHER"
    QUOTA_RESET = "QUOTA_RESET"


PROFILE_FETCHER_JOB = "profile_fetcher"
QUOTA_RESET_JOB = "quota_reset"


# ============================================================================
# Profile Models
# ============================================================================

class ProfileEntry(Base):
    """One external identifier (URN) waiting to be resolved into a profile."""
    __tablename__ = "profile_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    urn = Column(String(255), nullable=False, unique=True)
    gender = Column(String(20))                                  # Optional side-channel tag
    status = Column(String(20), nullable=False, default=EntryStatus.PENDING)
    profile_data = Column(JSON)                                  # Extracted subset of the profile
    cleaned_data_key = Column(String(500))
    raw_response_key = Column(String(500))
    fetch_count = Column(Integer, nullable=False, default=0)
    last_fetched_at = Column(DateTime)
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("fetch_count >= 0", name="ck_profile_entries_fetch_count"),
        Index("ix_profile_entries_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<ProfileEntry {self.urn} ({self.status})>"


class Profile(Base):
    """Normalized profile, upserted by URN after a successful fetch."""
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    urn = Column(String(255), nullable=False, unique=True)
    username = Column(String(255))
    first_name = Column(String(255))
    last_name = Column(String(255))
    headline = Column(Text)
    title = Column(Text)
    country = Column(String(120))
    city = Column(String(120))
    educations = Column(JSON)
    positions = Column(JSON)
    skills = Column(JSON)
    geo_data = Column(JSON)
    raw_data_key = Column(String(500))
    cleaned_data_key = Column(String(500))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_profiles_country_city", "country", "city"),
    )

    def __repr__(self):
        return f"<Profile {self.urn}>"


# ============================================================================
# Quota Models
# ============================================================================

class APIQuotaTracker(Base):
    """Monthly counter of external API calls."""
    __tablename__ = "api_quota_trackers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    month = Column(Integer, nullable=False)                      # 1-12
    year = Column(Integer, nullable=False)
    call_count = Column(Integer, nullable=False, default=0)
    quota_limit = Column(Integer, nullable=False, default=50000)
    quota_exceeded = Column(Boolean, nullable=False, default=False)   # call_count >= quota_limit
    override_enabled = Column(Boolean, nullable=False, default=False)
    notification_sent = Column(Boolean, nullable=False, default=False)
    last_call_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("month", "year", name="uq_quota_month_year"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_quota_month"),
        CheckConstraint("call_count >= 0", name="ck_quota_call_count"),
        CheckConstraint("quota_limit > 0", name="ck_quota_limit"),
    )

    @property
    def remaining(self) -> int:
        return max(self.quota_limit - self.call_count, 0)

    def __repr__(self):
        return f"<APIQuotaTracker {self.year}-{self.month:02d} {self.call_count}/{self.quota_limit}>"


# ============================================================================
# Job Scheduler Models
# ============================================================================

class CronJobConfig(Base):
    """A named recurring job and its schedule."""
    __tablename__ = "cron_job_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String(100), nullable=False, unique=True)
    job_type = Column(String(30), nullable=False)                # PROFILE_FETCHER, QUOTA_RESET
    schedule = Column(String(100), nullable=False)               # e.g. "0 2 * * *"
    enabled = Column(Boolean, nullable=False, default=True)
    batch_size = Column(Integer, nullable=False, default=10)
    respect_quota = Column(Boolean, nullable=False, default=True)
    admin_email = Column(String(255), nullable=False, default="")
    last_run_at = Column(DateTime)
    next_run_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("batch_size > 0", name="ck_cron_batch_size"),
        Index("ix_cron_job_configs_enabled", "enabled"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "job_type": self.job_type,
            "schedule": self.schedule,
            "enabled": self.enabled,
            "batch_size": self.batch_size,
            "respect_quota": self.respect_quota,
            "admin_email": self.admin_email,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }

    def __repr__(self):
        return f"<CronJobConfig {self.job_name} (cron={self.schedule})>"


class JobExecutionHistory(Base):
    """Audit record of one orchestrator run. Never updated once written."""
    __tablename__ = "job_execution_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_name = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)                  # SUCCESS, PARTIAL, FAILED, QUOTA_EXCEEDED
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    duration_seconds = Column(Integer, nullable=False, default=0)
    total_processed = Column(Integer, nullable=False, default=0)
    successful_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    api_calls_made = Column(Integer, nullable=False, default=0)
    quota_remaining = Column(Integer, nullable=False, default=0)
    error_summary = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_job_history_job_started", "job_name", "started_at"),
        Index("ix_job_history_status", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "total_processed": self.total_processed,
            "successful_count": self.successful_count,
            "failed_count": self.failed_count,
            "api_calls_made": self.api_calls_made,
            "quota_remaining": self.quota_remaining,
            "error_summary": self.error_summary,
        }

    def __repr__(self):
        return f"<JobExecutionHistory {self.job_name} {self.status}>"
