from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import harvester.database as database
from harvester.database import init_db
from harvester.models import (
    APIQuotaTracker, CronJobConfig, EntryStatus, JobType, ProfileEntry, PROFILE_FETCHER_JOB,
)

FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0)


@pytest.fixture
def session_factory(monkeypatch):
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(autoflush=False, bind=engine)
    monkeypatch.setattr(database, "SessionLocal", factory)
    yield factory
    engine.dispose()


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.quota_exceeded.return_value = True
    mock.run_summary.return_value = True
    return mock


@pytest.fixture
def add_entries(session_factory):
    """Insert PENDING entries in creation order and return their ids."""
    def _add(*urns, status=EntryStatus.PENDING):
        session = session_factory()
        try:
            ids = []
            for i, urn in enumerate(urns):
                entry = ProfileEntry(urn=urn, status=status, created_at=FIXED_NOW + timedelta(seconds=i))
                session.add(entry)
                session.flush()
                ids.append(entry.id)
            session.commit()
            return ids
        finally:
            session.close()
    return _add


@pytest.fixture
def add_job_config(session_factory):
    def _add(job_name=PROFILE_FETCHER_JOB, job_type=JobType.PROFILE_FETCHER,
             schedule="0 2 * * *", enabled=True, batch_size=10, respect_quota=True):
        session = session_factory()
        try:
            session.add(CronJobConfig(
                job_name=job_name,
                job_type=job_type,
                schedule=schedule,
                enabled=enabled,
                batch_size=batch_size,
                respect_quota=respect_quota,
                admin_email="",
            ))
            session.commit()
        finally:
            session.close()
    return _add


@pytest.fixture
def set_quota(session_factory):
    """Create or overwrite the tracker for FIXED_NOW's month."""
    def _set(call_count, quota_limit=50000, override_enabled=False, notification_sent=False):
        session = session_factory()
        try:
            tracker = session.query(APIQuotaTracker).filter_by(month=FIXED_NOW.month, year=FIXED_NOW.year).first()
            if tracker is None:
                tracker = APIQuotaTracker(month=FIXED_NOW.month, year=FIXED_NOW.year)
                session.add(tracker)
            tracker.call_count = call_count
            tracker.quota_limit = quota_limit
            tracker.quota_exceeded = call_count >= quota_limit
            tracker.override_enabled = override_enabled
            tracker.notification_sent = notification_sent
            session.commit()
        finally:
            session.close()
    return _set


@pytest.fixture
def load_entry(session_factory):
    def _load(entry_id):
        session = session_factory()
        try:
            entry = session.query(ProfileEntry).filter_by(id=entry_id).one()
            session.expunge(entry)
            return entry
        finally:
            session.close()
    return _load


@pytest.fixture
def fixed_now():
    return FIXED_NOW
