import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.exceptions import ConfigurationError, JobAlreadyRunningError, StorageError
from harvester.config import Settings
from harvester.models import CronJobConfig, EntryStatus, JobType, PROFILE_FETCHER_JOB, QUOTA_RESET_JOB
from harvester.scheduler import JobScheduler
from services.job_service import JobService


@pytest.fixture
def fetcher():
    mock = MagicMock()
    mock.execute = AsyncMock(return_value="history")
    mock.is_running.return_value = False
    return mock


@pytest.fixture
def quota():
    return MagicMock()


@pytest.fixture
def job_scheduler(session_factory, fetcher, quota):
    return JobScheduler(fetcher, quota, Settings())


def _config(session_factory, job_name):
    session = session_factory()
    try:
        return session.query(CronJobConfig).filter_by(job_name=job_name).one()
    finally:
        session.close()


@pytest.mark.asyncio
async def test_start_seeds_defaults_and_registers(job_scheduler, session_factory):
    job_scheduler.start()
    try:
        assert job_scheduler.is_registered(PROFILE_FETCHER_JOB)
        assert job_scheduler.is_registered(QUOTA_RESET_JOB)
        assert _config(session_factory, PROFILE_FETCHER_JOB).next_run_at is not None
        reset = _config(session_factory, QUOTA_RESET_JOB)
        assert (reset.batch_size, reset.respect_quota) == (1, False)
        assert {nr["name"] for nr in job_scheduler.get_next_runs()} == {PROFILE_FETCHER_JOB, QUOTA_RESET_JOB}
    finally:
        await job_scheduler.stop()


@pytest.mark.asyncio
async def test_start_recovers_entries_stuck_in_fetching(job_scheduler, add_entries, load_entry):
    (entry_id,) = add_entries("A", status=EntryStatus.FETCHING)
    job_scheduler.start()
    try:
        assert load_entry(entry_id).status == EntryStatus.PENDING
    finally:
        await job_scheduler.stop()


@pytest.mark.asyncio
async def test_start_skips_invalid_configs(job_scheduler, add_job_config):
    add_job_config(job_name="mystery", job_type="BOGUS")
    add_job_config(job_name="broken_cron", job_type=JobType.PROFILE_FETCHER, schedule="not a cron")

    job_scheduler.start()
    try:
        assert not job_scheduler.is_registered("mystery")
        assert not job_scheduler.is_registered("broken_cron")
        assert job_scheduler.is_registered(PROFILE_FETCHER_JOB)
    finally:
        await job_scheduler.stop()


def test_register_unknown_job_type_raises(job_scheduler):
    with pytest.raises(ConfigurationError, match="Unknown job type"):
        job_scheduler.register_job({"job_name": "x", "job_type": "BOGUS", "schedule": "* * * * *"})


def test_register_invalid_cron_raises(job_scheduler):
    with pytest.raises(ConfigurationError, match="Invalid cron"):
        job_scheduler.register_job({"job_name": "x", "job_type": JobType.QUOTA_RESET, "schedule": "61 * * * *"})


@pytest.mark.asyncio
async def test_disable_then_reload_removes_trigger(job_scheduler, session_factory):
    job_scheduler.start()
    try:
        JobService.toggle_config(PROFILE_FETCHER_JOB, False)
        job_scheduler.reload_schedule(PROFILE_FETCHER_JOB)

        assert not job_scheduler.is_registered(PROFILE_FETCHER_JOB)
        assert job_scheduler.scheduler.get_job(f"job_{PROFILE_FETCHER_JOB}") is None
        assert _config(session_factory, PROFILE_FETCHER_JOB).next_run_at is None

        # already absent: still fine
        job_scheduler.reload_schedule(PROFILE_FETCHER_JOB)
        assert not job_scheduler.is_registered(PROFILE_FETCHER_JOB)
    finally:
        await job_scheduler.stop()


@pytest.mark.asyncio
async def test_reload_applies_new_schedule(job_scheduler):
    job_scheduler.start()
    try:
        JobService.update_config(PROFILE_FETCHER_JOB, {"schedule": "*/5 * * * *"})
        job_scheduler.reload_schedule(PROFILE_FETCHER_JOB)

        job = job_scheduler.scheduler.get_job(f"job_{PROFILE_FETCHER_JOB}")
        assert job is not None
        assert "*/5" in str(job.trigger)
        assert len([j for j in job_scheduler.scheduler.get_jobs() if j.name == PROFILE_FETCHER_JOB]) == 1
    finally:
        await job_scheduler.stop()


def test_reload_unknown_job_is_noop(job_scheduler):
    job_scheduler.reload_schedule("does_not_exist")
    assert not job_scheduler.is_registered("does_not_exist")


@pytest.mark.asyncio
async def test_trigger_now_runs_fetcher_and_stamps_last_run(job_scheduler, fetcher, add_job_config, session_factory):
    add_job_config()

    result = await job_scheduler.trigger_now(PROFILE_FETCHER_JOB)

    assert result == "history"
    fetcher.execute.assert_awaited_once()
    assert fetcher.execute.await_args.args[0] == PROFILE_FETCHER_JOB
    assert _config(session_factory, PROFILE_FETCHER_JOB).last_run_at is not None


@pytest.mark.asyncio
async def test_trigger_now_quota_reset(job_scheduler, quota, add_job_config):
    add_job_config(job_name=QUOTA_RESET_JOB, job_type=JobType.QUOTA_RESET, schedule="0 0 1 * *")

    await job_scheduler.trigger_now(QUOTA_RESET_JOB)

    quota.reset_monthly.assert_called_once()


@pytest.mark.asyncio
async def test_trigger_now_unknown_job(job_scheduler):
    with pytest.raises(LookupError):
        await job_scheduler.trigger_now("nope")


@pytest.mark.asyncio
async def test_trigger_now_propagates_overlap(job_scheduler, fetcher, add_job_config):
    add_job_config()
    fetcher.execute.side_effect = JobAlreadyRunningError(PROFILE_FETCHER_JOB)

    with pytest.raises(JobAlreadyRunningError):
        await job_scheduler.trigger_now(PROFILE_FETCHER_JOB)


@pytest.mark.asyncio
async def test_scheduled_run_swallows_errors(job_scheduler, fetcher, add_job_config):
    add_job_config()
    fetcher.execute.side_effect = JobAlreadyRunningError(PROFILE_FETCHER_JOB)
    await job_scheduler._scheduled_run(PROFILE_FETCHER_JOB, JobType.PROFILE_FETCHER)

    fetcher.execute.side_effect = RuntimeError("boom")
    await job_scheduler._scheduled_run(PROFILE_FETCHER_JOB, JobType.PROFILE_FETCHER)


@pytest.mark.asyncio
async def test_start_now_rejects_running_job(job_scheduler, fetcher, add_job_config):
    add_job_config()
    fetcher.is_running.return_value = True

    with pytest.raises(JobAlreadyRunningError):
        job_scheduler.start_now(PROFILE_FETCHER_JOB)


@pytest.mark.asyncio
async def test_stop_cancels_and_drains_running_jobs(job_scheduler, fetcher):
    async def wait_for_cancel(job_name, cancel_event=None):
        await cancel_event.wait()
        return "cancelled"

    fetcher.execute.side_effect = wait_for_cancel
    job_scheduler.start()

    task = job_scheduler.start_now(PROFILE_FETCHER_JOB)
    await asyncio.sleep(0)
    assert not task.done()

    await asyncio.wait_for(job_scheduler.stop(), timeout=5)

    assert task.done()
    assert fetcher.execute.await_args.kwargs["cancel_event"].is_set()
    assert not job_scheduler.scheduler.running


@pytest.mark.asyncio
async def test_stop_drains_cron_fired_run(job_scheduler, fetcher):
    started = asyncio.Event()
    outcomes = []

    async def run_until_cancelled(job_name, cancel_event=None):
        started.set()
        try:
            await cancel_event.wait()
        except asyncio.CancelledError:
            outcomes.append("hard-cancelled")
            raise
        outcomes.append("drained")
        return "cancelled"

    fetcher.execute.side_effect = run_until_cancelled
    job_scheduler.start()

    job = job_scheduler.scheduler.get_job(f"job_{PROFILE_FETCHER_JOB}")
    job.modify(next_run_time=datetime.now(timezone.utc))
    await asyncio.wait_for(started.wait(), timeout=5)

    await asyncio.wait_for(job_scheduler.stop(), timeout=5)

    assert outcomes == ["drained"]
    assert fetcher.execute.await_args.kwargs["cancel_event"].is_set()
    assert not job_scheduler.scheduler.running


@pytest.mark.asyncio
async def test_run_proceeds_when_last_run_stamp_fails(job_scheduler, fetcher, add_job_config, monkeypatch):
    add_job_config()
    monkeypatch.setattr(
        "harvester.scheduler.session_scope", MagicMock(side_effect=StorageError("database error: locked"))
    )

    result = await job_scheduler.trigger_now(PROFILE_FETCHER_JOB)

    assert result == "history"
    fetcher.execute.assert_awaited_once()
