from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import harvester.app as app_module
from core.exceptions import JobAlreadyRunningError
from harvester.models import EntryStatus, PROFILE_FETCHER_JOB

HEADERS = {"X-API-Key": "secret"}


def test_require_admin_api_key_rejects_when_missing_key(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", None)
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("any")
    assert exc.value.status_code == 503


def test_require_admin_api_key_rejects_invalid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("wrong")
    assert exc.value.status_code == 401


def test_require_admin_api_key_accepts_valid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    assert app_module.require_admin_api_key("secret") is None


@pytest.fixture
def scheduler(monkeypatch):
    mock = MagicMock()
    mock.get_next_runs.return_value = [{"job_key": "job_profile_fetcher", "name": PROFILE_FETCHER_JOB,
                                        "next_run": "2026-03-16T02:00:00+00:00"}]
    monkeypatch.setattr(app_module, "scheduler", mock)
    return mock


@pytest.fixture
def api(monkeypatch, session_factory, scheduler):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    return TestClient(app_module.app)


def test_endpoints_require_key(api):
    assert api.get("/api/jobs").status_code == 401


def test_list_jobs_includes_next_run(api, add_job_config):
    add_job_config()

    resp = api.get("/api/jobs", headers=HEADERS)

    assert resp.status_code == 200
    jobs = resp.json()["jobs"]
    assert jobs[0]["job_name"] == PROFILE_FETCHER_JOB
    assert jobs[0]["next_run"] == "2026-03-16T02:00:00+00:00"


def test_update_job_reloads_schedule(api, scheduler, add_job_config):
    add_job_config()

    resp = api.put(f"/api/jobs/{PROFILE_FETCHER_JOB}", json={"schedule": "15 4 * * *"}, headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["schedule"] == "15 4 * * *"
    scheduler.reload_schedule.assert_called_once_with(PROFILE_FETCHER_JOB)


def test_update_job_rejects_bad_cron(api, scheduler, add_job_config):
    add_job_config()

    resp = api.put(f"/api/jobs/{PROFILE_FETCHER_JOB}", json={"schedule": "whenever"}, headers=HEADERS)

    assert resp.status_code == 400
    scheduler.reload_schedule.assert_not_called()


def test_toggle_unknown_job_is_404(api):
    resp = api.post("/api/jobs/nope/toggle", json={"enabled": False}, headers=HEADERS)
    assert resp.status_code == 404


def test_toggle_job_reloads_schedule(api, scheduler, add_job_config):
    add_job_config()

    resp = api.post(f"/api/jobs/{PROFILE_FETCHER_JOB}/toggle", json={"enabled": False}, headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["enabled"] is False
    scheduler.reload_schedule.assert_called_once_with(PROFILE_FETCHER_JOB)


def test_trigger_running_job_is_409(api, scheduler):
    scheduler.start_now.side_effect = JobAlreadyRunningError(PROFILE_FETCHER_JOB)

    resp = api.post(f"/api/jobs/{PROFILE_FETCHER_JOB}/run", headers=HEADERS)

    assert resp.status_code == 409
    assert "already running" in resp.json()["detail"]


def test_trigger_job_starts_run(api, scheduler):
    resp = api.post(f"/api/jobs/{PROFILE_FETCHER_JOB}/run", headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["status"] == "started"
    scheduler.start_now.assert_called_once_with(PROFILE_FETCHER_JOB)


def test_latest_run_404_when_none(api):
    resp = api.get(f"/api/jobs/{PROFILE_FETCHER_JOB}/runs/latest", headers=HEADERS)
    assert resp.status_code == 404


def test_quota_limit_validation(api):
    resp = api.put("/api/quota/limit", json={"quota_limit": 0}, headers=HEADERS)
    assert resp.status_code == 422


def test_entry_stats_and_requeue(api, add_entries):
    add_entries("A", "B", status=EntryStatus.FAILED)

    assert api.get("/api/entries/stats", headers=HEADERS).json()[EntryStatus.FAILED] == 2

    resp = api.post("/api/entries/requeue-failed", headers=HEADERS)
    assert resp.json() == {"requeued": 2}
