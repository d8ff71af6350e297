"""
FastAPI application: admin REST API for the profile harvester.
Run with: python -m harvester serve
"""
import logging
import os
import secrets
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.exceptions import ConfigurationError, JobAlreadyRunningError, StorageError
from harvester.database import init_db
from harvester.scheduler import build_scheduler
from services.job_service import JobService

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Profile Harvester", version="1.0.0")

API_KEY = os.environ.get("HARVESTER_API_KEY")
ALLOW_INSECURE = os.environ.get("HARVESTER_ALLOW_INSECURE", "false").lower() == "true"

scheduler = build_scheduler()


def require_admin_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    """Protect administrative endpoints with API key."""
    if ALLOW_INSECURE:
        return

    if not API_KEY:
        raise HTTPException(
            status_code=503,
            detail="HARVESTER_API_KEY is not configured. Set it or enable HARVESTER_ALLOW_INSECURE=true only for development.",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


def _tracker_dict(tracker) -> dict:
    return {
        "month": tracker.month,
        "year": tracker.year,
        "call_count": tracker.call_count,
        "quota_limit": tracker.quota_limit,
        "remaining": tracker.remaining,
        "quota_exceeded": tracker.quota_exceeded,
        "override_enabled": tracker.override_enabled,
        "notification_sent": tracker.notification_sent,
        "last_call_at": tracker.last_call_at.isoformat() if tracker.last_call_at else None,
    }


def _get_config_or_404(job_name: str) -> dict:
    try:
        return JobService.get_config(job_name)
    except LookupError:
        raise HTTPException(404, f"Job '{job_name}' not found")


# ============================================================================
# Pydantic Schemas
# ============================================================================

class JobConfigUpdate(BaseModel):
    schedule: Optional[str] = None
    enabled: Optional[bool] = None
    batch_size: Optional[int] = Field(default=None, gt=0)
    respect_quota: Optional[bool] = None
    admin_email: Optional[str] = None

class JobToggle(BaseModel):
    enabled: bool

class QuotaOverride(BaseModel):
    enabled: bool

class QuotaLimitUpdate(BaseModel):
    quota_limit: int = Field(gt=0)


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup():
    init_db()
    scheduler.start()
    if ALLOW_INSECURE:
        logger.warning("[SECURITY] HARVESTER_ALLOW_INSECURE=true. API key checks are disabled.")
    elif not API_KEY:
        logger.error("[SECURITY] HARVESTER_API_KEY is not set. Administrative API endpoints will reject requests.")
    logger.info("[APP] Profile harvester started")

@app.on_event("shutdown")
async def shutdown():
    await scheduler.stop()


# ============================================================================
# API: Job Configs
# ============================================================================

@app.get("/api/jobs")
def list_jobs(_auth: None = Depends(require_admin_api_key)):
    """List job configs with their next scheduled run."""
    next_runs = {nr["name"]: nr["next_run"] for nr in scheduler.get_next_runs()}
    jobs = JobService.list_configs()
    for job in jobs:
        job["next_run"] = next_runs.get(job["job_name"])
    return {"jobs": jobs}


@app.get("/api/jobs/{job_name}")
def get_job(job_name: str, _auth: None = Depends(require_admin_api_key)):
    return _get_config_or_404(job_name)


@app.put("/api/jobs/{job_name}")
def update_job(job_name: str, updates: JobConfigUpdate, _auth: None = Depends(require_admin_api_key)):
    """Update a job config and re-schedule it."""
    payload = updates.dict(exclude_unset=True)
    if not payload:
        raise HTTPException(400, "No fields to update")
    try:
        config = JobService.update_config(job_name, payload)
    except LookupError:
        raise HTTPException(404, f"Job '{job_name}' not found")
    except ConfigurationError as e:
        raise HTTPException(400, str(e))

    try:
        scheduler.reload_schedule(job_name)
    except ConfigurationError as e:
        logger.error("[APP] Saved '%s' but could not schedule it: %s", job_name, e)
        raise HTTPException(400, str(e))
    return config


@app.post("/api/jobs/{job_name}/toggle")
def toggle_job(job_name: str, body: JobToggle, _auth: None = Depends(require_admin_api_key)):
    try:
        config = JobService.toggle_config(job_name, body.enabled)
    except LookupError:
        raise HTTPException(404, f"Job '{job_name}' not found")
    scheduler.reload_schedule(job_name)
    return config


@app.post("/api/jobs/{job_name}/run")
async def trigger_job(job_name: str, _auth: None = Depends(require_admin_api_key)):
    """Manually start a job in the background."""
    try:
        scheduler.start_now(job_name)
    except LookupError:
        raise HTTPException(404, f"Job '{job_name}' not found")
    except JobAlreadyRunningError as e:
        raise HTTPException(409, str(e))
    return {"job_name": job_name, "status": "started"}


# ============================================================================
# API: Job Runs
# ============================================================================

@app.get("/api/runs")
def list_runs(
    job_name: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    _auth: None = Depends(require_admin_api_key),
):
    return {"runs": JobService.list_runs(job_name=job_name, status=status, limit=limit)}


@app.get("/api/jobs/{job_name}/runs/latest")
def latest_run(job_name: str, _auth: None = Depends(require_admin_api_key)):
    run = JobService.latest_run(job_name)
    if run is None:
        raise HTTPException(404, f"No runs recorded for '{job_name}'")
    return run


@app.get("/api/jobs/{job_name}/stats")
def run_stats(job_name: str, days: int = Query(0, ge=0, le=365), _auth: None = Depends(require_admin_api_key)):
    return JobService.run_stats(job_name, days=days)


# ============================================================================
# API: Quota
# ============================================================================

@app.get("/api/quota")
def get_quota(_auth: None = Depends(require_admin_api_key)):
    return _tracker_dict(scheduler.quota.current_status())


@app.get("/api/quota/history")
def get_quota_history(limit: int = Query(12, ge=1, le=120), _auth: None = Depends(require_admin_api_key)):
    return {"history": [_tracker_dict(t) for t in scheduler.quota.history(limit)]}


@app.post("/api/quota/override")
def set_quota_override(body: QuotaOverride, _auth: None = Depends(require_admin_api_key)):
    return _tracker_dict(scheduler.quota.set_override(body.enabled))


@app.put("/api/quota/limit")
def update_quota_limit(body: QuotaLimitUpdate, _auth: None = Depends(require_admin_api_key)):
    try:
        return _tracker_dict(scheduler.quota.update_limit(body.quota_limit))
    except ValueError as e:
        raise HTTPException(400, str(e))


# ============================================================================
# API: Profile Entries
# ============================================================================

@app.get("/api/entries/stats")
def entry_stats(_auth: None = Depends(require_admin_api_key)):
    return JobService.entry_status_counts()


@app.post("/api/entries/requeue-failed")
def requeue_failed(limit: Optional[int] = Query(None, ge=1), _auth: None = Depends(require_admin_api_key)):
    return {"requeued": JobService.requeue_failed(limit)}


@app.exception_handler(StorageError)
async def storage_error_handler(request, exc: StorageError):
    logger.error("[APP] Storage error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage error"})


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
