"""
FastAPI application — admin REST API over the scheduler, deliveries and alerts.
Run with: python -m reporting
"""
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.errors import DeliveryError, NotFoundError, ValidationError
from reporting.database import init_db
from reporting.scheduler import JobScheduler
from reporting.store import ReportStore
from services.alert_service import AlertService
from services.job_service import JobService
from services.mailer import LogMailer
from services.report_service import ReportService

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Reporting Scheduler", version="1.0.0")

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("REPORTING_ALLOWED_ORIGINS", "http://localhost:8001").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Pydantic Schemas
# ============================================================================

class SendRequest(BaseModel):
    is_test: bool = False
    test_email: Optional[str] = None


class AlertCreate(BaseModel):
    name: str
    alert_type: str
    config: Dict[str, Any]
    report_id: Optional[str] = None
    kpi_id: Optional[str] = None
    recipients: List[str] = []
    channels: List[str] = ["email"]


class AlertUpdate(BaseModel):
    name: Optional[str] = None
    alert_type: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    recipients: Optional[List[str]] = None
    channels: Optional[List[str]] = None
    active: Optional[bool] = None


# ============================================================================
# Errors
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DeliveryError)
async def delivery_error_handler(request: Request, exc: DeliveryError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


def _transaction_response(result: dict):
    """Committed results pass through; rolled-back or no-op results become a 500 carrying the result."""
    if result.get("success"):
        return result
    return JSONResponse(status_code=500, content=jsonable_encoder(result))


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup():
    # A store (and mailer/renderer) already placed on app.state is used as-is
    store = getattr(app.state, "store", None)
    if store is None:
        init_db()
        store = ReportStore()
    mailer = getattr(app.state, "mailer", None) or LogMailer()
    renderer = getattr(app.state, "renderer", None)

    report_service = ReportService(store, mailer=mailer, renderer=renderer)
    alert_service = AlertService(store, report_service, mailer=mailer)
    scheduler = JobScheduler(store, report_service, alert_service)

    app.state.store = store
    app.state.report_service = report_service
    app.state.alert_service = alert_service
    app.state.scheduler = scheduler
    app.state.job_service = JobService(store, report_service, scheduler)

    scheduler.ensure_alert_evaluation_job()
    await scheduler.init()
    logger.info("[API] Reporting scheduler started")


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        await scheduler.shutdown()


# ============================================================================
# API — Jobs
# ============================================================================

@app.get("/api/jobs")
def list_jobs():
    """All scheduled jobs with their last-run bookkeeping and trigger state."""
    scheduler = app.state.scheduler
    return {"jobs": scheduler.get_job_statuses(), "next_runs": scheduler.get_next_runs()}


@app.get("/api/jobs/health")
def jobs_health():
    return app.state.job_service.get_job_status()


@app.post("/api/jobs/{job_id}/pause")
def pause_job(job_id: str):
    return {"job": app.state.scheduler.pause_job(job_id), "status": "paused"}


@app.post("/api/jobs/{job_id}/resume")
def resume_job(job_id: str):
    return {"job": app.state.scheduler.resume_job(job_id), "status": "resumed"}


@app.post("/api/jobs/{job_id}/run")
async def run_job(job_id: str):
    """Manually trigger a job execution."""
    return await app.state.scheduler.trigger_job(job_id)


@app.delete("/api/jobs/{job_id}")
def delete_job(job_id: str):
    if not app.state.scheduler.remove_job(job_id):
        raise HTTPException(404, "Job not found")
    return {"status": "deleted"}


@app.post("/api/sweep")
async def run_sweep():
    """Run the due-job sweep now instead of waiting for the next interval."""
    return await app.state.scheduler.check_due_jobs()


# ============================================================================
# API — Reports
# ============================================================================

@app.put("/api/reports/{report_id}/schedule")
async def schedule_report(report_id: str, schedule: Dict[str, Any] = Body(...)):
    return _transaction_response(await app.state.job_service.schedule_report(report_id, schedule))


@app.delete("/api/reports/{report_id}/schedule")
async def unschedule_report(report_id: str):
    return _transaction_response(await app.state.job_service.unschedule_report(report_id))


@app.get("/api/reports/{report_id}/preview")
async def report_preview(report_id: str):
    return await app.state.report_service.get_report_preview(report_id)


@app.post("/api/reports/{report_id}/send")
async def send_report(report_id: str, request: Optional[SendRequest] = None):
    request = request or SendRequest()
    if request.is_test and not request.test_email:
        raise HTTPException(400, "test_email is required for a test send")
    return await app.state.report_service.send_report(
        report_id, is_test=request.is_test, test_email=request.test_email,
    )


@app.get("/api/reports/{report_id}/deliveries")
def report_deliveries(report_id: str, limit: int = Query(50, ge=1, le=500)):
    if not app.state.store.get_report(report_id):
        raise HTTPException(404, "Report not found")
    return {"deliveries": app.state.store.list_delivery_history(report_id, limit=limit)}


# ============================================================================
# API — Alerts
# ============================================================================

@app.post("/api/alerts")
def create_alert(alert: AlertCreate):
    return app.state.alert_service.create_alert(**alert.model_dump())


@app.get("/api/alerts/history")
def alert_history(alert_id: Optional[str] = None, limit: int = Query(100, ge=1, le=1000)):
    return {"history": app.state.alert_service.get_alert_history(alert_id=alert_id, limit=limit)}


@app.post("/api/alerts/evaluate")
async def evaluate_alerts(report_id: Optional[str] = None):
    return await app.state.alert_service.evaluate_all_alerts(report_id=report_id)


@app.put("/api/alerts/{alert_id}")
def update_alert(alert_id: str, updates: AlertUpdate):
    return app.state.alert_service.update_alert(alert_id, **updates.model_dump(exclude_unset=True))


@app.delete("/api/alerts/{alert_id}")
def delete_alert(alert_id: str):
    if not app.state.alert_service.delete_alert(alert_id):
        raise HTTPException(404, "Alert not found")
    return {"status": "deleted"}


@app.post("/api/alerts/{alert_id}/test")
async def test_alert(alert_id: str):
    return await app.state.alert_service.test_alert(alert_id)


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
