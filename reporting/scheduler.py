"""
Job scheduler — fires report deliveries and alert evaluations on cron schedules.

Every active ScheduledJob row gets an APScheduler cron trigger. Triggers can
be missed (restarts, a job that was never registered), so a due-job sweep
runs alongside them and delivers any scheduled report whose next_run_at has
passed.
"""
import asyncio
import logging
import os
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.errors import NotFoundError, ValidationError
from core.retry import with_retry
from reporting.models import JobType
from reporting.schedule import SCHEDULER_TIMEZONE, build_cron_trigger, to_utc_naive, utc_now, validate_cron

logger = logging.getLogger(__name__)

DUE_SWEEP_INTERVAL_SECONDS = float(os.environ.get("DUE_SWEEP_INTERVAL_SECONDS", "60"))
ALERT_EVALUATION_CRON = os.environ.get("ALERT_EVALUATION_CRON", "*/15 * * * *")
GLOBAL_ENTITY = "global"


def _job_key(job_id: str) -> str:
    return f"job_{job_id}"


def _as_job_type(value) -> JobType:
    try:
        return JobType(value)
    except ValueError:
        raise ValidationError(f"Unknown job type '{value}'") from None


class JobScheduler:
    """Keeps APScheduler triggers in step with the scheduled_jobs table."""

    def __init__(self, store, report_service, alert_service=None, timezone: str = SCHEDULER_TIMEZONE,
                 sweep_interval: float = DUE_SWEEP_INTERVAL_SECONDS, scheduler: Optional[AsyncIOScheduler] = None,
                 now: Optional[Callable] = None):
        self.store = store
        self.report_service = report_service
        self.alert_service = alert_service
        self.timezone = timezone
        self.sweep_interval = sweep_interval
        self.scheduler = scheduler or AsyncIOScheduler(timezone=ZoneInfo(timezone))
        self._now = now or utc_now
        self._jobs: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._sweep_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self._handlers = {
            JobType.REPORT_DELIVERY: self._execute_report_delivery,
            JobType.ALERT_EVALUATION: self._execute_alert_evaluation,
        }
        missing = set(JobType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for job types: {sorted(t.value for t in missing)}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self):
        """Recover stale deliveries, start APScheduler, register active jobs and start the sweep."""
        self._shutting_down = False
        self.store.fail_stale_deliveries()
        if not self.scheduler.running:
            self.scheduler.start()
        loaded = self.load_scheduled_jobs()
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"[SCHEDULER] Started with {loaded} job(s), sweep every {self.sweep_interval:g}s")

    async def shutdown(self):
        self._shutting_down = True
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        with self._lock:
            self._jobs.clear()
        logger.info("[SCHEDULER] Shutdown complete")

    def load_scheduled_jobs(self) -> int:
        """Register every active job. A job that fails to register is logged and skipped."""
        registered = 0
        for job in self.store.list_scheduled_jobs(active_only=True):
            if not validate_cron(job["cron_expression"], job.get("timezone") or self.timezone):
                logger.error(f"[SCHEDULER] Skipping job {job['id']} ({job['job_type']}:{job['entity_id']}): "
                             f"invalid cron '{job['cron_expression']}'")
                continue
            try:
                self._register(job)
                registered += 1
            except Exception as e:
                logger.error(f"[SCHEDULER] Failed to register job {job['id']} "
                             f"({job['job_type']}:{job['entity_id']}, cron={job['cron_expression']}): {e}")
        return registered

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _register(self, job: dict):
        trigger = build_cron_trigger(job["cron_expression"], job.get("timezone") or self.timezone)
        with self._lock:
            aps_job = self.scheduler.add_job(
                self._run_scheduled,
                trigger=trigger,
                id=_job_key(job["id"]),
                name=f"{job['job_type']}:{job['entity_id']}",
                args=[job["id"]],
                replace_existing=True,
                misfire_grace_time=60,
                coalesce=True,
                max_instances=1,
            )
            self._jobs[job["id"]] = aps_job
        logger.info(f"[SCHEDULER] Registered job {job['id']} ({job['job_type']}:{job['entity_id']}, "
                    f"cron={job['cron_expression']})")
        return aps_job

    def _unregister(self, job_id: str) -> bool:
        with self._lock:
            had_timer = self._jobs.pop(job_id, None) is not None
            if self.scheduler.get_job(_job_key(job_id)):
                self.scheduler.remove_job(_job_key(job_id))
                had_timer = True
        return had_timer

    def sync_job(self, job: dict):
        """Match the trigger to a job row: registered when active, dropped otherwise."""
        if job["is_active"]:
            self._register(job)
        else:
            self._unregister(job["id"])

    def is_registered(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def _next_run_at(self, cron_expression: str, tz: Optional[str]):
        trigger = build_cron_trigger(cron_expression, tz or self.timezone)
        now = self._now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=ZoneInfo("UTC"))
        # strictly after now, a job that just ran at its fire time moves on
        return to_utc_naive(trigger.get_next_fire_time(None, now + timedelta(seconds=1)))

    def upsert_job(self, job_type, entity_id: str, cron_expression: str, timezone: Optional[str] = None) -> dict:
        """Create or update the job for (job_type, entity_id) and (re)register its trigger."""
        job_type = _as_job_type(job_type)
        timezone = timezone or self.timezone
        next_run_at = self._next_run_at(cron_expression, timezone)

        fields = {
            "cron_expression": cron_expression,
            "timezone": timezone,
            "is_active": True,
            "next_run_at": next_run_at,
        }
        existing = self.store.get_scheduled_job_by_entity(job_type.value, entity_id)
        if existing:
            job = self.store.update_scheduled_job(existing["id"], **fields)
        else:
            report_id = None
            if job_type == JobType.REPORT_DELIVERY and self.store.get_report(entity_id):
                report_id = entity_id
            fields.pop("cron_expression")
            job = self.store.create_scheduled_job(job_type.value, entity_id, cron_expression,
                                                  report_id=report_id, **fields)
        self._register(job)
        return job

    def remove_job(self, job_id: str) -> bool:
        self._unregister(job_id)
        deleted = self.store.delete_scheduled_job(job_id)
        if deleted:
            logger.info(f"[SCHEDULER] Removed job {job_id}")
        return deleted

    def remove_job_by_entity(self, job_type, entity_id: str) -> bool:
        job = self.store.get_scheduled_job_by_entity(_as_job_type(job_type).value, entity_id)
        if not job:
            return False
        return self.remove_job(job["id"])

    def pause_job(self, job_id: str) -> dict:
        if not self.store.get_scheduled_job(job_id):
            raise NotFoundError("ScheduledJob", job_id)
        self._unregister(job_id)
        job = self.store.update_scheduled_job(job_id, is_active=False)
        logger.info(f"[SCHEDULER] Paused job {job_id}")
        return job

    def resume_job(self, job_id: str) -> dict:
        job = self.store.get_scheduled_job(job_id)
        if not job:
            raise NotFoundError("ScheduledJob", job_id)
        next_run_at = self._next_run_at(job["cron_expression"], job.get("timezone"))
        job = self.store.update_scheduled_job(job_id, is_active=True, next_run_at=next_run_at)
        self._register(job)
        logger.info(f"[SCHEDULER] Resumed job {job_id}")
        return job

    def ensure_alert_evaluation_job(self, cron_expression: str = ALERT_EVALUATION_CRON) -> dict:
        """Create the global alert-evaluation job unless it already exists (paused or not)."""
        existing = self.store.get_scheduled_job_by_entity(JobType.ALERT_EVALUATION.value, GLOBAL_ENTITY)
        if existing:
            return existing
        return self.upsert_job(JobType.ALERT_EVALUATION, GLOBAL_ENTITY, cron_expression)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_scheduled(self, job_id: str):
        """APScheduler callback. The row is re-read so deleted or paused jobs never run."""
        job = self.store.get_scheduled_job(job_id)
        if not job:
            logger.info(f"[SCHEDULER] Job {job_id} no longer exists, dropping its trigger")
            self._unregister(job_id)
            return
        if not job["is_active"]:
            logger.info(f"[SCHEDULER] Job {job_id} is paused, skipping")
            return
        await self.execute_job(job, require_due=True)

    async def trigger_job(self, job_id: str) -> Dict[str, Any]:
        """Run a job right now, regardless of its schedule."""
        job = self.store.get_scheduled_job(job_id)
        if not job:
            raise NotFoundError("ScheduledJob", job_id)
        return await self.execute_job(job)

    async def execute_job(self, job: dict, require_due: bool = False) -> Dict[str, Any]:
        """
        Dispatch a job to its handler. Failures are recorded on the job row
        (last_status=failed, last_error) and the job stays registered.
        """
        try:
            job_type = _as_job_type(job["job_type"])
        except ValidationError as e:
            logger.error(f"[SCHEDULER] Job {job['id']}: {e}")
            self._record_run(job["id"], "failed", str(e))
            return {"success": False, "job_id": job["id"], "error": str(e)}

        logger.info(f"[SCHEDULER] Executing job {job['id']} ({job_type.value}:{job['entity_id']})")
        try:
            result = await self._handlers[job_type](job, require_due)
        except Exception as e:
            logger.error(f"[SCHEDULER] Job {job['id']} ({job_type.value}:{job['entity_id']}) failed: {e}")
            self._record_run(job["id"], "failed", str(e))
            return {"success": False, "job_id": job["id"], "error": str(e)}
        return {"success": True, "job_id": job["id"], "result": result}

    async def _execute_report_delivery(self, job: dict, require_due: bool) -> Dict[str, Any]:
        report_id = job["entity_id"]
        result = await self.report_service.process_scheduled_delivery(report_id, require_due=require_due)
        if result.get("skipped"):
            logger.info(f"[SCHEDULER] Report {report_id} skipped ({result.get('reason')})")
        else:
            logger.info(f"[SCHEDULER] Report {report_id} sent to {len(result.get('recipients') or [])} recipient(s)")
        return result

    async def _execute_alert_evaluation(self, job: dict, require_due: bool) -> Dict[str, Any]:
        if self.alert_service is None:
            raise RuntimeError("No alert service configured")
        report_id = None if job["entity_id"] == GLOBAL_ENTITY else job["entity_id"]
        summary = await self.alert_service.evaluate_all_alerts(report_id=report_id)
        self._record_run(job["id"], "success", None,
                         next_run_at=self._next_run_at(job["cron_expression"], job.get("timezone")))
        return summary

    def _record_run(self, job_id: str, status: str, error: Optional[str], **extra):
        try:
            self.store.update_scheduled_job(
                job_id, last_run_at=to_utc_naive(self._now()), last_status=status, last_error=error, **extra,
            )
        except NotFoundError:
            logger.warning(f"[SCHEDULER] Job {job_id} was deleted while running")

    # ------------------------------------------------------------------
    # Due-job sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self):
        """Sweep once immediately, then every sweep_interval seconds."""
        while not self._shutting_down:
            try:
                await self.check_due_jobs()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[SWEEP] Error: {e}")
            try:
                await asyncio.sleep(self.sweep_interval)
            except asyncio.CancelledError:
                break

    async def check_due_jobs(self) -> Dict[str, Any]:
        """Deliver every scheduled report whose next_run_at has passed, one report at a time."""
        summary = {"processed": 0, "succeeded": 0, "skipped": 0, "failed": 0}
        now = to_utc_naive(self._now())
        try:
            due = await with_retry(
                lambda: self.store.find_scheduled_reports_due(now),
                operation_name="find_scheduled_reports_due",
            )
        except Exception as e:
            logger.error(f"[SWEEP] Could not query due reports: {e}")
            summary["error"] = str(e)
            return summary

        for report in due:
            if not report.get("is_scheduled"):
                continue
            summary["processed"] += 1
            logger.info(f"[SWEEP] Processing due report {report['id']} (next_run_at={report['next_run_at']})")
            try:
                result = await self.report_service.process_scheduled_delivery(report["id"], require_due=True)
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"[SWEEP] Failed to process report {report['id']}: {e}")
                job = self.store.get_scheduled_job_by_entity(JobType.REPORT_DELIVERY.value, report["id"])
                if job:
                    self._record_run(job["id"], "failed", str(e))
                continue
            if result.get("skipped"):
                summary["skipped"] += 1
            else:
                summary["succeeded"] += 1

        if summary["processed"]:
            logger.info(f"[SWEEP] Processed {summary['processed']} due report(s): "
                        f"{summary['succeeded']} sent, {summary['skipped']} skipped, {summary['failed']} failed")
        return summary

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_job_statuses(self) -> List[dict]:
        statuses = []
        for job in self.store.list_scheduled_jobs():
            statuses.append({
                "id": job["id"],
                "type": job["job_type"],
                "entity_id": job["entity_id"],
                "cron_expression": job["cron_expression"],
                "timezone": job.get("timezone"),
                "is_active": job["is_active"],
                "registered": self.is_registered(job["id"]),
                "last_run_at": job.get("last_run_at"),
                "last_status": job.get("last_status"),
                "last_error": job.get("last_error"),
                "next_run_at": job.get("next_run_at"),
            })
        return statuses

    def get_next_runs(self) -> List[dict]:
        """Upcoming trigger fire times, as APScheduler sees them."""
        result = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            result.append({
                "job_key": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return result
