"""
Job Management Service — schedules and unschedules report deliveries.

A report's schedule lives in two places: the report row (schedule_config,
is_scheduled, next_run_at) and its ScheduledJob. Both are written inside a
compensating transaction so a failure in either leaves the pair as it was.
"""
import logging
from typing import Any, Dict, Optional

from core.errors import NotFoundError, ValidationError
from core.transaction import TransactionStep, create_with_secondary, with_transaction
from reporting.models import JobType
from reporting.schedule import (
    ScheduleConfig, build_cron_trigger, calculate_next_run_time, schedule_to_cron, to_utc_naive, utc_now,
)
from services.report_service import DELIVERY_FORMATS

logger = logging.getLogger(__name__)

REPORT_SCHEDULE_FIELDS = ("schedule_config", "is_scheduled", "next_run_at", "frequency")
JOB_STATE_FIELDS = ("cron_expression", "timezone", "is_active", "next_run_at")
REPORT_CREATE_FIELDS = {"warehouse_id", "visualization_config", "delivery_format", "recipients"}


class JobService:
    def __init__(self, store, report_service, scheduler, now=None):
        self.store = store
        self.report_service = report_service
        self.scheduler = scheduler
        self._now = now or utc_now

    def _get_report(self, report_id: str) -> dict:
        report = self.store.get_report(report_id)
        if not report:
            raise NotFoundError("Report", report_id)
        return report

    def _restore_report(self, report_id: str, prior: Dict[str, Any]):
        self.store.update_report(report_id, **prior)
        logger.info(f"[TXN] Restored schedule fields of report {report_id}")

    def _restore_job(self, job: dict, prior_job: Optional[dict]):
        """Put the job back the way it was, or remove it if it did not exist before."""
        if prior_job is None:
            self.scheduler.remove_job(job["id"])
            return
        restored = self.store.update_scheduled_job(
            prior_job["id"], **{field: prior_job[field] for field in JOB_STATE_FIELDS}
        )
        self.scheduler.sync_job(restored)

    async def _schedule_transaction(self, report_id: str, cfg: ScheduleConfig):
        report = self._get_report(report_id)
        cron_expression = schedule_to_cron(cfg)
        build_cron_trigger(cron_expression, cfg.timezone)
        next_run_at = to_utc_naive(calculate_next_run_time(cfg, self._now()))

        prior_report = {field: report.get(field) for field in REPORT_SCHEDULE_FIELDS}
        prior_job = self.store.get_scheduled_job_by_entity(JobType.REPORT_DELIVERY.value, report_id)

        steps = [
            TransactionStep(
                name="update_report",
                execute=lambda _: self.store.update_report(
                    report_id,
                    schedule_config=cfg.to_dict(),
                    is_scheduled=True,
                    next_run_at=next_run_at,
                    frequency=cfg.frequency.value,
                ),
                rollback=lambda _: self._restore_report(report_id, prior_report),
            ),
            TransactionStep(
                name="register_job",
                execute=lambda _: self.scheduler.upsert_job(
                    JobType.REPORT_DELIVERY, report_id, cron_expression, cfg.timezone,
                ),
                rollback=lambda job: self._restore_job(job, prior_job),
            ),
        ]
        return await with_transaction(steps), cron_expression, next_run_at

    async def schedule_report(self, report_id: str, schedule_config) -> Dict[str, Any]:
        """
        Turn on scheduled delivery for a report.

        Invalid schedules are rejected with ValidationError before anything is
        written. Otherwise the result says whether the change committed or
        was rolled back, and which step failed.
        """
        cfg = ScheduleConfig.coerce(schedule_config)
        result, cron_expression, next_run_at = await self._schedule_transaction(report_id, cfg)

        if not result.success:
            logger.error(f"[TXN] Scheduling report {report_id} failed at '{result.failed_step}': {result.error}")
            return {**result.to_dict(), "report_id": report_id}

        logger.info(f"[SCHEDULER] Report {report_id} scheduled (cron={cron_expression}, next_run_at={next_run_at})")
        return {
            **result.to_dict(),
            "report_id": report_id,
            "report": result.results[0],
            "job": result.results[1],
            "cron_expression": cron_expression,
            "next_run_at": next_run_at,
        }

    async def unschedule_report(self, report_id: str) -> Dict[str, Any]:
        """Stop scheduled delivery. The job is deactivated, not deleted."""
        report = self._get_report(report_id)
        prior_report = {field: report.get(field) for field in ("is_scheduled", "next_run_at")}
        prior_job = self.store.get_scheduled_job_by_entity(JobType.REPORT_DELIVERY.value, report_id)

        steps = [
            TransactionStep(
                name="update_report",
                execute=lambda _: self.store.update_report(report_id, is_scheduled=False, next_run_at=None),
                rollback=lambda _: self._restore_report(report_id, prior_report),
            ),
            TransactionStep(
                name="deactivate_job",
                execute=lambda _: self.scheduler.pause_job(prior_job["id"]) if prior_job else None,
                rollback=lambda job: self._restore_job(job, prior_job) if prior_job else None,
            ),
        ]
        result = await with_transaction(steps)

        if not result.success:
            logger.error(f"[TXN] Unscheduling report {report_id} failed at '{result.failed_step}': {result.error}")
            return {**result.to_dict(), "report_id": report_id}

        logger.info(f"[SCHEDULER] Report {report_id} unscheduled")
        return {**result.to_dict(), "report_id": report_id, "report": result.results[0], "job": result.results[1]}

    async def create_scheduled_report(self, client_id: str, data: Dict[str, Any], schedule_config) -> Dict[str, Any]:
        """Create a report and schedule it; the report is deleted again if scheduling fails."""
        cfg = ScheduleConfig.coerce(schedule_config)
        name = (data or {}).get("name")
        if not name:
            raise ValidationError("Report name is required")
        fields = {k: v for k, v in data.items() if k != "name"}
        unknown = set(fields) - REPORT_CREATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown report fields: {', '.join(sorted(unknown))}")
        if fields.get("delivery_format", "pdf") not in DELIVERY_FORMATS:
            raise ValidationError(f"Unknown delivery format '{fields['delivery_format']}'")
        if not self.store.get_client(client_id):
            raise NotFoundError("Client", client_id)

        created = []

        def _create():
            report = self.store.create_report(client_id, name, **fields)
            created.append(report)
            return report

        async def _schedule(report):
            result, _, _ = await self._schedule_transaction(report["id"], cfg)
            if not result.success:
                raise result.error
            return {"report": result.results[0], "job": result.results[1]}

        try:
            out = await create_with_secondary(
                create_fn=_create,
                delete_fn=lambda report: self.store.delete_report(report["id"]),
                secondary_fn=_schedule,
            )
        except Exception as e:
            logger.error(f"[TXN] Creating scheduled report '{name}' for client {client_id} failed: {e}")
            return {"success": False, "outcome": "rolled_back" if created else "noop", "error": str(e)}

        logger.info(f"[SCHEDULER] Created scheduled report {out['primary']['id']} ({name})")
        return {
            "success": True,
            "outcome": "committed",
            "report": out["secondary"]["report"],
            "job": out["secondary"]["job"],
        }

    def get_job_status(self) -> Dict[str, Any]:
        """Overview of all scheduled jobs with health status."""
        healthy = warning = error = 0
        details = []
        for status in self.scheduler.get_job_statuses():
            last_status = status["last_status"] or "no_runs"
            if last_status == "success":
                healthy += 1
            elif last_status == "failed":
                error += 1
            else:
                warning += 1
            details.append({**status, "health_status": last_status})

        return {
            "success": True,
            "summary": {
                "total": len(details),
                "healthy": healthy,
                "warning": warning,
                "error": error,
            },
            "jobs": details,
        }
