from datetime import datetime

import pytest

from core.errors import NotFoundError, ValidationError
from services.job_service import JobService

WEEKLY_MONDAY = {"frequency": "weekly", "dayOfWeek": "monday", "time": "09:00", "timezone": "UTC"}


@pytest.fixture
def jobs(store, report_service, scheduler, now):
    return JobService(store, report_service, scheduler, now=now)


def _failing_upsert(calls):
    def upsert_job(job_type, entity_id, *args, **kwargs):
        calls.append(entity_id)
        raise RuntimeError("scheduler unavailable")
    return upsert_job


class TestScheduleReport:
    @pytest.mark.asyncio
    async def test_schedule_writes_report_and_job(self, jobs, store, scheduler, report):
        result = await jobs.schedule_report(report["id"], WEEKLY_MONDAY)

        assert result["success"] is True
        assert result["outcome"] == "committed"
        assert result["cron_expression"] == "0 9 * * 1"
        assert result["next_run_at"] == datetime(2024, 1, 22, 9, 0)

        stored = store.get_report(report["id"])
        assert stored["is_scheduled"] is True
        assert stored["frequency"] == "weekly"
        assert stored["schedule_config"] == {"frequency": "weekly", "time": "09:00", "dayOfWeek": "monday",
                                             "timezone": "UTC"}
        assert stored["next_run_at"] == datetime(2024, 1, 22, 9, 0)
        assert scheduler.is_registered(result["job"]["id"])

    @pytest.mark.asyncio
    async def test_reschedule_reuses_job(self, jobs, store, report):
        first = await jobs.schedule_report(report["id"], WEEKLY_MONDAY)
        second = await jobs.schedule_report(report["id"], {"frequency": "daily", "time": "07:30", "timezone": "UTC"})

        assert second["job"]["id"] == first["job"]["id"]
        assert second["cron_expression"] == "30 7 * * *"
        assert second["next_run_at"] == datetime(2024, 1, 21, 7, 30)
        assert len(store.list_scheduled_jobs()) == 1

    @pytest.mark.asyncio
    async def test_invalid_schedule_writes_nothing(self, jobs, store, report):
        with pytest.raises(ValidationError):
            await jobs.schedule_report(report["id"], {"frequency": "weekly"})
        assert store.get_report(report["id"])["is_scheduled"] is False
        assert store.list_scheduled_jobs() == []

    @pytest.mark.asyncio
    async def test_missing_report(self, jobs):
        with pytest.raises(NotFoundError):
            await jobs.schedule_report("missing", WEEKLY_MONDAY)

    @pytest.mark.asyncio
    async def test_job_failure_restores_report(self, jobs, store, scheduler, report, monkeypatch):
        monkeypatch.setattr(scheduler, "upsert_job", _failing_upsert([]))

        result = await jobs.schedule_report(report["id"], WEEKLY_MONDAY)

        assert result["success"] is False
        assert result["outcome"] == "rolled_back"
        assert result["failed_step"] == "register_job"
        assert result["rolled_back"] == ["update_report"]
        stored = store.get_report(report["id"])
        assert stored["is_scheduled"] is False
        assert stored["schedule_config"] is None
        assert stored["next_run_at"] is None


class TestUnscheduleReport:
    @pytest.mark.asyncio
    async def test_unschedule_deactivates_job(self, jobs, store, scheduler, report):
        scheduled = await jobs.schedule_report(report["id"], WEEKLY_MONDAY)

        result = await jobs.unschedule_report(report["id"])

        assert result["success"] is True
        stored = store.get_report(report["id"])
        assert stored["is_scheduled"] is False
        assert stored["next_run_at"] is None
        assert stored["schedule_config"]["frequency"] == "weekly"
        job = store.get_scheduled_job(scheduled["job"]["id"])
        assert job["is_active"] is False
        assert not scheduler.is_registered(job["id"])

    @pytest.mark.asyncio
    async def test_unschedule_without_job(self, jobs, report):
        result = await jobs.unschedule_report(report["id"])
        assert result["success"] is True
        assert result["job"] is None


class TestCreateScheduledReport:
    @pytest.mark.asyncio
    async def test_creates_report_and_job(self, jobs, store, client_row, warehouse):
        result = await jobs.create_scheduled_report(
            client_row["id"],
            {"name": "Monthly Summary", "warehouse_id": warehouse["id"], "recipients": ["cfo@example.com"]},
            {"frequency": "monthly", "dayOfMonth": 1, "timezone": "UTC"},
        )

        assert result["success"] is True
        assert result["outcome"] == "committed"
        assert result["report"]["is_scheduled"] is True
        assert result["report"]["next_run_at"] == datetime(2024, 2, 1, 9, 0)
        assert result["job"]["report_id"] == result["report"]["id"]
        assert store.get_report(result["report"]["id"])["name"] == "Monthly Summary"

    @pytest.mark.asyncio
    async def test_failed_scheduling_deletes_report(self, jobs, store, scheduler, client_row, monkeypatch):
        calls = []
        monkeypatch.setattr(scheduler, "upsert_job", _failing_upsert(calls))

        result = await jobs.create_scheduled_report(client_row["id"], {"name": "Doomed"}, WEEKLY_MONDAY)

        assert result == {"success": False, "outcome": "rolled_back", "error": "scheduler unavailable"}
        assert len(calls) == 1
        assert store.get_report(calls[0]) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [{}, {"name": "X", "colour": "blue"}, {"name": "X", "delivery_format": "xlsx"}])
    async def test_rejects_bad_report_data(self, jobs, client_row, data):
        with pytest.raises(ValidationError):
            await jobs.create_scheduled_report(client_row["id"], data, WEEKLY_MONDAY)

    @pytest.mark.asyncio
    async def test_unknown_client(self, jobs):
        with pytest.raises(NotFoundError):
            await jobs.create_scheduled_report("missing", {"name": "X"}, WEEKLY_MONDAY)


@pytest.mark.asyncio
async def test_job_health_summary(jobs, store, scheduler, report):
    scheduled = await jobs.schedule_report(report["id"], WEEKLY_MONDAY)
    store.update_scheduled_job(scheduled["job"]["id"], last_status="failed", last_error="boom")
    scheduler.ensure_alert_evaluation_job()

    status = jobs.get_job_status()

    assert status["summary"] == {"total": 2, "healthy": 0, "warning": 1, "error": 1}
    health = {job["type"]: job["health_status"] for job in status["jobs"]}
    assert health == {"report_delivery": "failed", "alert_evaluation": "no_runs"}
