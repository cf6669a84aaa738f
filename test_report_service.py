from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from conftest import NOW
from core.errors import DeliveryError, NotFoundError, ValidationError
from services.mailer import MailResult, Mailer, Renderer
from services.report_service import ReportService


@pytest.fixture
def service(store, mailer, now):
    return ReportService(store, mailer=mailer, now=now)


def _schedule(store, report_id, next_run_at):
    return store.update_report(
        report_id,
        is_scheduled=True,
        schedule_config={"frequency": "weekly", "dayOfWeek": "monday", "time": "09:00", "timezone": "UTC"},
        next_run_at=next_run_at,
    )


class TestPreview:
    @pytest.mark.asyncio
    async def test_report_preview(self, service, report, uploads):
        preview = await service.get_report_preview(report["id"])

        assert preview["report"]["name"] == "Weekly Performance"
        assert preview["client"]["name"] == "Acme"
        assert preview["warehouse"]["platforms"] == ["google_ads", "meta_ads"]
        kpi, chart = preview["visualizations"]
        assert kpi["value"] == 400
        assert kpi["formatted_value"] == "$400"
        assert {"campaign": "Brand", "clicks": 15} in chart["data"]
        assert preview["generated_at"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_preview_without_warehouse_has_no_data(self, service, store, client_row):
        report = store.create_report(client_row["id"], "Empty", visualization_config={"visualizations": [
            {"id": "k", "type": "kpi", "title": "Spend", "config": {"metric": "spend"}},
        ]})
        preview = await service.get_report_preview(report["id"])
        assert preview["warehouse"] is None
        assert preview["visualizations"][0]["value"] == 0

    @pytest.mark.asyncio
    async def test_missing_report(self, service):
        with pytest.raises(NotFoundError):
            await service.get_report_preview("nope")

    @pytest.mark.asyncio
    async def test_kpi_trend_is_tagged_with_baseline_source(self, service, store, report, uploads):
        viz = report["visualization_config"]
        viz["visualizations"][0]["config"]["showTrend"] = True
        store.update_report(report["id"], visualization_config=viz)

        preview = await service.get_report_preview(report["id"])
        kpi = preview["visualizations"][0]
        # nothing was uploaded for the comparison week
        assert kpi["previous_value_source"] == "estimated"
        assert kpi["trend_direction"] in ("up", "down", "flat")

    @pytest.mark.asyncio
    async def test_visualization_preview_applies_filters(self, service, report, uploads):
        viz = {"type": "bar", "metrics": ["spend"], "dimensions": ["campaign"], "dateRange": "last_7_days",
               "filters": [{"field": "campaign", "operator": "equals", "value": "brand"}]}
        preview = await service.get_visualization_preview(report["id"], viz)
        assert preview["chart_data"] == [{"campaign": "Brand", "spend": 150}]

    @pytest.mark.asyncio
    async def test_metric_value(self, service, report, uploads):
        assert await service.get_metric_value(report["id"], "clicks") == 55


class TestExport:
    def test_csv_layout(self):
        preview = {
            "report": {"name": "Weekly"},
            "client": {"name": "Acme"},
            "generated_at": "2024-01-20T15:00:00+00:00",
            "visualizations": [
                {"type": "kpi", "title": "Spend", "formatted_value": "$400", "trend": 12.34},
                {"type": "bar", "title": "Clicks", "data": [{"campaign": "Brand", "clicks": 15}]},
                {"type": "table", "title": "Ignored"},
            ],
        }
        assert ReportService.generate_csv(preview).splitlines() == [
            "Report: Weekly",
            "Client: Acme",
            "Generated: 2024-01-20T15:00:00+00:00",
            "",
            "Key Metrics",
            "Metric,Value,Trend",
            "Spend,$400,+12.3%",
            "",
            "Clicks",
            "campaign,clicks",
            "Brand,15",
            "",
        ]

    def test_extract_data_for_pdf(self):
        preview = {"visualizations": [
            {"type": "kpi", "config": {"metric": "spend"}, "value": 400},
            {"type": "bar", "config": {"metric": "clicks"}, "data": []},
        ]}
        assert ReportService.extract_data_for_pdf(preview) == {"spend": 400}

    @pytest.mark.asyncio
    async def test_pdf_needs_a_renderer(self, service, report):
        preview = await service.get_report_preview(report["id"])
        with pytest.raises(DeliveryError):
            await service.render_export({**report, "delivery_format": "pdf"}, preview)

    @pytest.mark.asyncio
    async def test_pdf_uses_renderer(self, store, mailer, now, report):
        renderer = AsyncMock()
        renderer.render_pdf.return_value = b"%PDF-1.4"
        service = ReportService(store, mailer=mailer, renderer=renderer, now=now)
        preview = await service.get_report_preview(report["id"])

        attachment = await service.render_export({**report, "delivery_format": "pdf"}, preview)

        assert attachment.filename == "Weekly_Performance.pdf"
        assert attachment.content_type == "application/pdf"
        renderer.render_pdf.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_email_format_has_no_attachment(self, service, report):
        preview = await service.get_report_preview(report["id"])
        assert await service.render_export({**report, "delivery_format": "email"}, preview) is None


class TestSendReport:
    @pytest.mark.asyncio
    async def test_send_records_delivery(self, service, store, mailer, report, uploads):
        result = await service.send_report(report["id"])

        assert result["success"] is True
        assert result["recipients"] == ["ops@example.com"]
        assert result["format"] == "csv"
        sent = mailer.sent[0]
        assert sent["subject"] == "Weekly Performance - Data Hub Report"
        assert sent["attachment"].filename == "Weekly_Performance.csv"

        delivery = store.list_delivery_history(report["id"])[0]
        assert delivery["id"] == result["delivery_history_id"]
        assert delivery["status"] == "sent"
        assert delivery["message_id"] == result["message_id"]
        assert delivery["file_size"] == len(sent["attachment"].content)

        updated = store.get_report(report["id"])
        assert updated["send_count"] == 1
        assert updated["last_sent_at"] == datetime(2024, 1, 20, 15, 0)

    @pytest.mark.asyncio
    async def test_test_send_goes_to_test_address_only(self, service, store, mailer, report):
        await service.send_report(report["id"], is_test=True, test_email="me@example.com")
        assert mailer.sent[0]["recipients"] == ["me@example.com"]
        assert store.get_report(report["id"])["send_count"] == 0

    @pytest.mark.asyncio
    async def test_no_recipients(self, service, store, report):
        store.update_report(report["id"], recipients=[])
        with pytest.raises(DeliveryError):
            await service.send_report(report["id"])
        assert store.list_delivery_history(report["id"]) == []

    @pytest.mark.asyncio
    async def test_unknown_format(self, service, store, report):
        store.update_report(report["id"], delivery_format="xlsx")
        with pytest.raises(ValidationError):
            await service.send_report(report["id"])

    @pytest.mark.asyncio
    async def test_mail_failure_marks_delivery_failed(self, store, now, report):
        mailer = AsyncMock()
        mailer.send.side_effect = RuntimeError("smtp auth rejected")
        service = ReportService(store, mailer=mailer, now=now)

        with pytest.raises(RuntimeError):
            await service.send_report(report["id"])

        delivery = store.list_delivery_history(report["id"])[0]
        assert delivery["status"] == "failed"
        assert delivery["error_message"] == "smtp auth rejected"
        assert mailer.send.await_count == 1
        assert store.get_report(report["id"])["send_count"] == 0

    @pytest.mark.asyncio
    async def test_transient_mail_failure_is_retried(self, store, now, report):
        mailer = AsyncMock()
        mailer.send.side_effect = [ConnectionError("connection reset"), MailResult(True, "<id>", ["ops@example.com"])]
        service = ReportService(store, mailer=mailer, now=now)

        result = await service.send_report(report["id"])

        assert result["message_id"] == "<id>"
        assert mailer.send.await_count == 2


class TestScheduledDelivery:
    @pytest.mark.asyncio
    async def test_delivers_and_advances_schedule(self, service, store, report):
        _schedule(store, report["id"], datetime(2024, 1, 20, 9, 0))
        job = store.create_scheduled_job("report_delivery", report["id"], "0 9 * * 1", report_id=report["id"])

        result = await service.process_scheduled_delivery(report["id"], require_due=True)

        assert result["success"] is True
        assert result["next_run_at"] == datetime(2024, 1, 22, 9, 0)
        assert store.get_report(report["id"])["next_run_at"] == datetime(2024, 1, 22, 9, 0)
        job = store.get_scheduled_job(job["id"])
        assert job["last_status"] == "success"
        assert job["last_run_at"] == datetime(2024, 1, 20, 15, 0)

    @pytest.mark.asyncio
    async def test_skips_when_not_scheduled(self, service, mailer, report):
        result = await service.process_scheduled_delivery(report["id"])
        assert result == {"skipped": True, "reason": "not_scheduled"}
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_skips_when_not_yet_due(self, service, store, mailer, report):
        _schedule(store, report["id"], datetime(2024, 1, 22, 9, 0))
        result = await service.process_scheduled_delivery(report["id"], require_due=True)
        assert result == {"skipped": True, "reason": "not_due"}
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_manual_run_ignores_due_time(self, service, store, mailer, report):
        _schedule(store, report["id"], datetime(2024, 1, 22, 9, 0))
        await service.process_scheduled_delivery(report["id"])
        assert len(mailer.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_delivery_keeps_next_run(self, store, now, report):
        mailer = AsyncMock()
        mailer.send.side_effect = RuntimeError("mailbox full")
        service = ReportService(store, mailer=mailer, now=now)
        _schedule(store, report["id"], datetime(2024, 1, 20, 9, 0))

        with pytest.raises(RuntimeError):
            await service.process_scheduled_delivery(report["id"], require_due=True)
        assert store.get_report(report["id"])["next_run_at"] == datetime(2024, 1, 20, 9, 0)

    @pytest.mark.asyncio
    async def test_paused_job_skips_due_delivery(self, service, store, mailer, report):
        _schedule(store, report["id"], datetime(2024, 1, 20, 9, 0))
        store.create_scheduled_job("report_delivery", report["id"], "0 9 * * 1", report_id=report["id"],
                                   is_active=False)

        result = await service.process_scheduled_delivery(report["id"], require_due=True)

        assert result == {"skipped": True, "reason": "paused"}
        assert mailer.sent == []


class TestCollaborators:
    def test_interfaces_are_abstract(self):
        with pytest.raises(TypeError):
            Mailer()
        with pytest.raises(TypeError):
            Renderer()

    @pytest.mark.asyncio
    async def test_renderer_subclass_produces_pdf(self, store, mailer, now, report):
        class StaticRenderer(Renderer):
            async def render_pdf(self, report, visualizations, data):
                return b"%PDF-1.4 " + report["name"].encode()

        service = ReportService(store, mailer=mailer, renderer=StaticRenderer(), now=now)
        preview = await service.get_report_preview(report["id"])

        attachment = await service.render_export({**report, "delivery_format": "pdf"}, preview)

        assert attachment.content == b"%PDF-1.4 Weekly Performance"
