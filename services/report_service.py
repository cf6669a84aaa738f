"""
Report Service — previews, exports and delivery of reports.

Builds report previews from warehouse platform data, renders export
payloads (CSV here, PDF through the Renderer) and records every delivery
attempt in delivery_history before handing it to the Mailer.
"""
import asyncio
import csv
import io
import logging
from typing import Any, Dict, List, Optional

from core.decorators import retry_on_transient
from core.errors import DeliveryError, NotFoundError, ValidationError
from reporting.models import DeliveryStatus, JobType
from reporting.schedule import calculate_next_run_time, schedule_to_cron, to_utc_naive, utc_now
from services.mailer import (
    ATTACHMENT_CONTENT_TYPES, Attachment, LogMailer, Mailer, MailResult, Renderer,
    attachment_filename, report_subject,
)
from services.metrics_service import MetricSnapshot, MetricsService, PlatformData

logger = logging.getLogger(__name__)

DELIVERY_FORMATS = ("pdf", "csv", "email")
CHART_TYPES = ("bar", "line", "pie")


def _trend_direction(trend: Optional[float]) -> str:
    if not trend:
        return "flat"
    return "up" if trend > 0 else "down"


def _trend_text(trend: Optional[float]) -> str:
    if not trend:
        return ""
    return f"{'+' if trend > 0 else ''}{trend:.1f}%"


class ReportService:
    schedule_to_cron = staticmethod(schedule_to_cron)
    calculate_next_run_time = staticmethod(calculate_next_run_time)

    def __init__(self, store, metrics: Optional[MetricsService] = None, mailer: Optional[Mailer] = None,
                 renderer: Optional[Renderer] = None, now=None):
        self.store = store
        self._now = now or utc_now
        self.metrics = metrics or MetricsService(store, now=self._now)
        self.mailer = mailer or LogMailer()
        self.renderer = renderer

    def _get_report(self, report_id: str) -> dict:
        report = self.store.get_report(report_id)
        if not report:
            raise NotFoundError("Report", report_id)
        return report

    def _get_warehouse(self, report: dict) -> Optional[dict]:
        if not report.get("warehouse_id"):
            return None
        warehouse = self.store.get_warehouse(report["warehouse_id"])
        if not warehouse:
            logger.warning(f"[REPORT] Warehouse {report['warehouse_id']} of report {report['id']} not found")
        return warehouse

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    async def load_report_data(self, report: dict, warehouse: Optional[dict] = None) -> PlatformData:
        """Platform rows for the report's warehouse, limited to its dateRange when one is set."""
        warehouse = warehouse or self._get_warehouse(report)
        if not warehouse:
            return {}
        viz_config = report.get("visualization_config") or {}
        start = end = None
        if viz_config.get("dateRange"):
            start, end = self.metrics.calculate_date_range(
                viz_config["dateRange"], viz_config.get("customStartDate"), viz_config.get("customEndDate"),
            )
        return await self.metrics.load_platform_data(
            report["client_id"], warehouse.get("platforms") or [], start, end,
        )

    async def process_visualization(self, viz: dict, platform_data: PlatformData,
                                    client_id: Optional[str] = None) -> Dict[str, Any]:
        config = viz.get("config") or {}
        processed = {
            "id": viz.get("id"),
            "type": viz.get("type"),
            "title": viz.get("title"),
            "config": config,
        }

        if viz.get("type") == "kpi":
            metric = config.get("metric")
            value = self.metrics.calculate_metric_value(metric, platform_data)
            processed["value"] = value
            processed["formatted_value"] = self.metrics.format_value(value, config.get("format"))
            if config.get("showTrend"):
                previous = await self.metrics.calculate_previous_value(
                    metric, platform_data,
                    client_id=client_id,
                    comparison_period=config.get("comparisonPeriod") or "wow",
                    date_field=config.get("dateField") or "date",
                )
                trend = self.metrics.calculate_trend(value, previous)
                processed["trend"] = trend
                processed["trend_direction"] = _trend_direction(trend)
                processed["previous_value_source"] = previous.source.value
        elif viz.get("type") in CHART_TYPES:
            processed["data"] = self.metrics.aggregate_chart_data(viz, platform_data)

        return processed

    async def get_report_preview(self, report_id: str) -> Dict[str, Any]:
        report = self._get_report(report_id)
        client = self.store.get_client(report["client_id"])
        if not client:
            raise NotFoundError("Client", report["client_id"])

        warehouse = self._get_warehouse(report)
        platform_data = await self.load_report_data(report, warehouse)

        visualizations = (report.get("visualization_config") or {}).get("visualizations") or []
        processed = await asyncio.gather(*(
            self.process_visualization(viz, platform_data, report["client_id"]) for viz in visualizations
        ))

        return {
            "report": {
                "id": report["id"],
                "name": report["name"],
                "frequency": report.get("frequency"),
                "delivery_format": report.get("delivery_format"),
                "is_scheduled": report.get("is_scheduled"),
                "last_sent_at": report.get("last_sent_at"),
                "next_run_at": report.get("next_run_at"),
            },
            "client": {"id": client["id"], "name": client["name"]},
            "warehouse": {
                "id": warehouse["id"],
                "name": warehouse["name"],
                "platforms": warehouse.get("platforms") or [],
            } if warehouse else None,
            "visualizations": list(processed),
            "generated_at": self._now().isoformat(),
        }

    async def get_visualization_preview(self, report_id: str, viz_config: dict) -> Dict[str, Any]:
        """Preview a single (possibly unsaved) visualization against live data."""
        report = self._get_report(report_id)
        warehouse_id = viz_config.get("warehouseId") or report.get("warehouse_id")
        if not warehouse_id:
            raise ValidationError("No warehouse configured for this report")
        warehouse = self.store.get_warehouse(warehouse_id)
        if not warehouse:
            raise NotFoundError("Warehouse", warehouse_id)

        start, end = self.metrics.calculate_date_range(
            viz_config.get("dateRange"), viz_config.get("customStartDate"), viz_config.get("customEndDate"),
        )
        platform_data = await self.metrics.load_platform_data(
            report["client_id"], warehouse.get("platforms") or [], start, end, "date",
        )
        filtered = self.metrics.apply_filters(platform_data, viz_config.get("filters") or [])

        if viz_config.get("type") == "kpi":
            return await self.metrics.get_kpi_preview(filtered, viz_config.get("metric"), report["client_id"])
        return self.metrics.generate_chart_preview(
            filtered, viz_config.get("type"), viz_config.get("metrics"), viz_config.get("dimensions"),
        )

    async def get_metric_value(self, report_id: str, metric: str) -> float:
        report = self._get_report(report_id)
        return self.metrics.calculate_metric_value(metric, await self.load_report_data(report))

    async def get_metric_snapshot(self, report_id: str, metric: str, comparison_period: str = "wow",
                                  date_field: str = "date") -> MetricSnapshot:
        report = self._get_report(report_id)
        platform_data = await self.load_report_data(report)
        return await self.metrics.snapshot(metric, platform_data, report["client_id"], comparison_period, date_field)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @staticmethod
    def extract_data_for_pdf(preview: dict) -> Dict[str, Any]:
        return {
            viz["config"]["metric"]: viz.get("value")
            for viz in preview["visualizations"]
            if viz.get("type") == "kpi" and (viz.get("config") or {}).get("metric")
        }

    @staticmethod
    def generate_csv(preview: dict) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow([f"Report: {preview['report']['name']}"])
        writer.writerow([f"Client: {preview['client']['name']}"])
        writer.writerow([f"Generated: {preview['generated_at']}"])
        writer.writerow([])

        kpis = [v for v in preview["visualizations"] if v.get("type") == "kpi"]
        if kpis:
            writer.writerow(["Key Metrics"])
            writer.writerow(["Metric", "Value", "Trend"])
            for kpi in kpis:
                writer.writerow([kpi.get("title"), kpi.get("formatted_value"), _trend_text(kpi.get("trend"))])
            writer.writerow([])

        for chart in preview["visualizations"]:
            if chart.get("type") not in CHART_TYPES or not chart.get("data"):
                continue
            headers = list(chart["data"][0].keys())
            writer.writerow([chart.get("title")])
            writer.writerow(headers)
            for point in chart["data"]:
                writer.writerow([point.get(h) for h in headers])
            writer.writerow([])

        return buffer.getvalue()

    async def render_export(self, report: dict, preview: dict) -> Optional[Attachment]:
        """Attachment for the report's delivery format; ``email`` deliveries carry none."""
        fmt = report.get("delivery_format") or "pdf"
        if fmt not in DELIVERY_FORMATS:
            raise ValidationError(f"Unknown delivery format '{fmt}'")
        if fmt == "email":
            return None
        if fmt == "csv":
            content = self.generate_csv(preview).encode("utf-8")
        else:
            if self.renderer is None:
                raise DeliveryError("No renderer configured for PDF delivery")
            content = await self.renderer.render_pdf(
                {"name": report["name"], "client_name": preview["client"]["name"]},
                preview["visualizations"],
                self.extract_data_for_pdf(preview),
            )
        return Attachment(attachment_filename(report["name"], fmt), content, ATTACHMENT_CONTENT_TYPES[fmt])

    @staticmethod
    def _email_body(preview: dict, attachment: Optional[Attachment]) -> str:
        lines = [
            f"{preview['report']['name']} for {preview['client']['name']}",
            f"Generated at {preview['generated_at']}",
            "",
        ]
        for viz in preview["visualizations"]:
            if viz.get("type") == "kpi":
                trend = _trend_text(viz.get("trend"))
                lines.append(f"{viz.get('title')}: {viz.get('formatted_value')}" + (f" ({trend})" if trend else ""))
        if attachment:
            lines += ["", f"The full report is attached as {attachment.filename}."]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    @retry_on_transient()
    async def _send_mail(self, recipients: List[str], subject: str, body: str,
                         attachment: Optional[Attachment]) -> MailResult:
        return await self.mailer.send(recipients, subject, body, attachment)

    async def send_report(self, report_id: str, is_test: bool = False,
                          test_email: Optional[str] = None) -> Dict[str, Any]:
        report = self._get_report(report_id)
        if not self.store.get_client(report["client_id"]):
            raise NotFoundError("Client", report["client_id"])

        recipients = [test_email] if is_test else list(report.get("recipients") or [])
        recipients = [r for r in recipients if r]
        if not recipients:
            raise DeliveryError(f"No recipients configured for report {report_id}")
        fmt = report.get("delivery_format") or "pdf"
        if fmt not in DELIVERY_FORMATS:
            raise ValidationError(f"Unknown delivery format '{fmt}'")

        preview = await self.get_report_preview(report_id)
        delivery = self.store.create_delivery_history(report_id, fmt, recipients)

        try:
            attachment = await self.render_export(report, preview)
            result = await self._send_mail(
                recipients, report_subject(report["name"]), self._email_body(preview, attachment), attachment,
            )
            if not result.success:
                raise DeliveryError(f"Mailer did not accept report {report_id}")
        except Exception as e:
            logger.error(f"[REPORT] Delivery {delivery['id']} of report {report_id} failed: {e}")
            try:
                self.store.update_delivery_history(
                    delivery["id"], status=DeliveryStatus.FAILED.value, error_message=str(e),
                )
            except Exception as record_error:
                logger.error(f"[REPORT] Could not record failure of delivery {delivery['id']}: {record_error}")
            raise

        sent_at = to_utc_naive(self._now())
        self.store.update_delivery_history(
            delivery["id"],
            status=DeliveryStatus.SENT.value,
            file_size=len(attachment.content) if attachment else 0,
            message_id=result.message_id,
            sent_at=sent_at,
        )
        if not is_test:
            self.store.update_report(
                report_id, last_sent_at=sent_at, send_count=(report.get("send_count") or 0) + 1,
            )

        logger.info(f"[REPORT] Sent report {report_id} as {fmt} to {len(result.accepted)} recipient(s)"
                    f"{' (test)' if is_test else ''}")
        return {
            "success": True,
            "message_id": result.message_id,
            "recipients": result.accepted,
            "format": fmt,
            "delivery_history_id": delivery["id"],
        }

    async def process_scheduled_delivery(self, report_id: str, require_due: bool = False) -> Dict[str, Any]:
        """
        Deliver a scheduled report and advance its schedule.

        With ``require_due`` the report is re-read and skipped unless it is
        still scheduled and its next_run_at has passed; the timer path and the
        sweep can both reach the same report.
        """
        report = self._get_report(report_id)
        if not report.get("is_scheduled"):
            logger.info(f"[REPORT] Report {report_id} is not scheduled, skipping")
            return {"skipped": True, "reason": "not_scheduled"}

        now = self._now()
        if require_due:
            next_run_at = report.get("next_run_at")
            if next_run_at is None or next_run_at > to_utc_naive(now):
                logger.info(f"[REPORT] Report {report_id} is no longer due, skipping")
                return {"skipped": True, "reason": "not_due"}
            job = self.store.get_scheduled_job_by_entity(JobType.REPORT_DELIVERY.value, report_id)
            if job and not job["is_active"]:
                logger.info(f"[REPORT] Job {job['id']} for report {report_id} is paused, skipping")
                return {"skipped": True, "reason": "paused"}

        result = await self.send_report(report_id)

        next_run_at = None
        if report.get("schedule_config"):
            next_run_at = to_utc_naive(calculate_next_run_time(report["schedule_config"], now))
        self.store.update_report(report_id, next_run_at=next_run_at)

        job = self.store.get_scheduled_job_by_entity(JobType.REPORT_DELIVERY.value, report_id)
        if job:
            self.store.update_scheduled_job(
                job["id"],
                last_run_at=to_utc_naive(now),
                next_run_at=next_run_at,
                last_status="success",
                last_error=None,
            )

        return {**result, "next_run_at": next_run_at}
