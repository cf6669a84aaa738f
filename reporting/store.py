"""
ReportStore — persistence for reports, scheduled jobs, deliveries, alerts and platform data.

Every call opens its own short-lived session and returns plain dicts, so
results can cross thread and coroutine boundaries freely.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from core.errors import NotFoundError
from reporting.database import SessionLocal
from reporting.models import (
    Base, Client, Warehouse, Report, DeliveryHistory, DeliveryStatus, ScheduledJob,
    ReportAlert, AlertHistory, PlatformUpload, PlatformDataRow,
)

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]


def _to_dict(row: Base) -> Dict[str, Any]:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


def _date_str(value: DateLike) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


class ReportStore:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    # ------------------------------------------------------------------
    # generic helpers
    # ------------------------------------------------------------------

    def _create(self, model, **fields) -> dict:
        session = self.session_factory()
        try:
            row = model(**fields)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_dict(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _get(self, model, entity_id) -> Optional[dict]:
        session = self.session_factory()
        try:
            row = session.get(model, entity_id)
            return _to_dict(row) if row else None
        finally:
            session.close()

    def _update(self, model, entity_id, fields: Dict[str, Any]) -> dict:
        session = self.session_factory()
        try:
            row = session.get(model, entity_id)
            if row is None:
                raise NotFoundError(model.__name__, entity_id)
            columns = {c.name for c in model.__table__.columns}
            for key, value in fields.items():
                if key not in columns or key == "id":
                    raise ValueError(f"Unknown {model.__name__} field '{key}'")
                setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return _to_dict(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _delete(self, model, entity_id) -> bool:
        session = self.session_factory()
        try:
            row = session.get(model, entity_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # clients & warehouses
    # ------------------------------------------------------------------

    def create_client(self, name: str, **fields) -> dict:
        return self._create(Client, name=name, **fields)

    def get_client(self, client_id: str) -> Optional[dict]:
        return self._get(Client, client_id)

    def create_warehouse(self, client_id: str, name: str, platforms: Iterable[str]) -> dict:
        return self._create(Warehouse, client_id=client_id, name=name, platforms=list(platforms))

    def get_warehouse(self, warehouse_id: str) -> Optional[dict]:
        return self._get(Warehouse, warehouse_id)

    # ------------------------------------------------------------------
    # reports
    # ------------------------------------------------------------------

    def create_report(self, client_id: str, name: str, **fields) -> dict:
        return self._create(Report, client_id=client_id, name=name, **fields)

    def get_report(self, report_id: str) -> Optional[dict]:
        return self._get(Report, report_id)

    def update_report(self, report_id: str, **fields) -> dict:
        return self._update(Report, report_id, fields)

    def delete_report(self, report_id: str) -> bool:
        return self._delete(Report, report_id)

    def find_scheduled_reports_due(self, now: datetime) -> List[dict]:
        """Reports with next_run_at <= now that are still scheduled."""
        session = self.session_factory()
        try:
            rows = session.query(Report).filter(
                Report.is_scheduled == True,  # noqa: E712
                Report.next_run_at.isnot(None),
                Report.next_run_at <= now,
            ).order_by(Report.next_run_at.asc()).all()
            return [_to_dict(r) for r in rows]
        finally:
            session.close()

    # ------------------------------------------------------------------
    # scheduled jobs
    # ------------------------------------------------------------------

    def list_scheduled_jobs(self, active_only: bool = False) -> List[dict]:
        session = self.session_factory()
        try:
            query = session.query(ScheduledJob)
            if active_only:
                query = query.filter(ScheduledJob.is_active == True)  # noqa: E712
            return [_to_dict(j) for j in query.order_by(ScheduledJob.created_at.asc()).all()]
        finally:
            session.close()

    def get_scheduled_job(self, job_id: str) -> Optional[dict]:
        return self._get(ScheduledJob, job_id)

    def get_scheduled_job_by_entity(self, job_type: str, entity_id: str) -> Optional[dict]:
        session = self.session_factory()
        try:
            job = session.query(ScheduledJob).filter(
                ScheduledJob.job_type == job_type,
                ScheduledJob.entity_id == entity_id,
            ).first()
            return _to_dict(job) if job else None
        finally:
            session.close()

    def create_scheduled_job(self, job_type: str, entity_id: str, cron_expression: str, **fields) -> dict:
        return self._create(ScheduledJob, job_type=job_type, entity_id=entity_id,
                            cron_expression=cron_expression, **fields)

    def update_scheduled_job(self, job_id: str, **fields) -> dict:
        return self._update(ScheduledJob, job_id, fields)

    def delete_scheduled_job(self, job_id: str) -> bool:
        return self._delete(ScheduledJob, job_id)

    # ------------------------------------------------------------------
    # delivery history
    # ------------------------------------------------------------------

    def create_delivery_history(self, report_id: str, delivery_format: str, recipients: List[str],
                                status: str = DeliveryStatus.PENDING.value) -> dict:
        return self._create(DeliveryHistory, report_id=report_id, delivery_format=delivery_format,
                            recipients=list(recipients), status=status)

    def update_delivery_history(self, delivery_id: str, **fields) -> dict:
        return self._update(DeliveryHistory, delivery_id, fields)

    def list_delivery_history(self, report_id: str, limit: int = 50) -> List[dict]:
        session = self.session_factory()
        try:
            rows = session.query(DeliveryHistory).filter(
                DeliveryHistory.report_id == report_id
            ).order_by(DeliveryHistory.created_at.desc()).limit(limit).all()
            return [_to_dict(r) for r in rows]
        finally:
            session.close()

    def fail_stale_deliveries(self) -> int:
        """
        Close deliveries left pending by a crash/restart so they do not read
        as in-flight forever.
        """
        session = self.session_factory()
        try:
            stale = session.query(DeliveryHistory).filter(
                DeliveryHistory.status == DeliveryStatus.PENDING.value
            ).all()
            for row in stale:
                row.status = DeliveryStatus.FAILED.value
                row.error_message = "Recovered as failed on scheduler startup"
            if stale:
                session.commit()
                logger.warning("[STORE] Recovered %d stale pending deliveries", len(stale))
            return len(stale)
        finally:
            session.close()

    # ------------------------------------------------------------------
    # alerts
    # ------------------------------------------------------------------

    def create_alert(self, name: str, alert_type: str, config: dict, **fields) -> dict:
        return self._create(ReportAlert, name=name, alert_type=alert_type, config=config, **fields)

    def get_alert(self, alert_id: str) -> Optional[dict]:
        return self._get(ReportAlert, alert_id)

    def list_alerts(self, report_id: Optional[str] = None, kpi_id: Optional[str] = None,
                    active_only: bool = False) -> List[dict]:
        session = self.session_factory()
        try:
            query = session.query(ReportAlert)
            if report_id is not None:
                query = query.filter(ReportAlert.report_id == report_id)
            if kpi_id is not None:
                query = query.filter(ReportAlert.kpi_id == kpi_id)
            if active_only:
                query = query.filter(ReportAlert.active == True)  # noqa: E712
            return [_to_dict(a) for a in query.order_by(ReportAlert.created_at.asc()).all()]
        finally:
            session.close()

    def update_alert(self, alert_id: str, **fields) -> dict:
        return self._update(ReportAlert, alert_id, fields)

    def delete_alert(self, alert_id: str) -> bool:
        return self._delete(ReportAlert, alert_id)

    def create_alert_history(self, alert_id: str, **fields) -> dict:
        return self._create(AlertHistory, alert_id=alert_id, **fields)

    def list_alert_history(self, alert_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        session = self.session_factory()
        try:
            query = session.query(AlertHistory)
            if alert_id is not None:
                query = query.filter(AlertHistory.alert_id == alert_id)
            rows = query.order_by(AlertHistory.triggered_at.desc()).limit(limit).all()
            return [_to_dict(r) for r in rows]
        finally:
            session.close()

    # ------------------------------------------------------------------
    # uploads & platform data
    # ------------------------------------------------------------------

    def create_upload(self, client_id: str, platform_id: str, rows: List[dict],
                      filename: Optional[str] = None, uploaded_at: Optional[datetime] = None) -> dict:
        session = self.session_factory()
        try:
            upload = PlatformUpload(
                client_id=client_id,
                platform_id=platform_id,
                filename=filename,
                row_count=len(rows),
                uploaded_at=uploaded_at or datetime.utcnow(),
            )
            session.add(upload)
            session.flush()
            for index, row in enumerate(rows):
                session.add(PlatformDataRow(
                    upload_id=upload.id,
                    client_id=client_id,
                    platform_id=platform_id,
                    row_index=index,
                    row_data=row,
                ))
            session.commit()
            session.refresh(upload)
            return _to_dict(upload)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_client_uploads(self, client_id: str, platform_id: Optional[str] = None) -> List[dict]:
        """Uploads for a client (optionally one platform), newest first."""
        session = self.session_factory()
        try:
            query = session.query(PlatformUpload).filter(PlatformUpload.client_id == client_id)
            if platform_id:
                query = query.filter(PlatformUpload.platform_id == platform_id)
            return [_to_dict(u) for u in query.order_by(PlatformUpload.uploaded_at.desc()).all()]
        finally:
            session.close()

    def get_platform_data(self, client_id: str, platform_id: str,
                          start_date: Optional[DateLike] = None, end_date: Optional[DateLike] = None,
                          date_field: str = "date") -> List[dict]:
        """Row payloads for a client/platform, optionally limited to an inclusive date range."""
        session = self.session_factory()
        try:
            query = session.query(PlatformDataRow.row_data).filter(
                PlatformDataRow.client_id == client_id,
                PlatformDataRow.platform_id == platform_id,
            )
            if start_date is not None or end_date is not None:
                field_expr = PlatformDataRow.row_data[date_field].as_string()
                query = query.filter(field_expr.isnot(None))
                if start_date is not None:
                    query = query.filter(field_expr >= _date_str(start_date))
                if end_date is not None:
                    # timestamps like "2024-01-31T10:00" still belong to the end day
                    day_after = date.fromisoformat(_date_str(end_date)) + timedelta(days=1)
                    query = query.filter(field_expr < day_after.isoformat())
            rows = query.order_by(PlatformDataRow.upload_id, PlatformDataRow.row_index).all()
            return [r.row_data for r in rows]
        finally:
            session.close()
