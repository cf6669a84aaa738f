"""
SQLAlchemy models for reports, scheduled jobs, deliveries, alerts and platform data.
"""
import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, Boolean, JSON,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class JobType(str, Enum):
    REPORT_DELIVERY = "report_delivery"
    ALERT_EVALUATION = "alert_evaluation"


class AlertType(str, Enum):
    METRIC_THRESHOLD = "metric_threshold"
    TREND_DETECTION = "trend_detection"
    DATA_FRESHNESS = "data_freshness"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ============================================================================
# Tenancy
# ============================================================================

class Client(Base):
    """A tenant; every report, alert and upload belongs to one client."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Warehouse(Base):
    """A named set of platforms whose data feeds a report."""
    __tablename__ = "warehouses"

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    platforms = Column(JSON, default=list)                  # e.g. ["google_ads", "meta_ads"]
    created_at = Column(DateTime, default=datetime.utcnow)


# ============================================================================
# Reports & Delivery
# ============================================================================

class Report(Base):
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    warehouse_id = Column(String(36), ForeignKey("warehouses.id", ondelete="SET NULL"))
    name = Column(String(200), nullable=False)
    visualization_config = Column(JSON, default=dict)       # {"visualizations": [...], "dateRange": ...}
    schedule_config = Column(JSON)                          # {"frequency", "time", "dayOfWeek", ...}
    frequency = Column(String(20))
    delivery_format = Column(String(20), default="pdf")     # pdf, csv, email
    recipients = Column(JSON, default=list)
    is_scheduled = Column(Boolean, default=False, nullable=False)
    last_sent_at = Column(DateTime)
    next_run_at = Column(DateTime)
    send_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    deliveries = relationship("DeliveryHistory", back_populates="report", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_reports_scheduled_next_run", "is_scheduled", "next_run_at"),
    )

    def __repr__(self):
        return f"<Report {self.name} (scheduled={self.is_scheduled})>"


class DeliveryHistory(Base):
    """One row per delivery attempt; created pending, finalized sent/failed."""
    __tablename__ = "delivery_history"

    id = Column(String(36), primary_key=True, default=_new_id)
    report_id = Column(String(36), ForeignKey("reports.id", ondelete="CASCADE"), nullable=False)
    delivery_format = Column(String(20))
    recipients = Column(JSON, default=list)
    status = Column(String(20), default=DeliveryStatus.PENDING.value, nullable=False)
    file_size = Column(Integer)
    message_id = Column(String(200))
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at = Column(DateTime)

    report = relationship("Report", back_populates="deliveries")

    __table_args__ = (
        Index("ix_delivery_history_report_created", "report_id", "created_at"),
    )


# ============================================================================
# Scheduler Models
# ============================================================================

class ScheduledJob(Base):
    """A timer-backed job; one per scheduled report plus the global alert job."""
    __tablename__ = "scheduled_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    job_type = Column(String(40), nullable=False, default=JobType.REPORT_DELIVERY.value)
    entity_id = Column(String(36), nullable=False)          # report id, or "global"
    report_id = Column(String(36), ForeignKey("reports.id", ondelete="CASCADE"))
    cron_expression = Column(String(100), nullable=False)    # e.g. "0 9 * * 1"
    timezone = Column(String(60))
    is_active = Column(Boolean, default=True, nullable=False)
    last_run_at = Column(DateTime)
    next_run_at = Column(DateTime)
    last_status = Column(String(20))                         # success, failed
    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("job_type", "entity_id", name="uq_scheduled_job_type_entity"),
        Index("ix_scheduled_jobs_active", "is_active"),
    )

    def __repr__(self):
        return f"<ScheduledJob {self.job_type}:{self.entity_id} (cron={self.cron_expression})>"


# ============================================================================
# Alerts
# ============================================================================

class ReportAlert(Base):
    __tablename__ = "report_alerts"

    id = Column(String(36), primary_key=True, default=_new_id)
    report_id = Column(String(36), ForeignKey("reports.id", ondelete="CASCADE"))
    kpi_id = Column(String(36))
    name = Column(String(200), nullable=False)
    alert_type = Column(String(40), nullable=False)
    config = Column(JSON, nullable=False)
    recipients = Column(JSON, default=list)
    channels = Column(JSON, default=lambda: ["email"])
    active = Column(Boolean, default=True, nullable=False)
    last_evaluated_at = Column(DateTime)
    last_triggered_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_report_alerts_report_active", "report_id", "active"),
        Index("ix_report_alerts_kpi", "kpi_id"),
    )


class AlertHistory(Base):
    """Append-only log, one row per triggering evaluation."""
    __tablename__ = "alert_history"

    id = Column(String(36), primary_key=True, default=_new_id)
    alert_id = Column(String(36), ForeignKey("report_alerts.id", ondelete="CASCADE"), nullable=False)
    report_id = Column(String(36))
    alert_type = Column(String(40))
    actual_value = Column(Float)
    threshold_value = Column(Float)
    message = Column(Text)
    triggered_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_alert_history_alert_triggered", "alert_id", "triggered_at"),
    )


# ============================================================================
# Platform Data
# ============================================================================

class PlatformUpload(Base):
    """A batch of rows uploaded for one client/platform."""
    __tablename__ = "platform_uploads"

    id = Column(String(36), primary_key=True, default=_new_id)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    platform_id = Column(String(60), nullable=False)
    filename = Column(String(300))
    row_count = Column(Integer, default=0)
    status = Column(String(20), default="completed")
    uploaded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    rows = relationship("PlatformDataRow", back_populates="upload", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_platform_uploads_client_platform", "client_id", "platform_id", "uploaded_at"),
    )


class PlatformDataRow(Base):
    __tablename__ = "platform_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    upload_id = Column(String(36), ForeignKey("platform_uploads.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(36), nullable=False)
    platform_id = Column(String(60), nullable=False)
    row_index = Column(Integer, default=0)
    row_data = Column(JSON, nullable=False)                 # raw uploaded row, platform-specific keys

    upload = relationship("PlatformUpload", back_populates="rows")

    __table_args__ = (
        Index("ix_platform_data_client_platform", "client_id", "platform_id"),
    )
