"""
Alert Service — evaluates report alerts and manages their lifecycle.

Evaluating an alert always stamps last_evaluated_at. A positive result is
recorded in alert_history before any notification goes out, and a failed
notification never removes that record.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from core.errors import NotFoundError, ValidationError
from core.retry import with_retry
from reporting.models import AlertType
from reporting.schedule import to_utc_naive, utc_now
from services.alert_configs import (
    CONDITION_LABELS, PERIOD_LABELS, THRESHOLD_CONDITIONS,
    FreshnessAlertConfig, ThresholdAlertConfig, TrendAlertConfig,
    parse_alert_config, parse_alert_type,
)
from services.mailer import LogMailer, alert_subject
from services.metrics_service import MetricsService

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "alert_type", "config", "recipients", "channels", "active"}


def _fmt(value: float) -> str:
    return f"{value:,.2f}".rstrip("0").rstrip(".")


@dataclass
class AlertEvaluation:
    alert_id: str
    alert_type: AlertType
    triggered: bool = False
    actual_value: Optional[float] = None
    threshold_value: Optional[float] = None
    message: Optional[str] = None
    notified: bool = False
    estimated: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["alert_type"] = self.alert_type.value
        return data


class AlertService:
    def __init__(self, store, report_service, mailer=None, now=None):
        self.store = store
        self.report_service = report_service
        self.mailer = mailer or LogMailer()
        self._now = now or utc_now
        self._handlers = {
            AlertType.METRIC_THRESHOLD: self._evaluate_threshold,
            AlertType.TREND_DETECTION: self._evaluate_trend,
            AlertType.DATA_FRESHNESS: self._evaluate_freshness,
        }
        missing = set(AlertType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No evaluator for alert types: {sorted(t.value for t in missing)}")

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_all_alerts(self, report_id: Optional[str] = None) -> Dict[str, Any]:
        """Evaluate every active report alert; one failing alert does not stop the rest."""
        results = {"evaluated": 0, "triggered": 0, "skipped": 0, "errors": 0, "alerts": []}

        for alert in self.store.list_alerts(report_id=report_id, active_only=True):
            if not alert.get("report_id"):
                # KPI-bound alerts are evaluated when KPI values arrive
                results["skipped"] += 1
                continue
            try:
                evaluation = await self.evaluate_alert(alert)
            except Exception as e:
                results["errors"] += 1
                logger.error(f"[ALERT] Error evaluating alert {alert['id']} (report {alert.get('report_id')}): {e}")
                continue
            results["evaluated"] += 1
            if evaluation.triggered:
                results["triggered"] += 1
                results["alerts"].append({
                    "alert_id": alert["id"],
                    "name": alert["name"],
                    "message": evaluation.message,
                    "notified": evaluation.notified,
                })

        logger.info(f"[ALERT] Evaluated {results['evaluated']} alert(s), {results['triggered']} triggered, "
                    f"{results['errors']} error(s)")
        return results

    async def evaluate_alert(self, alert: dict) -> AlertEvaluation:
        self.store.update_alert(alert["id"], last_evaluated_at=to_utc_naive(self._now()))

        alert_type = parse_alert_type(alert.get("alert_type"))
        config = parse_alert_config(alert_type, alert.get("config"))
        if not alert.get("report_id"):
            raise ValidationError(f"Alert {alert['id']} is not bound to a report")

        evaluation = await self._handlers[alert_type](alert, config)
        if evaluation.triggered:
            evaluation.notified = await self.trigger_alert(alert, evaluation)
        return evaluation

    async def _evaluate_threshold(self, alert: dict, config: ThresholdAlertConfig) -> AlertEvaluation:
        value = await self.report_service.get_metric_value(alert["report_id"], config.metric)
        evaluation = AlertEvaluation(
            alert_id=alert["id"],
            alert_type=AlertType.METRIC_THRESHOLD,
            triggered=THRESHOLD_CONDITIONS[config.condition](value, config.threshold),
            actual_value=value,
            threshold_value=config.threshold,
        )
        if evaluation.triggered:
            evaluation.message = (f"{alert['name']}: {config.metric} is {CONDITION_LABELS[config.condition]} "
                                  f"{_fmt(config.threshold)} (current: {_fmt(value)})")
        return evaluation

    async def _evaluate_trend(self, alert: dict, config: TrendAlertConfig) -> AlertEvaluation:
        snapshot = await self.report_service.get_metric_snapshot(alert["report_id"], config.metric, config.period)
        evaluation = AlertEvaluation(
            alert_id=alert["id"],
            alert_type=AlertType.TREND_DETECTION,
            actual_value=snapshot.trend,
            threshold_value=config.change_percent,
            estimated=snapshot.estimated,
        )
        if snapshot.trend is None or snapshot.estimated:
            logger.info(f"[ALERT] Alert {alert['id']}: no measured baseline for '{config.metric}', "
                        f"trend not evaluated")
            evaluation.message = f"{alert['name']}: insufficient history for {config.metric}, trend not evaluated"
            return evaluation

        evaluation.triggered = abs(snapshot.trend) > config.change_percent
        if evaluation.triggered:
            direction = "increased" if snapshot.trend > 0 else "decreased"
            evaluation.message = (f"{alert['name']}: {config.metric} has {direction} by "
                                  f"{abs(snapshot.trend):.1f}% {PERIOD_LABELS[config.period]} "
                                  f"(threshold: {_fmt(config.change_percent)}%)")
        return evaluation

    async def _evaluate_freshness(self, alert: dict, config: FreshnessAlertConfig) -> AlertEvaluation:
        report = self.store.get_report(alert["report_id"])
        if not report:
            raise NotFoundError("Report", alert["report_id"])

        evaluation = AlertEvaluation(
            alert_id=alert["id"],
            alert_type=AlertType.DATA_FRESHNESS,
            threshold_value=config.max_hours_stale,
        )
        uploads = self.store.get_client_uploads(report["client_id"], config.platform_id)
        if not uploads:
            evaluation.triggered = True
            evaluation.message = f"{alert['name']}: No data uploads found"
            return evaluation

        age = to_utc_naive(self._now()) - uploads[0]["uploaded_at"]
        hours = age.total_seconds() / 3600
        evaluation.actual_value = hours
        evaluation.triggered = hours > config.max_hours_stale
        if evaluation.triggered:
            evaluation.message = (f"{alert['name']}: Data is {round(hours)} hours old "
                                  f"(threshold: {_fmt(config.max_hours_stale)} hours)")
        return evaluation

    async def trigger_alert(self, alert: dict, evaluation: AlertEvaluation) -> bool:
        """Record the trigger, then notify. Returns whether a notification was delivered."""
        now = to_utc_naive(self._now())
        self.store.create_alert_history(
            alert["id"],
            report_id=alert.get("report_id"),
            alert_type=evaluation.alert_type.value,
            actual_value=evaluation.actual_value,
            threshold_value=evaluation.threshold_value,
            message=evaluation.message,
            triggered_at=now,
        )
        self.store.update_alert(alert["id"], last_triggered_at=now)
        logger.info(f"[ALERT] Alert triggered: {alert['name']} ({alert['id']}): {evaluation.message}")

        recipients = alert.get("recipients") or []
        channels = alert.get("channels") or ["email"]
        if "email" not in channels or not recipients:
            return False

        body = "\n".join([
            evaluation.message or alert["name"],
            "",
            f"Actual value: {evaluation.actual_value}",
            f"Threshold: {evaluation.threshold_value}",
            f"Triggered at: {now.isoformat()}Z",
        ])
        try:
            result = await with_retry(
                lambda: self.mailer.send(recipients, alert_subject(alert["name"]), body),
                operation_name=f"alert_notification[{alert['id']}]",
            )
        except Exception as e:
            logger.error(f"[ALERT] Failed to send notification for alert {alert['id']}: {e}")
            return False
        if result.success:
            logger.info(f"[ALERT] Sent alert email for {alert['id']} to {len(recipients)} recipient(s)")
        return bool(result.success)

    async def evaluate_kpi_value(self, kpi_id: str, value: float,
                                 previous: Optional[float] = None) -> Dict[str, Any]:
        """
        Check KPI-bound alerts against a freshly computed value.

        Threshold alerts compare ``value`` directly; trend alerts need
        ``previous`` as the baseline. Freshness alerts have no meaning for a
        single value and are not checked here.
        """
        alerts = self.store.list_alerts(kpi_id=kpi_id, active_only=True)
        triggered: List[dict] = []
        checked = 0

        for alert in alerts:
            alert_type = parse_alert_type(alert["alert_type"])
            config = parse_alert_config(alert_type, alert.get("config"))
            evaluation = AlertEvaluation(alert_id=alert["id"], alert_type=alert_type, actual_value=value)

            if alert_type == AlertType.METRIC_THRESHOLD:
                evaluation.threshold_value = config.threshold
                evaluation.triggered = THRESHOLD_CONDITIONS[config.condition](value, config.threshold)
                evaluation.message = (f"KPI {kpi_id}: value {_fmt(value)} is {CONDITION_LABELS[config.condition]} "
                                      f"{_fmt(config.threshold)}")
            elif alert_type == AlertType.TREND_DETECTION:
                trend = MetricsService.calculate_trend(value, previous)
                evaluation.threshold_value = config.change_percent
                evaluation.triggered = trend is not None and abs(trend) > config.change_percent
                evaluation.message = (f"KPI {kpi_id}: changed by more than {_fmt(config.change_percent)}% "
                                      f"(current: {_fmt(value)})")
            else:
                continue

            checked += 1
            self.store.update_alert(alert["id"], last_evaluated_at=to_utc_naive(self._now()))
            if evaluation.triggered:
                evaluation.notified = await self.trigger_alert(alert, evaluation)
                triggered.append(evaluation.to_dict())

        return {
            "kpi_id": kpi_id,
            "current_value": value,
            "alerts_checked": checked,
            "triggered_alerts": triggered,
            "triggered_count": len(triggered),
        }

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def create_alert(self, name: str, alert_type: str, config: dict, report_id: Optional[str] = None,
                     kpi_id: Optional[str] = None, recipients: Optional[List[str]] = None,
                     channels: Optional[List[str]] = None) -> dict:
        if not name:
            raise ValidationError("Alert name is required")
        if not report_id and not kpi_id:
            raise ValidationError("Alert must reference a report or a KPI")
        alert_type = parse_alert_type(alert_type)
        parsed = parse_alert_config(alert_type, config)
        if report_id and not self.store.get_report(report_id):
            raise NotFoundError("Report", report_id)

        alert = self.store.create_alert(
            name=name,
            alert_type=alert_type.value,
            config=parsed.to_dict(),
            report_id=report_id,
            kpi_id=kpi_id,
            recipients=list(recipients or []),
            channels=list(channels or ["email"]),
            active=True,
        )
        logger.info(f"[ALERT] Created {alert_type.value} alert {alert['id']} ({name})")
        return alert

    def update_alert(self, alert_id: str, **updates) -> dict:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update alert fields: {', '.join(sorted(unknown))}")
        alert = self.store.get_alert(alert_id)
        if not alert:
            raise NotFoundError("Alert", alert_id)

        if "config" in updates or "alert_type" in updates:
            alert_type = parse_alert_type(updates.get("alert_type", alert["alert_type"]))
            parsed = parse_alert_config(alert_type, updates.get("config", alert["config"]))
            updates["alert_type"] = alert_type.value
            updates["config"] = parsed.to_dict()
        return self.store.update_alert(alert_id, **updates)

    def delete_alert(self, alert_id: str) -> bool:
        return self.store.delete_alert(alert_id)

    def toggle_alert(self, alert_id: str, active: bool) -> dict:
        return self.update_alert(alert_id, active=bool(active))

    def get_report_alerts(self, report_id: str) -> List[dict]:
        return self.store.list_alerts(report_id=report_id)

    def get_alert_history(self, alert_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        return self.store.list_alert_history(alert_id=alert_id, limit=limit)

    async def test_alert(self, alert_id: str) -> Dict[str, Any]:
        """Evaluate an alert on demand. A positive result is recorded like any other trigger."""
        alert = self.store.get_alert(alert_id)
        if not alert:
            raise NotFoundError("Alert", alert_id)
        evaluation = await self.evaluate_alert(alert)
        return {
            "alert_id": alert_id,
            "alert_name": alert["name"],
            "alert_type": alert["alert_type"],
            "would_trigger": evaluation.triggered,
            "message": evaluation.message or "Alert conditions not met",
            "actual_value": evaluation.actual_value,
            "threshold_value": evaluation.threshold_value,
            "estimated": evaluation.estimated,
        }
