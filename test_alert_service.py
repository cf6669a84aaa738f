from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from core.errors import NotFoundError, ValidationError
from services.alert_service import AlertService


@pytest.fixture
def alerts(store, report_service, mailer, now):
    return AlertService(store, report_service, mailer=mailer, now=now)


def _alert(alerts, report, alert_type, config, **kwargs):
    kwargs.setdefault("recipients", ["ops@example.com"])
    return alerts.create_alert(f"{alert_type} alert", alert_type, config, report_id=report["id"], **kwargs)


class TestThreshold:
    @pytest.mark.asyncio
    async def test_triggered_alert_is_recorded_then_notified(self, alerts, store, mailer, report, uploads):
        alert = _alert(alerts, report, "metric_threshold", {"metric": "spend", "condition": "gt", "threshold": 300})

        evaluation = await alerts.evaluate_alert(alert)

        assert evaluation.triggered
        assert evaluation.notified
        assert evaluation.actual_value == 400
        assert evaluation.message == "metric_threshold alert: spend is greater than 300 (current: 400)"
        history = store.list_alert_history(alert["id"])
        assert len(history) == 1
        assert history[0]["actual_value"] == 400
        assert history[0]["threshold_value"] == 300
        assert history[0]["report_id"] == report["id"]
        stored = store.get_alert(alert["id"])
        assert stored["last_triggered_at"] == datetime(2024, 1, 20, 15, 0)
        assert stored["last_evaluated_at"] == datetime(2024, 1, 20, 15, 0)
        assert mailer.sent[0]["subject"] == "Alert: metric_threshold alert - Data Hub"

    @pytest.mark.asyncio
    async def test_not_triggered_only_stamps_evaluation(self, alerts, store, mailer, report, uploads):
        alert = _alert(alerts, report, "metric_threshold", {"metric": "spend", "condition": "lt", "threshold": 300})

        evaluation = await alerts.evaluate_alert(alert)

        assert not evaluation.triggered
        assert store.list_alert_history(alert["id"]) == []
        stored = store.get_alert(alert["id"])
        assert stored["last_evaluated_at"] is not None
        assert stored["last_triggered_at"] is None
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_equality_tolerates_float_noise(self, alerts, store, report):
        store.create_upload(report["client_id"], "google_ads", [{"ctr": 0.1}, {"ctr": 0.2}])
        alert = _alert(alerts, report, "metric_threshold", {"metric": "ctr", "condition": "eq", "threshold": 0.15})
        assert (await alerts.evaluate_alert(alert)).triggered

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_history(self, store, report_service, now, report, uploads):
        mailer = AsyncMock()
        mailer.send.side_effect = RuntimeError("relay refused")
        alerts = AlertService(store, report_service, mailer=mailer, now=now)
        alert = _alert(alerts, report, "metric_threshold", {"metric": "spend", "condition": "gte", "threshold": 400})

        evaluation = await alerts.evaluate_alert(alert)

        assert evaluation.triggered
        assert evaluation.notified is False
        assert len(store.list_alert_history(alert["id"])) == 1

    @pytest.mark.asyncio
    async def test_no_email_channel_means_no_notification(self, alerts, mailer, report, uploads):
        alert = _alert(alerts, report, "metric_threshold", {"metric": "spend", "condition": "gt", "threshold": 1},
                       channels=["slack"])
        evaluation = await alerts.evaluate_alert(alert)
        assert evaluation.triggered
        assert evaluation.notified is False
        assert mailer.sent == []


class TestTrend:
    @pytest.mark.asyncio
    async def test_estimated_baseline_never_triggers(self, alerts, store, report, uploads):
        alert = _alert(alerts, report, "trend_detection", {"metric": "spend", "changePercent": 0})

        evaluation = await alerts.evaluate_alert(alert)

        assert not evaluation.triggered
        assert evaluation.estimated
        assert "insufficient history" in evaluation.message
        assert store.list_alert_history(alert["id"]) == []

    @pytest.mark.asyncio
    async def test_measured_change_triggers(self, alerts, store, report, uploads):
        store.update_report(report["id"], visualization_config={"visualizations": [], "dateRange": "last_7_days"})
        store.create_upload(report["client_id"], "google_ads", [{"date": "2024-01-10", "spend": 100}])
        alert = _alert(alerts, report, "trend_detection", {"metric": "spend", "changePercent": 50, "period": "wow"})

        evaluation = await alerts.evaluate_alert(alert)

        assert evaluation.triggered
        assert not evaluation.estimated
        assert evaluation.actual_value == pytest.approx(300.0)
        assert "increased by 300.0% week-over-week" in evaluation.message

    @pytest.mark.asyncio
    async def test_small_change_does_not_trigger(self, alerts, store, report, uploads):
        store.update_report(report["id"], visualization_config={"visualizations": [], "dateRange": "last_7_days"})
        store.create_upload(report["client_id"], "google_ads", [{"date": "2024-01-10", "spend": 380}])
        alert = _alert(alerts, report, "trend_detection", {"metric": "spend", "changePercent": 10})

        assert not (await alerts.evaluate_alert(alert)).triggered


class TestFreshness:
    @pytest.mark.asyncio
    async def test_no_uploads_triggers(self, alerts, report):
        alert = _alert(alerts, report, "data_freshness", {"maxHoursStale": 24})
        evaluation = await alerts.evaluate_alert(alert)
        assert evaluation.triggered
        assert evaluation.message == "data_freshness alert: No data uploads found"

    @pytest.mark.asyncio
    async def test_stale_data_triggers(self, alerts, report, uploads):
        alert = _alert(alerts, report, "data_freshness", {"maxHoursStale": 24})
        evaluation = await alerts.evaluate_alert(alert)
        assert evaluation.triggered
        assert evaluation.actual_value == pytest.approx(27)
        assert "Data is 27 hours old" in evaluation.message

    @pytest.mark.asyncio
    async def test_fresh_data_does_not_trigger(self, alerts, report, uploads):
        alert = _alert(alerts, report, "data_freshness", {"maxHoursStale": 48})
        assert not (await alerts.evaluate_alert(alert)).triggered

    @pytest.mark.asyncio
    async def test_platform_filter(self, alerts, report, uploads):
        alert = _alert(alerts, report, "data_freshness", {"maxHoursStale": 28, "platformId": "meta_ads"})
        evaluation = await alerts.evaluate_alert(alert)
        assert evaluation.triggered
        assert evaluation.actual_value == pytest.approx(30)


class TestEvaluateAll:
    @pytest.mark.asyncio
    async def test_errors_are_isolated(self, alerts, store, report, uploads):
        good = _alert(alerts, report, "metric_threshold", {"metric": "spend", "condition": "gt", "threshold": 1})
        broken = store.create_alert("Broken", "metric_threshold", {"metric": "spend"}, report_id=report["id"])
        store.create_alert("Paused", "metric_threshold", {"metric": "spend", "condition": "gt", "threshold": 1},
                           report_id=report["id"], active=False)
        alerts.create_alert("KPI", "metric_threshold", {"metric": "spend", "condition": "gt", "threshold": 1},
                            kpi_id="kpi-1")

        summary = await alerts.evaluate_all_alerts()

        assert summary["evaluated"] == 1
        assert summary["triggered"] == 1
        assert summary["errors"] == 1
        assert summary["skipped"] == 1
        assert summary["alerts"][0]["alert_id"] == good["id"]
        # last_evaluated_at is stamped before the config is parsed
        assert store.get_alert(broken["id"])["last_evaluated_at"] is not None

    @pytest.mark.asyncio
    async def test_scoped_to_report(self, alerts, store, client_row, report, uploads):
        other = store.create_report(client_row["id"], "Other")
        _alert(alerts, other, "data_freshness", {"maxHoursStale": 1})

        summary = await alerts.evaluate_all_alerts(report_id=report["id"])
        assert summary["evaluated"] == 0


class TestManagement:
    def test_config_is_normalised(self, alerts, report):
        alert = _alert(alerts, report, "trend_detection", {"metric": "spend", "change_percent": 20})
        assert alert["config"] == {"metric": "spend", "changePercent": 20.0, "period": "wow"}
        assert alert["channels"] == ["email"]
        assert alert["active"] is True

    @pytest.mark.parametrize("alert_type, config", [
        ("anomaly", {"metric": "spend"}),
        ("metric_threshold", {"metric": "spend", "condition": "between", "threshold": 1}),
        ("metric_threshold", {"metric": "spend", "condition": "gt"}),
        ("metric_threshold", {"metric": "spend", "condition": "gt", "threshold": 1, "maxHoursStale": 2}),
        ("trend_detection", {"metric": "spend", "changePercent": -5}),
        ("data_freshness", {"maxHoursStale": 0}),
        ("data_freshness", None),
    ])
    def test_invalid_configs(self, alerts, report, alert_type, config):
        with pytest.raises(ValidationError):
            _alert(alerts, report, alert_type, config)

    def test_needs_a_target(self, alerts):
        with pytest.raises(ValidationError):
            alerts.create_alert("Orphan", "data_freshness", {"maxHoursStale": 1})

    def test_unknown_report(self, alerts):
        with pytest.raises(NotFoundError):
            alerts.create_alert("Lost", "data_freshness", {"maxHoursStale": 1}, report_id="missing")

    def test_update_revalidates(self, alerts, report):
        alert = _alert(alerts, report, "metric_threshold", {"metric": "spend", "condition": "gt", "threshold": 1})

        updated = alerts.update_alert(alert["id"], config={"metric": "clicks", "condition": "lt", "threshold": 5})
        assert updated["config"]["metric"] == "clicks"

        with pytest.raises(ValidationError):
            alerts.update_alert(alert["id"], alert_type="data_freshness")
        with pytest.raises(ValidationError):
            alerts.update_alert(alert["id"], report_id="elsewhere")
        with pytest.raises(NotFoundError):
            alerts.update_alert("missing", name="x")

    def test_toggle_and_delete(self, alerts, report):
        alert = _alert(alerts, report, "data_freshness", {"maxHoursStale": 1})
        assert alerts.toggle_alert(alert["id"], False)["active"] is False
        assert alerts.get_report_alerts(report["id"])[0]["id"] == alert["id"]
        assert alerts.delete_alert(alert["id"]) is True
        assert alerts.get_report_alerts(report["id"]) == []

    @pytest.mark.asyncio
    async def test_test_alert(self, alerts, report, uploads):
        alert = _alert(alerts, report, "metric_threshold", {"metric": "clicks", "condition": "gt", "threshold": 100})
        result = await alerts.test_alert(alert["id"])
        assert result["would_trigger"] is False
        assert result["message"] == "Alert conditions not met"
        assert result["actual_value"] == 55

        with pytest.raises(NotFoundError):
            await alerts.test_alert("missing")


class TestKpiAlerts:
    @pytest.mark.asyncio
    async def test_threshold_and_trend(self, alerts, store, mailer):
        threshold = alerts.create_alert("Low ROAS", "metric_threshold",
                                        {"metric": "roas", "condition": "lt", "threshold": 2}, kpi_id="kpi-1",
                                        recipients=["ops@example.com"])
        alerts.create_alert("ROAS swing", "trend_detection", {"metric": "roas", "changePercent": 30},
                            kpi_id="kpi-1")
        alerts.create_alert("Stale", "data_freshness", {"maxHoursStale": 1}, kpi_id="kpi-1")

        result = await alerts.evaluate_kpi_value("kpi-1", 1.5, previous=3.0)

        assert result["alerts_checked"] == 2
        assert result["triggered_count"] == 2
        assert {a["alert_type"] for a in result["triggered_alerts"]} == {"metric_threshold", "trend_detection"}
        assert len(store.list_alert_history(threshold["id"])) == 1
        assert len(mailer.sent) == 1

    @pytest.mark.asyncio
    async def test_trend_without_previous_does_not_trigger(self, alerts):
        alerts.create_alert("ROAS swing", "trend_detection", {"metric": "roas", "changePercent": 30},
                            kpi_id="kpi-1")
        result = await alerts.evaluate_kpi_value("kpi-1", 1.5)
        assert result["triggered_count"] == 0
