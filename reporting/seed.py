#!/usr/bin/env python3
"""
Seed script — creates the tables, the global alert-evaluation job and,
optionally, a demo client with a weekly scheduled report.
Run with: python -m reporting.seed [--demo]
"""
import argparse
import random
from datetime import date, datetime, timedelta

from reporting.database import init_db
from reporting.models import JobType
from reporting.schedule import (
    SCHEDULER_TIMEZONE, ScheduleConfig, calculate_next_run_time, next_fire_time, schedule_to_cron, to_utc_naive,
)
from reporting.scheduler import ALERT_EVALUATION_CRON, GLOBAL_ENTITY
from reporting.store import ReportStore

DEMO_PLATFORMS = ["google_ads", "meta_ads"]

DEMO_VISUALIZATIONS = [
    {"id": "kpi-spend", "type": "kpi", "title": "Spend",
     "config": {"metric": "spend", "format": "currency", "showTrend": True}},
    {"id": "kpi-roas", "type": "kpi", "title": "ROAS",
     "config": {"metric": "roas", "format": "decimal", "showTrend": True}},
    {"id": "chart-clicks", "type": "bar", "title": "Clicks by campaign",
     "config": {"xAxis": "campaign", "yAxis": ["clicks", "spend"]}},
]

DEMO_SCHEDULE = {"frequency": "weekly", "dayOfWeek": "monday", "time": "09:00"}


def _demo_rows(days: int = 30):
    today = date.today()
    rows = []
    for offset in range(days):
        day = (today - timedelta(days=offset)).isoformat()
        for campaign in ("Brand", "Prospecting", "Retargeting"):
            spend = round(random.uniform(50, 400), 2)
            rows.append({
                "date": day,
                "campaign": campaign,
                "spend": spend,
                "clicks": random.randint(20, 600),
                "impressions": random.randint(1000, 20000),
                "roas": round(random.uniform(1.2, 5.0), 2),
            })
    return rows


def ensure_alert_job(store: ReportStore) -> bool:
    """Create the global alert-evaluation job row if missing; the scheduler registers it on startup."""
    if store.get_scheduled_job_by_entity(JobType.ALERT_EVALUATION.value, GLOBAL_ENTITY):
        return False
    store.create_scheduled_job(
        JobType.ALERT_EVALUATION.value, GLOBAL_ENTITY, ALERT_EVALUATION_CRON,
        timezone=SCHEDULER_TIMEZONE,
        next_run_at=to_utc_naive(next_fire_time(ALERT_EVALUATION_CRON, SCHEDULER_TIMEZONE)),
    )
    return True


def seed_demo(store: ReportStore) -> dict:
    client = store.create_client("Demo Client")
    warehouse = store.create_warehouse(client["id"], "Paid Media", DEMO_PLATFORMS)
    for platform_id in DEMO_PLATFORMS:
        store.create_upload(client["id"], platform_id, _demo_rows(), filename=f"{platform_id}_export.csv")

    cfg = ScheduleConfig.coerce(DEMO_SCHEDULE)
    cron_expression = schedule_to_cron(cfg)
    next_run_at = to_utc_naive(calculate_next_run_time(cfg, datetime.utcnow()))
    report = store.create_report(
        client["id"], "Weekly Performance",
        warehouse_id=warehouse["id"],
        visualization_config={"visualizations": DEMO_VISUALIZATIONS, "dateRange": "last_7_days"},
        schedule_config=cfg.to_dict(),
        frequency=cfg.frequency.value,
        delivery_format="csv",
        recipients=["demo@example.com"],
        is_scheduled=True,
        next_run_at=next_run_at,
    )
    store.create_scheduled_job(
        JobType.REPORT_DELIVERY.value, report["id"], cron_expression,
        report_id=report["id"], timezone=cfg.timezone, next_run_at=next_run_at,
    )
    store.create_alert(
        name="Spend spike",
        alert_type="trend_detection",
        config={"metric": "spend", "changePercent": 25, "period": "wow"},
        report_id=report["id"],
        recipients=["demo@example.com"],
    )
    return report


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--demo", action="store_true", help="Also create a demo client, data and scheduled report.")
    args = parser.parse_args()

    print("=" * 60)
    print("  Reporting — Seed Script")
    print("=" * 60)

    print("\n[1/2] Initializing database...")
    init_db()
    print("  ✓ Tables created")

    store = ReportStore()
    print("\n[2/2] Registering jobs...")
    if ensure_alert_job(store):
        print(f"  ✓ Registered: alert evaluation (cron: {ALERT_EVALUATION_CRON})")
    else:
        print("  - Alert evaluation job already present")

    if args.demo:
        report = seed_demo(store)
        print(f"  ✓ Demo report {report['id']} scheduled (next run: {report['next_run_at']})")

    print("\nDone. Start the API with: python -m reporting")


if __name__ == "__main__":
    main()
