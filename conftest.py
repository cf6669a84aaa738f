from datetime import datetime, timezone

import pytest
import pytest_asyncio

from reporting.database import init_db, make_engine, make_session_factory
from reporting.scheduler import JobScheduler
from reporting.store import ReportStore
from services.alert_service import AlertService
from services.mailer import LogMailer
from services.report_service import ReportService

# Saturday
NOW = datetime(2024, 1, 20, 15, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Retries still happen, without the wait between attempts."""
    monkeypatch.setattr("core.retry.backoff_delay", lambda *a, **k: 0)


@pytest.fixture
def store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    yield ReportStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def now():
    return lambda: NOW


@pytest.fixture
def mailer():
    return LogMailer()


@pytest.fixture
def client_row(store):
    return store.create_client("Acme")


@pytest.fixture
def warehouse(store, client_row):
    return store.create_warehouse(client_row["id"], "Paid Media", ["google_ads", "meta_ads"])


@pytest.fixture
def report(store, client_row, warehouse):
    return store.create_report(
        client_row["id"], "Weekly Performance",
        warehouse_id=warehouse["id"],
        visualization_config={"visualizations": [
            {"id": "kpi-spend", "type": "kpi", "title": "Spend", "config": {"metric": "spend", "format": "currency"}},
            {"id": "chart-clicks", "type": "bar", "title": "Clicks",
             "config": {"xAxis": "campaign", "yAxis": ["clicks"]}},
        ]},
        delivery_format="csv",
        recipients=["ops@example.com"],
    )


@pytest.fixture
def uploads(store, client_row):
    """400 spend / 55 clicks across two platforms, dated the two days before NOW."""
    store.create_upload(client_row["id"], "google_ads", [
        {"date": "2024-01-18", "campaign": "Brand", "spend": 100, "clicks": 10},
        {"date": "2024-01-19", "campaign": "Prospecting", "spend": 250, "clicks": 40},
    ], uploaded_at=datetime(2024, 1, 19, 12, 0))
    store.create_upload(client_row["id"], "meta_ads", [
        {"date": "2024-01-19", "campaign": "Brand", "spend": 50, "clicks": 5},
    ], uploaded_at=datetime(2024, 1, 19, 9, 0))


@pytest.fixture
def report_service(store, mailer, now):
    return ReportService(store, mailer=mailer, now=now)


@pytest_asyncio.fixture
async def scheduler(store, report_service, mailer, now):
    alert_service = AlertService(store, report_service, mailer=mailer, now=now)
    job_scheduler = JobScheduler(store, report_service, alert_service, timezone="UTC", sweep_interval=3600, now=now)
    # paused: triggers are registered but never fire during a test
    job_scheduler.scheduler.start(paused=True)
    yield job_scheduler
    await job_scheduler.shutdown()
