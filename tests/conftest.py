import datetime

import pytest

from data_sources.rdbms import make_engine
from notifications.alerts import AlertChannel
from warehouse.config import Settings
from warehouse.ledger import ChangeLedger
from warehouse.models import Action, ChangeEvent
from warehouse.orchestrator import Orchestrator
from warehouse.pipeline_defs import build_pipeline, register_datasets
from warehouse.schema import create_all

BASE_TIME = datetime.datetime(2026, 1, 10, 8, 0, 0)


def at(hours: float) -> datetime.datetime:
    """BASE_TIME shifted by `hours`."""
    return BASE_TIME + datetime.timedelta(hours=hours)


def event(seq, action, key, payload=None, when=None, dataset="users"):
    """Build a ChangeEvent by hand, the way the ledger would hand it out."""
    return ChangeEvent(
        sequence_id=seq,
        dataset=dataset,
        key=key,
        action=Action(action),
        payload=payload or {},
        captured_at=when or at(seq),
    )


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        batch_size=100,
        ledger_page_size=3,
        lease_ttl_seconds=60,
        max_attempts=2,
        max_conflict_retries=3,
        retry_backoff_seconds=5,
        orphan_retry_limit=1,
    )


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'elt.db'}")
    create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def alerts():
    return AlertChannel()


@pytest.fixture
def ledger(engine, settings, alerts):
    led = ChangeLedger(engine, settings, alerts)
    register_datasets(led)
    return led


@pytest.fixture
def pipeline():
    return build_pipeline()


@pytest.fixture
def naps():
    """Delays the orchestrator asked for between attempts, instead of sleeping."""
    return []


@pytest.fixture
def orchestrator(engine, pipeline, settings, alerts, ledger, naps):
    return Orchestrator(engine, pipeline, settings=settings, alerts=alerts,
                        worker_id="worker-a", ledger=ledger, sleep=naps.append)


USERS = [
    {"user_id": 1, "first_name": "Alice", "last_name": "Smirnova",
     "email": "alice@example.com", "country": "RU"},
    {"user_id": 2, "first_name": "Bakyt", "last_name": "Omarov",
     "email": "bakyt@example.com", "country": "KZ"},
]

COURSES = [
    {"course_id": 10, "title": "SQL basics", "subject": "Databases",
     "price_in_rubbles": 1000, "category": "IT", "sub_category": "Data"},
]

SALES = [
    {"sale_id": 100, "user_id": 1, "course_id": 10,
     "cost_in_rubbles": 1000, "sale_date": "2026-01-15T10:00:00"},
    {"sale_id": 101, "user_id": 2, "course_id": 10,
     "cost_in_rubbles": 500, "sale_date": "2026-01-20T12:30:00"},
]


def load_reference_data(ledger, sales=True):
    ledger.append("users", USERS, "INSERT", captured_at=BASE_TIME)
    ledger.append("courses", COURSES, "INSERT", captured_at=BASE_TIME)
    if sales:
        ledger.append("sales", SALES, "INSERT", captured_at=at(1))
