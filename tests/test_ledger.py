import datetime

import pytest
from sqlalchemy import select

from conftest import BASE_TIME
from data_sources.feed import RawBatch, feed
from warehouse.errors import SchemaMismatch
from warehouse.models import Action
from warehouse.schema import anomalies


def _users(*ids):
    return [{"user_id": i, "email": f"u{i}@example.com"} for i in ids]


def test_sequence_ids_are_consecutive_per_dataset(ledger):
    assert ledger.append("users", _users(1, 2), "INSERT").sequence_ids == [1, 2]
    assert ledger.append("courses", [{"course_id": 10, "title": "SQL"}], "INSERT").sequence_ids == [1]
    assert ledger.append("users", _users(3), "UPDATE").sequence_ids == [3]
    assert ledger.high_water_mark("users") == 3
    assert ledger.high_water_mark("courses") == 1


def test_row_without_key_is_recorded_and_skipped(engine, ledger, alerts):
    result = ledger.append("users", [{"user_id": 1, "email": "a@x"}, {"email": "nobody@x"}], "INSERT")

    assert result.sequence_ids == [1]
    assert len(result.rejected) == 1
    assert result.rejected[0].detail["missing"] == ["user_id"]

    with engine.connect() as conn:
        rows = conn.execute(select(anomalies)).mappings().all()
    assert [r["kind"] for r in rows] == ["SCHEMA_MISMATCH"]
    assert rows[0]["dataset"] == "users"
    assert alerts.emitted[-1]["kind"] == "SCHEMA_MISMATCH"


def test_strict_append_aborts_the_whole_batch(ledger):
    with pytest.raises(SchemaMismatch):
        ledger.append("users", [{"user_id": 1}, {"user_id": None}], "INSERT", strict=True)
    assert ledger.high_water_mark("users") == 0


def test_unregistered_dataset_is_refused(ledger):
    with pytest.raises(SchemaMismatch):
        ledger.append("invoices", [{"invoice_id": 1}], "INSERT")


def test_reregistering_with_another_key_is_refused(ledger):
    ledger.register_dataset("users", ["user_id"])
    with pytest.raises(SchemaMismatch):
        ledger.register_dataset("users", ["email"])


def test_delete_carries_only_the_key(ledger):
    ledger.append("users", [{"user_id": 7, "email": "gone@x"}], "DELETE")
    (event,) = list(ledger.read_since("users", 0, 10))
    assert event.action is Action.DELETE
    assert event.key == {"user_id": 7}
    assert event.payload == {}


def test_timestamp_column_sets_captured_at(ledger):
    ledger.append("users", [{"user_id": 1, "email": "a@x", "changed": "2026-03-01T09:30:00+03:00"}],
                  "INSERT", timestamp_column="changed")
    (event,) = list(ledger.read_since("users", 0, 10))
    assert event.captured_at == datetime.datetime(2026, 3, 1, 6, 30)


def test_read_since_is_ordered_bounded_and_restartable(ledger):
    ledger.append("users", _users(*range(1, 8)), "INSERT", captured_at=BASE_TIME)

    # page size is 3, so this crosses a page boundary
    events = ledger.read_since("users", 2, max_rows=4)
    first = [e.sequence_id for e in events]
    second = [e.sequence_id for e in events]

    assert first == [3, 4, 5, 6]
    assert second == first
    assert [e.sequence_id for e in ledger.read_since("users", 2, 10, upper_bound=4)] == [3, 4]
    assert list(ledger.read_since("users", 7, 10)) == []


def test_payload_excludes_key_columns(ledger):
    ledger.append("users", [{"user_id": 1, "email": "a@x", "country": "RU"}], "INSERT")
    (event,) = list(ledger.read_since("users", 0, 1))
    assert event.payload == {"email": "a@x", "country": "RU"}


def test_feed_appends_batches_in_order(ledger):
    results = feed(ledger, [
        RawBatch("users", Action.INSERT, _users(1, 2), captured_at=BASE_TIME),
        RawBatch("users", Action.UPDATE, [{"user_id": 1, "email": "new@x"}, {"email": "no key"}]),
    ])
    assert [r.sequence_ids for r in results] == [[1, 2], [3]]
    assert len(results[1].rejected) == 1
