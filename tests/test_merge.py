import pytest
from sqlalchemy import func, select

from conftest import at, event
from warehouse.config import Settings
from warehouse.errors import PipelineDefinitionError
from warehouse.merge import MergeEngine, versions_for
from warehouse.models import UNKNOWN_MEMBER_KEY, DimensionRef, DimensionSpec, FactSpec
from warehouse.schema import anomalies, dimension_versions, fact_rows, pending_orphans

dim_user = DimensionSpec("dim_user", ("user_id",))
user_ref = DimensionRef("dim_user", {"user_id": "user_id"})
fact_sales = FactSpec(
    name="fact_sales",
    key_columns=("sale_id",),
    references={"user": user_ref},
    measures=("amount",),
    event_time_column="sold_at",
)
MAPPING = {"users": dim_user, "sales": fact_sales}


@pytest.fixture
def merge():
    return MergeEngine(Settings(orphan_retry_limit=2))


def _apply(engine, merge, events):
    with engine.begin() as conn:
        return merge.apply_batch(conn, MAPPING, events)


def _versions(engine, key):
    with engine.connect() as conn:
        return versions_for(conn, "dim_user", key)


def _sale(seq, action, sale_id, user_id=1, amount=100, sold_at=None, when=None):
    payload = {"user_id": user_id, "amount": amount}
    if sold_at is not None:
        payload["sold_at"] = sold_at.isoformat()
    return event(seq, action, {"sale_id": sale_id}, payload, when=when, dataset="sales")


# ───────────── Dimensions ────────────────────────────────────────────────────
def test_update_closes_and_opens_a_version(engine, merge):
    result = _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}, when=at(1)),
        event(2, "UPDATE", {"user_id": 1}, {"name": "Alicia"}, when=at(2)),
    ])

    old, new = _versions(engine, {"user_id": 1})
    assert (old.attributes, old.valid_from, old.valid_to, old.is_current) == ({"name": "Alice"}, at(1), at(2), False)
    assert (new.attributes, new.valid_from, new.valid_to, new.is_current) == ({"name": "Alicia"}, at(2), None, True)
    assert (result.inserted, result.new_versions) == (1, 1)


def test_identical_update_is_a_no_op(engine, merge):
    result = _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice", "country": "RU"}),
        event(2, "UPDATE", {"user_id": 1}, {"name": "Alice"}),
    ])
    assert len(_versions(engine, {"user_id": 1})) == 1
    assert result.unchanged == 1


def test_update_payload_is_a_patch(engine, merge):
    _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice", "country": "RU"}),
        event(2, "UPDATE", {"user_id": 1}, {"country": "KZ"}),
    ])
    assert _versions(engine, {"user_id": 1})[-1].attributes == {"name": "Alice", "country": "KZ"}


def test_delete_closes_without_replacement(engine, merge):
    _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}),
        event(2, "DELETE", {"user_id": 1}),
    ])
    (only,) = _versions(engine, {"user_id": 1})
    assert not only.is_current
    assert only.valid_to == at(2)


def test_reinsert_after_delete_opens_a_new_version(engine, merge):
    _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}),
        event(2, "DELETE", {"user_id": 1}),
        event(3, "INSERT", {"user_id": 1}, {"name": "Alice again"}),
    ])
    versions = _versions(engine, {"user_id": 1})
    assert [v.is_current for v in versions] == [False, True]
    assert versions[0].valid_to == at(2)
    assert versions[1].valid_from == at(3)


def test_insert_on_live_key_is_applied_as_upsert(engine, merge):
    _apply(engine, merge, [event(1, "INSERT", {"user_id": 1}, {"name": "Alice"})])
    _apply(engine, merge, [event(2, "INSERT", {"user_id": 1}, {"name": "Alicia"})])
    versions = _versions(engine, {"user_id": 1})
    assert [v.attributes["name"] for v in versions] == ["Alice", "Alicia"]
    assert [v.is_current for v in versions] == [False, True]


def test_intervals_are_contiguous_with_one_current_row(engine, merge):
    _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"tier": 1}),
        event(2, "UPDATE", {"user_id": 1}, {"tier": 2}),
        event(3, "UPDATE", {"user_id": 1}, {"tier": 3}),
        event(4, "UPDATE", {"user_id": 1}, {"tier": 3}),
        event(5, "UPDATE", {"user_id": 1}, {"tier": 4}),
        event(6, "INSERT", {"user_id": 2}, {"tier": 1}),
    ])
    versions = _versions(engine, {"user_id": 1})

    assert [(v.valid_from, v.valid_to) for v in versions] == [
        (at(1), at(2)), (at(2), at(3)), (at(3), at(5)), (at(5), None),
    ]
    with engine.connect() as conn:
        current_per_key = conn.execute(
            select(dimension_versions.c.natural_key, func.count())
            .where(dimension_versions.c.is_current)
            .group_by(dimension_versions.c.natural_key)
        ).all()
    assert sorted(n for _, n in current_per_key) == [1, 1]


def test_replaying_a_slice_changes_nothing(engine, merge):
    batch = [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}),
        event(2, "UPDATE", {"user_id": 1}, {"name": "Alicia"}),
        event(3, "DELETE", {"user_id": 1}),
        event(4, "INSERT", {"user_id": 2}, {"name": "Bob"}),
    ]
    _apply(engine, merge, batch)
    before = _versions(engine, {"user_id": 1}) + _versions(engine, {"user_id": 2})

    result = _apply(engine, merge, batch)

    assert _versions(engine, {"user_id": 1}) + _versions(engine, {"user_id": 2}) == before
    assert result.skipped == 4
    assert (result.inserted, result.new_versions, result.closed) == (0, 0, 0)


def test_unknown_dataset_is_a_definition_error(engine, merge):
    with pytest.raises(PipelineDefinitionError):
        _apply(engine, merge, [event(1, "INSERT", {"id": 1}, {"x": 1}, dataset="invoices")])


# ───────────── Orphans ───────────────────────────────────────────────────────
def test_orphan_surfaces_immediately_with_zero_retries(engine):
    merge = MergeEngine(Settings(orphan_retry_limit=0))
    result = _apply(engine, merge, [event(1, "UPDATE", {"user_id": 2}, {"name": "Bob"})])

    assert result.orphaned == 1
    assert len(result.surfaced_orphans) == 1
    with engine.connect() as conn:
        kinds = conn.execute(select(anomalies.c.kind)).scalars().all()
        pending = conn.execute(select(func.count()).select_from(pending_orphans)).scalar_one()
    assert kinds == ["ORPHAN_EVENT"]
    assert pending == 0
    assert _versions(engine, {"user_id": 2}) == []


def test_buffered_orphan_resolves_once_the_insert_arrives(engine, merge):
    first = _apply(engine, merge, [event(1, "UPDATE", {"user_id": 2}, {"name": "Robert"}, when=at(1))])
    assert first.orphaned == 1 and first.surfaced_orphans == []

    second = _apply(engine, merge, [event(2, "INSERT", {"user_id": 2}, {"name": "Bob"}, when=at(2))])

    assert second.resolved_orphans == 1
    versions = _versions(engine, {"user_id": 2})
    assert versions[-1].attributes == {"name": "Robert"}
    assert versions[-1].is_current
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(anomalies)).scalar_one() == 0
        assert conn.execute(select(func.count()).select_from(pending_orphans)).scalar_one() == 0


def test_orphan_is_settled_before_later_events_of_its_key(engine, merge):
    result = _apply(engine, merge, [
        event(1, "UPDATE", {"user_id": 1}, {"name": "B"}, when=at(1)),
        event(2, "INSERT", {"user_id": 1}, {"name": "A"}, when=at(2)),
        event(3, "UPDATE", {"user_id": 1}, {"name": "C"}, when=at(3)),
    ])

    versions = _versions(engine, {"user_id": 1})
    assert [v.attributes["name"] for v in versions] == ["A", "B", "C"]
    assert versions[-1].is_current
    assert versions[-1].valid_from == at(3)
    assert result.resolved_orphans == 1
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(pending_orphans)).scalar_one() == 0


def test_update_after_delete_is_superseded_by_a_reinsert(engine, merge):
    first = _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}),
        event(2, "DELETE", {"user_id": 1}),
        event(3, "UPDATE", {"user_id": 1}, {"name": "stale"}),
    ])
    assert first.orphaned == 1 and first.surfaced_orphans == []

    second = _apply(engine, merge, [event(4, "INSERT", {"user_id": 1}, {"name": "Fresh"})])

    versions = _versions(engine, {"user_id": 1})
    assert versions[-1].attributes == {"name": "Fresh"}
    assert versions[-1].is_current
    assert all(v.attributes["name"] != "stale" for v in versions)
    assert second.resolved_orphans == 0
    (record,) = second.surfaced_orphans
    assert (record["kind"], record["sequence_id"]) == ("ORPHAN_EVENT", 3)
    assert record["detail"]["reason"] == "superseded"
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(pending_orphans)).scalar_one() == 0


def test_superseded_orphan_does_not_touch_events_after_the_reinsert(engine, merge):
    _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}),
        event(2, "DELETE", {"user_id": 1}),
        event(3, "UPDATE", {"user_id": 1}, {"name": "stale"}),
        event(4, "INSERT", {"user_id": 1}, {"name": "Fresh"}),
        event(5, "UPDATE", {"user_id": 1}, {"name": "Fresher"}),
    ])
    assert [v.attributes["name"] for v in _versions(engine, {"user_id": 1})] == ["Alice", "Fresh", "Fresher"]


def test_orphan_surfaces_after_its_retries_are_used(engine):
    merge = MergeEngine(Settings(orphan_retry_limit=1))
    first = _apply(engine, merge, [event(1, "DELETE", {"user_id": 9})])
    assert first.surfaced_orphans == []

    second = _apply(engine, merge, [event(2, "INSERT", {"user_id": 3}, {"name": "Carol"})])
    assert len(second.surfaced_orphans) == 1
    assert second.surfaced_orphans[0]["sequence_id"] == 1


# ───────────── Facts ─────────────────────────────────────────────────────────
def test_fact_resolves_version_effective_at_event_time(engine, merge):
    _apply(engine, merge, [
        event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}, when=at(1)),
        event(2, "UPDATE", {"user_id": 1}, {"name": "Alicia"}, when=at(2)),
        event(3, "DELETE", {"user_id": 1}, when=at(3)),
    ])
    old, new = _versions(engine, {"user_id": 1})

    _apply(engine, merge, [
        _sale(1, "INSERT", 500, sold_at=at(0)),
        _sale(2, "INSERT", 501, sold_at=at(1.5)),
        _sale(3, "INSERT", 502, sold_at=at(4)),
    ])

    with engine.connect() as conn:
        keys = conn.execute(select(fact_rows.c.surrogate_keys).order_by(fact_rows.c.sequence_id)).scalars().all()
    assert [k["user"] for k in keys] == [UNKNOWN_MEMBER_KEY, old.surrogate_key, new.surrogate_key]


def test_fact_without_event_time_column_uses_captured_at(engine, merge):
    _apply(engine, merge, [event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}, when=at(1))])
    _apply(engine, merge, [_sale(1, "INSERT", 500, when=at(5))])
    with engine.connect() as conn:
        assert conn.execute(select(fact_rows.c.event_time)).scalar_one() == at(5)


def test_fact_corrections_are_compensating_rows(engine, merge):
    _apply(engine, merge, [event(1, "INSERT", {"user_id": 1}, {"name": "Alice"}, when=at(0))])
    batch = [
        _sale(1, "INSERT", 500, amount=100, sold_at=at(1)),
        _sale(2, "UPDATE", 500, amount=120, sold_at=at(1)),
        _sale(3, "DELETE", 500),
    ]
    result = _apply(engine, merge, batch)

    with engine.connect() as conn:
        rows = conn.execute(select(fact_rows).order_by(fact_rows.c.fact_row_id)).mappings().all()
    assert [(r["measures"]["amount"], r["is_reversal"]) for r in rows] == [
        (100, False), (-100, True), (120, False), (-120, True),
    ]
    assert rows[1]["reverses_row_id"] == rows[0]["fact_row_id"]
    assert rows[3]["reverses_row_id"] == rows[2]["fact_row_id"]
    assert (result.facts, result.reversals) == (2, 2)

    replay = _apply(engine, merge, batch)
    assert replay.skipped == 3
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(fact_rows)).scalar_one() == 4


def test_fact_delete_without_prior_row_is_an_anomaly(engine, merge):
    result = _apply(engine, merge, [_sale(1, "DELETE", 999)])
    assert len(result.surfaced_orphans) == 1
    with engine.connect() as conn:
        assert conn.execute(select(anomalies.c.kind)).scalars().all() == ["ORPHAN_EVENT"]
        assert conn.execute(select(func.count()).select_from(fact_rows)).scalar_one() == 0
