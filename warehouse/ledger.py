#!/usr/bin/env python3
# ledger.py

"""
Change Ledger: the durable, ordered record of row changes per dataset.

Usage:
  ledger = ChangeLedger(engine)
  ledger.register_dataset("users", ["user_id"])
  ledger.append("users", [{"user_id": 1, "name": "Alice"}], "INSERT")
  for event in ledger.read_since("users", after_sequence_id=0, max_rows=500):
      ...

Sequence ids are handed out per dataset inside the appending transaction, so
they are gap-free and strictly increasing.  Events are never rewritten: a
DELETE is just another event that carries only the key.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy import insert, select, update

from notifications.alerts import AlertChannel
from warehouse.anomalies import record_anomaly
from warehouse.clock import to_utc, utcnow
from warehouse.config import Settings
from warehouse.errors import SchemaMismatch
from warehouse.models import Action, ChangeEvent, canonical_key, jsonable
from warehouse.schema import change_events, ledger_datasets

logger = logging.getLogger(__name__)


@dataclass
class AppendResult:
    sequence_ids: List[int] = field(default_factory=list)
    rejected: List[SchemaMismatch] = field(default_factory=list)


class EventSlice:
    """
    Lazy view over `(after_sequence_id, upper_bound]` of one dataset, capped at
    `max_rows`.  Rows are fetched page by page; iterating again starts over.
    """

    def __init__(self, engine, dataset, after_sequence_id, max_rows, upper_bound, page_size):
        self.engine = engine
        self.dataset = dataset
        self.after_sequence_id = after_sequence_id
        self.max_rows = max_rows
        self.upper_bound = upper_bound
        self.page_size = page_size

    def __iter__(self):
        last_seen = self.after_sequence_id
        remaining = self.max_rows
        while remaining > 0:
            stmt = (
                select(change_events)
                .where(change_events.c.dataset == self.dataset)
                .where(change_events.c.sequence_id > last_seen)
                .order_by(change_events.c.sequence_id)
                .limit(min(self.page_size, remaining))
            )
            if self.upper_bound is not None:
                stmt = stmt.where(change_events.c.sequence_id <= self.upper_bound)
            with self.engine.connect() as conn:
                page = conn.execute(stmt).mappings().all()
            if not page:
                return
            for row in page:
                yield _to_event(row)
            last_seen = page[-1]["sequence_id"]
            remaining -= len(page)


def _to_event(row) -> ChangeEvent:
    return ChangeEvent(
        sequence_id=row["sequence_id"],
        dataset=row["dataset"],
        key=row["key"],
        action=Action(row["action"]),
        payload=row["payload"] or {},
        captured_at=row["captured_at"],
    )


class ChangeLedger:

    def __init__(self, engine, settings: Optional[Settings] = None, alerts: Optional[AlertChannel] = None):
        self.engine = engine
        self.settings = settings or Settings()
        self.alerts = alerts or AlertChannel()

    # ───────────── Datasets ──────────────────────────────────────────────────
    def register_dataset(self, dataset: str, key_columns: Iterable[str]) -> None:
        key_columns = list(key_columns)
        if not key_columns:
            raise SchemaMismatch(f"dataset {dataset!r} needs at least one key column", dataset=dataset)
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(ledger_datasets.c.key_columns).where(ledger_datasets.c.dataset == dataset)
            ).scalar_one_or_none()
            if existing is None:
                conn.execute(insert(ledger_datasets), {
                    "dataset": dataset,
                    "key_columns": key_columns,
                    "last_sequence_id": 0,
                    "registered_at": utcnow(),
                })
                logger.info("   • registered dataset %s (key: %s)", dataset, ", ".join(key_columns))
            elif list(existing) != key_columns:
                raise SchemaMismatch(
                    f"dataset {dataset!r} is already registered with key {existing}",
                    dataset=dataset, declared=existing, requested=key_columns,
                )

    def key_columns(self, dataset: str) -> List[str]:
        with self.engine.connect() as conn:
            return self._key_columns(conn, dataset)

    def _key_columns(self, conn, dataset):
        cols = conn.execute(
            select(ledger_datasets.c.key_columns).where(ledger_datasets.c.dataset == dataset)
        ).scalar_one_or_none()
        if cols is None:
            raise SchemaMismatch(f"dataset {dataset!r} is not registered", dataset=dataset)
        return list(cols)

    def high_water_mark(self, dataset: str) -> int:
        with self.engine.connect() as conn:
            value = conn.execute(
                select(ledger_datasets.c.last_sequence_id).where(ledger_datasets.c.dataset == dataset)
            ).scalar_one_or_none()
        if value is None:
            raise SchemaMismatch(f"dataset {dataset!r} is not registered", dataset=dataset)
        return value

    # ───────────── Writing ───────────────────────────────────────────────────
    def append(self, dataset: str, rows, action, captured_at=None,
               timestamp_column: Optional[str] = None, strict: bool = False) -> AppendResult:
        """
        Append one batch of raw rows as change events.

        A row that is missing (or has a null) key column is a SchemaMismatch:
        it is recorded as an anomaly and skipped, the rest of the batch still
        lands.  With strict=True the first mismatch aborts the whole append.
        """
        action = Action(action)
        batch_time = to_utc(captured_at) if captured_at is not None else utcnow()
        result = AppendResult()

        with self.engine.begin() as conn:
            key_columns = self._key_columns(conn, dataset)
            accepted = []
            for position, row in enumerate(rows):
                try:
                    accepted.append(self._split_row(dataset, key_columns, row, action,
                                                    batch_time, timestamp_column, position))
                except SchemaMismatch as exc:
                    if strict:
                        raise
                    result.rejected.append(exc)

            if accepted:
                first = self._reserve(conn, dataset, len(accepted))
                records = []
                for offset, (key, payload, ts) in enumerate(accepted):
                    records.append({
                        "dataset": dataset,
                        "sequence_id": first + offset,
                        "natural_key": canonical_key(key),
                        "key": key,
                        "action": action.value,
                        "payload": payload,
                        "captured_at": ts,
                    })
                conn.execute(insert(change_events), records)
                result.sequence_ids = [r["sequence_id"] for r in records]

            for exc in result.rejected:
                record_anomaly(conn, exc.kind, exc.message, dataset=dataset, detail=exc.detail)

        for exc in result.rejected:
            logger.warning("   • skipped row for %s: %s", dataset, exc.message)
            self.alerts.emit(exc.kind, exc.message, dataset=dataset, detail=exc.detail)
        if result.sequence_ids:
            logger.info("   • appended %d %s event(s) to %s (seq %d..%d)", len(result.sequence_ids),
                        action.value, dataset, result.sequence_ids[0], result.sequence_ids[-1])
        return result

    def _split_row(self, dataset, key_columns, row, action, batch_time, timestamp_column, position):
        missing = [c for c in key_columns if row.get(c) is None]
        if missing:
            raise SchemaMismatch(
                f"row {position} is missing key column(s) {', '.join(missing)}",
                dataset=dataset, position=position, missing=missing, row=jsonable(dict(row)),
            )
        ts = batch_time
        if timestamp_column is not None:
            if row.get(timestamp_column) is None:
                raise SchemaMismatch(
                    f"row {position} has no value for timestamp column {timestamp_column}",
                    dataset=dataset, position=position, row=jsonable(dict(row)),
                )
            ts = to_utc(row[timestamp_column])
        key = jsonable({c: row[c] for c in key_columns})
        if action is Action.DELETE:
            payload = {}
        else:
            payload = jsonable({c: v for c, v in row.items() if c not in key_columns})
        return key, payload, ts

    def _reserve(self, conn, dataset, count) -> int:
        conn.execute(
            update(ledger_datasets)
            .where(ledger_datasets.c.dataset == dataset)
            .values(last_sequence_id=ledger_datasets.c.last_sequence_id + count)
        )
        last = conn.execute(
            select(ledger_datasets.c.last_sequence_id).where(ledger_datasets.c.dataset == dataset)
        ).scalar_one()
        return last - count + 1

    # ───────────── Reading ───────────────────────────────────────────────────
    def read_since(self, dataset: str, after_sequence_id: int, max_rows: int,
                   upper_bound: Optional[int] = None) -> EventSlice:
        return EventSlice(self.engine, dataset, after_sequence_id, max_rows, upper_bound,
                          self.settings.ledger_page_size)
