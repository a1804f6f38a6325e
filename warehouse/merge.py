#!/usr/bin/env python3
# merge.py

"""
Merge Engine: applies change events to SCD2 dimensions and append-only facts.

SCD2 rules per natural key, in sequence_id order:
  INSERT, no current row    → open a version (valid_from = event time)
  UPDATE, payload differs   → close current (valid_to = event time), open a new one
  UPDATE, payload identical → no-op
  DELETE                    → close current, no replacement
  UPDATE/DELETE, no current → buffered in pending_orphans and retried on later
                              batches; surfaced as an ORPHAN_EVENT anomaly once
                              the retry limit is used up

A buffered orphan is settled as soon as its key (re)opens, before any later
event for that key runs.  An orphan that targeted a deleted row is superseded
by the event that reopened the key and is surfaced instead of applied.

Every mutation runs on the caller's connection, so the whole batch commits or
rolls back with the caller's transaction.  Re-delivered events (sequence_id at
or below what was already applied to that key) are skipped, so replaying a
slice is harmless.

Facts resolve each dimension reference to the version effective at the fact's
event time, not at processing time.  Corrections are compensating rows.
"""

import logging
from collections import OrderedDict
from typing import Mapping, Optional, Sequence

from sqlalchemy import and_, delete, insert, select, update

from warehouse.anomalies import record_anomaly
from warehouse.clock import to_utc, utcnow
from warehouse.config import Settings
from warehouse.errors import OrphanEvent, PipelineDefinitionError
from warehouse.models import (
    UNKNOWN_MEMBER_KEY,
    Action,
    ChangeEvent,
    DimensionSpec,
    FactSpec,
    MergeResult,
    VersionedEntity,
    canonical_key,
)
from warehouse.schema import dimension_versions, entity_watermarks, fact_rows, pending_orphans

logger = logging.getLogger(__name__)


def _number(value):
    if value is None:
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return float(value)


class MergeEngine:

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    def apply_batch(self, conn, dataset_mapping: Mapping[str, object],
                    events: Sequence[ChangeEvent], as_of=None) -> MergeResult:
        """
        Apply one approved batch.  `dataset_mapping` maps each dataset name
        to the DimensionSpec or FactSpec it feeds.
        """
        as_of = to_utc(as_of) if as_of is not None else utcnow()
        result = MergeResult()

        by_dataset = OrderedDict()
        for event in events:
            by_dataset.setdefault(event.dataset, []).append(event)

        touched_dimensions = OrderedDict()
        for dataset, dataset_events in by_dataset.items():
            target = dataset_mapping.get(dataset)
            if isinstance(target, DimensionSpec):
                self._apply_dimension(conn, target, dataset, dataset_events, result)
                touched_dimensions[target.name] = target
            elif isinstance(target, FactSpec):
                self._apply_fact(conn, target, dataset, dataset_events, result)
            else:
                raise PipelineDefinitionError(f"no merge target declared for dataset {dataset!r}",
                                              dataset=dataset)

        for spec in touched_dimensions.values():
            self.retry_orphans(conn, spec, result)

        logger.info(
            "   • merged %d event(s) as of %s: %d inserted, %d new versions, %d closed, "
            "%d unchanged, %d skipped, %d orphaned, %d facts, %d reversals",
            len(events), as_of, result.inserted, result.new_versions, result.closed,
            result.unchanged, result.skipped, result.orphaned, result.facts, result.reversals,
        )
        return result

    # ───────────── Dimensions ────────────────────────────────────────────────
    def _apply_dimension(self, conn, spec, dataset, events, result):
        by_key = OrderedDict()
        for event in events:
            by_key.setdefault(event.natural_key, []).append(event)

        for nk, key_events in by_key.items():
            key_events.sort(key=lambda e: e.sequence_id)
            watermark = self._watermark(conn, spec.name, nk, dataset)
            current = self._current(conn, spec.name, nk)
            applied_any = False
            for event in key_events:
                if watermark is not None and event.sequence_id <= watermark:
                    result.skipped += 1
                    continue
                reopened = current is None
                current = self._apply_event(conn, spec, event, current, result)
                if reopened and current is not None:
                    current = self._settle_key(conn, spec, nk, current, result)
                watermark = event.sequence_id
                applied_any = True
            if applied_any:
                self._set_watermark(conn, spec.name, nk, dataset, watermark)
                if nk not in result.affected_keys:
                    result.affected_keys.append(nk)

    def _apply_event(self, conn, spec, event, current, result, buffer_orphans=True):
        attrs = spec.tracked(event.payload)

        if event.action is Action.INSERT and current is None:
            effective = self._reopen_time(conn, spec.name, event.natural_key, event.captured_at)
            result.inserted += 1
            return self._open(conn, spec, event, attrs, effective)

        if current is None:
            # UPDATE or DELETE without anything to apply it to
            if buffer_orphans:
                self._buffer_orphan(conn, spec, event)
                result.orphaned += 1
            return None

        effective = max(event.captured_at, current["valid_from"])

        if event.action is Action.DELETE:
            self._close(conn, current, effective, event.sequence_id)
            result.closed += 1
            return None

        merged = dict(current["attributes"])
        merged.update(attrs)
        if merged == current["attributes"]:
            result.unchanged += 1
            return current

        self._close(conn, current, effective, event.sequence_id)
        result.new_versions += 1
        return self._open(conn, spec, event, merged, effective)

    def _open(self, conn, spec, event, attributes, valid_from):
        row = {
            "dimension": spec.name,
            "natural_key": event.natural_key,
            "key": event.key,
            "attributes": attributes,
            "valid_from": valid_from,
            "valid_to": None,
            "is_current": True,
            "source_dataset": event.dataset,
            "opened_by_sequence": event.sequence_id,
            "closed_by_sequence": None,
        }
        res = conn.execute(insert(dimension_versions), row)
        row["surrogate_key"] = res.inserted_primary_key[0]
        return row

    def _close(self, conn, current, valid_to, sequence_id):
        conn.execute(
            update(dimension_versions)
            .where(dimension_versions.c.surrogate_key == current["surrogate_key"])
            .values(valid_to=valid_to, is_current=False, closed_by_sequence=sequence_id)
        )

    def _current(self, conn, dimension, nk):
        row = conn.execute(
            select(dimension_versions)
            .where(dimension_versions.c.dimension == dimension)
            .where(dimension_versions.c.natural_key == nk)
            .where(dimension_versions.c.is_current)
        ).mappings().first()
        return dict(row) if row is not None else None

    def _reopen_time(self, conn, dimension, nk, wanted):
        """A re-inserted key may not start before its previous version ended."""
        last_end = conn.execute(
            select(dimension_versions.c.valid_to)
            .where(dimension_versions.c.dimension == dimension)
            .where(dimension_versions.c.natural_key == nk)
            .where(dimension_versions.c.valid_to.is_not(None))
            .order_by(dimension_versions.c.valid_to.desc())
            .limit(1)
        ).scalar_one_or_none()
        if last_end is not None and last_end > wanted:
            return last_end
        return wanted

    def _watermark(self, conn, dimension, nk, dataset):
        return conn.execute(
            select(entity_watermarks.c.last_sequence_id).where(and_(
                entity_watermarks.c.dimension == dimension,
                entity_watermarks.c.natural_key == nk,
                entity_watermarks.c.dataset == dataset,
            ))
        ).scalar_one_or_none()

    def _set_watermark(self, conn, dimension, nk, dataset, sequence_id):
        where = and_(
            entity_watermarks.c.dimension == dimension,
            entity_watermarks.c.natural_key == nk,
            entity_watermarks.c.dataset == dataset,
        )
        res = conn.execute(update(entity_watermarks).where(where).values(last_sequence_id=sequence_id))
        if res.rowcount == 0:
            conn.execute(insert(entity_watermarks), {
                "dimension": dimension, "natural_key": nk,
                "dataset": dataset, "last_sequence_id": sequence_id,
            })

    # ───────────── Orphans ───────────────────────────────────────────────────
    def _buffer_orphan(self, conn, spec, event):
        exists = conn.execute(
            select(pending_orphans.c.sequence_id).where(and_(
                pending_orphans.c.dimension == spec.name,
                pending_orphans.c.dataset == event.dataset,
                pending_orphans.c.sequence_id == event.sequence_id,
            ))
        ).first()
        if exists is None:
            conn.execute(insert(pending_orphans), {
                "dimension": spec.name,
                "dataset": event.dataset,
                "sequence_id": event.sequence_id,
                "natural_key": event.natural_key,
                "event": event.as_dict(),
                "attempts": 0,
                "first_seen_at": utcnow(),
            })
            logger.info("   • buffered orphan %s #%d for %s (key %s)",
                        event.action.value, event.sequence_id, spec.name, event.natural_key)

    def _pending(self, conn, spec, nk=None):
        stmt = select(pending_orphans).where(pending_orphans.c.dimension == spec.name)
        if nk is not None:
            stmt = stmt.where(pending_orphans.c.natural_key == nk)
        rows = conn.execute(stmt).mappings().all()
        return sorted(
            (dict(row) for row in rows),
            key=lambda r: (r["event"]["captured_at"], r["dataset"], r["sequence_id"]),
        )

    @staticmethod
    def _pending_row(spec, entry):
        return and_(
            pending_orphans.c.dimension == spec.name,
            pending_orphans.c.dataset == entry["dataset"],
            pending_orphans.c.sequence_id == entry["sequence_id"],
        )

    def _superseded(self, conn, spec, event) -> bool:
        """
        The key already had a version from the orphan's own dataset before the
        orphan was written, so the orphan targeted a deleted row.  Whatever
        reopened the key is newer in that dataset's order and wins.
        """
        return conn.execute(
            select(dimension_versions.c.surrogate_key)
            .where(dimension_versions.c.dimension == spec.name)
            .where(dimension_versions.c.natural_key == event.natural_key)
            .where(dimension_versions.c.source_dataset == event.dataset)
            .where(dimension_versions.c.opened_by_sequence < event.sequence_id)
            .limit(1)
        ).first() is not None

    def _surface(self, conn, spec, entry, event, result, message, **detail):
        err = OrphanEvent(message, dimension=spec.name, event=event.as_dict(), **detail)
        record = record_anomaly(conn, err.kind, err.message, dataset=event.dataset,
                                sequence_id=event.sequence_id, detail=err.detail)
        conn.execute(delete(pending_orphans).where(self._pending_row(spec, entry)))
        result.surfaced_orphans.append(record)
        logger.warning("   • %s", err.message)

    def _settle(self, conn, spec, entry, current, result):
        """Apply (or supersede) one buffered orphan now that its key has a current row."""
        event = ChangeEvent.from_dict(entry["event"])
        if self._superseded(conn, spec, event):
            self._surface(
                conn, spec, entry, event, result,
                f"{event.action.value} #{event.sequence_id} on {event.dataset} superseded: "
                f"{spec.name} key {event.natural_key} was reopened by a later event",
                reason="superseded", attempts=entry["attempts"],
            )
            return current

        current = self._apply_event(conn, spec, event, current, result, buffer_orphans=False)
        conn.execute(delete(pending_orphans).where(self._pending_row(spec, entry)))
        result.resolved_orphans += 1
        if event.natural_key not in result.affected_keys:
            result.affected_keys.append(event.natural_key)
        logger.info("   • resolved orphan %s #%d for %s", event.action.value, event.sequence_id, spec.name)
        return current

    def _settle_key(self, conn, spec, nk, current, result):
        # runs right after `nk` (re)opens, before that key's later events
        for entry in self._pending(conn, spec, nk):
            if current is None:
                break
            current = self._settle(conn, spec, entry, current, result)
        return current

    def retry_orphans(self, conn, spec: DimensionSpec, result: Optional[MergeResult] = None) -> MergeResult:
        """
        Re-attempt every buffered orphan of one dimension.  Those whose key now
        has a current row are applied (or surfaced as superseded); the rest
        count one more failed attempt and are surfaced as ORPHAN_EVENT
        anomalies past the retry limit.
        """
        result = result if result is not None else MergeResult()

        for entry in self._pending(conn, spec):
            event = ChangeEvent.from_dict(entry["event"])
            current = self._current(conn, spec.name, event.natural_key)
            if current is not None:
                self._settle(conn, spec, entry, current, result)
                continue

            attempts = entry["attempts"] + 1
            if attempts > self.settings.orphan_retry_limit:
                self._surface(
                    conn, spec, entry, event, result,
                    f"{event.action.value} #{event.sequence_id} on {event.dataset} has no current "
                    f"{spec.name} row for key {event.natural_key} after {attempts} attempt(s)",
                    reason="retries_exhausted", attempts=attempts,
                )
            else:
                conn.execute(update(pending_orphans).where(self._pending_row(spec, entry))
                             .values(attempts=attempts))
        return result

    # ───────────── Facts ─────────────────────────────────────────────────────
    def _apply_fact(self, conn, spec, dataset, events, result):
        for event in sorted(events, key=lambda e: e.sequence_id):
            if self._fact_seen(conn, spec.name, dataset, event.sequence_id):
                result.skipped += 1
                continue

            if event.action in (Action.UPDATE, Action.DELETE):
                prior = self._latest_open_fact(conn, spec.name, event.natural_key)
                if prior is not None:
                    self._reverse(conn, spec, event, prior)
                    result.reversals += 1
                elif event.action is Action.DELETE:
                    err = OrphanEvent(
                        f"DELETE #{event.sequence_id} on {dataset} has no {spec.name} row "
                        f"for key {event.natural_key}",
                        fact=spec.name, event=event.as_dict(),
                    )
                    record = record_anomaly(conn, err.kind, err.message, dataset=dataset,
                                            sequence_id=event.sequence_id, detail=err.detail)
                    result.surfaced_orphans.append(record)
                    continue

            if event.action is Action.DELETE:
                continue

            event_time = event.captured_at
            if spec.event_time_column and event.payload.get(spec.event_time_column) is not None:
                event_time = to_utc(event.payload[spec.event_time_column])

            surrogate_keys = {
                role: self.resolve_surrogate_key(conn, ref.dimension, ref.natural_key(event.payload), event_time)
                for role, ref in spec.references.items()
            }
            measures = {m: _number(event.payload.get(m)) for m in spec.measures}
            conn.execute(insert(fact_rows), {
                "fact": spec.name,
                "dataset": dataset,
                "sequence_id": event.sequence_id,
                "natural_key": event.natural_key,
                "surrogate_keys": surrogate_keys,
                "measures": measures,
                "event_time": event_time,
                "is_reversal": False,
                "reverses_row_id": None,
                "recorded_at": utcnow(),
            })
            result.facts += 1

    def _reverse(self, conn, spec, event, prior):
        conn.execute(insert(fact_rows), {
            "fact": spec.name,
            "dataset": event.dataset,
            "sequence_id": event.sequence_id,
            "natural_key": prior["natural_key"],
            "surrogate_keys": prior["surrogate_keys"],
            "measures": {m: -_number(v) for m, v in prior["measures"].items()},
            "event_time": prior["event_time"],
            "is_reversal": True,
            "reverses_row_id": prior["fact_row_id"],
            "recorded_at": utcnow(),
        })

    def _fact_seen(self, conn, fact, dataset, sequence_id):
        return conn.execute(
            select(fact_rows.c.fact_row_id).where(and_(
                fact_rows.c.fact == fact,
                fact_rows.c.dataset == dataset,
                fact_rows.c.sequence_id == sequence_id,
            )).limit(1)
        ).first() is not None

    def _latest_open_fact(self, conn, fact, nk):
        """Most recent non-reversal row for the key that nothing has reversed yet."""
        reversed_ids = (
            select(fact_rows.c.reverses_row_id)
            .where(fact_rows.c.fact == fact)
            .where(fact_rows.c.reverses_row_id.is_not(None))
        )
        row = conn.execute(
            select(fact_rows)
            .where(fact_rows.c.fact == fact)
            .where(fact_rows.c.natural_key == nk)
            .where(~fact_rows.c.is_reversal)
            .where(fact_rows.c.fact_row_id.not_in(reversed_ids))
            .order_by(fact_rows.c.fact_row_id.desc())
            .limit(1)
        ).mappings().first()
        return dict(row) if row is not None else None

    def resolve_surrogate_key(self, conn, dimension: str, key: Optional[dict], at) -> int:
        """
        Surrogate key of the version effective at `at`.  Once a key is deleted
        the last version before the deletion keeps answering; before the first
        version exists the unknown member (-1) is returned.
        """
        if key is None:
            return UNKNOWN_MEMBER_KEY
        sk = conn.execute(
            select(dimension_versions.c.surrogate_key)
            .where(dimension_versions.c.dimension == dimension)
            .where(dimension_versions.c.natural_key == canonical_key(key))
            .where(dimension_versions.c.valid_from <= to_utc(at))
            .order_by(dimension_versions.c.valid_from.desc(), dimension_versions.c.surrogate_key.desc())
            .limit(1)
        ).scalar_one_or_none()
        return sk if sk is not None else UNKNOWN_MEMBER_KEY


def versions_for(conn, dimension: str, key: dict):
    """All versions of one natural key, oldest first."""
    rows = conn.execute(
        select(dimension_versions)
        .where(dimension_versions.c.dimension == dimension)
        .where(dimension_versions.c.natural_key == canonical_key(key))
        .order_by(dimension_versions.c.valid_from, dimension_versions.c.surrogate_key)
    ).mappings().all()
    return [
        VersionedEntity(
            surrogate_key=r["surrogate_key"], dimension=r["dimension"], key=r["key"],
            attributes=r["attributes"], valid_from=r["valid_from"], valid_to=r["valid_to"],
            is_current=r["is_current"],
        )
        for r in rows
    ]
