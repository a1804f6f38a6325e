#!/usr/bin/env python3
# aggregates.py

"""
Aggregate Maintainer: incremental rollups over fact_rows.

Only the (grouping_key, period) buckets touched by a merge are recomputed.
Each of them is rebuilt from scratch out of fact_rows and the dimension
versions the facts point at, then written with delete + insert keyed by
(aggregate, grouping_key, period).  Running a refresh twice gives the same
rows, so a retried run can always refresh again.

Reversal rows carry negated measures and count as -1 in `row_count`; a
bucket whose row_count drops to zero is removed.
"""

import datetime
import logging
from typing import Iterable, Set, Tuple

import pandas as pd
from sqlalchemy import and_, delete, insert, select

from warehouse.clock import utcnow
from warehouse.models import UNKNOWN_MEMBER_KEY, AggregateSpec, canonical_key
from warehouse.schema import aggregate_rows, dimension_versions, fact_rows

logger = logging.getLogger(__name__)

Bucket = Tuple[str, str]

_PERIOD_FORMATS = {"day": "%Y-%m-%d", "month": "%Y-%m"}


def period_of(ts: datetime.datetime, grain: str) -> str:
    return ts.strftime(_PERIOD_FORMATS[grain])


def period_bounds(period: str, grain: str):
    start = datetime.datetime.strptime(period, _PERIOD_FORMATS[grain])
    if grain == "day":
        return start, start + datetime.timedelta(days=1)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def _plain(value):
    # numpy scalars → python scalars so they serialise into JSON columns
    return value.item() if hasattr(value, "item") else value


class AggregateMaintainer:

    def __init__(self):
        self._attribute_cache = {}

    def _attributes(self, conn, surrogate_key):
        if surrogate_key == UNKNOWN_MEMBER_KEY:
            return {}
        if surrogate_key not in self._attribute_cache:
            self._attribute_cache[surrogate_key] = conn.execute(
                select(dimension_versions.c.attributes)
                .where(dimension_versions.c.surrogate_key == surrogate_key)
            ).scalar_one_or_none() or {}
        return self._attribute_cache[surrogate_key]

    def grouping_for(self, conn, spec: AggregateSpec, surrogate_keys: dict) -> dict:
        grouping = {}
        for column in spec.group_by:
            role, _, attribute = column.partition(".")
            sk = surrogate_keys.get(role, UNKNOWN_MEMBER_KEY)
            if attribute == "surrogate_key":
                grouping[column] = sk
            else:
                grouping[column] = self._attributes(conn, sk).get(attribute)
        return grouping

    def affected_buckets(self, conn, spec: AggregateSpec, dataset: str,
                         after_sequence_id: int, upto_sequence_id: int) -> Set[Bucket]:
        """Buckets touched by the fact rows a ledger slice produced."""
        self._attribute_cache = {}
        rows = conn.execute(
            select(fact_rows.c.surrogate_keys, fact_rows.c.event_time).where(and_(
                fact_rows.c.fact == spec.fact,
                fact_rows.c.dataset == dataset,
                fact_rows.c.sequence_id > after_sequence_id,
                fact_rows.c.sequence_id <= upto_sequence_id,
            ))
        ).all()
        buckets = set()
        for surrogate_keys, event_time in rows:
            grouping = self.grouping_for(conn, spec, surrogate_keys)
            buckets.add((canonical_key(grouping), period_of(event_time, spec.grain)))
        return buckets

    def refresh(self, conn, spec: AggregateSpec, affected: Iterable[Bucket]) -> int:
        """Recompute the given buckets; returns how many aggregate rows now exist for them."""
        self._attribute_cache = {}
        wanted = {}
        for grouping_key, period in affected:
            wanted.setdefault(period, set()).add(grouping_key)

        written = 0
        for period, keys in sorted(wanted.items()):
            start, end = period_bounds(period, spec.grain)
            rows = conn.execute(
                select(fact_rows.c.surrogate_keys, fact_rows.c.measures, fact_rows.c.is_reversal)
                .where(fact_rows.c.fact == spec.fact)
                .where(fact_rows.c.event_time >= start)
                .where(fact_rows.c.event_time < end)
            ).all()

            records = []
            groupings = {}
            for surrogate_keys, measures, is_reversal in rows:
                grouping = self.grouping_for(conn, spec, surrogate_keys)
                gk = canonical_key(grouping)
                if gk not in keys:
                    continue
                groupings[gk] = grouping
                record = {"grouping_key": gk, "row_count": -1 if is_reversal else 1}
                for m in spec.measures:
                    record[m] = measures.get(m, 0)
                records.append(record)

            totals = {}
            if records:
                df = pd.DataFrame.from_records(records)
                summed = df.groupby("grouping_key")[list(spec.measures) + ["row_count"]].sum()
                totals = summed.to_dict(orient="index")

            for gk in sorted(keys):
                conn.execute(delete(aggregate_rows).where(and_(
                    aggregate_rows.c.aggregate == spec.name,
                    aggregate_rows.c.grouping_key == gk,
                    aggregate_rows.c.period == period,
                )))
                total = totals.get(gk)
                if total is None or _plain(total["row_count"]) <= 0:
                    continue
                conn.execute(insert(aggregate_rows), {
                    "aggregate": spec.name,
                    "grouping_key": gk,
                    "grouping": groupings[gk],
                    "period": period,
                    "measures": {m: _plain(total[m]) for m in spec.measures},
                    "row_count": int(_plain(total["row_count"])),
                    "refreshed_at": utcnow(),
                })
                written += 1

        logger.info("   • refreshed %s: %d bucket(s) recomputed, %d row(s) written",
                    spec.name, sum(len(k) for k in wanted.values()), written)
        return written
