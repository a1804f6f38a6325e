#!/usr/bin/env python3
# catalog.py

"""
Sink catalog: the read-only face of the core for BI / consumption tools.

Every method returns a pandas DataFrame snapshot.  There is no
way to write through this module.

Usage:
  catalog = SinkCatalog(engine)
  print(catalog.current_entities("dim_user").to_string(index=False))
"""

from typing import Optional

import pandas as pd
from sqlalchemy import select

from warehouse.schema import aggregate_rows, anomalies, dimension_versions, fact_rows


def _expand(df: pd.DataFrame, column: str, prefix: str = "") -> pd.DataFrame:
    """Flatten a JSON column into one column per key."""
    if df.empty or column not in df.columns:
        return df
    expanded = pd.json_normalize(df[column].tolist()).add_prefix(prefix)
    expanded.index = df.index
    return pd.concat([df.drop(columns=[column]), expanded], axis=1)


class SinkCatalog:

    def __init__(self, engine):
        self.engine = engine

    def _read(self, stmt) -> pd.DataFrame:
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return pd.DataFrame([dict(r) for r in rows])

    def current_entities(self, dimension: str) -> pd.DataFrame:
        """Rows with is_current = true, attributes flattened into columns."""
        df = self._read(
            select(dimension_versions.c.surrogate_key, dimension_versions.c.key,
                   dimension_versions.c.attributes, dimension_versions.c.valid_from)
            .where(dimension_versions.c.dimension == dimension)
            .where(dimension_versions.c.is_current)
            .order_by(dimension_versions.c.surrogate_key)
        )
        return _expand(_expand(df, "key"), "attributes")

    def entity_history(self, dimension: str) -> pd.DataFrame:
        df = self._read(
            select(dimension_versions)
            .where(dimension_versions.c.dimension == dimension)
            .order_by(dimension_versions.c.natural_key, dimension_versions.c.valid_from,
                      dimension_versions.c.surrogate_key)
        )
        return _expand(df, "attributes")

    def fact_history(self, fact: str) -> pd.DataFrame:
        df = self._read(
            select(fact_rows).where(fact_rows.c.fact == fact).order_by(fact_rows.c.fact_row_id)
        )
        return _expand(_expand(df, "surrogate_keys", "sk_"), "measures")

    def aggregate_snapshot(self, aggregate: str) -> pd.DataFrame:
        df = self._read(
            select(aggregate_rows.c.grouping, aggregate_rows.c.period, aggregate_rows.c.measures,
                   aggregate_rows.c.row_count, aggregate_rows.c.refreshed_at)
            .where(aggregate_rows.c.aggregate == aggregate)
            .order_by(aggregate_rows.c.period, aggregate_rows.c.grouping_key)
        )
        return _expand(_expand(df, "grouping"), "measures")

    def anomalies(self, kind: Optional[str] = None) -> pd.DataFrame:
        stmt = select(anomalies).order_by(anomalies.c.anomaly_id)
        if kind is not None:
            stmt = stmt.where(anomalies.c.kind == kind)
        return self._read(stmt)
