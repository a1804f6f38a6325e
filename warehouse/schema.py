#!/usr/bin/env python3
# schema.py

"""
Table definitions for the incremental load core.

Every table the core reads or writes lives in this one MetaData:
  - ledger_datasets / change_events / anomalies   → Change Ledger
  - dimension_versions / entity_watermarks /
    pending_orphans / fact_rows                   → Merge Engine
  - aggregate_rows                                → Aggregate Maintainer
  - cursors / task_states / task_runs             → Task Orchestrator

Natural keys are stored twice: as JSON (`key`) for reading back, and as a
canonical string (`natural_key`) so they can be indexed and compared.
"""

from sqlalchemy import (
    MetaData,
    Table,
    Column,
    Integer,
    BigInteger,
    String,
    Text,
    Boolean,
    DateTime,
    JSON,
    Index,
    PrimaryKeyConstraint,
    UniqueConstraint,
)

metadata = MetaData()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_ID = BigInteger().with_variant(Integer, "sqlite")

# ───────────── 1) CHANGE LEDGER ──────────────────────────────────────────────
ledger_datasets = Table(
    "ledger_datasets", metadata,
    Column("dataset",          String(200), primary_key=True),
    Column("key_columns",      JSON,        nullable=False),
    Column("last_sequence_id", BigInteger,  nullable=False, default=0),
    Column("registered_at",    DateTime,    nullable=False),
)

change_events = Table(
    "change_events", metadata,
    Column("dataset",      String(200), nullable=False),
    Column("sequence_id",  BigInteger,  nullable=False),
    Column("natural_key",  Text,        nullable=False),
    Column("key",          JSON,        nullable=False),
    Column("action",       String(10),  nullable=False),
    Column("payload",      JSON,        nullable=False),
    Column("captured_at",  DateTime,    nullable=False),
    PrimaryKeyConstraint("dataset", "sequence_id", name="pk_change_events"),
)

anomalies = Table(
    "anomalies", metadata,
    Column("anomaly_id",   _ID,         primary_key=True, autoincrement=True),
    Column("kind",         String(40),  nullable=False),
    Column("dataset",      String(200)),
    Column("sequence_id",  BigInteger),
    Column("task_id",      String(200)),
    Column("reason",       Text,        nullable=False),
    Column("detail",       JSON),
    Column("recorded_at",  DateTime,    nullable=False),
)

# ───────────── 2) MERGE ENGINE ───────────────────────────────────────────────
dimension_versions = Table(
    "dimension_versions", metadata,
    Column("surrogate_key",      _ID,         primary_key=True, autoincrement=True),
    Column("dimension",          String(200), nullable=False),
    Column("natural_key",        Text,        nullable=False),
    Column("key",                JSON,        nullable=False),
    Column("attributes",         JSON,        nullable=False),
    Column("valid_from",         DateTime,    nullable=False),
    Column("valid_to",           DateTime,    nullable=True),
    Column("is_current",         Boolean,     nullable=False, default=False),
    Column("source_dataset",     String(200), nullable=False),
    Column("opened_by_sequence", BigInteger,  nullable=False),
    Column("closed_by_sequence", BigInteger,  nullable=True),
)
Index("ix_dimension_versions_key", dimension_versions.c.dimension, dimension_versions.c.natural_key)

# highest sequence_id already applied per (dimension, natural key, dataset)
entity_watermarks = Table(
    "entity_watermarks", metadata,
    Column("dimension",        String(200), nullable=False),
    Column("natural_key",      Text,        nullable=False),
    Column("dataset",          String(200), nullable=False),
    Column("last_sequence_id", BigInteger,  nullable=False),
    PrimaryKeyConstraint("dimension", "natural_key", "dataset", name="pk_entity_watermarks"),
)

pending_orphans = Table(
    "pending_orphans", metadata,
    Column("dimension",      String(200), nullable=False),
    Column("dataset",        String(200), nullable=False),
    Column("sequence_id",    BigInteger,  nullable=False),
    Column("natural_key",    Text,        nullable=False),
    Column("event",          JSON,        nullable=False),
    Column("attempts",       Integer,     nullable=False, default=0),
    Column("first_seen_at",  DateTime,    nullable=False),
    PrimaryKeyConstraint("dimension", "dataset", "sequence_id", name="pk_pending_orphans"),
)

fact_rows = Table(
    "fact_rows", metadata,
    Column("fact_row_id",     _ID,         primary_key=True, autoincrement=True),
    Column("fact",            String(200), nullable=False),
    Column("dataset",         String(200), nullable=False),
    Column("sequence_id",     BigInteger,  nullable=False),
    Column("natural_key",     Text,        nullable=False),
    Column("surrogate_keys",  JSON,        nullable=False),
    Column("measures",        JSON,        nullable=False),
    Column("event_time",      DateTime,    nullable=False),
    Column("is_reversal",     Boolean,     nullable=False, default=False),
    Column("reverses_row_id", BigInteger,  nullable=True),
    Column("recorded_at",     DateTime,    nullable=False),
    UniqueConstraint("fact", "dataset", "sequence_id", "is_reversal", name="uq_fact_rows_event"),
)
Index("ix_fact_rows_time", fact_rows.c.fact, fact_rows.c.event_time)

# ───────────── 3) AGGREGATE MAINTAINER ───────────────────────────────────────
aggregate_rows = Table(
    "aggregate_rows", metadata,
    Column("aggregate",     String(200), nullable=False),
    Column("grouping_key",  Text,        nullable=False),
    Column("grouping",      JSON,        nullable=False),
    Column("period",        String(20),  nullable=False),
    Column("measures",      JSON,        nullable=False),
    Column("row_count",     Integer,     nullable=False),
    Column("refreshed_at",  DateTime,    nullable=False),
    PrimaryKeyConstraint("aggregate", "grouping_key", "period", name="pk_aggregate_rows"),
)

# ───────────── 4) TASK ORCHESTRATOR ──────────────────────────────────────────
cursors = Table(
    "cursors", metadata,
    Column("consumer_id",      String(300), nullable=False),
    Column("dataset",          String(200), nullable=False),
    Column("last_sequence_id", BigInteger,  nullable=False, default=0),
    Column("updated_at",       DateTime,    nullable=False),
    PrimaryKeyConstraint("consumer_id", "dataset", name="pk_cursors"),
)

task_states = Table(
    "task_states", metadata,
    Column("task_id",          String(200), nullable=False),
    Column("tick",             String(100), nullable=False),
    Column("mode",             String(20),  nullable=False),
    Column("state",            String(20),  nullable=False),
    Column("attempts",         Integer,     nullable=False, default=0),
    Column("attempt_budget",   Integer,     nullable=False),
    Column("lease_owner",      String(200), nullable=True),
    Column("lease_expires_at", DateTime,    nullable=True),
    Column("cancel_requested", Boolean,     nullable=False, default=False),
    Column("updated_at",       DateTime,    nullable=False),
    PrimaryKeyConstraint("task_id", "tick", "mode", name="pk_task_states"),
)

task_runs = Table(
    "task_runs", metadata,
    Column("run_id",         _ID,         primary_key=True, autoincrement=True),
    Column("task_id",        String(200), nullable=False),
    Column("tick",           String(100), nullable=False),
    Column("mode",           String(20),  nullable=False),
    Column("attempt",        Integer,     nullable=False),
    Column("status",         String(20),  nullable=False),
    Column("worker_id",      String(200)),
    Column("created_at",     DateTime,    nullable=False),
    Column("started_at",     DateTime),
    Column("ended_at",       DateTime),
    Column("cursor_before",  BigInteger),
    Column("cursor_after",   BigInteger),
    Column("error_kind",     String(40)),
    Column("reason",         Text),
    Column("detail",         JSON),
)
Index("ix_task_runs_task_tick", task_runs.c.task_id, task_runs.c.tick, task_runs.c.mode)


def create_all(engine):
    """Create every core table that does not exist yet."""
    metadata.create_all(engine)
