#!/usr/bin/env python3
# init_source.py

"""
Create the core's tables and register the ledger datasets of the sales
pipeline.  Safe to run more than once.

Usage:
  DATABASE_URL=postgresql+psycopg2://... python init_source.py
"""

from data_sources.rdbms import make_engine
from warehouse.ledger import ChangeLedger
from warehouse.pipeline_defs import register_datasets
from warehouse.schema import create_all


def init_db(engine=None):
    engine = engine or make_engine()
    create_all(engine)
    register_datasets(ChangeLedger(engine))
    print("✅ Ledger, warehouse and orchestration tables are ready.")
    return engine


if __name__ == "__main__":
    init_db()
