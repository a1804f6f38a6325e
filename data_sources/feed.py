#!/usr/bin/env python3
# feed.py

"""
Raw row source → Change Ledger.

The ingestion layer hands over append-only batches of typed rows, each with
the action it represents and a source timestamp.  The ledger is the only
consumer: `feed()` appends every batch in order and returns the results.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from warehouse.ledger import AppendResult, ChangeLedger
from warehouse.models import Action

logger = logging.getLogger(__name__)


@dataclass
class RawBatch:
    dataset: str
    action: Action
    rows: List[dict] = field(default_factory=list)
    captured_at: Optional[datetime.datetime] = None
    # per-row source timestamp column; overrides captured_at when set
    timestamp_column: Optional[str] = None


def feed(ledger: ChangeLedger, batches: Iterable[RawBatch]) -> List[AppendResult]:
    results = []
    for batch in batches:
        result = ledger.append(batch.dataset, batch.rows, batch.action,
                               captured_at=batch.captured_at, timestamp_column=batch.timestamp_column)
        if result.rejected:
            logger.warning("   • %s: %d of %d row(s) rejected", batch.dataset,
                           len(result.rejected), len(batch.rows))
        results.append(result)
    return results
