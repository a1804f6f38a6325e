# File: notifications/alerts.py

import logging
from collections import deque

from warehouse.clock import utcnow

# ────────────────────────────────────────────────────────────────────────────────
# Anomaly / alert channel
#
# The core only produces structured records (orphaned events, rejected
# batches, blocked tasks).  What happens to them is decided by the sinks
# registered here, e.g. `telegram_sink` from notifications/telegram.py.
# ────────────────────────────────────────────────────────────────────────────────

logger = logging.getLogger(__name__)


class AlertChannel:

    def __init__(self, sinks=None):
        self.sinks = list(sinks or [])
        self.emitted = deque(maxlen=1000)

    def add_sink(self, sink) -> None:
        self.sinks.append(sink)

    def emit(self, kind: str, reason: str, dataset=None, task_id=None, detail=None) -> dict:
        record = {
            "kind": kind,
            "reason": reason,
            "dataset": dataset,
            "task_id": task_id,
            "detail": detail or {},
            "emitted_at": utcnow().isoformat(),
        }
        self.emitted.append(record)
        logger.warning("alert %s: %s", kind, reason, extra={"alert": record})
        for sink in self.sinks:
            try:
                sink(record)
            except Exception:
                # a broken sink must not fail the load; the record is already persisted
                logger.exception("alert sink %r failed for %s", sink, kind)
        return record
