"""
anomalies.py

Persistence for rejected and orphaned rows.  Nothing the core refuses to
apply is dropped: it lands in `anomalies` with the reason attached.
"""

from sqlalchemy import insert

from warehouse.clock import utcnow
from warehouse.models import jsonable
from warehouse.schema import anomalies


def record_anomaly(conn, kind: str, reason: str, dataset=None, sequence_id=None,
                   task_id=None, detail=None) -> dict:
    record = {
        "kind": kind,
        "dataset": dataset,
        "sequence_id": sequence_id,
        "task_id": task_id,
        "reason": reason,
        "detail": jsonable(detail or {}),
        "recorded_at": utcnow(),
    }
    conn.execute(insert(anomalies), record)
    return record
