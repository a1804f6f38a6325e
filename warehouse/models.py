"""
models.py

Plain value objects shared by the ledger, merge engine, aggregate maintainer
and orchestrator, plus the declarations a pipeline is built from.
"""

import datetime
import enum
import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

UNKNOWN_MEMBER_KEY = -1


class Action(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RunStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TaskState(str, enum.Enum):
    IDLE = "IDLE"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"


def canonical_key(key: dict) -> str:
    return json.dumps(key, sort_keys=True, default=str, separators=(",", ":"))


def jsonable(value):
    """Round-trip through JSON so in-memory values compare equal to stored ones."""
    return json.loads(json.dumps(value, default=str))


# ───────────── Ledger records ────────────────────────────────────────────────
@dataclass(frozen=True)
class ChangeEvent:
    sequence_id: int
    dataset: str
    key: dict
    action: Action
    payload: dict
    captured_at: datetime.datetime

    @property
    def natural_key(self) -> str:
        return canonical_key(self.key)

    def as_dict(self) -> dict:
        return {
            "sequence_id": self.sequence_id,
            "dataset": self.dataset,
            "key": self.key,
            "action": self.action.value,
            "payload": self.payload,
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeEvent":
        return cls(
            sequence_id=int(data["sequence_id"]),
            dataset=data["dataset"],
            key=data["key"],
            action=Action(data["action"]),
            payload=data.get("payload") or {},
            captured_at=datetime.datetime.fromisoformat(data["captured_at"]),
        )


@dataclass(frozen=True)
class VersionedEntity:
    surrogate_key: int
    dimension: str
    key: dict
    attributes: dict
    valid_from: datetime.datetime
    valid_to: Optional[datetime.datetime]
    is_current: bool


# ───────────── Pipeline declarations ─────────────────────────────────────────
@dataclass(frozen=True)
class DimensionSpec:
    """An SCD2 dimension fed by one or more ledger datasets."""

    name: str
    key_columns: Tuple[str, ...]
    # when set, only these payload columns are tracked as attributes
    attributes: Optional[Tuple[str, ...]] = None

    def tracked(self, payload: dict) -> dict:
        cols = self.attributes if self.attributes is not None else payload.keys()
        return {c: payload[c] for c in cols if c in payload and c not in self.key_columns}


@dataclass(frozen=True)
class DimensionRef:
    """How a fact row points at a dimension: fact column → dimension key column."""

    dimension: str
    columns: Dict[str, str]

    def natural_key(self, payload: dict) -> Optional[dict]:
        key = {}
        for fact_col, dim_col in self.columns.items():
            value = payload.get(fact_col)
            if value is None:
                return None
            key[dim_col] = value
        return key


@dataclass(frozen=True)
class FactSpec:
    name: str
    key_columns: Tuple[str, ...]
    references: Dict[str, DimensionRef]
    measures: Tuple[str, ...]
    event_time_column: Optional[str] = None


@dataclass(frozen=True)
class AggregateSpec:
    """
    Rollup of one fact.  `group_by` entries are "role.attribute", where role
    is a key of the fact's references; "role.surrogate_key" groups by the
    referenced version itself.
    """

    name: str
    fact: str
    group_by: Tuple[str, ...]
    measures: Tuple[str, ...]
    grain: str = "month"


# ───────────── Results ───────────────────────────────────────────────────────
@dataclass
class MergeResult:
    inserted: int = 0
    new_versions: int = 0
    closed: int = 0
    unchanged: int = 0
    skipped: int = 0
    orphaned: int = 0
    resolved_orphans: int = 0
    facts: int = 0
    reversals: int = 0
    affected_keys: List[str] = field(default_factory=list)
    surfaced_orphans: List[dict] = field(default_factory=list)


@dataclass(frozen=True)
class TaskRun:
    run_id: int
    task_id: str
    tick: str
    mode: str
    attempt: int
    status: RunStatus
    worker_id: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    started_at: Optional[datetime.datetime] = None
    ended_at: Optional[datetime.datetime] = None
    cursor_before: Optional[int] = None
    cursor_after: Optional[int] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[dict] = None

    @classmethod
    def from_row(cls, row) -> "TaskRun":
        data = dict(row)
        data["status"] = RunStatus(data["status"])
        return cls(**data)
