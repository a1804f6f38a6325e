"""
errors.py

Exception taxonomy for the incremental load core.

Row-level errors (SchemaMismatch, OrphanEvent) are contained: the offending
row is recorded as an anomaly and the batch carries on.  Batch-level errors
(ValidationRejected, MergeConflict, LeaseLost, RunCancelled) abort the
transaction so the cursor is left where it was.  TaskBlocked is raised by
the orchestrator once a task has used up its attempts.
"""


class ELTError(Exception):
    """Base class for every error raised by the core."""

    kind = "error"

    def __init__(self, message: str, **detail):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def as_record(self) -> dict:
        return {"kind": self.kind, "reason": self.message, "detail": dict(self.detail)}


# ───────────── Row level ─────────────────────────────────────────────────────
class SchemaMismatch(ELTError):
    kind = "SCHEMA_MISMATCH"


class OrphanEvent(ELTError):
    kind = "ORPHAN_EVENT"


# ───────────── Batch level ───────────────────────────────────────────────────
class ValidationRejected(ELTError):
    kind = "VALIDATION_REJECTED"

    def __init__(self, message: str, violations):
        super().__init__(message, violations=[v.as_dict() for v in violations])
        self.violations = list(violations)


class MergeConflict(ELTError):
    """Cursor compare-and-swap failed: somebody else advanced it first."""

    kind = "MERGE_CONFLICT"


class LeaseLost(ELTError):
    kind = "LEASE_LOST"


class RunCancelled(ELTError):
    kind = "CANCELLED"


# ───────────── Orchestrator level ────────────────────────────────────────────
class TaskBlocked(ELTError):
    kind = "TASK_BLOCKED"


class PipelineDefinitionError(ELTError):
    kind = "PIPELINE_DEFINITION"
