#!/usr/bin/env python3
# orchestrator.py

"""
Task Orchestrator: runs the load as a DAG of idempotent tasks.

Per task and tick the state machine is

  IDLE → SCHEDULED → RUNNING → SUCCEEDED
                             ↘ FAILED → SCHEDULED (retry) … → BLOCKED

A task is dispatched only once every predecessor has SUCCEEDED for the same
tick.  Within one task per tick there is a single writer, enforced by a lease
(owner + expiry) on the task_states row.  A crashed worker's lease simply
expires and can be taken over.

Each run drains its dataset batch by batch:
  1. check for cancellation
  2. read the cursor and the next slice from the ledger
  3. run the Validation Gate
  4. in ONE transaction: renew the lease, merge (or refresh), then advance the
     cursor with compare-and-swap

A failed compare-and-swap (MergeConflict) rolls the batch back and the run
carries on from the cursor the other worker left.  Every attempt is kept in
task_runs for audit; nothing is ever updated once it reached FAILED.
"""

import logging
import socket
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy import and_, desc, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from notifications.alerts import AlertChannel
from warehouse.aggregates import AggregateMaintainer
from warehouse.anomalies import record_anomaly
from warehouse.clock import utcnow
from warehouse.config import Settings
from warehouse.errors import (
    ELTError,
    LeaseLost,
    MergeConflict,
    PipelineDefinitionError,
    RunCancelled,
    TaskBlocked,
    ValidationRejected,
)
from warehouse.ledger import ChangeLedger
from warehouse.merge import MergeEngine
from warehouse.models import (
    AggregateSpec,
    DimensionSpec,
    FactSpec,
    MergeResult,
    RunStatus,
    TaskRun,
    TaskState,
)
from warehouse.schema import cursors, task_runs, task_states
from warehouse.validation import evaluate

logger = logging.getLogger(__name__)

LIVE = "live"
BACKFILL = "backfill"

# failures that an immediate in-process retry cannot fix
_NOT_RETRIED_IN_PROCESS = {ValidationRejected.kind, RunCancelled.kind}

_TARGET_TYPES = {"dimension": DimensionSpec, "fact": FactSpec, "aggregate": AggregateSpec}


# ───────────── Pipeline definition ───────────────────────────────────────────
@dataclass(frozen=True)
class TaskSpec:
    task_id: str
    dataset: str
    kind: str
    target: object
    rules: Sequence = ()
    depends_on: Sequence[str] = ()
    # upstream task whose cursor caps how far this task may read
    bound_by: Optional[str] = None


class Pipeline:

    def __init__(self, tasks: Sequence[TaskSpec]):
        self.tasks = OrderedDict()
        for task in tasks:
            if task.task_id in self.tasks:
                raise PipelineDefinitionError(f"duplicate task id {task.task_id!r}")
            expected = _TARGET_TYPES.get(task.kind)
            if expected is None or not isinstance(task.target, expected):
                raise PipelineDefinitionError(
                    f"task {task.task_id!r}: kind {task.kind!r} does not match target {task.target!r}")
            self.tasks[task.task_id] = task
        for task in self.tasks.values():
            for name in list(task.depends_on) + ([task.bound_by] if task.bound_by else []):
                if name not in self.tasks:
                    raise PipelineDefinitionError(f"task {task.task_id!r} refers to unknown task {name!r}")
        self._order = self._topological_order()

    def _topological_order(self) -> List[str]:
        remaining = {tid: set(t.depends_on) for tid, t in self.tasks.items()}
        order = []
        while remaining:
            ready = [tid for tid in self.tasks if tid in remaining and not remaining[tid]]
            if not ready:
                raise PipelineDefinitionError(
                    f"dependency cycle between tasks: {', '.join(sorted(remaining))}")
            for tid in ready:
                order.append(tid)
                del remaining[tid]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def order(self) -> List[TaskSpec]:
        return [self.tasks[tid] for tid in self._order]

    def get(self, task_id: str) -> TaskSpec:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise PipelineDefinitionError(f"unknown task {task_id!r}") from None

    def dataset_mapping(self) -> Dict[str, object]:
        return {t.dataset: t.target for t in self.tasks.values() if t.kind in ("dimension", "fact")}


# ───────────── Cursors ───────────────────────────────────────────────────────
class CursorStore:
    """Per-consumer read positions; only ever moved by compare-and-swap."""

    def __init__(self, engine):
        self.engine = engine

    def get(self, consumer_id: str, dataset: str) -> int:
        with self.engine.connect() as conn:
            value = conn.execute(
                select(cursors.c.last_sequence_id).where(and_(
                    cursors.c.consumer_id == consumer_id, cursors.c.dataset == dataset))
            ).scalar_one_or_none()
        return value or 0

    def seed(self, consumer_id: str, dataset: str, value: int = 0) -> None:
        """Create the cursor at `value` unless it exists already."""
        try:
            with self.engine.begin() as conn:
                exists = conn.execute(
                    select(cursors.c.consumer_id).where(and_(
                        cursors.c.consumer_id == consumer_id, cursors.c.dataset == dataset))
                ).first()
                if exists is None:
                    conn.execute(insert(cursors), {
                        "consumer_id": consumer_id, "dataset": dataset,
                        "last_sequence_id": value, "updated_at": utcnow(),
                    })
        except IntegrityError:
            # somebody else seeded it first
            pass

    def compare_and_swap(self, conn, consumer_id: str, dataset: str, expected: int, new: int) -> None:
        if new < expected:
            raise ValueError(f"cursor {consumer_id}/{dataset} may not move back from {expected} to {new}")
        res = conn.execute(
            update(cursors)
            .where(cursors.c.consumer_id == consumer_id)
            .where(cursors.c.dataset == dataset)
            .where(cursors.c.last_sequence_id == expected)
            .values(last_sequence_id=new, updated_at=utcnow())
        )
        if res.rowcount != 1:
            raise MergeConflict(
                f"cursor {consumer_id}/{dataset} moved away from {expected}",
                consumer_id=consumer_id, dataset=dataset, expected=expected,
            )


# ───────────── Leases ────────────────────────────────────────────────────────
class LeaseManager:
    """Single-writer lock per task per tick, stored on the task_states row."""

    def __init__(self, engine, ttl_seconds: int, clock=utcnow):
        self.engine = engine
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    @staticmethod
    def _row(task_id, tick, mode):
        return and_(task_states.c.task_id == task_id, task_states.c.tick == tick, task_states.c.mode == mode)

    def acquire(self, task_id: str, tick: str, mode: str, owner: str) -> bool:
        now = self.clock()
        with self.engine.begin() as conn:
            res = conn.execute(
                update(task_states)
                .where(self._row(task_id, tick, mode))
                .where(or_(
                    task_states.c.lease_owner.is_(None),
                    task_states.c.lease_expires_at < now,
                    task_states.c.lease_owner == owner,
                ))
                .values(lease_owner=owner, lease_expires_at=now + self.ttl)
            )
        return res.rowcount == 1

    def renew(self, conn, task_id: str, tick: str, mode: str, owner: str) -> None:
        now = self.clock()
        res = conn.execute(
            update(task_states)
            .where(self._row(task_id, tick, mode))
            .where(task_states.c.lease_owner == owner)
            .where(task_states.c.lease_expires_at >= now)
            .values(lease_expires_at=now + self.ttl)
        )
        if res.rowcount != 1:
            raise LeaseLost(f"lease on {task_id}@{tick} is no longer held by {owner}",
                            task_id=task_id, tick=tick, owner=owner)

    def release(self, task_id: str, tick: str, mode: str, owner: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(task_states)
                .where(self._row(task_id, tick, mode))
                .where(task_states.c.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
            )


# ───────────── Reports ───────────────────────────────────────────────────────
@dataclass
class TickReport:
    tick: str
    mode: str
    runs: Dict[str, Optional[TaskRun]] = field(default_factory=OrderedDict)
    blocked: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.runs) and all(
            run is not None and run.status is RunStatus.SUCCEEDED for run in self.runs.values())

    def failures(self) -> Dict[str, TaskRun]:
        return {tid: run for tid, run in self.runs.items()
                if run is None or run.status is not RunStatus.SUCCEEDED}


# ───────────── Orchestrator ──────────────────────────────────────────────────
class Orchestrator:

    def __init__(self, engine, pipeline: Pipeline, settings: Optional[Settings] = None,
                 alerts: Optional[AlertChannel] = None, worker_id: Optional[str] = None,
                 ledger: Optional[ChangeLedger] = None, merge: Optional[MergeEngine] = None,
                 aggregates: Optional[AggregateMaintainer] = None, clock=utcnow, sleep=time.sleep):
        self.engine = engine
        self.pipeline = pipeline
        self.settings = settings or Settings()
        self.alerts = alerts or AlertChannel()
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.ledger = ledger or ChangeLedger(engine, self.settings, self.alerts)
        self.merge = merge or MergeEngine(self.settings)
        self.aggregates = aggregates or AggregateMaintainer()
        self.cursors = CursorStore(engine)
        self.leases = LeaseManager(engine, self.settings.lease_ttl_seconds, clock=clock)
        self.clock = clock
        self.sleep = sleep

    # ───────────── State helpers ─────────────────────────────────────────────
    @staticmethod
    def consumer_id(task: TaskSpec, tick: str, mode: str) -> str:
        if mode == BACKFILL:
            return f"backfill:{tick}:{task.task_id}"
        return task.task_id

    @staticmethod
    def _state_row(task_id, tick, mode):
        return and_(task_states.c.task_id == task_id, task_states.c.tick == tick, task_states.c.mode == mode)

    def ensure_state(self, task_id, tick, mode):
        try:
            with self.engine.begin() as conn:
                exists = conn.execute(
                    select(task_states.c.state).where(self._state_row(task_id, tick, mode))
                ).first()
                if exists is None:
                    conn.execute(insert(task_states), {
                        "task_id": task_id, "tick": tick, "mode": mode,
                        "state": TaskState.IDLE.value, "attempts": 0,
                        "attempt_budget": self.settings.max_attempts,
                        "lease_owner": None, "lease_expires_at": None,
                        "cancel_requested": False, "updated_at": self.clock(),
                    })
        except IntegrityError:
            pass

    def _load_state(self, conn, task_id, tick, mode):
        return conn.execute(select(task_states).where(self._state_row(task_id, tick, mode))).mappings().first()

    def _set_state(self, conn, task_id, tick, mode, state, owner=None, **values):
        stmt = update(task_states).where(self._state_row(task_id, tick, mode))
        if owner is not None:
            stmt = stmt.where(task_states.c.lease_owner == owner)
        conn.execute(stmt.values(state=state.value, updated_at=self.clock(), **values))

    def state(self, task_id: str, tick: str, mode: str = LIVE) -> TaskState:
        with self.engine.connect() as conn:
            row = self._load_state(conn, task_id, tick, mode)
        return TaskState(row["state"]) if row is not None else TaskState.IDLE

    def runs(self, task_id: str, tick: Optional[str] = None, mode: Optional[str] = None) -> List[TaskRun]:
        stmt = select(task_runs).where(task_runs.c.task_id == task_id)
        if tick is not None:
            stmt = stmt.where(task_runs.c.tick == tick)
        if mode is not None:
            stmt = stmt.where(task_runs.c.mode == mode)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(task_runs.c.run_id)).mappings().all()
        return [TaskRun.from_row(r) for r in rows]

    def _run(self, conn, run_id) -> TaskRun:
        return TaskRun.from_row(conn.execute(select(task_runs).where(task_runs.c.run_id == run_id)).mappings().one())

    def _new_run(self, conn, task_id, tick, mode, attempt, status, **values):
        res = conn.execute(insert(task_runs), dict({
            "task_id": task_id, "tick": tick, "mode": mode, "attempt": attempt,
            "status": status.value, "worker_id": self.worker_id, "created_at": self.clock(),
        }, **values))
        return res.inserted_primary_key[0]

    # ───────────── Manual controls ───────────────────────────────────────────
    def cancel(self, task_id: str, tick: str, mode: str = LIVE) -> None:
        """Ask a running task to stop at its next batch boundary."""
        self.pipeline.get(task_id)
        self.ensure_state(task_id, tick, mode)
        with self.engine.begin() as conn:
            conn.execute(update(task_states).where(self._state_row(task_id, tick, mode))
                         .values(cancel_requested=True, updated_at=self.clock()))
        logger.info("   • cancellation requested for %s@%s", task_id, tick)

    def unblock(self, task_id: str, tick: str, mode: str = LIVE) -> bool:
        """Manual intervention: give a BLOCKED task a fresh attempt budget."""
        with self.engine.begin() as conn:
            row = self._load_state(conn, task_id, tick, mode)
            if row is None or row["state"] != TaskState.BLOCKED.value:
                return False
            self._set_state(conn, task_id, tick, mode, TaskState.SCHEDULED,
                            attempt_budget=row["attempts"] + self.settings.max_attempts)
        logger.info("   • %s@%s unblocked", task_id, tick)
        return True

    # ───────────── Dispatch ──────────────────────────────────────────────────
    def trigger(self, task_id: str, tick: str, mode: str = LIVE,
                upper_limits: Optional[Mapping[str, int]] = None) -> Optional[TaskRun]:
        """
        Make one attempt at `task_id` for `tick`.

        Returns the TaskRun that was recorded, the earlier successful run when
        the tick is already done, or None when another worker holds the lease.
        Raises TaskBlocked once the task has run out of attempts.
        """
        task = self.pipeline.get(task_id)
        self.ensure_state(task_id, tick, mode)

        with self.engine.begin() as conn:
            st = self._load_state(conn, task_id, tick, mode)
            if st["state"] == TaskState.SUCCEEDED.value:
                done = conn.execute(
                    select(task_runs.c.run_id)
                    .where(task_runs.c.task_id == task_id)
                    .where(task_runs.c.tick == tick)
                    .where(task_runs.c.mode == mode)
                    .where(task_runs.c.status == RunStatus.SUCCEEDED.value)
                    .order_by(desc(task_runs.c.run_id)).limit(1)
                ).scalar_one()
                logger.info("   • %s@%s already succeeded; duplicate trigger ignored", task_id, tick)
                return self._run(conn, done)
            if st["state"] == TaskState.BLOCKED.value:
                raise TaskBlocked(f"{task_id}@{tick} is blocked after {st['attempts']} attempt(s)",
                                  task_id=task_id, tick=tick)

            waiting = []
            for pred in task.depends_on:
                pred_state = self._load_state(conn, pred, tick, mode)
                if pred_state is None or pred_state["state"] != TaskState.SUCCEEDED.value:
                    waiting.append(pred)
            if waiting:
                run_id = self._new_run(
                    conn, task_id, tick, mode, st["attempts"], RunStatus.SKIPPED,
                    ended_at=self.clock(), reason=f"waiting on {', '.join(waiting)}",
                    detail={"waiting_on": waiting},
                )
                logger.info("   • %s@%s skipped: waiting on %s", task_id, tick, ", ".join(waiting))
                return self._run(conn, run_id)

        if not self.leases.acquire(task_id, tick, mode, self.worker_id):
            logger.info("   • %s@%s is leased by another worker; not dispatched", task_id, tick)
            return None

        try:
            return self._attempt(task, tick, mode, upper_limits or {})
        finally:
            self.leases.release(task_id, tick, mode, self.worker_id)

    def _attempt(self, task, tick, mode, upper_limits) -> TaskRun:
        consumer = self.consumer_id(task, tick, mode)
        self.cursors.seed(consumer, task.dataset, 0)

        with self.engine.begin() as conn:
            st = self._load_state(conn, task.task_id, tick, mode)
            attempt = st["attempts"] + 1
            run_id = self._new_run(conn, task.task_id, tick, mode, attempt, RunStatus.PENDING)
            self._set_state(conn, task.task_id, tick, mode, TaskState.SCHEDULED,
                            owner=self.worker_id, attempts=attempt)

        cursor_before = self.cursors.get(consumer, task.dataset)
        with self.engine.begin() as conn:
            conn.execute(update(task_runs).where(task_runs.c.run_id == run_id).values(
                status=RunStatus.RUNNING.value, started_at=self.clock(), cursor_before=cursor_before))
            self._set_state(conn, task.task_id, tick, mode, TaskState.RUNNING, owner=self.worker_id)
        logger.info("[%s] ▶️  %s@%s attempt %d (cursor %d)", self.clock(), task.task_id, tick, attempt, cursor_before)

        try:
            summary = self._drain(task, tick, mode, consumer, upper_limits.get(task.dataset))
        except ELTError as exc:
            return self._fail(task, tick, mode, run_id, attempt, consumer, exc)
        except Exception as exc:
            logger.exception("   • %s@%s crashed", task.task_id, tick)
            return self._fail(task, tick, mode, run_id, attempt, consumer, exc)

        cursor_after = self.cursors.get(consumer, task.dataset)
        with self.engine.begin() as conn:
            conn.execute(update(task_runs).where(task_runs.c.run_id == run_id).values(
                status=RunStatus.SUCCEEDED.value, ended_at=self.clock(),
                cursor_after=cursor_after, detail=summary))
            self._set_state(conn, task.task_id, tick, mode, TaskState.SUCCEEDED, owner=self.worker_id)
            run = self._run(conn, run_id)
        logger.info("[%s] ✅ %s@%s succeeded (cursor %d → %d)",
                    self.clock(), task.task_id, tick, cursor_before, cursor_after)
        return run

    def _fail(self, task, tick, mode, run_id, attempt, consumer, exc) -> TaskRun:
        kind = getattr(exc, "kind", type(exc).__name__)
        reason = "cancelled" if isinstance(exc, RunCancelled) else str(exc)
        detail = dict(getattr(exc, "detail", {}) or {})
        cursor_after = self.cursors.get(consumer, task.dataset)

        with self.engine.begin() as conn:
            conn.execute(update(task_runs).where(task_runs.c.run_id == run_id).values(
                status=RunStatus.FAILED.value, ended_at=self.clock(),
                cursor_after=cursor_after,
                error_kind=kind, reason=reason, detail=detail))

            blocked = False
            if not isinstance(exc, LeaseLost):
                st = self._load_state(conn, task.task_id, tick, mode)
                blocked = not isinstance(exc, RunCancelled) and attempt >= st["attempt_budget"]
                new_state = TaskState.BLOCKED if blocked else TaskState.FAILED
                self._set_state(conn, task.task_id, tick, mode, new_state,
                                owner=self.worker_id, cancel_requested=False)

            if isinstance(exc, ValidationRejected):
                record_anomaly(conn, exc.kind, exc.message, dataset=task.dataset,
                               task_id=task.task_id, detail=detail)
            run = self._run(conn, run_id)

        logger.warning("[%s] ❌ %s@%s attempt %d failed (%s): %s",
                       self.clock(), task.task_id, tick, attempt, kind, reason)
        if isinstance(exc, ValidationRejected):
            self.alerts.emit(exc.kind, exc.message, dataset=task.dataset, task_id=task.task_id, detail=detail)
        if blocked:
            self.alerts.emit(TaskBlocked.kind, f"{task.task_id}@{tick} blocked after {attempt} attempt(s)",
                             dataset=task.dataset, task_id=task.task_id, detail={"last_error": reason})
        return run

    # ───────────── Batches ───────────────────────────────────────────────────
    def _upper_bound(self, task, tick, mode, limit):
        if task.bound_by:
            upstream = self.pipeline.get(task.bound_by)
            bound = self.cursors.get(self.consumer_id(upstream, tick, mode), upstream.dataset)
        else:
            bound = self.ledger.high_water_mark(task.dataset)
        return bound if limit is None else min(bound, limit)

    def _check_cancel(self, task, tick, mode):
        with self.engine.connect() as conn:
            row = self._load_state(conn, task.task_id, tick, mode)
        if row is not None and row["cancel_requested"]:
            raise RunCancelled(f"{task.task_id}@{tick} cancelled", task_id=task.task_id, tick=tick)

    def _drain(self, task, tick, mode, consumer, limit) -> dict:
        upper = self._upper_bound(task, tick, mode, limit)
        batches = events_applied = conflicts = 0
        merged = MergeResult()

        while True:
            self._check_cancel(task, tick, mode)
            start = self.cursors.get(consumer, task.dataset)
            if start >= upper:
                break
            events = list(self.ledger.read_since(task.dataset, start, self.settings.batch_size, upper_bound=upper))
            if not events:
                break

            with self.engine.connect() as conn:
                verdict = evaluate(task.rules, events, conn)
            if not verdict.approved:
                raise ValidationRejected(
                    f"{task.task_id}: batch {events[0].sequence_id}..{events[-1].sequence_id} "
                    f"rejected with {len(verdict.violations)} violation(s)",
                    verdict.violations,
                )

            try:
                with self.engine.begin() as conn:
                    self.leases.renew(conn, task.task_id, tick, mode, self.worker_id)
                    result = self._apply(conn, task, events, start)
                    self.cursors.compare_and_swap(conn, consumer, task.dataset, start, events[-1].sequence_id)
            except MergeConflict as exc:
                conflicts += 1
                if conflicts > self.settings.max_conflict_retries:
                    raise
                logger.info("   • %s; retrying against the latest cursor", exc.message)
                continue

            batches += 1
            events_applied += len(events)
            self._absorb(merged, result)
            for record in result.surfaced_orphans:
                self.alerts.emit(record["kind"], record["reason"], dataset=record["dataset"],
                                 task_id=task.task_id, detail=record["detail"])

        if task.kind == "dimension" and batches == 0:
            # nothing new arrived, but buffered orphans still get their retry
            with self.engine.begin() as conn:
                self.leases.renew(conn, task.task_id, tick, mode, self.worker_id)
                result = self.merge.retry_orphans(conn, task.target)
            self._absorb(merged, result)
            for record in result.surfaced_orphans:
                self.alerts.emit(record["kind"], record["reason"], dataset=record["dataset"],
                                 task_id=task.task_id, detail=record["detail"])

        return {
            "batches": batches,
            "events": events_applied,
            "conflicts": conflicts,
            "upper_bound": upper,
            "merge": {
                "inserted": merged.inserted, "new_versions": merged.new_versions,
                "closed": merged.closed, "unchanged": merged.unchanged, "skipped": merged.skipped,
                "orphaned": merged.orphaned, "resolved_orphans": merged.resolved_orphans,
                "surfaced_orphans": len(merged.surfaced_orphans),
                "facts": merged.facts, "reversals": merged.reversals,
            },
        }

    def _apply(self, conn, task, events, start) -> MergeResult:
        if task.kind == "aggregate":
            buckets = self.aggregates.affected_buckets(conn, task.target, task.dataset,
                                                       start, events[-1].sequence_id)
            self.aggregates.refresh(conn, task.target, buckets)
            return MergeResult()
        return self.merge.apply_batch(conn, {task.dataset: task.target}, events, as_of=self.clock())

    @staticmethod
    def _absorb(total: MergeResult, part: MergeResult):
        for name in ("inserted", "new_versions", "closed", "unchanged", "skipped",
                     "orphaned", "resolved_orphans", "facts", "reversals"):
            setattr(total, name, getattr(total, name) + getattr(part, name))
        total.surfaced_orphans.extend(part.surfaced_orphans)

    # ───────────── Ticks & backfill ──────────────────────────────────────────
    def run_tick(self, tick: str, mode: str = LIVE,
                 upper_limits: Optional[Mapping[str, int]] = None) -> TickReport:
        """
        Run the whole DAG for one tick.  A task that fails with a retryable
        error is tried again after `retry_backoff_seconds`, doubling each time,
        until its attempts run out and it becomes BLOCKED.
        """
        report = TickReport(tick=tick, mode=mode)
        logger.info("[%s] ▶️  Starting %s tick %s", self.clock(), mode, tick)

        for task in self.pipeline.order():
            run = None
            failures = 0
            while True:
                try:
                    run = self.trigger(task.task_id, tick, mode, upper_limits)
                except TaskBlocked as exc:
                    logger.warning("   • %s", exc.message)
                    report.blocked.append(task.task_id)
                    break
                if run is None or run.status is not RunStatus.FAILED:
                    break
                if run.error_kind in _NOT_RETRIED_IN_PROCESS:
                    break
                if self.state(task.task_id, tick, mode) is TaskState.BLOCKED:
                    report.blocked.append(task.task_id)
                    break
                failures += 1
                delay = self.settings.retry_backoff_seconds * 2 ** (failures - 1)
                logger.info("   • retrying %s@%s in %ss", task.task_id, tick, delay)
                self.sleep(delay)
            report.runs[task.task_id] = run

        logger.info("[%s] %s %s tick %s complete", self.clock(),
                    "✅" if report.succeeded else "❌", mode, tick)
        return report

    def backfill(self, label: str, ranges: Optional[Mapping[str, tuple]] = None,
                 after_sequence_id: int = 0, upto_sequence_id: Optional[int] = None) -> TickReport:
        """
        Re-run the DAG over a historical slice of the ledger.

        Uses its own cursors (backfill:<label>:<task>) and its own TaskRuns
        (mode="backfill", tick=label), so the live cursors are never touched.
        `ranges` maps dataset → (after, upto); datasets not listed use
        after_sequence_id / upto_sequence_id (None = current high-water mark).
        """
        ranges = dict(ranges or {})
        limits = {}
        for task in self.pipeline.order():
            after, upto = ranges.get(task.dataset, (after_sequence_id, upto_sequence_id))
            if upto is None:
                upto = self.ledger.high_water_mark(task.dataset)
            self.cursors.seed(self.consumer_id(task, label, BACKFILL), task.dataset, after)
            limits[task.dataset] = upto
        logger.info("   • backfill %s over %s", label,
                    ", ".join(f"{ds}≤{upto}" for ds, upto in limits.items()))
        return self.run_tick(label, mode=BACKFILL, upper_limits=limits)
