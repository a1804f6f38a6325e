"""
validation.py

Validation Gate: declarative data-quality rules that a batch has to pass
before anything from it is merged.  A rejected batch is never partially
applied.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import select

from warehouse.models import Action, ChangeEvent, DimensionRef, canonical_key
from warehouse.schema import dimension_versions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Violation:
    rule: str
    sequence_id: Optional[int]
    key: dict
    message: str

    def as_dict(self) -> dict:
        return {"rule": self.rule, "sequence_id": self.sequence_id, "key": self.key, "message": self.message}


@dataclass(frozen=True)
class Approved:
    approved = True


@dataclass(frozen=True)
class Rejected:
    violations: List[Violation] = field(default_factory=list)
    approved = False


# ───────────── Rules ─────────────────────────────────────────────────────────
class Rule:
    name = "rule"

    def check(self, batch: Sequence[ChangeEvent], conn) -> List[Violation]:
        raise NotImplementedError


class UniqueInsertKeys(Rule):
    """A natural key may be INSERTed at most once per batch."""

    name = "unique_insert_keys"

    def check(self, batch, conn):
        seen = {}
        violations = []
        for event in batch:
            if event.action is not Action.INSERT:
                continue
            nk = event.natural_key
            if nk in seen:
                violations.append(Violation(
                    self.name, event.sequence_id, event.key,
                    f"duplicate INSERT for key {nk} (first at sequence {seen[nk]})",
                ))
            else:
                seen[nk] = event.sequence_id
        return violations


class RequiredColumns(Rule):
    name = "required_columns"

    def __init__(self, columns):
        self.columns = tuple(columns)

    def check(self, batch, conn):
        violations = []
        for event in batch:
            if event.action is Action.DELETE:
                continue
            # UPDATE payloads are patches; only what they carry is checked
            if event.action is Action.UPDATE:
                nulls = [c for c in self.columns if c in event.payload and event.payload[c] is None]
            else:
                nulls = [c for c in self.columns if event.payload.get(c) is None]
            if nulls:
                violations.append(Violation(
                    self.name, event.sequence_id, event.key,
                    f"null or missing required column(s): {', '.join(nulls)}",
                ))
        return violations


class ForeignKeyExists(Rule):
    """Every referenced natural key must already have a merged dimension version."""

    name = "foreign_key_exists"

    def __init__(self, ref: DimensionRef, role: Optional[str] = None):
        self.ref = ref
        self.role = role or ref.dimension

    def check(self, batch, conn):
        violations = []
        known = {}
        for event in batch:
            if event.action is Action.DELETE:
                continue
            key = self.ref.natural_key(event.payload)
            if key is None:
                violations.append(Violation(
                    self.name, event.sequence_id, event.key,
                    f"reference {self.role} is missing column(s) {', '.join(self.ref.columns)}",
                ))
                continue
            nk = canonical_key(key)
            if nk not in known:
                known[nk] = conn.execute(
                    select(dimension_versions.c.surrogate_key)
                    .where(dimension_versions.c.dimension == self.ref.dimension)
                    .where(dimension_versions.c.natural_key == nk)
                    .limit(1)
                ).first() is not None
            if not known[nk]:
                violations.append(Violation(
                    self.name, event.sequence_id, event.key,
                    f"{self.role} {nk} does not exist in {self.ref.dimension}",
                ))
        return violations


def evaluate(rules: Sequence[Rule], batch: Sequence[ChangeEvent], conn):
    violations = []
    for rule in rules:
        violations.extend(rule.check(batch, conn))
    if violations:
        logger.info("   • batch rejected: %d violation(s)", len(violations))
        return Rejected(violations)
    return Approved()
