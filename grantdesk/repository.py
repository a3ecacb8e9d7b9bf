"""Keyed upsert repositories for the (proposal, evaluator) tables.

Both evaluations and assignments are unique per (proposal, evaluator). Callers
compute the values; the repository decides whether that means an insert or a
patch of the existing row.
"""
from __future__ import annotations

from typing import Any, NamedTuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk.models import Evaluation, EvaluatorAssignment

ACTIVE_STATUSES = frozenset({"pending", "accepted"})


class PairKey(NamedTuple):
    proposal_id: int
    evaluator_id: int


class _PairRepository:
    model: Any = None

    def __init__(self, session: Session):
        self.session = session

    def get(self, key: PairKey):
        return self.session.execute(
            select(self.model).where(
                self.model.proposal_id == key.proposal_id,
                self.model.evaluator_id == key.evaluator_id,
            )
        ).scalars().first()

    def upsert(self, key: PairKey, values: dict[str, Any]) -> int:
        """Patch the row for *key* with *values*, inserting it if absent. Returns the row id."""
        row = self.get(key)
        if row is None:
            row = self.model(proposal_id=key.proposal_id, evaluator_id=key.evaluator_id)
            self.session.add(row)
        for name, value in values.items():
            setattr(row, name, value)
        self.session.flush()
        return row.id

    def for_proposal(self, proposal_id: int) -> list:
        return list(self.session.execute(
            select(self.model).where(self.model.proposal_id == proposal_id).order_by(self.model.id)
        ).scalars().all())


class EvaluationRepository(_PairRepository):
    model = Evaluation

    def completed_count(self, proposal_id: int) -> int:
        return sum(1 for e in self.for_proposal(proposal_id) if e.completed_at is not None)


class AssignmentRepository(_PairRepository):
    model = EvaluatorAssignment
