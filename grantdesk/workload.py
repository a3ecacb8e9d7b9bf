"""Evaluator workload: active load, completed reviews, utilization.

Load counts assignments that still demand work (``pending`` or ``accepted``);
declined and removed assignments never count. Utilization is the share of that
load already submitted as completed evaluations.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk import config
from grantdesk.access import Actor, require_admin
from grantdesk.models import Call, Evaluation, EvaluatorAssignment, Proposal, User
from grantdesk.repository import ACTIVE_STATUSES

log = logging.getLogger(__name__)


@dataclass
class Workload:
    evaluator_id: int
    total: int
    pending: int
    in_progress: int
    completed: int
    utilization_rate: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Capacity:
    current_load: int
    max_capacity: int

    @property
    def available_slots(self) -> int:
        return self.max_capacity - self.current_load

    @property
    def is_available(self) -> bool:
        return self.available_slots > 0


def load_by_evaluator(assignments: Iterable[EvaluatorAssignment]) -> Counter[int]:
    """Count active assignments per evaluator id."""
    return Counter(a.evaluator_id for a in assignments if a.status in ACTIVE_STATUSES)


def capacity_for(load: int, max_capacity: int | None = None) -> Capacity:
    if max_capacity is None:
        max_capacity = config.evaluator_capacity()
    return Capacity(current_load=load, max_capacity=max_capacity)


def utilization(completed: int, load: int) -> float:
    return completed / load * 100 if load > 0 else 0.0


def compute_workload(
    evaluator_id: int,
    assignments: Iterable[EvaluatorAssignment],
    evaluations: Iterable[Evaluation],
) -> Workload:
    active = [a for a in assignments if a.evaluator_id == evaluator_id and a.status in ACTIVE_STATUSES]
    own = [e for e in evaluations if e.evaluator_id == evaluator_id]
    completed = sum(1 for e in own if e.completed_at is not None)
    in_progress = sum(1 for e in own if e.completed_at is None)
    total = len(active)
    return Workload(
        evaluator_id=evaluator_id,
        total=total,
        pending=max(total - completed - in_progress, 0),
        in_progress=in_progress,
        completed=completed,
        utilization_rate=utilization(completed, total),
    )


def evaluator_workload(session: Session, evaluator_id: int) -> Workload:
    assignments = session.execute(
        select(EvaluatorAssignment).where(EvaluatorAssignment.evaluator_id == evaluator_id)
    ).scalars().all()
    evaluations = session.execute(
        select(Evaluation).where(Evaluation.evaluator_id == evaluator_id)
    ).scalars().all()
    return compute_workload(evaluator_id, assignments, evaluations)


def _assignment_detail(assignment, proposals, calls, evaluation) -> dict:
    proposal = proposals.get(assignment.proposal_id)
    call = calls.get(proposal.call_id) if proposal else None
    if evaluation is None:
        status = "pending"
    else:
        status = "submitted" if evaluation.completed_at else "draft"
    return {
        "assignment_id": assignment.id,
        "proposal_id": assignment.proposal_id,
        "proposal_title": proposal.title if proposal else "Unknown Proposal",
        "call_id": call.id if call else None,
        "call_title": call.title if call else "Unknown Call",
        "assigned_at": assignment.assigned_at.isoformat() if assignment.assigned_at else None,
        "status": status,
        "submitted_at": evaluation.completed_at.isoformat() if evaluation and evaluation.completed_at else None,
    }


def workload_overview(session: Session, actor: Actor) -> dict:
    """Capacity-planning report: every evaluator ranked by load, plus aggregates."""
    require_admin(actor)
    evaluators = session.execute(
        select(User).where(User.role == "evaluator").order_by(User.id)
    ).scalars().all()
    assignments = session.execute(select(EvaluatorAssignment)).scalars().all()
    evaluations = session.execute(select(Evaluation)).scalars().all()
    proposals = {p.id: p for p in session.execute(select(Proposal)).scalars().all()}
    calls = {c.id: c for c in session.execute(select(Call)).scalars().all()}
    evaluation_for = {(e.proposal_id, e.evaluator_id): e for e in evaluations}

    rows = []
    for user in evaluators:
        wl = compute_workload(user.id, assignments, evaluations)
        cap = capacity_for(wl.total)
        rows.append({
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "campus": user.campus or None,
            "department": user.department or None,
            "research_areas": user.research_areas,
            "workload": wl.to_dict(),
            "max_capacity": cap.max_capacity,
            "available_slots": cap.available_slots,
            "assignments": [
                _assignment_detail(a, proposals, calls, evaluation_for.get((a.proposal_id, user.id)))
                for a in assignments if a.evaluator_id == user.id and a.status in ACTIVE_STATUSES
            ],
        })
    rows.sort(key=lambda r: r["workload"]["total"], reverse=True)

    loads = [r["workload"]["total"] for r in rows]
    return {
        "evaluators": rows,
        "summary": {
            "total_evaluators": len(rows),
            "active_evaluators": sum(1 for n in loads if n > 0),
            "total_assignments": sum(loads),
            "average_workload": sum(loads) / len(loads) if loads else 0.0,
            "max_workload": max(loads, default=0),
            "min_workload": min(loads, default=0),
        },
        "active_calls": [
            {"id": c.id, "title": c.title, "status": c.status}
            for c in calls.values() if c.status in ("open", "closed")
        ],
    }
