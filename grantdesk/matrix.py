"""Proposal × evaluator assignment matrix.

The matrix is the admin switchboard for reviewer assignment: one row per
proposal, one cell per evaluator, each cell carrying the pair's assignment (if
any) and match score (if any). Rows are classified by how many *active*
(pending/accepted) assignments they hold against the call's required count.

Filter vocabularies are computed from the unfiltered evaluator pool so that
choosing a filter never hides the other options.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk import config, services
from grantdesk.access import Actor, require_admin
from grantdesk.activity import log_activity
from grantdesk.errors import InvalidRequest, NotFound
from grantdesk.lifecycle import reactivate_assignment
from grantdesk.models import Call, EvaluatorAssignment, EvaluatorMatch, Proposal, User
from grantdesk.repository import ACTIVE_STATUSES, AssignmentRepository, PairKey
from grantdesk.schemas import MatrixFilters
from grantdesk.utils import utcnow
from grantdesk.workload import capacity_for, load_by_evaluator

log = logging.getLogger(__name__)


def classify_completeness(active_count: int, required: int) -> str:
    if active_count == 0:
        return "needs_assignment"
    if active_count < required:
        return "partial"
    return "complete"


def _filter_evaluators(evaluators: list[User], filters: MatrixFilters) -> list[User]:
    result = evaluators
    if filters.evaluator_campus:
        result = [e for e in result if e.campus and e.campus in filters.evaluator_campus]
    if filters.evaluator_department:
        result = [e for e in result if e.department and e.department in filters.evaluator_department]
    if filters.evaluator_expertise:
        wanted = set(filters.evaluator_expertise)
        result = [e for e in result if wanted.intersection(e.research_areas)]
    return result


def _cell(evaluator: dict[str, Any], assignment: EvaluatorAssignment | None, match: EvaluatorMatch | None) -> dict:
    return {
        "evaluator_id": evaluator["id"],
        "evaluator_name": evaluator["name"],
        "assignment": services.assignment_out(assignment) if assignment else None,
        "match": services.match_out(match) if match else None,
    }


def build_matrix(
    session: Session,
    actor: Actor,
    filters: MatrixFilters | None = None,
    capacity: int | None = None,
) -> dict[str, Any]:
    require_admin(actor)
    filters = filters or MatrixFilters()
    if capacity is None:
        capacity = config.evaluator_capacity()

    proposals = session.execute(select(Proposal).order_by(Proposal.id)).scalars().all()
    if filters.call_ids:
        proposals = [p for p in proposals if p.call_id in filters.call_ids]
    if filters.proposal_status:
        proposals = [p for p in proposals if p.status in filters.proposal_status]

    pool = session.execute(
        select(User).where(User.role == "evaluator").order_by(User.id)
    ).scalars().all()

    all_assignments = session.execute(select(EvaluatorAssignment)).scalars().all()
    loads = load_by_evaluator(all_assignments)

    evaluators = []
    for user in _filter_evaluators(pool, filters):
        cap = capacity_for(loads[user.id], capacity)
        evaluators.append({
            "id": user.id,
            "name": user.name or "Unknown",
            "email": user.email,
            "campus": user.campus or None,
            "department": user.department or None,
            "research_areas": user.research_areas,
            "current_load": cap.current_load,
            "max_capacity": cap.max_capacity,
            "available_slots": cap.available_slots,
            "is_available": cap.is_available,
        })
    if filters.only_available:
        evaluators = [e for e in evaluators if e["is_available"]]

    by_proposal: dict[int, list[EvaluatorAssignment]] = {}
    for assignment in all_assignments:
        by_proposal.setdefault(assignment.proposal_id, []).append(assignment)
    matches: dict[int, dict[int, EvaluatorMatch]] = {}
    for match in session.execute(select(EvaluatorMatch)).scalars().all():
        matches.setdefault(match.proposal_id, {})[match.evaluator_id] = match

    calls = {c.id: c for c in session.execute(select(Call)).scalars().all()}
    investigators = services.users_by_id(session, (p.principal_investigator_id for p in proposals))
    default_required = config.default_required_evaluators()

    rows = []
    for proposal in proposals:
        call = calls.get(proposal.call_id)
        assignments = by_proposal.get(proposal.id, [])
        assignment_map = {a.evaluator_id: a for a in assignments}
        match_map = matches.get(proposal.id, {})
        required = call.evaluators_required if call else default_required
        active_count = sum(1 for a in assignments if a.status in ACTIVE_STATUSES)
        pi = investigators.get(proposal.principal_investigator_id)
        rows.append({
            "proposal_id": proposal.id,
            "proposal_title": proposal.title,
            "call_id": proposal.call_id,
            "call_title": call.title if call else "Unknown Call",
            "principal_investigator": pi.name if pi else "Unknown",
            "requested_budget": proposal.budget_total,
            "status": proposal.status,
            "submitted_at": services.iso(proposal.submitted_at),
            "required_evaluators": required,
            "assigned_count": active_count,
            "assignment_status": classify_completeness(active_count, required),
            "cells": [
                _cell(e, assignment_map.get(e["id"]), match_map.get(e["id"])) for e in evaluators
            ],
        })

    if filters.assignment_status != "all":
        rows = [r for r in rows if r["assignment_status"] == filters.assignment_status]

    return {
        "proposals": rows,
        "evaluators": evaluators,
        "filter_options": {
            "calls": [
                {"id": c.id, "title": c.title}
                for c in calls.values() if c.status in ("open", "closed")
            ],
            "campuses": sorted({e.campus for e in pool if e.campus}),
            "departments": sorted({e.department for e in pool if e.department}),
            "expertise_areas": sorted({area for e in pool for area in e.research_areas}),
        },
        "summary": {
            "total_proposals": len(rows),
            "needs_assignment": sum(1 for r in rows if r["assignment_status"] == "needs_assignment"),
            "partial_assignment": sum(1 for r in rows if r["assignment_status"] == "partial"),
            "fully_assigned": sum(1 for r in rows if r["assignment_status"] == "complete"),
            "total_evaluators": len(evaluators),
            "available_evaluators": sum(1 for e in evaluators if e["is_available"]),
            "at_capacity_evaluators": sum(1 for e in evaluators if not e["is_available"]),
        },
    }


def quick_assign(session: Session, actor: Actor, proposal_id: int, evaluator_id: int) -> EvaluatorAssignment:
    """Assign one evaluator from the matrix. A removed pair is reactivated in place."""
    require_admin(actor, "Unauthorized")
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    if services.get_entity(session, User, evaluator_id) is None:
        raise NotFound("Evaluator not found")

    repo = AssignmentRepository(session)
    existing = repo.get(PairKey(proposal_id, evaluator_id))
    if existing is not None and existing.status != "removed":
        raise InvalidRequest("Evaluator already assigned to this proposal")

    if existing is None:
        assignment = EvaluatorAssignment(
            proposal_id=proposal_id, evaluator_id=evaluator_id, assigned_by=actor.user_id,
            assignment_method="manual", status="pending", coi_declared=False, assigned_at=utcnow(),
        )
        session.add(assignment)
    else:
        assignment = existing
        reactivate_assignment(assignment, actor)

    if evaluator_id not in proposal.assigned_evaluators:
        services.set_assigned_list(proposal, [*proposal.assigned_evaluators, evaluator_id])

    session.flush()
    log_activity(
        session, actor_id=actor.user_id, action="proposal.evaluators_updated",
        entity_type="proposal", entity_id=proposal_id,
        details={
            "added_evaluators": [evaluator_id], "removed_evaluators": [],
            "assignment_id": assignment.id, "reactivated": existing is not None,
        },
    )
    return assignment


def unassign(session: Session, actor: Actor, assignment_id: int) -> EvaluatorAssignment:
    """Mark an assignment removed. History is retained; evaluations are untouched."""
    require_admin(actor, "Unauthorized")
    assignment = services.require_entity(session, EvaluatorAssignment, assignment_id, "Assignment")
    assignment.status = "removed"
    assignment.responded_at = utcnow()

    proposal = services.get_entity(session, Proposal, assignment.proposal_id)
    if proposal is not None and assignment.evaluator_id in proposal.assigned_evaluators:
        services.set_assigned_list(
            proposal, [e for e in proposal.assigned_evaluators if e != assignment.evaluator_id]
        )

    log_activity(
        session, actor_id=actor.user_id, action="proposal.assignment_updated",
        entity_type="proposal", entity_id=assignment.proposal_id,
        details={"evaluator_id": assignment.evaluator_id, "status": "removed", "assignment_id": assignment.id},
    )
    session.flush()
    return assignment


FUNDED_STATUSES = frozenset({"approved", "in_execution", "completed"})


def call_assignment_overview(session: Session, actor: Actor, call_id: int) -> dict[str, Any]:
    """Assignment progress and budget allocation for one call's submitted proposals."""
    require_admin(actor, "Unauthorized")
    call = services.require_entity(session, Call, call_id, "Call")
    proposals = session.execute(
        select(Proposal).where(Proposal.call_id == call_id, Proposal.status != "draft").order_by(Proposal.id)
    ).scalars().all()
    proposal_ids = {p.id for p in proposals}

    pool = session.execute(select(User).where(User.role == "evaluator").order_by(User.id)).scalars().all()
    active = [
        a for a in session.execute(select(EvaluatorAssignment)).scalars().all()
        if a.proposal_id in proposal_ids and a.status in ACTIVE_STATUSES
    ]
    loads = load_by_evaluator(active)
    people = services.users_by_id(session, (a.evaluator_id for a in active))
    required = call.evaluators_required

    rows = []
    for proposal in proposals:
        mine = [a for a in active if a.proposal_id == proposal.id]
        rows.append({
            "id": proposal.id,
            "title": proposal.title,
            "principal_investigator_id": proposal.principal_investigator_id,
            "status": proposal.status,
            "budget_requested": proposal.budget_total,
            "submitted_at": services.iso(proposal.submitted_at),
            "assigned_evaluators": [
                {
                    "evaluator": services.user_brief(people.get(a.evaluator_id), a.evaluator_id),
                    "status": a.status,
                    "assigned_at": services.iso(a.assigned_at),
                }
                for a in mine
            ],
            "evaluation_progress": {"assigned": len(mine), "required": required},
        })

    requested = round(sum(p.budget_total for p in proposals), 2)
    approved = round(sum(p.budget_total for p in proposals if p.status in FUNDED_STATUSES), 2)
    total = call.budget_total or 0.0
    fully = sum(1 for r in rows if r["evaluation_progress"]["assigned"] >= required)
    return {
        "call": {
            "id": call.id, "title": call.title, "status": call.status, "total_budget": total,
            "budget_min": call.budget_min, "budget_max": call.budget_max, "evaluators_required": required,
        },
        "budget": {
            "total": total,
            "requested": requested,
            "approved": approved,
            "available": round(total - approved, 2),
            "utilization_rate": round(approved / total * 100, 2) if total else 0.0,
        },
        "proposals": rows,
        "evaluator_pool": [
            {
                "id": e.id, "name": e.name or "Unknown", "email": e.email, "department": e.department or None,
                "research_areas": e.research_areas, "current_workload": loads[e.id],
            }
            for e in pool
        ],
        "summary": {
            "total_proposals": len(rows),
            "fully_assigned": fully,
            "needs_assignment": len(rows) - fully,
        },
    }
