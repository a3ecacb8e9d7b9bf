"""Evaluation lifecycle: drafts, submissions, assignments, and final decisions.

Two coupled state machines live here:

- **Evaluation** (per proposal × evaluator): ``no record → draft ⇄ submitted``.
  Exactly one Evaluation row exists per pair; drafts are upserted in place and
  a draft save after submission reopens it.
- **Proposal**: ``submitted → under_review → {approved | rejected |
  revise_and_resubmit}``. The first review activity moves a submitted
  proposal to ``under_review`` (``on_first_review_touch``). Approving or
  rejecting requires a quorum of completed evaluations, re-counted from the
  table on every call.

Every function flushes its writes and leaves the commit to the caller, so a
raised ``WorkflowError`` never leaves partial state behind.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk import services
from grantdesk.access import Actor, ensure_reviewer_access, is_owner, require_admin, require_reviewer
from grantdesk.activity import log_activity
from grantdesk.errors import AccessDenied, InvalidRequest, NotFound, QuorumNotMet
from grantdesk.models import Call, Evaluation, EvaluatorAssignment, Proposal, User
from grantdesk.repository import ACTIVE_STATUSES, AssignmentRepository, EvaluationRepository, PairKey
from grantdesk.rubric import (
    compute_weighted_score, missing_required_comments, normalize_rubric,
)
from grantdesk.schemas import EvaluationDraftIn, EvaluationSubmitIn
from grantdesk.utils import json_dump, sanitize_text, utcnow

log = logging.getLogger(__name__)

DECISIONS = ("approved", "rejected", "revise_and_resubmit")
QUORUM_DECISIONS = frozenset({"approved", "rejected"})
DECIDABLE_STATUSES = frozenset({"submitted", "under_review"})
ASSIGNMENT_STATUSES = ("pending", "accepted", "declined", "removed")
EVALUATOR_RESPONSES = frozenset({"accepted", "declined"})

# Allowed proposal status moves. Decisions on approved/rejected are terminal;
# revise_and_resubmit re-enters authoring and comes back through "submitted".
PROPOSAL_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"submitted"}),
    "revise_and_resubmit": frozenset({"submitted"}),
    "submitted": frozenset({"under_review", *DECISIONS}),
    "under_review": frozenset(DECISIONS),
    "approved": frozenset({"in_execution"}),
    "rejected": frozenset(),
    "in_execution": frozenset({"completed"}),
    "completed": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in PROPOSAL_TRANSITIONS.get(current, frozenset())


def transition_proposal(proposal: Proposal, target: str) -> None:
    if not can_transition(proposal.status, target):
        raise InvalidRequest(f"Cannot move a proposal from {proposal.status} to {target}")
    log.info("Proposal %s: %s -> %s", proposal.id, proposal.status, target)
    proposal.status = target
    proposal.updated_at = utcnow()


def on_first_review_touch(proposal: Proposal) -> bool:
    """Move a ``submitted`` proposal to ``under_review``.

    Idempotent: any other status is left alone. Returns True when the status changed.
    """
    if proposal.status != "submitted":
        return False
    transition_proposal(proposal, "under_review")
    return True


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


def _reviewer_context(session: Session, actor: Actor, proposal_id: int):
    require_reviewer(actor)
    proposal, call = services.load_proposal_and_call(session, proposal_id)
    ensure_reviewer_access(proposal, actor)
    criteria = services.load_criteria(session, call.criteria_ids)
    return proposal, call, criteria


def get_evaluation_context(session: Session, actor: Actor, proposal_id: int) -> dict[str, Any]:
    proposal, call, criteria = _reviewer_context(session, actor, proposal_id)
    evaluation = EvaluationRepository(session).get(PairKey(proposal.id, actor.user_id))
    return {
        "proposal": {
            "id": proposal.id, "title": proposal.title, "status": proposal.status,
            "submitted_at": services.iso(proposal.submitted_at),
        },
        "call": {
            "id": call.id, "title": call.title,
            "evaluation_settings": services.call_summary(call)["evaluation_settings"],
        },
        "criteria": [services.criterion_out(c) for c in criteria],
        "evaluation": services.evaluation_out(evaluation) if evaluation else None,
    }


def _evaluation_values(body: EvaluationDraftIn, rubric, overall: float, completed_at) -> dict[str, Any]:
    return {
        "rubric_json": json_dump([e.to_dict() for e in rubric]),
        "overall_score": overall,
        "recommendation": body.recommendation,
        "confidential_comments": sanitize_text(body.confidential_comments),
        "public_comments": sanitize_text(body.public_comments),
        "ai_assistance_used": bool(body.ai_assistance_used),
        "completed_at": completed_at,
        "updated_at": utcnow(),
    }


def save_evaluation_draft(
    session: Session, actor: Actor, proposal_id: int, body: EvaluationDraftIn,
) -> Evaluation:
    """Upsert the caller's draft. Missing scores are zero-filled, not rejected."""
    proposal, _call, criteria = _reviewer_context(session, actor, proposal_id)

    normalized = normalize_rubric(criteria, body.rubric)
    overall = compute_weighted_score(normalized.entries, criteria)

    repo = EvaluationRepository(session)
    key = PairKey(proposal.id, actor.user_id)
    existed = repo.get(key) is not None
    evaluation_id = repo.upsert(key, _evaluation_values(body, normalized.entries, overall, None))

    log_activity(
        session, actor_id=actor.user_id,
        action="evaluation.draft_updated" if existed else "evaluation.draft_created",
        entity_type="proposal", entity_id=proposal.id,
        details={
            "evaluation_id": evaluation_id, "overall_score": overall,
            "ai_assistance_used": bool(body.ai_assistance_used),
            "recommendation": body.recommendation,
        },
    )
    on_first_review_touch(proposal)
    session.flush()
    return repo.get(key)


def submit_evaluation(
    session: Session, actor: Actor, proposal_id: int, body: EvaluationSubmitIn,
) -> Evaluation:
    """Finalize the caller's evaluation. Every criterion must be scored."""
    proposal, _call, criteria = _reviewer_context(session, actor, proposal_id)

    if not criteria:
        raise InvalidRequest("This call does not have an evaluation rubric configured yet.")

    normalized = normalize_rubric(criteria, body.rubric)
    if not normalized.complete:
        raise InvalidRequest("Please score every criterion before submitting the evaluation.")
    if missing_required_comments(normalized.entries, criteria):
        raise InvalidRequest("Please add comments for every criterion that requires them.")

    overall = compute_weighted_score(normalized.entries, criteria)
    submitted_at = utcnow()

    repo = EvaluationRepository(session)
    key = PairKey(proposal.id, actor.user_id)
    evaluation_id = repo.upsert(key, _evaluation_values(body, normalized.entries, overall, submitted_at))

    log_activity(
        session, actor_id=actor.user_id, action="evaluation.submitted",
        entity_type="proposal", entity_id=proposal.id,
        details={
            "evaluation_id": evaluation_id, "overall_score": overall,
            "recommendation": body.recommendation,
            "ai_assistance_used": bool(body.ai_assistance_used),
        },
    )
    on_first_review_touch(proposal)
    session.flush()
    return repo.get(key)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def finalize_decision(
    session: Session, actor: Actor, proposal_id: int, decision: str, note: str | None = None,
) -> Proposal:
    require_admin(actor, "Unauthorized: admin decision required")
    proposal, call = services.load_proposal_and_call(session, proposal_id)

    if decision not in DECISIONS:
        raise InvalidRequest("Unsupported decision status")
    if proposal.status not in DECIDABLE_STATUSES:
        raise InvalidRequest(f"A decision cannot be recorded for a proposal that is {proposal.status}")

    # Re-count from the table so a concurrent submission is never missed
    completed = EvaluationRepository(session).completed_count(proposal.id)
    required = call.evaluators_required or 0
    if decision in QUORUM_DECISIONS and required > 0 and completed < required:
        log.warning("Quorum not met for proposal %s: %d of %d", proposal.id, completed, required)
        raise QuorumNotMet(required=required, completed=completed)

    now = utcnow()
    transition_proposal(proposal, decision)
    proposal.decision_by = actor.user_id
    proposal.decision_at = now
    proposal.decision_note = sanitize_text(note)

    log_activity(
        session, actor_id=actor.user_id, action="proposal.decision_finalized",
        entity_type="proposal", entity_id=proposal.id,
        details={"decision": decision, "submitted_evaluations": completed, "required_evaluations": required},
    )
    session.flush()
    return proposal


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


def _require_evaluator_user(session: Session, evaluator_id: int) -> User:
    user = services.get_entity(session, User, evaluator_id)
    if user is None:
        raise NotFound("Evaluator not found")
    return user


def reactivate_assignment(assignment: EvaluatorAssignment, actor: Actor, method: str = "manual") -> None:
    """Reset a (possibly removed) assignment to a fresh ``pending`` state."""
    assignment.status = "pending"
    assignment.assignment_method = method
    assignment.decline_reason = ""
    assignment.decline_comment = ""
    assignment.coi_declared = False
    assignment.coi_details = ""
    assignment.assigned_at = utcnow()
    assignment.assigned_by = actor.user_id
    assignment.responded_at = None


def update_assignment_status(
    session: Session,
    actor: Actor,
    proposal_id: int,
    evaluator_id: int,
    status: str,
    *,
    decline_reason: str | None = None,
    decline_comment: str | None = None,
    coi_declared: bool | None = None,
    coi_details: str | None = None,
) -> EvaluatorAssignment:
    """Evaluators accept/decline their own pending assignment; admins may set any status."""
    if status not in ASSIGNMENT_STATUSES:
        raise InvalidRequest("Unsupported assignment status")

    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    assignment = AssignmentRepository(session).get(PairKey(proposal_id, evaluator_id))
    if assignment is None:
        raise NotFound("Assignment not found")

    is_admin = actor.is_admin
    is_evaluator = assignment.evaluator_id == actor.user_id
    if not is_admin and not is_evaluator:
        raise AccessDenied("Unauthorized: cannot modify assignment")
    if not is_admin:
        if status not in EVALUATOR_RESPONSES:
            if status == "pending":
                raise AccessDenied("Only administrators can reset assignments to pending.")
            raise AccessDenied("Evaluators may only accept or decline assignments.")
        if assignment.status != "pending":
            raise InvalidRequest(f"This assignment is already {assignment.status}.")

    now = utcnow()
    if status == "pending":
        reactivate_assignment(assignment, actor, assignment.assignment_method)
    else:
        assignment.status = status
        assignment.responded_at = now if (is_evaluator or status == "removed") else assignment.responded_at
    if decline_reason:
        assignment.decline_reason = sanitize_text(decline_reason)
    if decline_comment:
        assignment.decline_comment = sanitize_text(decline_comment)
    if coi_declared is not None:
        assignment.coi_declared = coi_declared
    if coi_details:
        assignment.coi_details = sanitize_text(coi_details)

    listed = proposal.assigned_evaluators
    if status == "removed" and evaluator_id in listed:
        services.set_assigned_list(proposal, [e for e in listed if e != evaluator_id])
    elif status in ACTIVE_STATUSES and evaluator_id not in listed:
        services.set_assigned_list(proposal, [*listed, evaluator_id])

    log_activity(
        session, actor_id=actor.user_id, action="proposal.assignment_updated",
        entity_type="proposal", entity_id=proposal_id,
        details={"evaluator_id": evaluator_id, "status": status, "by_admin": is_admin},
    )
    session.flush()
    return assignment


def set_assigned_evaluators(
    session: Session, actor: Actor, proposal_id: int, evaluator_ids: list[int],
) -> Proposal:
    """Reconcile assignment rows against the desired evaluator list."""
    require_admin(actor, "Unauthorized: assignment management requires admin access")
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")

    target = list(dict.fromkeys(evaluator_ids))
    for evaluator_id in target:
        _require_evaluator_user(session, evaluator_id)
    previous = set(proposal.assigned_evaluators)

    repo = AssignmentRepository(session)
    existing = {a.evaluator_id: a for a in repo.for_proposal(proposal_id)}
    now = utcnow()

    for evaluator_id in target:
        record = existing.get(evaluator_id)
        if record is None:
            session.add(EvaluatorAssignment(
                proposal_id=proposal_id, evaluator_id=evaluator_id, assigned_by=actor.user_id,
                assignment_method="manual", status="pending", assigned_at=now,
            ))
        elif record.status == "removed":
            reactivate_assignment(record, actor)

    for evaluator_id, record in existing.items():
        if record.status != "removed" and evaluator_id not in target:
            record.status = "removed"
            record.responded_at = now

    services.set_assigned_list(proposal, target)
    added = [e for e in target if e not in previous]
    removed = [e for e in previous if e not in target]
    log_activity(
        session, actor_id=actor.user_id, action="proposal.evaluators_updated",
        entity_type="proposal", entity_id=proposal_id,
        details={"added_evaluators": added, "removed_evaluators": removed, "total_assigned": len(target)},
    )
    session.flush()
    return proposal


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def list_my_assignments(session: Session, actor: Actor) -> list[dict[str, Any]]:
    """The caller's non-removed assignments with their evaluation progress."""
    require_reviewer(actor)
    assignments = session.execute(
        select(EvaluatorAssignment)
        .where(EvaluatorAssignment.evaluator_id == actor.user_id, EvaluatorAssignment.status != "removed")
        .order_by(EvaluatorAssignment.assigned_at.desc())
    ).scalars().all()
    evaluations = {
        e.proposal_id: e for e in session.execute(
            select(Evaluation).where(Evaluation.evaluator_id == actor.user_id)
        ).scalars().all()
    }

    results = []
    for assignment in assignments:
        proposal = services.get_entity(session, Proposal, assignment.proposal_id)
        if proposal is None:
            continue
        call = services.get_entity(session, Call, proposal.call_id)
        evaluation = evaluations.get(proposal.id)
        results.append({
            "assignment_id": assignment.id,
            "proposal_id": proposal.id,
            "proposal_title": proposal.title,
            "call_title": call.title if call else "Unknown Call",
            "requested_budget": proposal.budget_total,
            "assigned_at": services.iso(assignment.assigned_at),
            "deadline": services.iso(call.evaluation_end) if call else None,
            "status": assignment.status,
            "evaluation": {
                "status": "submitted" if evaluation.completed_at else "draft",
                "submitted_at": services.iso(evaluation.completed_at),
                "overall_score": evaluation.overall_score,
            } if evaluation else None,
        })
    return results


def evaluation_summary(session: Session, actor: Actor, proposal_id: int) -> dict[str, Any]:
    """Owner/admin view of completed evaluations, anonymized under blind review."""
    proposal, call = services.load_proposal_and_call(session, proposal_id)
    if not actor.is_admin and not is_owner(proposal, actor):
        raise AccessDenied("Access denied: Only PI, team members, and admins can view evaluations")
    if proposal.status == "draft":
        return {"can_view": False, "reason": "Evaluations will be visible after submission"}

    evaluations = EvaluationRepository(session).for_proposal(proposal.id)
    completed = [e for e in evaluations if e.completed_at is not None]
    blind = bool(call.blind_review)
    names = {} if blind else services.users_by_id(session, (e.evaluator_id for e in completed))

    items = []
    for evaluation in sorted(completed, key=lambda e: e.completed_at, reverse=True):
        evaluator = names.get(evaluation.evaluator_id)
        items.append({
            "id": evaluation.id,
            "evaluator_name": "Anonymous Reviewer" if blind else (evaluator.name if evaluator else "Unknown"),
            "overall_score": evaluation.overall_score,
            "recommendation": evaluation.recommendation,
            "public_comments": evaluation.public_comments,
            "rubric": evaluation.rubric,
            "completed_at": services.iso(evaluation.completed_at),
        })

    return {
        "can_view": True,
        "blind_review": blind,
        "summary": {
            "total_evaluators": len(proposal.assigned_evaluators),
            "required_evaluations": call.evaluators_required,
            "completed_count": len(completed),
            "in_progress_count": len(evaluations) - len(completed),
            "average_score": (
                round(sum(e.overall_score for e in completed) / len(completed), 2) if completed else None
            ),
            "recommendation_counts": dict(Counter(e.recommendation for e in completed)),
        },
        "evaluations": items,
        "decision": services.proposal_summary(proposal)["decision"],
    }


REVIEWABLE_STATUSES = frozenset({"submitted", "under_review", "revise_and_resubmit"})
BOARD_LANES = ("unassigned", "pending", "in_progress", "submitted", "declined", "removed")


def list_proposals_for_review(session: Session, actor: Actor) -> list[dict[str, Any]]:
    """Proposals awaiting review: every reviewable proposal for admins, listed ones for evaluators."""
    require_reviewer(actor)
    proposals = session.execute(
        select(Proposal).where(Proposal.status.in_(REVIEWABLE_STATUSES))
    ).scalars().all()
    if not actor.is_admin:
        proposals = [p for p in proposals if actor.user_id in p.assigned_evaluators]

    calls = {c.id: c for c in session.execute(select(Call)).scalars().all()}
    investigators = services.users_by_id(session, (p.principal_investigator_id for p in proposals))
    proposals = sorted(proposals, key=lambda p: (p.updated_at or p.submitted_at or p.created_at, p.id), reverse=True)

    results = []
    for proposal in proposals:
        call = calls.get(proposal.call_id)
        results.append({
            "id": proposal.id,
            "title": proposal.title,
            "status": proposal.status,
            "submitted_at": services.iso(proposal.submitted_at),
            "updated_at": services.iso(proposal.updated_at),
            "budget_total": proposal.budget_total,
            "call": {
                "id": call.id, "title": call.title, "slug": call.slug or None,
                "close_date": services.iso(call.close_date),
            } if call else None,
            "principal_investigator": services.user_brief(
                investigators.get(proposal.principal_investigator_id), proposal.principal_investigator_id,
            ),
            "assigned_count": len(proposal.assigned_evaluators),
        })
    return results


def _board_lane(assignment: EvaluatorAssignment, evaluation: Evaluation | None) -> str:
    if assignment.status in ("declined", "removed"):
        return assignment.status
    if evaluation is not None and evaluation.completed_at is not None:
        return "submitted"
    if assignment.status == "accepted":
        return "in_progress"
    return "pending"


def assignment_board(session: Session, actor: Actor) -> dict[str, list[dict[str, Any]]]:
    """Assignments grouped into kanban lanes.

    Admins see every assignment plus the proposals nobody is listed on
    (``unassigned``). Evaluators see only their own assignments.
    """
    require_reviewer(actor)
    query = select(EvaluatorAssignment).order_by(EvaluatorAssignment.assigned_at, EvaluatorAssignment.id)
    if not actor.is_admin:
        query = query.where(EvaluatorAssignment.evaluator_id == actor.user_id)
    assignments = session.execute(query).scalars().all()

    proposals = {p.id: p for p in session.execute(select(Proposal)).scalars().all()}
    calls = {c.id: c for c in session.execute(select(Call)).scalars().all()}
    evaluators = services.users_by_id(session, (a.evaluator_id for a in assignments))
    evaluations = {
        (e.proposal_id, e.evaluator_id): e for e in session.execute(select(Evaluation)).scalars().all()
    }

    def card(proposal: Proposal, assignment: EvaluatorAssignment | None) -> dict[str, Any]:
        call = calls.get(proposal.call_id)
        out = {
            "assignment_id": None, "proposal_id": proposal.id, "proposal_title": proposal.title,
            "call_id": proposal.call_id, "call_title": call.title if call else "",
            "evaluator": None, "assignment_status": "unassigned", "assignment_method": None,
            "assigned_at": None, "responded_at": None, "decline_reason": None, "decline_comment": None,
            "coi_declared": False, "coi_details": None,
            "evaluation_status": "not_started", "overall_score": None, "recommendation": None,
        }
        if assignment is None:
            return out
        out.update({
            "assignment_id": assignment.id,
            "evaluator": services.user_brief(evaluators.get(assignment.evaluator_id), assignment.evaluator_id),
            "assignment_status": assignment.status,
            "assignment_method": assignment.assignment_method,
            "assigned_at": services.iso(assignment.assigned_at),
            "responded_at": services.iso(assignment.responded_at),
            "decline_reason": assignment.decline_reason or None,
            "decline_comment": assignment.decline_comment or None,
            "coi_declared": bool(assignment.coi_declared),
            "coi_details": assignment.coi_details or None,
        })
        evaluation = evaluations.get((proposal.id, assignment.evaluator_id))
        if evaluation is not None:
            out.update({
                "evaluation_status": "submitted" if evaluation.completed_at else "in_progress",
                "overall_score": evaluation.overall_score,
                "recommendation": evaluation.recommendation,
            })
        return out

    lanes: dict[str, list[dict[str, Any]]] = {lane: [] for lane in BOARD_LANES}
    for assignment in assignments:
        proposal = proposals.get(assignment.proposal_id)
        if proposal is None:
            continue
        lane = _board_lane(assignment, evaluations.get((proposal.id, assignment.evaluator_id)))
        lanes[lane].append(card(proposal, assignment))

    if actor.is_admin:
        for proposal in proposals.values():
            if proposal.status != "draft" and not proposal.assigned_evaluators:
                lanes["unassigned"].append(card(proposal, None))
    return {"lanes": lanes}


def review_progress(session: Session, proposal: Proposal, call: Call | None) -> dict[str, Any]:
    """Administrator's scoring overview: per-criterion averages and who has not started."""
    evaluations = EvaluationRepository(session).for_proposal(proposal.id)
    submitted = [e for e in evaluations if e.completed_at is not None]
    started = {e.evaluator_id for e in evaluations}
    pending_ids = [e for e in proposal.assigned_evaluators if e not in started]
    people = services.users_by_id(session, [*proposal.assigned_evaluators, *started])
    criteria = {c.id: c for c in services.load_criteria(session, call.criteria_ids if call else [])}

    stats: dict[int, list[float]] = {}
    for evaluation in submitted:
        for entry in evaluation.rubric:
            if entry.get("criterion_id") in criteria:
                stats.setdefault(entry["criterion_id"], []).append(entry.get("score", 0))
    criterion_averages = sorted(
        (
            {
                "criterion_id": cid, "name": criteria[cid].name, "weight": criteria[cid].weight,
                "max_score": criteria[cid].max_score, "average_score": round(sum(scores) / len(scores), 2),
            }
            for cid, scores in stats.items()
        ),
        key=lambda row: row["weight"], reverse=True,
    )

    details = []
    for evaluation in sorted(evaluations, key=lambda e: (e.completed_at is None, e.id)):
        details.append({
            **services.evaluation_out(evaluation),
            "evaluator": services.user_brief(people.get(evaluation.evaluator_id), evaluation.evaluator_id),
            "status": "submitted" if evaluation.completed_at else "in_progress",
        })

    return {
        "required_evaluations": call.evaluators_required if call else 0,
        "assigned_count": len(proposal.assigned_evaluators),
        "submitted_count": len(submitted),
        "in_progress_count": len(evaluations) - len(submitted),
        "pending_count": len(pending_ids),
        "average_score": round(sum(e.overall_score for e in submitted) / len(submitted), 2) if submitted else None,
        "criterion_averages": criterion_averages,
        "evaluations": details,
        "pending_evaluators": [services.user_brief(people.get(uid), uid) for uid in pending_ids],
    }
