"""Shared lookups and serialization helpers for grantdesk handlers."""
from __future__ import annotations

from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk.errors import NotFound
from grantdesk.models import (
    Call, ClarificationRequest, Evaluation, EvaluationCriterion, EvaluatorAssignment,
    EvaluatorMatch, Proposal, RubricTemplate, Transaction, User,
)
from grantdesk.rubric import CriterionSpec
from grantdesk.utils import json_dump, json_parse, utcnow

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_entity(session: Session, model: type[T], entity_id: int) -> T | None:
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def require_entity(session: Session, model: type[T], entity_id: int, label: str = "Entity") -> T:
    obj = get_entity(session, model, entity_id)
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def load_proposal_and_call(session: Session, proposal_id: int) -> tuple[Proposal, Call]:
    proposal = require_entity(session, Proposal, proposal_id, "Proposal")
    call = get_entity(session, Call, proposal.call_id)
    if call is None:
        raise NotFound("Call configuration missing for proposal")
    return proposal, call


def load_criteria(session: Session, criteria_ids: list[int]) -> list[CriterionSpec]:
    """Resolve criterion ids in order, skipping ids that no longer exist."""
    if not criteria_ids:
        return []
    rows = session.execute(
        select(EvaluationCriterion).where(EvaluationCriterion.id.in_(criteria_ids))
    ).scalars().all()
    by_id = {r.id: r for r in rows}
    return [CriterionSpec.from_record(by_id[cid]) for cid in criteria_ids if cid in by_id]


def set_assigned_list(proposal: Proposal, evaluator_ids: list[int]) -> None:
    proposal.assigned_evaluators_json = json_dump(list(dict.fromkeys(evaluator_ids)))
    proposal.updated_at = utcnow()


def users_by_id(session: Session, user_ids) -> dict[int, User]:
    ids = set(user_ids)
    if not ids:
        return {}
    rows = session.execute(select(User).where(User.id.in_(ids))).scalars().all()
    return {u.id: u for u in rows}


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def user_brief(user: User | None, user_id: int | None = None) -> dict[str, Any]:
    if user is None:
        return {"id": user_id, "name": "Unknown", "email": ""}
    return {"id": user.id, "name": user.name, "email": user.email}


def criterion_out(criterion: CriterionSpec) -> dict[str, Any]:
    return {
        "id": criterion.id, "name": criterion.name, "description": criterion.description,
        "weight": criterion.weight, "max_score": criterion.max_score,
        "require_comments": criterion.require_comments,
    }


def evaluation_out(evaluation: Evaluation) -> dict[str, Any]:
    return {
        "id": evaluation.id,
        "proposal_id": evaluation.proposal_id,
        "evaluator_id": evaluation.evaluator_id,
        "rubric": evaluation.rubric,
        "overall_score": evaluation.overall_score,
        "recommendation": evaluation.recommendation,
        "confidential_comments": evaluation.confidential_comments,
        "public_comments": evaluation.public_comments,
        "ai_assistance_used": evaluation.ai_assistance_used,
        "completed_at": iso(evaluation.completed_at),
    }


def assignment_out(assignment: EvaluatorAssignment) -> dict[str, Any]:
    return {
        "id": assignment.id,
        "proposal_id": assignment.proposal_id,
        "evaluator_id": assignment.evaluator_id,
        "status": assignment.status,
        "assignment_method": assignment.assignment_method,
        "assigned_at": iso(assignment.assigned_at),
        "assigned_by": assignment.assigned_by,
        "responded_at": iso(assignment.responded_at),
        "coi_declared": assignment.coi_declared,
        "decline_reason": assignment.decline_reason or None,
    }


def match_out(match: EvaluatorMatch) -> dict[str, Any]:
    return {
        "match_score": match.match_score,
        "expertise_score": match.expertise_score,
        "availability_score": match.availability_score,
        "performance_score": match.performance_score,
        "conflict_flags": json_parse(match.conflict_flags_json, []),
        "conflict_severity": match.conflict_severity,
        "reasoning": match.reasoning,
        "stale": match.stale,
    }


def proposal_summary(proposal: Proposal, *, hide_evaluators: bool = False) -> dict[str, Any]:
    return {
        "id": proposal.id,
        "call_id": proposal.call_id,
        "title": proposal.title,
        "status": proposal.status,
        "principal_investigator_id": proposal.principal_investigator_id,
        "team_members": proposal.team_members,
        "assigned_evaluators": [] if hide_evaluators else proposal.assigned_evaluators,
        "budget_total": proposal.budget_total,
        "submitted_at": iso(proposal.submitted_at),
        "decision": {
            "by": proposal.decision_by,
            "at": iso(proposal.decision_at),
            "note": proposal.decision_note,
        } if proposal.decision_by else None,
    }


def call_summary(call: Call) -> dict[str, Any]:
    return {
        "id": call.id,
        "title": call.title,
        "slug": call.slug,
        "status": call.status,
        "open_date": iso(call.open_date),
        "close_date": iso(call.close_date),
        "budget": {"total": call.budget_total, "min": call.budget_min, "max": call.budget_max},
        "evaluation_settings": {
            "evaluators_required": call.evaluators_required,
            "assignment_method": call.assignment_method,
            "blind_review": call.blind_review,
            "conflict_policies": json_parse(call.conflict_policies_json, []),
            "rubric_template_id": call.rubric_template_id,
        },
        "criteria_ids": call.criteria_ids,
    }


def template_out(template: RubricTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "criteria_ids": template.criteria_ids,
        "version": template.version,
        "source_template_id": template.source_template_id,
    }


def clarification_out(clarification: ClarificationRequest) -> dict[str, Any]:
    return {
        "id": clarification.id,
        "proposal_id": clarification.proposal_id,
        "evaluation_id": clarification.evaluation_id,
        "evaluator_id": clarification.evaluator_id,
        "request_text": clarification.request_text,
        "request_category": clarification.request_category,
        "requested_at": iso(clarification.requested_at),
        "response_text": clarification.response_text or None,
        "response_attachments": json_parse(clarification.response_attachments_json, []),
        "responded_at": iso(clarification.responded_at),
        "responded_by": clarification.responded_by,
        "status": clarification.status,
        "resolved_at": iso(clarification.resolved_at),
    }


def transaction_out(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "proposal_id": txn.proposal_id,
        "type": txn.type,
        "category": txn.category,
        "amount": txn.amount,
        "description": txn.description,
        "date": iso(txn.date),
        "milestone_index": txn.milestone_index,
        "approval_status": txn.approval_status,
        "approved_by": txn.approved_by,
        "rejection_reason": txn.rejection_reason or None,
    }
