"""Proposal authoring: one proposal per principal investigator per call."""
from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk import services
from grantdesk.access import Actor, can_access_proposal, hides_evaluators, require_author
from grantdesk.activity import log_activity
from grantdesk.errors import AccessDenied, InvalidRequest, NotFound
from grantdesk.lifecycle import review_progress, transition_proposal
from grantdesk.models import Call, Proposal
from grantdesk.schemas import ProposalDraftIn
from grantdesk.utils import json_dump, json_parse, naive_utc, sanitize_list, sanitize_text, utcnow

log = logging.getLogger(__name__)

EDITABLE_STATUSES = frozenset({"draft", "revise_and_resubmit"})


def _find_own(session: Session, actor: Actor, call_id: int) -> Proposal | None:
    return session.execute(
        select(Proposal).where(
            Proposal.call_id == call_id, Proposal.principal_investigator_id == actor.user_id,
        )
    ).scalars().first()


def submission_deadline(call: Call):
    return call.close_date + timedelta(hours=call.grace_period_hours or 0)


def save_proposal_draft(session: Session, actor: Actor, call_id: int, body: ProposalDraftIn) -> Proposal:
    """Create or update the caller's proposal for *call_id*.

    The proposal keeps its status: a draft stays a draft and a proposal sent
    back for revision stays ``revise_and_resubmit`` until it is resubmitted.
    """
    require_author(actor)
    services.require_entity(session, Call, call_id, "Call")

    proposal = _find_own(session, actor, call_id)
    if proposal is not None and proposal.status not in EDITABLE_STATUSES:
        raise InvalidRequest("Only drafts can be edited")

    timeline = [
        {
            "milestone": sanitize_text(m.milestone),
            "deadline": naive_utc(m.deadline).isoformat(),
            "deliverables": sanitize_list(m.deliverables),
            "success_criteria": sanitize_text(m.success_criteria),
        }
        for m in body.timeline
    ]
    breakdown = [
        {
            "category": sanitize_text(item.category),
            "description": sanitize_text(item.description),
            "quantity": item.quantity,
            "unit_cost": item.unit_cost,
            "amount": round(item.quantity * item.unit_cost, 2),
            "justification": sanitize_text(item.justification),
        }
        for item in body.budget_items
    ]
    budget_total = round(sum(item["amount"] for item in breakdown), 2)

    created = proposal is None
    if created:
        proposal = Proposal(
            call_id=call_id, principal_investigator_id=actor.user_id, status="draft", created_at=utcnow(),
        )
        session.add(proposal)

    proposal.title = sanitize_text(body.title)
    proposal.abstract = sanitize_text(body.abstract)
    proposal.problem_statement = sanitize_text(body.problem_statement)
    proposal.general_objective = sanitize_text(body.general_objective)
    proposal.specific_objectives_json = json_dump(sanitize_list(body.specific_objectives))
    proposal.methodology = sanitize_text(body.methodology)
    proposal.keywords_json = json_dump(sanitize_list(body.keywords))
    proposal.team_members_json = json_dump([m for m in dict.fromkeys(body.team_members) if m != actor.user_id])
    proposal.timeline_json = json_dump(timeline)
    proposal.budget_breakdown_json = json_dump(breakdown)
    proposal.budget_total = budget_total
    proposal.updated_at = utcnow()
    session.flush()

    log_activity(
        session, actor_id=actor.user_id,
        action="proposal.draft_created" if created else "proposal.draft_updated",
        entity_type="proposal", entity_id=proposal.id,
        details={"call_id": call_id, "budget_total": budget_total},
    )
    return proposal


def submit_proposal(session: Session, actor: Actor, call_id: int) -> Proposal:
    require_author(actor)
    call = services.require_entity(session, Call, call_id, "Call")
    proposal = _find_own(session, actor, call_id)
    if proposal is None:
        raise NotFound("Proposal draft not found")
    if proposal.status not in EDITABLE_STATUSES:
        raise InvalidRequest("Only drafts can be submitted")

    if not proposal.title:
        raise InvalidRequest("Proposal title is required")
    if not proposal.abstract:
        raise InvalidRequest("Abstract is required")
    if not proposal.problem_statement:
        raise InvalidRequest("Problem statement is required")
    if not proposal.general_objective or not json_parse(proposal.specific_objectives_json, []):
        raise InvalidRequest("Objectives must be completed before submission")
    if not proposal.methodology:
        raise InvalidRequest("Methodology is required")
    if not json_parse(proposal.timeline_json, []):
        raise InvalidRequest("At least one milestone is required")
    if not json_parse(proposal.budget_breakdown_json, []):
        raise InvalidRequest("Budget items are required")

    now = utcnow()
    if now > submission_deadline(call):
        raise InvalidRequest("Submission deadline has passed")
    if proposal.budget_total < (call.budget_min or 0):
        raise InvalidRequest("Budget total below minimum for this call")
    if call.budget_max and proposal.budget_total > call.budget_max:
        raise InvalidRequest("Budget total exceeds maximum for this call")

    resubmission = proposal.status == "revise_and_resubmit"
    transition_proposal(proposal, "submitted")
    proposal.submitted_at = now
    log_activity(
        session, actor_id=actor.user_id, action="proposal.submitted", entity_type="proposal",
        entity_id=proposal.id, details={"call_id": call_id, "resubmission": resubmission},
    )
    session.flush()
    return proposal


def owner_summary(session: Session, actor: Actor, proposal: Proposal) -> dict:
    """Proposal summary with evaluator ids withheld when the call is blind-reviewed."""
    call = services.get_entity(session, Call, proposal.call_id)
    return services.proposal_summary(proposal, hide_evaluators=hides_evaluators(call, actor))


def list_my_proposals(session: Session, actor: Actor) -> list[dict]:
    proposals = session.execute(
        select(Proposal).where(Proposal.principal_investigator_id == actor.user_id).order_by(Proposal.id.desc())
    ).scalars().all()
    return [owner_summary(session, actor, p) for p in proposals]


def proposal_detail(session: Session, actor: Actor, proposal_id: int) -> dict:
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    if not can_access_proposal(proposal, actor):
        raise AccessDenied("Unauthorized access to proposal")
    out = owner_summary(session, actor, proposal)
    out.update({
        "abstract": proposal.abstract,
        "problem_statement": proposal.problem_statement,
        "general_objective": proposal.general_objective,
        "specific_objectives": json_parse(proposal.specific_objectives_json, []),
        "methodology": proposal.methodology,
        "keywords": json_parse(proposal.keywords_json, []),
        "timeline": json_parse(proposal.timeline_json, []),
        "budget_breakdown": json_parse(proposal.budget_breakdown_json, []),
    })
    if actor.is_admin:
        call = services.get_entity(session, Call, proposal.call_id)
        out["review_progress"] = review_progress(session, proposal, call)
    return out
