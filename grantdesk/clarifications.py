"""Clarification requests between evaluators and proposal owners.

Status flow: ``pending → responded → resolved``; a pending request may also be
``withdrawn`` by the evaluator who raised it. Attachments are opaque storage
references and are never opened here.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk import services
from grantdesk.access import (
    Actor, can_access_proposal, ensure_reviewer_access, hides_evaluators, is_owner, require_reviewer,
)
from grantdesk.activity import log_activity
from grantdesk.errors import AccessDenied, InvalidRequest, NotFound
from grantdesk.models import Call, ClarificationRequest, Evaluation, Proposal
from grantdesk.schemas import ClarificationCreate, ClarificationResponseIn
from grantdesk.utils import json_dump, sanitize_text, utcnow

log = logging.getLogger(__name__)


def _require_clarification(session: Session, clarification_id: int) -> ClarificationRequest:
    clarification = services.get_entity(session, ClarificationRequest, clarification_id)
    if clarification is None:
        raise NotFound("Clarification request not found")
    return clarification


def create_clarification(
    session: Session, actor: Actor, proposal_id: int, body: ClarificationCreate,
) -> ClarificationRequest:
    require_reviewer(actor)
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    ensure_reviewer_access(proposal, actor)

    text = sanitize_text(body.request_text)
    if not text:
        raise InvalidRequest("Clarification request text is required")
    if body.evaluation_id is not None:
        evaluation = services.get_entity(session, Evaluation, body.evaluation_id)
        if evaluation is None or evaluation.proposal_id != proposal.id:
            raise NotFound("Evaluation not found")

    now = utcnow()
    clarification = ClarificationRequest(
        proposal_id=proposal.id,
        evaluation_id=body.evaluation_id,
        evaluator_id=actor.user_id,
        request_text=text,
        request_category=body.request_category,
        requested_at=now,
        status="pending",
        updated_at=now,
    )
    session.add(clarification)
    session.flush()
    log_activity(
        session, actor_id=actor.user_id, action="clarification.requested", entity_type="proposal",
        entity_id=proposal.id, details={"clarification_id": clarification.id, "category": body.request_category},
    )
    return clarification


def respond_to_clarification(
    session: Session, actor: Actor, clarification_id: int, body: ClarificationResponseIn,
) -> ClarificationRequest:
    clarification = _require_clarification(session, clarification_id)
    proposal = services.require_entity(session, Proposal, clarification.proposal_id, "Proposal")
    if not actor.is_admin and not is_owner(proposal, actor):
        raise AccessDenied("Only the PI, team members, or admins can respond to clarification requests")
    if clarification.status != "pending":
        raise InvalidRequest(f"This clarification request is already {clarification.status}")

    text = sanitize_text(body.response_text)
    if not text:
        raise InvalidRequest("Response text is required")

    now = utcnow()
    clarification.response_text = text
    clarification.response_attachments_json = json_dump([
        {"storage_id": a.storage_id, "name": sanitize_text(a.name), "uploaded_at": now.isoformat()}
        for a in body.attachments
    ])
    clarification.responded_at = now
    clarification.responded_by = actor.user_id
    clarification.status = "responded"
    clarification.updated_at = now
    log_activity(
        session, actor_id=actor.user_id, action="clarification.responded", entity_type="proposal",
        entity_id=proposal.id,
        details={"clarification_id": clarification.id, "has_attachments": bool(body.attachments)},
    )
    session.flush()
    return clarification


def resolve_clarification(session: Session, actor: Actor, clarification_id: int) -> ClarificationRequest:
    clarification = _require_clarification(session, clarification_id)
    if clarification.evaluator_id != actor.user_id and not actor.is_admin:
        raise AccessDenied("Only the requesting evaluator can mark this as resolved")
    if clarification.status in ("resolved", "withdrawn"):
        raise InvalidRequest(f"This clarification request is already {clarification.status}")

    now = utcnow()
    clarification.status = "resolved"
    clarification.resolved_at = now
    clarification.updated_at = now
    log_activity(
        session, actor_id=actor.user_id, action="clarification.resolved", entity_type="proposal",
        entity_id=clarification.proposal_id, details={"clarification_id": clarification.id},
    )
    session.flush()
    return clarification


def withdraw_clarification(session: Session, actor: Actor, clarification_id: int) -> ClarificationRequest:
    clarification = _require_clarification(session, clarification_id)
    if clarification.evaluator_id != actor.user_id:
        raise AccessDenied("Only the requesting evaluator can withdraw this request")
    if clarification.status != "pending":
        raise InvalidRequest("Only pending clarification requests can be withdrawn")

    clarification.status = "withdrawn"
    clarification.updated_at = utcnow()
    log_activity(
        session, actor_id=actor.user_id, action="clarification.withdrawn", entity_type="proposal",
        entity_id=clarification.proposal_id, details={"clarification_id": clarification.id},
    )
    session.flush()
    return clarification


def list_clarifications(session: Session, actor: Actor, proposal_id: int) -> list[dict[str, Any]]:
    """All requests on a proposal, newest first.

    Under blind review, proposal owners see requests without evaluator names.
    """
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    if not can_access_proposal(proposal, actor):
        raise AccessDenied("Access denied")

    call = services.get_entity(session, Call, proposal.call_id)
    hide_evaluators = hides_evaluators(call, actor)

    rows = session.execute(
        select(ClarificationRequest)
        .where(ClarificationRequest.proposal_id == proposal.id)
        .order_by(ClarificationRequest.requested_at.desc(), ClarificationRequest.id.desc())
    ).scalars().all()
    people = services.users_by_id(
        session, [r.evaluator_id for r in rows] + [r.responded_by for r in rows if r.responded_by],
    )

    results = []
    for row in rows:
        out = services.clarification_out(row)
        evaluator = people.get(row.evaluator_id)
        responder = people.get(row.responded_by) if row.responded_by else None
        if hide_evaluators:
            out["evaluator_id"] = None
            out["evaluator"] = {"name": "Anonymous Reviewer"}
        else:
            out["evaluator"] = {"id": evaluator.id, "name": evaluator.name} if evaluator else None
        out["responder"] = {"id": responder.id, "name": responder.name} if responder else None
        results.append(out)
    return results
