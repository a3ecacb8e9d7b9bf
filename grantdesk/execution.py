"""Post-approval project tracking: milestones, transactions, budget execution, alerts.

An approved proposal becomes a project with ``start_execution``. From then on
its milestone list mirrors the proposal timeline one-to-one (by index) and its
budget snapshot is recomputed from approved transactions after every change.
Alerts are derived state: they are rebuilt from milestones and budget, never
edited directly.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk import services
from grantdesk.access import Actor, hides_evaluators, is_owner, require_admin
from grantdesk.activity import log_activity
from grantdesk.errors import AccessDenied, InvalidRequest
from grantdesk.lifecycle import transition_proposal
from grantdesk.models import Call, Proposal, Transaction
from grantdesk.schemas import MilestoneUpdate, TransactionIn, TransactionReviewIn
from grantdesk.utils import json_dump, json_parse, naive_utc, sanitize_text, utcnow

log = logging.getLogger(__name__)

PROJECT_STATUSES = frozenset({"approved", "in_execution", "completed"})
BUDGET_ALERT_THRESHOLD = 0.9
DEADLINE_WARNING_DAYS = 7


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _require_in_execution(proposal: Proposal) -> None:
    if proposal.status != "in_execution":
        raise InvalidRequest("Project is not in execution")


def _load_transactions(session: Session, proposal_id: int) -> list[Transaction]:
    return list(session.execute(
        select(Transaction).where(Transaction.proposal_id == proposal_id).order_by(Transaction.id)
    ).scalars().all())


# ---------------------------------------------------------------------------
# Derived state
# ---------------------------------------------------------------------------


def compute_budget_execution(
    proposal: Proposal, transactions: Iterable[Transaction], now: datetime | None = None,
) -> dict[str, Any]:
    """Aggregate transactions against the approved budget.

    Only approved transactions count as spent or disbursed; pending ones are
    reported separately and rejected ones are ignored.
    """
    committed = proposal.budget_total or 0.0
    spent = disbursed = pending = 0.0
    spent_by_category: dict[str, float] = defaultdict(float)

    for txn in transactions:
        if txn.approval_status == "pending":
            pending += txn.amount
        elif txn.approval_status == "approved":
            if txn.type == "expense":
                spent += txn.amount
                spent_by_category[txn.category] += txn.amount
            else:
                disbursed += txn.amount

    committed_by_category: dict[str, float] = defaultdict(float)
    for item in json_parse(proposal.budget_breakdown_json, []):
        committed_by_category[item.get("category", "")] += float(item.get("amount", 0))

    by_category = []
    for category, allocated in committed_by_category.items():
        used = spent_by_category.get(category, 0.0)
        by_category.append({
            "category": category,
            "committed": round(allocated, 2),
            "spent": round(used, 2),
            "percent_utilized": round(used / allocated * 100, 2) if allocated > 0 else 0.0,
        })

    variance = committed - spent
    return {
        "committed": round(committed, 2),
        "disbursed": round(disbursed, 2),
        "spent": round(spent, 2),
        "available": round(committed - spent, 2),
        "pending_approval": round(pending, 2),
        "by_category": by_category,
        "variance": round(variance, 2),
        "variance_percent": round(variance / committed * 100, 2) if committed > 0 else 0.0,
        "last_updated": (now or utcnow()).isoformat(),
    }


def compute_alerts(
    milestones: list[dict[str, Any]], budget: dict[str, Any], now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Overdue milestones, milestones due within a week, and budget use at or above 90%."""
    now = now or utcnow()
    alerts = []
    for m in milestones:
        if m["status"] == "completed":
            continue
        deadline = _parse_dt(m.get("actual_deadline") or m.get("planned_deadline"))
        if deadline is None:
            continue
        if deadline < now:
            alerts.append({
                "type": "overdue_milestone", "severity": "critical",
                "message": f'Milestone "{m["name"]}" is overdue',
                "entity_id": str(m["milestone_index"]), "created_at": now.isoformat(),
            })
        elif deadline - now <= timedelta(days=DEADLINE_WARNING_DAYS):
            alerts.append({
                "type": "deadline_approaching", "severity": "warning",
                "message": f'Milestone "{m["name"]}" is due within {DEADLINE_WARNING_DAYS} days',
                "entity_id": str(m["milestone_index"]), "created_at": now.isoformat(),
            })

    committed = budget.get("committed") or 0
    if committed > 0:
        ratio = budget.get("spent", 0) / committed
        if ratio >= BUDGET_ALERT_THRESHOLD:
            alerts.append({
                "type": "budget_threshold", "severity": "critical" if ratio >= 1 else "warning",
                "message": f"{ratio * 100:.0f}% of the approved budget has been spent",
                "entity_id": None, "created_at": now.isoformat(),
            })
    return alerts


def refresh_execution(session: Session, proposal: Proposal, now: datetime | None = None) -> None:
    now = now or utcnow()
    budget = compute_budget_execution(proposal, _load_transactions(session, proposal.id), now)
    milestones = json_parse(proposal.milestone_execution_json, [])
    proposal.budget_execution_json = json_dump(budget)
    proposal.active_alerts_json = json_dump(compute_alerts(milestones, budget, now))
    proposal.updated_at = now


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def start_execution(session: Session, actor: Actor, proposal_id: int, kickoff_date: datetime | None = None) -> Proposal:
    require_admin(actor)
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    if proposal.status != "approved":
        raise InvalidRequest("Only approved proposals can start execution")

    now = utcnow()
    milestones = [
        {
            "milestone_index": index,
            "name": item.get("milestone", ""),
            "status": "not_started",
            "planned_deadline": item.get("deadline"),
            "actual_deadline": None,
            "started_at": None,
            "completed_at": None,
            "days_delayed": 0,
            "delay_reason": "",
            "deliverables": [
                {"name": name, "required": True, "status": "pending"} for name in item.get("deliverables", [])
            ],
        }
        for index, item in enumerate(json_parse(proposal.timeline_json, []))
    ]

    transition_proposal(proposal, "in_execution")
    proposal.kickoff_date = naive_utc(kickoff_date) or now
    proposal.actual_start_date = now
    proposal.milestone_execution_json = json_dump(milestones)
    refresh_execution(session, proposal, now)
    log_activity(
        session, actor_id=actor.user_id, action="project.started", entity_type="proposal",
        entity_id=proposal.id, details={"milestones": len(milestones)},
    )
    session.flush()
    return proposal


def update_milestone(
    session: Session, actor: Actor, proposal_id: int, milestone_index: int, body: MilestoneUpdate,
) -> dict[str, Any]:
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    if not actor.is_admin and not is_owner(proposal, actor):
        raise AccessDenied("Unauthorized: Must be PI, team member, or admin")
    _require_in_execution(proposal)

    milestones = json_parse(proposal.milestone_execution_json, [])
    if not 0 <= milestone_index < len(milestones):
        raise InvalidRequest("Milestone not found")
    milestone = milestones[milestone_index]
    if body.status == "delayed" and not sanitize_text(body.delay_reason):
        raise InvalidRequest("A delay reason is required")

    now = utcnow()
    milestone["status"] = body.status
    if body.actual_deadline is not None:
        milestone["actual_deadline"] = naive_utc(body.actual_deadline).isoformat()
    if body.delay_reason:
        milestone["delay_reason"] = sanitize_text(body.delay_reason)
    if body.status == "in_progress" and not milestone.get("started_at"):
        milestone["started_at"] = now.isoformat()
    if body.status == "completed":
        milestone["completed_at"] = now.isoformat()
        planned = _parse_dt(milestone.get("planned_deadline"))
        milestone["days_delayed"] = max((now - planned).days, 0) if planned else 0

    proposal.milestone_execution_json = json_dump(milestones)
    refresh_execution(session, proposal, now)
    log_activity(
        session, actor_id=actor.user_id, action="project.milestone_updated", entity_type="proposal",
        entity_id=proposal.id, details={"milestone_index": milestone_index, "status": body.status},
    )
    session.flush()
    return milestone


def complete_project(session: Session, actor: Actor, proposal_id: int) -> Proposal:
    require_admin(actor)
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    _require_in_execution(proposal)
    milestones = json_parse(proposal.milestone_execution_json, [])
    if any(m["status"] != "completed" for m in milestones):
        raise InvalidRequest("All milestones must be completed before closing the project")

    now = utcnow()
    transition_proposal(proposal, "completed")
    proposal.actual_end_date = now
    refresh_execution(session, proposal, now)
    log_activity(
        session, actor_id=actor.user_id, action="project.completed", entity_type="proposal",
        entity_id=proposal.id, details={"milestones": len(milestones)},
    )
    session.flush()
    return proposal


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def record_transaction(session: Session, actor: Actor, proposal_id: int, body: TransactionIn) -> Transaction:
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    if not actor.is_finance and not is_owner(proposal, actor):
        raise AccessDenied("Unauthorized to record transactions for this project")
    _require_in_execution(proposal)

    category = sanitize_text(body.category)
    categories = {item.get("category") for item in json_parse(proposal.budget_breakdown_json, [])}
    if category not in categories:
        raise InvalidRequest("Category is not part of the approved budget")
    if body.milestone_index is not None:
        if not 0 <= body.milestone_index < len(json_parse(proposal.milestone_execution_json, [])):
            raise InvalidRequest("Milestone not found")

    now = utcnow()
    txn = Transaction(
        proposal_id=proposal.id,
        type=body.type,
        category=category,
        amount=body.amount,
        description=sanitize_text(body.description),
        date=naive_utc(body.date) or now,
        milestone_index=body.milestone_index,
        approval_status="pending",
        created_by=actor.user_id,
        created_at=now,
        updated_at=now,
    )
    session.add(txn)
    session.flush()
    refresh_execution(session, proposal, now)
    log_activity(
        session, actor_id=actor.user_id, action="transaction.recorded", entity_type="proposal",
        entity_id=proposal.id,
        details={"transaction_id": txn.id, "type": txn.type, "amount": txn.amount, "category": category},
    )
    return txn


def review_transaction(session: Session, actor: Actor, transaction_id: int, body: TransactionReviewIn) -> Transaction:
    if not actor.is_finance:
        raise AccessDenied("Unauthorized: finance access required")
    txn = services.require_entity(session, Transaction, transaction_id, "Transaction")
    if txn.approval_status != "pending":
        raise InvalidRequest("Transaction has already been reviewed")
    reason = sanitize_text(body.reason)
    if not body.approve and not reason:
        raise InvalidRequest("A rejection reason is required")

    now = utcnow()
    txn.approval_status = "approved" if body.approve else "rejected"
    txn.approved_by = actor.user_id
    txn.rejection_reason = "" if body.approve else reason
    txn.updated_at = now
    session.flush()

    proposal = services.require_entity(session, Proposal, txn.proposal_id, "Proposal")
    refresh_execution(session, proposal, now)
    log_activity(
        session, actor_id=actor.user_id, action=f"transaction.{txn.approval_status}", entity_type="proposal",
        entity_id=proposal.id, details={"transaction_id": txn.id, "amount": txn.amount},
    )
    session.flush()
    return txn


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------


def project_detail(session: Session, actor: Actor, proposal_id: int) -> dict[str, Any]:
    proposal = services.require_entity(session, Proposal, proposal_id, "Proposal")
    if proposal.status not in PROJECT_STATUSES:
        raise InvalidRequest("Not a project - proposal has not been approved")
    owner = is_owner(proposal, actor)
    finance = actor.is_finance
    if not owner and not finance:
        raise AccessDenied("Unauthorized: Must be PI, team member, or admin")

    call = services.get_entity(session, Call, proposal.call_id)
    people = services.users_by_id(session, [proposal.principal_investigator_id, *proposal.team_members])
    transactions = _load_transactions(session, proposal.id)

    out = services.proposal_summary(proposal, hide_evaluators=hides_evaluators(call, actor))
    out.update({
        "call": {"id": call.id, "title": call.title, "slug": call.slug} if call else None,
        "principal_investigator": services.user_brief(
            people.get(proposal.principal_investigator_id), proposal.principal_investigator_id,
        ),
        "team": [services.user_brief(people.get(uid), uid) for uid in proposal.team_members],
        "timeline": json_parse(proposal.timeline_json, []),
        "kickoff_date": services.iso(proposal.kickoff_date),
        "actual_start_date": services.iso(proposal.actual_start_date),
        "actual_end_date": services.iso(proposal.actual_end_date),
        "milestone_execution": json_parse(proposal.milestone_execution_json, []),
        "budget_execution": json_parse(proposal.budget_execution_json, {}) or None,
        "active_alerts": json_parse(proposal.active_alerts_json, []),
        "transactions": [services.transaction_out(t) for t in transactions],
        "can_edit": actor.is_admin or proposal.principal_investigator_id == actor.user_id,
        "can_view_financials": finance or proposal.principal_investigator_id == actor.user_id,
    })
    return out
