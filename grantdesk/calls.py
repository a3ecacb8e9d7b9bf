"""Funding calls and rubric templates (admin authoring)."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from grantdesk import services
from grantdesk.access import Actor, require_admin
from grantdesk.activity import log_activity
from grantdesk.errors import InvalidRequest, NotFound
from grantdesk.models import Call, EvaluationCriterion, RubricTemplate
from grantdesk.rubric import validate_criteria
from grantdesk.schemas import CallCreate, CriterionIn, TemplateIn
from grantdesk.utils import json_dump, json_parse, naive_utc, sanitize_list, sanitize_text, slugify, utcnow

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


def _unique_slug(session: Session, base: str) -> str:
    candidate = base
    counter = 1
    while session.execute(select(Call.id).where(Call.slug == candidate)).first() is not None:
        counter += 1
        candidate = f"{base}-{counter}"
    return candidate


def create_call(session: Session, actor: Actor, body: CallCreate) -> Call:
    require_admin(actor)

    if naive_utc(body.close_date) <= naive_utc(body.open_date):
        raise InvalidRequest("Close date must be after open date")
    if body.budget_min > body.budget_max:
        raise InvalidRequest("Minimum budget per project cannot exceed maximum")
    if body.budget_max > body.budget_total:
        raise InvalidRequest("Per-project maximum cannot exceed total call budget")
    if body.evaluators_required < 1:
        raise InvalidRequest("At least one evaluator is required")
    if body.grace_period_hours < 0:
        raise InvalidRequest("Grace period cannot be negative")

    criteria_ids: list[int] = []
    if body.rubric_template_id is not None:
        template = services.get_entity(session, RubricTemplate, body.rubric_template_id)
        if template is None:
            raise NotFound("Rubric template not found")
        criteria_ids = template.criteria_ids

    base_slug = slugify((body.slug or "").strip() or body.title)
    now = utcnow()
    call = Call(
        title=sanitize_text(body.title),
        slug=_unique_slug(session, base_slug) if base_slug else "",
        description=sanitize_text(body.description),
        status=body.status,
        open_date=naive_utc(body.open_date),
        close_date=naive_utc(body.close_date),
        evaluation_start=naive_utc(body.evaluation_start),
        evaluation_end=naive_utc(body.evaluation_end),
        decision_date=naive_utc(body.decision_date),
        project_start=naive_utc(body.project_start),
        project_end=naive_utc(body.project_end),
        grace_period_hours=body.grace_period_hours,
        budget_total=body.budget_total,
        budget_min=body.budget_min,
        budget_max=body.budget_max,
        allowed_categories_json=json_dump(sanitize_list(body.allowed_categories)),
        evaluators_required=body.evaluators_required,
        assignment_method=body.assignment_method,
        blind_review=body.blind_review,
        conflict_policies_json=json_dump(sanitize_list(body.conflict_policies)),
        rubric_template_id=body.rubric_template_id,
        criteria_ids_json=json_dump(criteria_ids),
        created_by=actor.user_id,
        created_at=now,
        updated_at=now,
        published_at=now if body.status == "open" else None,
    )
    session.add(call)
    session.flush()
    log_activity(
        session, actor_id=actor.user_id, action="call.created", entity_type="call", entity_id=call.id,
        details={"title": call.title, "status": call.status, "criteria_count": len(criteria_ids)},
    )
    return call


def update_call_status(session: Session, actor: Actor, call_id: int, status: str) -> Call:
    require_admin(actor)
    call = services.require_entity(session, Call, call_id, "Call")
    now = utcnow()
    if status == "open" and call.open_date > now:
        raise InvalidRequest("Cannot open a call before its scheduled open date")

    previous = call.status
    call.status = status
    call.published_at = now if status == "open" else None
    call.updated_at = now
    log_activity(
        session, actor_id=actor.user_id, action="call.status_updated", entity_type="call", entity_id=call.id,
        details={"from": previous, "to": status},
    )
    session.flush()
    return call


def list_calls(session: Session, status: str | None = None) -> list[Call]:
    stmt = select(Call).order_by(Call.open_date.desc())
    if status:
        stmt = stmt.where(Call.status == status)
    return list(session.execute(stmt).scalars().all())


# ---------------------------------------------------------------------------
# Rubric templates
# ---------------------------------------------------------------------------


def _create_criteria(session: Session, criteria: list[CriterionIn]) -> list[int]:
    records = [
        EvaluationCriterion(
            name=sanitize_text(c.name),
            description=sanitize_text(c.description),
            weight=float(c.weight),
            max_score=float(c.max_score),
            scale_json=json_dump([
                {"score": float(step.score), "descriptor": sanitize_text(step.descriptor)} for step in c.scale
            ]),
            type=c.type,
            require_comments=bool(c.require_comments),
            created_at=utcnow(),
        )
        for c in criteria
    ]
    session.add_all(records)
    session.flush()
    return [r.id for r in records]


def create_template(
    session: Session, actor: Actor, body: TemplateIn, source_template_id: int | None = None,
) -> RubricTemplate:
    require_admin(actor, "Admin privileges required")
    validate_criteria(body.criteria)
    now = utcnow()
    template = RubricTemplate(
        name=sanitize_text(body.name),
        description=sanitize_text(body.description),
        criteria_ids_json=json_dump(_create_criteria(session, body.criteria)),
        version=1,
        created_by=actor.user_id,
        source_template_id=source_template_id,
        created_at=now,
        updated_at=now,
    )
    session.add(template)
    session.flush()
    log_activity(
        session, actor_id=actor.user_id, action="rubric.template_created", entity_type="rubric",
        entity_id=template.id, details={"name": template.name, "criteria_count": len(body.criteria)},
    )
    return template


def update_template(session: Session, actor: Actor, template_id: int, body: TemplateIn) -> RubricTemplate:
    """Replace the template's criteria with fresh records and bump its version.

    Calls created earlier keep pointing at the old criterion ids.
    """
    require_admin(actor, "Admin privileges required")
    template = services.require_entity(session, RubricTemplate, template_id, "Rubric template")
    validate_criteria(body.criteria)

    template.name = sanitize_text(body.name)
    template.description = sanitize_text(body.description)
    template.criteria_ids_json = json_dump(_create_criteria(session, body.criteria))
    template.version = (template.version or 1) + 1
    template.updated_at = utcnow()
    log_activity(
        session, actor_id=actor.user_id, action="rubric.template_updated", entity_type="rubric",
        entity_id=template.id,
        details={"name": template.name, "criteria_count": len(body.criteria), "version": template.version},
    )
    session.flush()
    return template


def duplicate_template(session: Session, actor: Actor, template_id: int, name: str) -> RubricTemplate:
    require_admin(actor, "Admin privileges required")
    source = services.require_entity(session, RubricTemplate, template_id, "Rubric template")
    records = session.execute(
        select(EvaluationCriterion).where(EvaluationCriterion.id.in_(source.criteria_ids))
    ).scalars().all()
    by_id = {r.id: r for r in records}
    criteria = [
        CriterionIn(
            name=r.name, description=r.description, weight=r.weight, max_score=r.max_score,
            type=r.type, scale=json_parse(r.scale_json, []), require_comments=bool(r.require_comments),
        )
        for r in (by_id[cid] for cid in source.criteria_ids if cid in by_id)
    ]
    if not criteria:
        raise InvalidRequest("Cannot duplicate an empty rubric template")

    now = utcnow()
    duplicate = RubricTemplate(
        name=sanitize_text(name),
        description=source.description,
        criteria_ids_json=json_dump(_create_criteria(session, criteria)),
        version=1,
        created_by=actor.user_id,
        source_template_id=source.id,
        created_at=now,
        updated_at=now,
    )
    session.add(duplicate)
    session.flush()
    log_activity(
        session, actor_id=actor.user_id, action="rubric.template_duplicated", entity_type="rubric",
        entity_id=duplicate.id, details={"source_template_id": source.id, "criteria_count": len(criteria)},
    )
    return duplicate


def list_templates(session: Session, actor: Actor) -> list[dict[str, Any]]:
    """Templates with their resolved criteria, most recently updated first."""
    require_admin(actor, "Admin privileges required")
    templates = session.execute(select(RubricTemplate)).scalars().all()
    results = []
    for template in templates:
        out = services.template_out(template)
        out["criteria"] = [services.criterion_out(c) for c in services.load_criteria(session, template.criteria_ids)]
        out["updated_at"] = services.iso(template.updated_at or template.created_at)
        results.append(out)
    results.sort(key=lambda t: t["updated_at"] or "", reverse=True)
    return results
