"""Audit trail: one activity row per mutating operation."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from grantdesk.models import Activity
from grantdesk.utils import json_dump, utcnow

log = logging.getLogger(__name__)


def log_activity(
    session: Session,
    *,
    actor_id: int,
    action: str,
    entity_type: str,
    entity_id: int | str,
    details: dict[str, Any] | None = None,
) -> Activity:
    """Record an activity in the caller's session (committed with the mutation)."""
    record = Activity(
        user_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details_json=json_dump(details or {}),
        timestamp=utcnow(),
    )
    session.add(record)
    log.info("%s %s=%s by user %s", action, entity_type, entity_id, actor_id)
    return record
