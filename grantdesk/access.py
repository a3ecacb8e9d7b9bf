"""Actor identity and role checks.

The identity collaborator hands every operation an explicit ``Actor``; nothing
in grantdesk reads ambient session state.
"""
from __future__ import annotations

from dataclasses import dataclass

from grantdesk.errors import AccessDenied, InvalidRequest
from grantdesk.models import Call, Proposal

ROLES = ("sysadmin", "admin", "evaluator", "faculty", "finance", "observer")
ADMIN_ROLES = frozenset({"sysadmin", "admin"})
REVIEWER_ROLES = frozenset({"sysadmin", "admin", "evaluator"})
FINANCE_ROLES = frozenset({"sysadmin", "admin", "finance"})
AUTHOR_ROLES = frozenset({"sysadmin", "admin", "faculty"})


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise InvalidRequest(f"Unknown role: {self.role!r}")

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_reviewer(self) -> bool:
        return self.role in REVIEWER_ROLES

    @property
    def is_finance(self) -> bool:
        return self.role in FINANCE_ROLES


def require_admin(actor: Actor, message: str = "Unauthorized: admin access required") -> None:
    if not actor.is_admin:
        raise AccessDenied(message)


def require_reviewer(actor: Actor) -> None:
    if not actor.is_reviewer:
        raise AccessDenied("Reviewer permissions required")


def require_author(actor: Actor) -> None:
    if actor.role not in AUTHOR_ROLES:
        raise AccessDenied("Unauthorized: proposal author role required")


def is_owner(proposal: Proposal, actor: Actor) -> bool:
    """PI or team member."""
    return (
        proposal.principal_investigator_id == actor.user_id
        or actor.user_id in proposal.team_members
    )


def is_assigned(proposal: Proposal, actor: Actor) -> bool:
    return actor.user_id in proposal.assigned_evaluators


def ensure_reviewer_access(proposal: Proposal, actor: Actor) -> None:
    """Admins review anything; everyone else must be listed on the proposal."""
    if actor.is_admin:
        return
    if not is_assigned(proposal, actor):
        raise AccessDenied("You are not assigned to evaluate this proposal")


def can_access_proposal(proposal: Proposal, actor: Actor) -> bool:
    return actor.is_admin or is_owner(proposal, actor) or is_assigned(proposal, actor)


def hides_evaluators(call: Call | None, actor: Actor) -> bool:
    """Under blind review only the reviewer class sees evaluator identities."""
    return bool(call is not None and call.blind_review) and not actor.is_reviewer
