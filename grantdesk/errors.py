"""Error taxonomy for grantdesk operations.

Every failure is synchronous and carries a short, user-facing message. The
HTTP layer maps each class to a status code via ``status_code``.
"""
from __future__ import annotations


class WorkflowError(Exception):
    """Base class for rejected operations."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AccessDenied(WorkflowError):
    """Caller lacks the role, or is not a party to the proposal."""
    status_code = 403


class InvalidRequest(WorkflowError):
    """Input or state does not satisfy a validation rule."""
    status_code = 422


class QuorumNotMet(WorkflowError):
    """Not enough completed evaluations to record a final decision."""
    status_code = 409

    def __init__(self, required: int, completed: int):
        super().__init__(
            f"At least {required} completed evaluations are required before finalizing "
            f"this decision ({completed} of {required} completed)."
        )
        self.required = required
        self.completed = completed


class NotFound(WorkflowError):
    status_code = 404
