"""Pydantic request/response schemas for the grantdesk API."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

Recommendation = Literal["approve", "approve_with_modifications", "reject", "revise_and_resubmit"]
Decision = Literal["approved", "rejected", "revise_and_resubmit"]
AssignmentStatus = Literal["pending", "accepted", "declined", "removed"]
AssignmentMethod = Literal["manual", "auto_balanced", "ai_matched"]
CallStatus = Literal["draft", "open", "closed", "archived"]
Completeness = Literal["all", "needs_assignment", "partial", "complete"]
ClarificationCategory = Literal["methodology", "budget", "timeline", "team", "impact", "other"]
MilestoneStatus = Literal["not_started", "in_progress", "completed", "delayed", "blocked"]


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


class RubricEntryIn(BaseModel):
    """One submitted criterion score. Unknown keys (e.g. ``max_score``) are ignored."""
    criterion_id: int
    score: float | None = None
    comments: str = ""
    strengths: list[str] = []
    weaknesses: list[str] = []


class EvaluationDraftIn(BaseModel):
    rubric: list[RubricEntryIn] = []
    recommendation: Recommendation | None = None
    confidential_comments: str = ""
    public_comments: str = ""
    ai_assistance_used: bool = False


class EvaluationSubmitIn(EvaluationDraftIn):
    recommendation: Recommendation


class RubricEntryOut(BaseModel):
    criterion_id: int
    score: float
    max_score: float
    comments: str
    strengths: list[str]
    weaknesses: list[str]


class EvaluationOut(BaseModel):
    id: int
    proposal_id: int
    evaluator_id: int
    rubric: list[RubricEntryOut]
    overall_score: float
    recommendation: Recommendation | None = None
    confidential_comments: str = ""
    public_comments: str = ""
    ai_assistance_used: bool = False
    completed_at: str | None = None


class DecisionIn(BaseModel):
    decision: Decision
    note: str | None = None


# ---------------------------------------------------------------------------
# Assignments & matrix
# ---------------------------------------------------------------------------


class AssignmentStatusIn(BaseModel):
    status: AssignmentStatus
    decline_reason: str | None = None
    decline_comment: str | None = None
    coi_declared: bool | None = None
    coi_details: str | None = None


class AssignedEvaluatorsIn(BaseModel):
    evaluator_ids: list[int]


class QuickAssignIn(BaseModel):
    proposal_id: int
    evaluator_id: int


class MatrixFilters(BaseModel):
    call_ids: list[int] = []
    proposal_status: list[str] = []
    evaluator_campus: list[str] = []
    evaluator_department: list[str] = []
    evaluator_expertise: list[str] = []
    only_available: bool = False
    assignment_status: Completeness = "all"


class WorkloadOut(BaseModel):
    evaluator_id: int
    total: int
    pending: int
    in_progress: int
    completed: int
    utilization_rate: float


# ---------------------------------------------------------------------------
# Rubric templates & calls
# ---------------------------------------------------------------------------


class ScaleStep(BaseModel):
    score: float
    descriptor: str


class CriterionIn(BaseModel):
    name: str
    description: str = ""
    weight: float
    max_score: float
    type: str
    scale: list[ScaleStep] = []
    require_comments: bool = False


class TemplateIn(BaseModel):
    name: str
    description: str = ""
    criteria: list[CriterionIn]


class TemplateDuplicateIn(BaseModel):
    name: str


class CallCreate(BaseModel):
    title: str
    slug: str | None = None
    description: str = ""
    open_date: datetime
    close_date: datetime
    evaluation_start: datetime | None = None
    evaluation_end: datetime | None = None
    decision_date: datetime | None = None
    project_start: datetime | None = None
    project_end: datetime | None = None
    grace_period_hours: float = 0
    budget_total: float
    budget_min: float = 0
    budget_max: float
    allowed_categories: list[str] = []
    evaluators_required: int = 1
    assignment_method: AssignmentMethod = "manual"
    blind_review: bool = False
    conflict_policies: list[str] = []
    rubric_template_id: int | None = None
    status: CallStatus = "draft"

    @field_validator("slug")
    @classmethod
    def slug_must_be_safe(cls, v: str | None) -> str | None:
        if v is not None and v.strip() and not re.match(r"^[a-zA-Z0-9 _-]+$", v.strip()):
            raise ValueError("slug must contain only letters, numbers, spaces, hyphens, and underscores")
        return v


class CallStatusIn(BaseModel):
    status: CallStatus


# ---------------------------------------------------------------------------
# Proposal authoring
# ---------------------------------------------------------------------------


class MilestoneIn(BaseModel):
    milestone: str
    deadline: datetime
    deliverables: list[str] = []
    success_criteria: str = ""


class BudgetItemIn(BaseModel):
    category: str
    description: str = ""
    quantity: float = 1
    unit_cost: float = 0
    justification: str = ""


class ProposalDraftIn(BaseModel):
    title: str = ""
    abstract: str = ""
    problem_statement: str = ""
    general_objective: str = ""
    specific_objectives: list[str] = []
    methodology: str = ""
    keywords: list[str] = []
    team_members: list[int] = []
    timeline: list[MilestoneIn] = []
    budget_items: list[BudgetItemIn] = []


# ---------------------------------------------------------------------------
# Clarifications
# ---------------------------------------------------------------------------


class ClarificationCreate(BaseModel):
    request_text: str
    request_category: ClarificationCategory | None = None
    evaluation_id: int | None = None


class AttachmentRef(BaseModel):
    storage_id: str
    name: str


class ClarificationResponseIn(BaseModel):
    response_text: str
    attachments: list[AttachmentRef] = []


# ---------------------------------------------------------------------------
# Project execution
# ---------------------------------------------------------------------------


class MilestoneUpdate(BaseModel):
    status: MilestoneStatus
    delay_reason: str = ""
    actual_deadline: datetime | None = None


class TransactionIn(BaseModel):
    type: Literal["expense", "disbursement"]
    category: str
    amount: float = Field(gt=0)
    description: str = ""
    date: datetime | None = None
    milestone_index: int | None = None


class TransactionReviewIn(BaseModel):
    approve: bool
    reason: str = ""
