from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from grantdesk.utils import json_parse


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    role: Mapped[str] = mapped_column(String(30), nullable=False)  # sysadmin | admin | evaluator | faculty | finance | observer
    status: Mapped[str] = mapped_column(String(30), default="active")
    campus: Mapped[str] = mapped_column(String(200), default="")
    department: Mapped[str] = mapped_column(String(200), default="")
    research_areas_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @property
    def research_areas(self) -> list[str]:
        return json_parse(self.research_areas_json, [])


class EvaluationCriterion(Base):
    __tablename__ = "evaluation_criteria"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    weight: Mapped[float] = mapped_column(Float, default=0.0)  # percentage points
    max_score: Mapped[float] = mapped_column(Float, default=10.0)
    scale_json: Mapped[str] = mapped_column(Text, default="[]")  # [{"score": n, "descriptor": "..."}]
    type: Mapped[str] = mapped_column(String(50), default="impact")
    require_comments: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class RubricTemplate(Base):
    __tablename__ = "rubric_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    criteria_ids_json: Mapped[str] = mapped_column(Text, default="[]")
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    source_template_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("rubric_templates.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def criteria_ids(self) -> list[int]:
        return json_parse(self.criteria_ids_json, [])


class Call(Base):
    __tablename__ = "calls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    slug: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(30), default="draft")  # draft | open | closed | archived
    open_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    close_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    evaluation_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    evaluation_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    decision_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    project_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    project_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    grace_period_hours: Mapped[float] = mapped_column(Float, default=0.0)
    budget_total: Mapped[float] = mapped_column(Float, default=0.0)
    budget_min: Mapped[float] = mapped_column(Float, default=0.0)
    budget_max: Mapped[float] = mapped_column(Float, default=0.0)
    allowed_categories_json: Mapped[str] = mapped_column(Text, default="[]")
    evaluators_required: Mapped[int] = mapped_column(Integer, default=1)
    assignment_method: Mapped[str] = mapped_column(String(30), default="manual")  # manual | auto_balanced | ai_matched
    blind_review: Mapped[bool] = mapped_column(Boolean, default=False)
    conflict_policies_json: Mapped[str] = mapped_column(Text, default="[]")
    rubric_template_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("rubric_templates.id"), nullable=True)
    criteria_ids_json: Mapped[str] = mapped_column(Text, default="[]")  # ordered
    created_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    proposals: Mapped[list[Proposal]] = relationship("Proposal", back_populates="call")

    @property
    def criteria_ids(self) -> list[int]:
        return json_parse(self.criteria_ids_json, [])


class Proposal(Base):
    __tablename__ = "proposals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[int] = mapped_column(Integer, ForeignKey("calls.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), default="")
    abstract: Mapped[str] = mapped_column(Text, default="")
    problem_statement: Mapped[str] = mapped_column(Text, default="")
    general_objective: Mapped[str] = mapped_column(Text, default="")
    specific_objectives_json: Mapped[str] = mapped_column(Text, default="[]")
    methodology: Mapped[str] = mapped_column(Text, default="")
    keywords_json: Mapped[str] = mapped_column(Text, default="[]")
    principal_investigator_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    team_members_json: Mapped[str] = mapped_column(Text, default="[]")
    assigned_evaluators_json: Mapped[str] = mapped_column(Text, default="[]")
    timeline_json: Mapped[str] = mapped_column(Text, default="[]")  # [{"milestone", "deadline", "deliverables"}]
    budget_total: Mapped[float] = mapped_column(Float, default=0.0)
    budget_breakdown_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[str] = mapped_column(String(30), default="draft")
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    decision_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    decision_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    decision_note: Mapped[str] = mapped_column(Text, default="")
    # Execution tracking, populated once the proposal is approved
    kickoff_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    milestone_execution_json: Mapped[str] = mapped_column(Text, default="[]")
    budget_execution_json: Mapped[str] = mapped_column(Text, default="{}")
    active_alerts_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    call: Mapped[Call] = relationship("Call", back_populates="proposals")

    @property
    def team_members(self) -> list[int]:
        return json_parse(self.team_members_json, [])

    @property
    def assigned_evaluators(self) -> list[int]:
        return json_parse(self.assigned_evaluators_json, [])


class EvaluatorAssignment(Base):
    __tablename__ = "evaluator_assignments"
    __table_args__ = (UniqueConstraint("proposal_id", "evaluator_id", name="uq_assignment_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(Integer, ForeignKey("proposals.id"), nullable=False)
    evaluator_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    assigned_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    assignment_method: Mapped[str] = mapped_column(String(30), default="manual")
    status: Mapped[str] = mapped_column(String(30), default="pending")  # pending | accepted | declined | removed
    decline_reason: Mapped[str] = mapped_column(Text, default="")
    decline_comment: Mapped[str] = mapped_column(Text, default="")
    coi_declared: Mapped[bool] = mapped_column(Boolean, default=False)
    coi_details: Mapped[str] = mapped_column(Text, default="")
    assigned_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Evaluation(Base):
    __tablename__ = "evaluations"
    __table_args__ = (UniqueConstraint("proposal_id", "evaluator_id", name="uq_evaluation_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(Integer, ForeignKey("proposals.id"), nullable=False)
    evaluator_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    rubric_json: Mapped[str] = mapped_column(Text, default="[]")
    overall_score: Mapped[float] = mapped_column(Float, default=0.0)
    recommendation: Mapped[str | None] = mapped_column(String(50), nullable=True)
    confidential_comments: Mapped[str] = mapped_column(Text, default="")
    public_comments: Mapped[str] = mapped_column(Text, default="")
    ai_assistance_used: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def rubric(self) -> list[dict]:
        return json_parse(self.rubric_json, [])


class EvaluatorMatch(Base):
    __tablename__ = "evaluator_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(Integer, ForeignKey("proposals.id"), nullable=False)
    evaluator_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    match_score: Mapped[float] = mapped_column(Float, default=0.0)
    expertise_score: Mapped[float] = mapped_column(Float, default=0.0)
    availability_score: Mapped[float] = mapped_column(Float, default=0.0)
    performance_score: Mapped[float] = mapped_column(Float, default=0.0)
    conflict_flags_json: Mapped[str] = mapped_column(Text, default="[]")
    conflict_severity: Mapped[str] = mapped_column(String(20), default="none")  # none | low | medium | high | blocking
    reasoning: Mapped[str] = mapped_column(Text, default="")
    generated_by: Mapped[str] = mapped_column(String(20), default="algorithm")  # ai | algorithm
    generated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    stale: Mapped[bool] = mapped_column(Boolean, default=False)


class ClarificationRequest(Base):
    __tablename__ = "clarification_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(Integer, ForeignKey("proposals.id"), nullable=False)
    evaluation_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("evaluations.id"), nullable=True)
    evaluator_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    request_text: Mapped[str] = mapped_column(Text, default="")
    request_category: Mapped[str | None] = mapped_column(String(30), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    response_text: Mapped[str] = mapped_column(Text, default="")
    response_attachments_json: Mapped[str] = mapped_column(Text, default="[]")  # opaque storage refs
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    responded_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | responded | resolved | withdrawn
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(Integer, ForeignKey("proposals.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # expense | disbursement
    category: Mapped[str] = mapped_column(String(200), default="")
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    description: Mapped[str] = mapped_column(Text, default="")
    date: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    milestone_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approval_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | approved | rejected
    approved_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    rejection_reason: Mapped[str] = mapped_column(Text, default="")
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(50), nullable=False)
    details_json: Mapped[str] = mapped_column(Text, default="{}")
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
