from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Generator

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from grantdesk import (
    calls, clarifications, config, execution, lifecycle, matrix, proposals, services, workload,
)
from grantdesk.access import Actor, require_admin
from grantdesk.db import get_session, init_db
from grantdesk.errors import WorkflowError
from grantdesk.schemas import (
    AssignedEvaluatorsIn,
    AssignmentStatusIn,
    CallCreate,
    CallStatusIn,
    ClarificationCreate,
    ClarificationResponseIn,
    DecisionIn,
    EvaluationDraftIn,
    EvaluationOut,
    EvaluationSubmitIn,
    MatrixFilters,
    MilestoneUpdate,
    ProposalDraftIn,
    QuickAssignIn,
    TemplateDuplicateIn,
    TemplateIn,
    TransactionIn,
    TransactionReviewIn,
    WorkloadOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Grantdesk",
    version="0.1.0",
    description=(
        "Grant evaluation and assignment API. Funding calls, proposal authoring, "
        "rubric scoring, reviewer assignment, final decisions, and project execution. "
        "Callers identify themselves with the X-User-Id and X-User-Role headers."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Calls", "description": "Funding calls and their lifecycle."},
        {"name": "Rubrics", "description": "Rubric templates and evaluation criteria."},
        {"name": "Proposals", "description": "Proposal authoring and submission."},
        {"name": "Evaluations", "description": "Rubric scoring, drafts, submissions, and decisions."},
        {"name": "Assignments", "description": "Evaluator assignments, the assignment matrix, and workload."},
        {"name": "Clarifications", "description": "Evaluator questions to proposal owners."},
        {"name": "Projects", "description": "Milestones, transactions, and budget execution for approved proposals."},
    ],
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_actor(
    user_id: int = Header(..., alias="X-User-Id"),
    role: str = Header(..., alias="X-User-Role"),
) -> Actor:
    return Actor(user_id=user_id, role=role.strip().lower())


# ---------------------------------------------------------------------------
# Routes: Calls & rubric templates
# ---------------------------------------------------------------------------


@app.get("/api/calls", tags=["Calls"], summary="List calls, optionally filtered by status")
async def list_calls(status: str | None = Query(None), session: Session = Depends(db_session)):
    return [services.call_summary(c) for c in calls.list_calls(session, status)]


@app.post("/api/calls", status_code=201, tags=["Calls"], summary="Create a funding call")
async def create_call(
    body: CallCreate, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    call = calls.create_call(session, actor, body)
    session.commit()
    return services.call_summary(call)


@app.put("/api/calls/{call_id}/status", tags=["Calls"], summary="Move a call through draft/open/closed/archived")
async def update_call_status(
    call_id: int, body: CallStatusIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    call = calls.update_call_status(session, actor, call_id, body.status)
    session.commit()
    return services.call_summary(call)


@app.get("/api/rubrics", tags=["Rubrics"], summary="List rubric templates with their criteria")
async def list_templates(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return calls.list_templates(session, actor)


@app.post("/api/rubrics", status_code=201, tags=["Rubrics"], summary="Create a rubric template")
async def create_template(
    body: TemplateIn, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    template = calls.create_template(session, actor, body)
    session.commit()
    return services.template_out(template)


@app.put("/api/rubrics/{template_id}", tags=["Rubrics"], summary="Replace a template's criteria (bumps version)")
async def update_template(
    template_id: int, body: TemplateIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    template = calls.update_template(session, actor, template_id, body)
    session.commit()
    return services.template_out(template)


@app.post("/api/rubrics/{template_id}/duplicate", status_code=201,
          tags=["Rubrics"], summary="Clone a template under a new name")
async def duplicate_template(
    template_id: int, body: TemplateDuplicateIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    template = calls.duplicate_template(session, actor, template_id, body.name)
    session.commit()
    return services.template_out(template)


# ---------------------------------------------------------------------------
# Routes: Proposals
# ---------------------------------------------------------------------------


@app.get("/api/proposals/mine", tags=["Proposals"], summary="Proposals where the caller is PI")
async def list_my_proposals(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return proposals.list_my_proposals(session, actor)


@app.get("/api/proposals/review", tags=["Proposals"], summary="Reviewable proposals visible to the calling reviewer")
async def list_proposals_for_review(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return lifecycle.list_proposals_for_review(session, actor)


@app.put("/api/calls/{call_id}/proposal", tags=["Proposals"], summary="Save the caller's proposal draft for a call")
async def save_proposal_draft(
    call_id: int, body: ProposalDraftIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    proposal = proposals.save_proposal_draft(session, actor, call_id, body)
    session.commit()
    return proposals.owner_summary(session, actor, proposal)


@app.post("/api/calls/{call_id}/proposal/submit", tags=["Proposals"], summary="Submit (or resubmit) the caller's proposal")
async def submit_proposal(
    call_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    proposal = proposals.submit_proposal(session, actor, call_id)
    session.commit()
    return proposals.owner_summary(session, actor, proposal)


@app.get("/api/proposals/{proposal_id}", tags=["Proposals"], summary="Proposal detail for PI, team, evaluators, and admins")
async def get_proposal(
    proposal_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    return proposals.proposal_detail(session, actor, proposal_id)


# ---------------------------------------------------------------------------
# Routes: Evaluations & decisions
# ---------------------------------------------------------------------------


@app.get("/api/proposals/{proposal_id}/evaluation", tags=["Evaluations"],
         summary="Rubric, call settings, and the caller's own evaluation")
async def get_evaluation_context(
    proposal_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    return lifecycle.get_evaluation_context(session, actor, proposal_id)


@app.put("/api/proposals/{proposal_id}/evaluation", response_model=EvaluationOut,
         tags=["Evaluations"], summary="Save an evaluation draft (missing scores count as 0)")
async def save_evaluation_draft(
    proposal_id: int, body: EvaluationDraftIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    evaluation = lifecycle.save_evaluation_draft(session, actor, proposal_id, body)
    session.commit()
    return services.evaluation_out(evaluation)


@app.post("/api/proposals/{proposal_id}/evaluation/submit", response_model=EvaluationOut,
          tags=["Evaluations"], summary="Submit a complete evaluation")
async def submit_evaluation(
    proposal_id: int, body: EvaluationSubmitIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    evaluation = lifecycle.submit_evaluation(session, actor, proposal_id, body)
    session.commit()
    return services.evaluation_out(evaluation)


@app.get("/api/proposals/{proposal_id}/evaluations", tags=["Evaluations"],
         summary="Completed evaluations for the proposal owner or admins")
async def evaluation_summary(
    proposal_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    return lifecycle.evaluation_summary(session, actor, proposal_id)


@app.post("/api/proposals/{proposal_id}/decision", tags=["Evaluations"],
          summary="Finalize approved/rejected (quorum required) or revise_and_resubmit")
async def finalize_decision(
    proposal_id: int, body: DecisionIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    proposal = lifecycle.finalize_decision(session, actor, proposal_id, body.decision, body.note)
    session.commit()
    return proposals.owner_summary(session, actor, proposal)


# ---------------------------------------------------------------------------
# Routes: Assignments, matrix, workload
# ---------------------------------------------------------------------------


@app.get("/api/assignments/mine", tags=["Assignments"], summary="The caller's active assignments")
async def list_my_assignments(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return lifecycle.list_my_assignments(session, actor)


@app.get("/api/assignments/board", tags=["Assignments"], summary="Assignments grouped into status lanes")
async def assignment_board(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return lifecycle.assignment_board(session, actor)


@app.put("/api/proposals/{proposal_id}/evaluators", tags=["Assignments"],
         summary="Replace the proposal's evaluator list")
async def set_assigned_evaluators(
    proposal_id: int, body: AssignedEvaluatorsIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    proposal = lifecycle.set_assigned_evaluators(session, actor, proposal_id, body.evaluator_ids)
    session.commit()
    return proposals.owner_summary(session, actor, proposal)


@app.put("/api/proposals/{proposal_id}/assignments/{evaluator_id}", tags=["Assignments"],
         summary="Accept/decline (evaluator) or set any status (admin)")
async def update_assignment_status(
    proposal_id: int, evaluator_id: int, body: AssignmentStatusIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    assignment = lifecycle.update_assignment_status(
        session, actor, proposal_id, evaluator_id, body.status,
        decline_reason=body.decline_reason, decline_comment=body.decline_comment,
        coi_declared=body.coi_declared, coi_details=body.coi_details,
    )
    session.commit()
    return services.assignment_out(assignment)


@app.post("/api/matrix", tags=["Assignments"], summary="Build the proposal × evaluator assignment matrix")
async def build_matrix(
    filters: MatrixFilters | None = None,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    return matrix.build_matrix(session, actor, filters)


@app.post("/api/matrix/assign", status_code=201, tags=["Assignments"], summary="Quick-assign an evaluator")
async def quick_assign(
    body: QuickAssignIn, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    assignment = matrix.quick_assign(session, actor, body.proposal_id, body.evaluator_id)
    session.commit()
    return services.assignment_out(assignment)


@app.delete("/api/matrix/assignments/{assignment_id}", tags=["Assignments"],
            summary="Unassign (marks the assignment removed)")
async def unassign(
    assignment_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    assignment = matrix.unassign(session, actor, assignment_id)
    session.commit()
    return services.assignment_out(assignment)


@app.get("/api/calls/{call_id}/assignments", tags=["Assignments"],
         summary="Per-call assignment progress and budget allocation")
async def call_assignment_overview(
    call_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    return matrix.call_assignment_overview(session, actor, call_id)


@app.get("/api/workload", tags=["Assignments"], summary="Capacity-planning report for all evaluators")
async def workload_overview(actor: Actor = Depends(current_actor), session: Session = Depends(db_session)):
    return workload.workload_overview(session, actor)


@app.get("/api/workload/{evaluator_id}", response_model=WorkloadOut, tags=["Assignments"],
         summary="Workload for one evaluator (self or admin)")
async def evaluator_workload(
    evaluator_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    if evaluator_id != actor.user_id:
        require_admin(actor)
    return workload.evaluator_workload(session, evaluator_id).to_dict()


# ---------------------------------------------------------------------------
# Routes: Clarifications
# ---------------------------------------------------------------------------


@app.get("/api/proposals/{proposal_id}/clarifications", tags=["Clarifications"],
         summary="Clarification requests on a proposal, newest first")
async def list_clarifications(
    proposal_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    return clarifications.list_clarifications(session, actor, proposal_id)


@app.post("/api/proposals/{proposal_id}/clarifications", status_code=201,
          tags=["Clarifications"], summary="Ask the proposal owners a question")
async def create_clarification(
    proposal_id: int, body: ClarificationCreate,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    clarification = clarifications.create_clarification(session, actor, proposal_id, body)
    session.commit()
    return services.clarification_out(clarification)


@app.post("/api/clarifications/{clarification_id}/response", tags=["Clarifications"],
          summary="Answer a pending clarification request")
async def respond_to_clarification(
    clarification_id: int, body: ClarificationResponseIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    clarification = clarifications.respond_to_clarification(session, actor, clarification_id, body)
    session.commit()
    return services.clarification_out(clarification)


@app.post("/api/clarifications/{clarification_id}/resolve", tags=["Clarifications"],
          summary="Mark a clarification resolved")
async def resolve_clarification(
    clarification_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    clarification = clarifications.resolve_clarification(session, actor, clarification_id)
    session.commit()
    return services.clarification_out(clarification)


@app.post("/api/clarifications/{clarification_id}/withdraw", tags=["Clarifications"],
          summary="Withdraw a pending clarification request")
async def withdraw_clarification(
    clarification_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    clarification = clarifications.withdraw_clarification(session, actor, clarification_id)
    session.commit()
    return services.clarification_out(clarification)


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.get("/api/projects/{proposal_id}", tags=["Projects"], summary="Execution detail for an approved proposal")
async def project_detail(
    proposal_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    return execution.project_detail(session, actor, proposal_id)


@app.post("/api/projects/{proposal_id}/start", tags=["Projects"], summary="Start execution of an approved proposal")
async def start_execution(
    proposal_id: int,
    kickoff_date: datetime | None = Body(None, embed=True),
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    execution.start_execution(session, actor, proposal_id, kickoff_date)
    session.commit()
    return execution.project_detail(session, actor, proposal_id)


@app.put("/api/projects/{proposal_id}/milestones/{milestone_index}", tags=["Projects"],
         summary="Update a milestone's execution status")
async def update_milestone(
    proposal_id: int, milestone_index: int, body: MilestoneUpdate,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    milestone = execution.update_milestone(session, actor, proposal_id, milestone_index, body)
    session.commit()
    return milestone


@app.post("/api/projects/{proposal_id}/transactions", status_code=201, tags=["Projects"],
          summary="Record an expense or disbursement (pending review)")
async def record_transaction(
    proposal_id: int, body: TransactionIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    txn = execution.record_transaction(session, actor, proposal_id, body)
    session.commit()
    return services.transaction_out(txn)


@app.post("/api/transactions/{transaction_id}/review", tags=["Projects"],
          summary="Approve or reject a pending transaction")
async def review_transaction(
    transaction_id: int, body: TransactionReviewIn,
    actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    txn = execution.review_transaction(session, actor, transaction_id, body)
    session.commit()
    return services.transaction_out(txn)


@app.post("/api/projects/{proposal_id}/complete", tags=["Projects"], summary="Close a project once every milestone is done")
async def complete_project(
    proposal_id: int, actor: Actor = Depends(current_actor), session: Session = Depends(db_session),
):
    proposal = execution.complete_project(session, actor, proposal_id)
    session.commit()
    return proposals.owner_summary(session, actor, proposal)


def main():
    import uvicorn
    logging.basicConfig(level=config.log_level().upper())
    uvicorn.run(
        "grantdesk.app:app", host=config.server_host(), port=config.server_port(),
        log_level=config.log_level(),
    )


if __name__ == "__main__":
    main()
