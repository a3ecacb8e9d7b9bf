"""Integration tests for the FastAPI endpoints.

Uses TestClient against a shared in-memory database to exercise the full
scoring → quorum → decision flow over HTTP.
"""
from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from grantdesk.models import Base, Call, EvaluationCriterion, EvaluatorAssignment, Proposal, User
from grantdesk.utils import json_dump, utcnow


@pytest.fixture()
def test_db():
    """Temporary in-memory SQLite database.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database."""
    monkeypatch.setenv("GRANTDESK_DB_PATH", str(tmp_path / "grantdesk.db"))
    engine, TestSession = test_db
    from grantdesk.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client):
    """A submitted proposal on a call needing two evaluators, both assigned."""
    c, TestSession = client
    session = TestSession()
    admin = User(name="Ada Admin", email="ada@example.edu", role="admin")
    pi = User(name="Pat Investigator", email="pat@example.edu", role="faculty")
    evaluators = [
        User(name=name, email=f"{name.split()[0].lower()}@example.edu", role="evaluator")
        for name in ("Eve One", "Evan Two", "Eva Three")
    ]
    criterion = EvaluationCriterion(name="Overall merit", weight=100, max_score=100)
    session.add_all([admin, pi, *evaluators, criterion])
    session.flush()

    call = Call(
        title="Seed Grants", open_date=utcnow() - timedelta(days=10), close_date=utcnow() - timedelta(days=1),
        budget_total=100_000, budget_min=0, budget_max=50_000, status="closed",
        evaluators_required=2, criteria_ids_json=json_dump([criterion.id]),
    )
    session.add(call)
    session.flush()
    proposal = Proposal(
        call_id=call.id, principal_investigator_id=pi.id, title="Soil microbiome survey",
        status="submitted", submitted_at=utcnow(), budget_total=20_000,
        assigned_evaluators_json=json_dump([evaluators[0].id, evaluators[1].id]),
    )
    session.add(proposal)
    session.flush()
    session.add_all([
        EvaluatorAssignment(proposal_id=proposal.id, evaluator_id=e.id, status="pending", assigned_at=utcnow())
        for e in evaluators[:2]
    ])
    session.commit()

    ids = {
        "admin": admin.id, "pi": pi.id, "e1": evaluators[0].id, "e2": evaluators[1].id, "e3": evaluators[2].id,
        "criterion": criterion.id, "call": call.id, "proposal": proposal.id,
    }
    session.close()
    return c, ids


def as_user(user_id: int, role: str) -> dict[str, str]:
    return {"X-User-Id": str(user_id), "X-User-Role": role}


def submit(c, ids, evaluator: str, score: float):
    return c.post(
        f"/api/proposals/{ids['proposal']}/evaluation/submit",
        json={"rubric": [{"criterion_id": ids["criterion"], "score": score}], "recommendation": "approve"},
        headers=as_user(ids[evaluator], "evaluator"),
    )


class TestScoringFlow:
    def test_score_quorum_and_decision(self, seeded):
        c, ids = seeded
        pid = ids["proposal"]
        admin = as_user(ids["admin"], "admin")

        first = submit(c, ids, "e1", 80)
        assert first.status_code == 200
        assert first.json()["overall_score"] == 80.0
        assert first.json()["completed_at"] is not None

        resp = c.post(f"/api/proposals/{pid}/decision", json={"decision": "approved"}, headers=admin)
        assert resp.status_code == 409
        assert "1 of 2" in resp.json()["detail"]

        second = submit(c, ids, "e2", 90)
        assert second.json()["overall_score"] == 90.0

        summary = c.get(f"/api/proposals/{pid}/evaluations", headers=as_user(ids["pi"], "faculty")).json()
        assert summary["summary"]["completed_count"] == 2
        assert summary["summary"]["average_score"] == 85.0

        resp = c.post(f"/api/proposals/{pid}/decision", json={"decision": "approved", "note": "Fund"}, headers=admin)
        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"
        assert resp.json()["decision"]["by"] == ids["admin"]

    def test_draft_then_incomplete_submit(self, seeded):
        c, ids = seeded
        pid = ids["proposal"]
        headers = as_user(ids["e1"], "evaluator")

        resp = c.put(f"/api/proposals/{pid}/evaluation", json={"rubric": []}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["overall_score"] == 0.0
        assert resp.json()["completed_at"] is None

        resp = c.post(
            f"/api/proposals/{pid}/evaluation/submit",
            json={"rubric": [], "recommendation": "reject"}, headers=headers,
        )
        assert resp.status_code == 422
        assert resp.json()["detail"] == "Please score every criterion before submitting the evaluation."

        context = c.get(f"/api/proposals/{pid}/evaluation", headers=headers)
        assert context.status_code == 200

    def test_revise_and_resubmit_skips_quorum(self, seeded):
        c, ids = seeded
        resp = c.post(
            f"/api/proposals/{ids['proposal']}/decision",
            json={"decision": "revise_and_resubmit"}, headers=as_user(ids["admin"], "admin"),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "revise_and_resubmit"


class TestMatrixEndpoints:
    def test_quick_assign_then_unassign(self, seeded):
        c, ids = seeded
        admin = as_user(ids["admin"], "admin")

        resp = c.post("/api/matrix/assign", json={"proposal_id": ids["proposal"], "evaluator_id": ids["e3"]},
                      headers=admin)
        assert resp.status_code == 201
        assignment_id = resp.json()["id"]

        dup = c.post("/api/matrix/assign", json={"proposal_id": ids["proposal"], "evaluator_id": ids["e3"]},
                     headers=admin)
        assert dup.status_code == 422

        assert c.delete(f"/api/matrix/assignments/{assignment_id}", headers=admin).json()["status"] == "removed"

        result = c.post("/api/matrix", headers=admin).json()
        row = next(r for r in result["proposals"] if r["proposal_id"] == ids["proposal"])
        assert row["assigned_count"] == 2
        assert row["assignment_status"] == "complete"
        assert result["summary"]["fully_assigned"] == 1

    def test_extra_evaluator_on_approved_proposal_keeps_row_complete(self, seeded):
        c, ids = seeded
        admin = as_user(ids["admin"], "admin")
        assert submit(c, ids, "e1", 70).status_code == 200
        assert submit(c, ids, "e2", 75).status_code == 200
        resp = c.post(f"/api/proposals/{ids['proposal']}/decision", json={"decision": "approved"}, headers=admin)
        assert resp.json()["status"] == "approved"

        resp = c.post("/api/matrix/assign", json={"proposal_id": ids["proposal"], "evaluator_id": ids["e3"]},
                      headers=admin)
        assert resp.status_code == 201
        assert c.delete(f"/api/matrix/assignments/{resp.json()['id']}", headers=admin).status_code == 200

        result = c.post("/api/matrix", headers=admin).json()
        row = next(r for r in result["proposals"] if r["proposal_id"] == ids["proposal"])
        assert row["assignment_status"] == "complete"
        assert row["assigned_count"] == 2

    def test_matrix_filters_body(self, seeded):
        c, ids = seeded
        result = c.post("/api/matrix", json={"assignment_status": "needs_assignment"},
                        headers=as_user(ids["admin"], "admin")).json()
        assert result["proposals"] == []

    def test_evaluator_accepts_and_sees_assignment(self, seeded):
        c, ids = seeded
        headers = as_user(ids["e1"], "evaluator")
        resp = c.put(f"/api/proposals/{ids['proposal']}/assignments/{ids['e1']}",
                     json={"status": "accepted"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"

        mine = c.get("/api/assignments/mine", headers=headers).json()
        assert [a["proposal_id"] for a in mine] == [ids["proposal"]]

        wl = c.get(f"/api/workload/{ids['e1']}", headers=headers).json()
        assert wl["total"] == 1


class TestReadModelEndpoints:
    def test_board_overview_and_review_queue(self, seeded):
        c, ids = seeded
        admin = as_user(ids["admin"], "admin")
        assert submit(c, ids, "e1", 60).status_code == 200

        lanes = c.get("/api/assignments/board", headers=admin).json()["lanes"]
        assert [card["evaluator"]["id"] for card in lanes["submitted"]] == [ids["e1"]]
        assert [card["evaluator"]["id"] for card in lanes["pending"]] == [ids["e2"]]

        overview = c.get(f"/api/calls/{ids['call']}/assignments", headers=admin).json()
        assert overview["budget"]["requested"] == 20_000
        assert overview["summary"]["fully_assigned"] == 1

        queue = c.get("/api/proposals/review", headers=as_user(ids["e3"], "evaluator")).json()
        assert queue == []
        queue = c.get("/api/proposals/review", headers=as_user(ids["e2"], "evaluator")).json()
        assert [p["id"] for p in queue] == [ids["proposal"]]

        report = c.get("/api/workload", headers=admin).json()
        e1 = next(e for e in report["evaluators"] if e["id"] == ids["e1"])
        assert e1["assignments"][0]["status"] == "submitted"
        assert [call["id"] for call in report["active_calls"]] == [ids["call"]]


class TestErrorMapping:
    def test_forbidden(self, seeded):
        c, ids = seeded
        resp = c.post("/api/matrix", headers=as_user(ids["e1"], "evaluator"))
        assert resp.status_code == 403
        assert "detail" in resp.json()

    def test_not_found(self, seeded):
        c, ids = seeded
        resp = c.delete("/api/matrix/assignments/9999", headers=as_user(ids["admin"], "admin"))
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Assignment not found"}

    def test_unknown_role_rejected(self, seeded):
        c, ids = seeded
        resp = c.get("/api/assignments/mine", headers=as_user(ids["e1"], "wizard"))
        assert resp.status_code == 422

    def test_other_evaluators_workload_needs_admin(self, seeded):
        c, ids = seeded
        resp = c.get(f"/api/workload/{ids['e2']}", headers=as_user(ids["e1"], "evaluator"))
        assert resp.status_code == 403

    def test_missing_identity_headers(self, seeded):
        c, _ = seeded
        assert c.get("/api/assignments/mine").status_code == 422
