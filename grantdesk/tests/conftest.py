"""Shared fixtures: in-memory SQLite database and a small record builder."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from grantdesk.access import Actor
from grantdesk.models import (
    Base, Call, EvaluationCriterion, EvaluatorAssignment, Proposal, User,
)
from grantdesk.services import set_assigned_list
from grantdesk.utils import json_dump, utcnow


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


class World:
    """Builds users, criteria, calls, proposals, and assignments with sensible defaults."""

    def __init__(self, session):
        self.session = session

    def _add(self, obj):
        self.session.add(obj)
        self.session.flush()
        return obj

    def user(self, role: str = "evaluator", name: str = "", **kw) -> User:
        research_areas = kw.pop("research_areas", [])
        return self._add(User(
            role=role, name=name or f"{role.title()} User", email=f"{role}@example.edu",
            research_areas_json=json_dump(research_areas), **kw,
        ))

    def actor(self, user: User) -> Actor:
        return Actor(user_id=user.id, role=user.role)

    def criterion(self, name: str = "Impact", weight: float = 100, max_score: float = 100, **kw) -> EvaluationCriterion:
        return self._add(EvaluationCriterion(name=name, weight=weight, max_score=max_score, **kw))

    def call(self, criteria=(), evaluators_required: int = 2, **kw) -> Call:
        now = utcnow()
        kw.setdefault("open_date", now - timedelta(days=1))
        kw.setdefault("close_date", now + timedelta(days=30))
        kw.setdefault("budget_total", 100_000)
        kw.setdefault("budget_min", 1_000)
        kw.setdefault("budget_max", 50_000)
        kw.setdefault("status", "open")
        return self._add(Call(
            title=kw.pop("title", "Seed Grants 2026"),
            evaluators_required=evaluators_required,
            criteria_ids_json=json_dump([c.id for c in criteria]),
            **kw,
        ))

    def proposal(self, call: Call, pi: User, status: str = "submitted", **kw) -> Proposal:
        kw.setdefault("title", "Soil microbiome survey")
        kw.setdefault("submitted_at", utcnow() if status != "draft" else None)
        team = kw.pop("team_members", [])
        return self._add(Proposal(
            call_id=call.id, principal_investigator_id=pi.id, status=status,
            team_members_json=json_dump(team), **kw,
        ))

    def assign(self, proposal: Proposal, evaluator: User, status: str = "pending") -> EvaluatorAssignment:
        assignment = self._add(EvaluatorAssignment(
            proposal_id=proposal.id, evaluator_id=evaluator.id, status=status, assigned_at=utcnow(),
        ))
        if status in ("pending", "accepted"):
            set_assigned_list(proposal, [*proposal.assigned_evaluators, evaluator.id])
            self.session.flush()
        return assignment


@pytest.fixture()
def world(session) -> World:
    return World(session)
