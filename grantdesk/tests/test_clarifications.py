from __future__ import annotations

import pytest

from grantdesk import clarifications
from grantdesk.errors import AccessDenied, InvalidRequest, NotFound
from grantdesk.schemas import AttachmentRef, ClarificationCreate, ClarificationResponseIn


@pytest.fixture()
def setup(world):
    admin = world.user("admin")
    pi = world.user("faculty", name="Pat Investigator")
    teammate = world.user("faculty", name="Terry Teammate")
    evaluator = world.user("evaluator", name="Eve Evaluator")
    outsider = world.user("evaluator", name="Otto Outsider")
    call = world.call()
    proposal = world.proposal(call, pi, team_members=[teammate.id])
    world.assign(proposal, evaluator)
    return {
        "world": world, "call": call, "proposal": proposal,
        "admin": world.actor(admin), "pi": world.actor(pi), "teammate": world.actor(teammate),
        "evaluator": world.actor(evaluator), "outsider": world.actor(outsider),
    }


def ask(session, setup, text="How will you recruit participants?"):
    return clarifications.create_clarification(
        session, setup["evaluator"], setup["proposal"].id,
        ClarificationCreate(request_text=text, request_category="methodology"),
    )


class TestCreate:
    def test_assigned_evaluator_can_ask(self, session, setup):
        clarification = ask(session, setup)
        assert clarification.status == "pending"
        assert clarification.evaluator_id == setup["evaluator"].user_id
        assert clarification.request_category == "methodology"

    def test_unassigned_evaluator_rejected(self, session, setup):
        with pytest.raises(AccessDenied, match="not assigned"):
            clarifications.create_clarification(
                session, setup["outsider"], setup["proposal"].id, ClarificationCreate(request_text="Why?"),
            )

    def test_owner_cannot_ask(self, session, setup):
        with pytest.raises(AccessDenied):
            clarifications.create_clarification(
                session, setup["pi"], setup["proposal"].id, ClarificationCreate(request_text="Why?"),
            )

    def test_blank_text_rejected(self, session, setup):
        with pytest.raises(InvalidRequest, match="text is required"):
            ask(session, setup, text="   ")

    def test_evaluation_must_belong_to_proposal(self, session, setup):
        with pytest.raises(NotFound, match="Evaluation not found"):
            clarifications.create_clarification(
                session, setup["evaluator"], setup["proposal"].id,
                ClarificationCreate(request_text="Why?", evaluation_id=999),
            )


class TestRespond:
    def test_team_member_responds_with_attachments(self, session, setup):
        clarification = ask(session, setup)
        clarifications.respond_to_clarification(
            session, setup["teammate"], clarification.id,
            ClarificationResponseIn(
                response_text=" Through partner clinics. ",
                attachments=[AttachmentRef(storage_id="blob-1", name="letter.pdf")],
            ),
        )
        assert clarification.status == "responded"
        assert clarification.response_text == "Through partner clinics."
        assert clarification.responded_by == setup["teammate"].user_id

        listed = clarifications.list_clarifications(session, setup["admin"], setup["proposal"].id)
        assert listed[0]["response_attachments"][0]["storage_id"] == "blob-1"
        assert listed[0]["responder"]["name"] == "Terry Teammate"

    def test_evaluator_cannot_respond(self, session, setup):
        clarification = ask(session, setup)
        with pytest.raises(AccessDenied, match="Only the PI, team members, or admins"):
            clarifications.respond_to_clarification(
                session, setup["evaluator"], clarification.id, ClarificationResponseIn(response_text="x"),
            )

    def test_only_pending_requests(self, session, setup):
        clarification = ask(session, setup)
        body = ClarificationResponseIn(response_text="Answer")
        clarifications.respond_to_clarification(session, setup["pi"], clarification.id, body)
        with pytest.raises(InvalidRequest, match="already responded"):
            clarifications.respond_to_clarification(session, setup["pi"], clarification.id, body)

    def test_blank_response_rejected(self, session, setup):
        clarification = ask(session, setup)
        with pytest.raises(InvalidRequest, match="Response text is required"):
            clarifications.respond_to_clarification(
                session, setup["pi"], clarification.id, ClarificationResponseIn(response_text=""),
            )

    def test_unknown_request(self, session, setup):
        with pytest.raises(NotFound, match="Clarification request not found"):
            clarifications.respond_to_clarification(
                session, setup["pi"], 555, ClarificationResponseIn(response_text="x"),
            )


class TestResolveAndWithdraw:
    def test_requester_resolves(self, session, setup):
        clarification = ask(session, setup)
        clarifications.respond_to_clarification(
            session, setup["pi"], clarification.id, ClarificationResponseIn(response_text="Answer"),
        )
        clarifications.resolve_clarification(session, setup["evaluator"], clarification.id)
        assert clarification.status == "resolved"
        assert clarification.resolved_at is not None
        with pytest.raises(InvalidRequest, match="already resolved"):
            clarifications.resolve_clarification(session, setup["admin"], clarification.id)

    def test_owner_cannot_resolve(self, session, setup):
        clarification = ask(session, setup)
        with pytest.raises(AccessDenied):
            clarifications.resolve_clarification(session, setup["pi"], clarification.id)

    def test_withdraw_pending_only(self, session, setup):
        first = ask(session, setup)
        clarifications.withdraw_clarification(session, setup["evaluator"], first.id)
        assert first.status == "withdrawn"
        with pytest.raises(InvalidRequest, match="already withdrawn"):
            clarifications.resolve_clarification(session, setup["evaluator"], first.id)

        second = ask(session, setup)
        clarifications.respond_to_clarification(
            session, setup["pi"], second.id, ClarificationResponseIn(response_text="Answer"),
        )
        with pytest.raises(InvalidRequest, match="Only pending"):
            clarifications.withdraw_clarification(session, setup["evaluator"], second.id)

    def test_only_requester_withdraws(self, session, setup):
        clarification = ask(session, setup)
        with pytest.raises(AccessDenied):
            clarifications.withdraw_clarification(session, setup["admin"], clarification.id)


class TestList:
    def test_newest_first_with_names(self, session, setup):
        older = ask(session, setup, text="First question")
        newer = ask(session, setup, text="Second question")
        listed = clarifications.list_clarifications(session, setup["pi"], setup["proposal"].id)
        assert [c["id"] for c in listed] == [newer.id, older.id]
        assert listed[0]["evaluator"]["name"] == "Eve Evaluator"
        assert listed[0]["responder"] is None

    def test_blind_review_hides_evaluator_from_owners(self, session, setup):
        setup["call"].blind_review = True
        ask(session, setup)

        owner_view = clarifications.list_clarifications(session, setup["pi"], setup["proposal"].id)[0]
        assert owner_view["evaluator_id"] is None
        assert owner_view["evaluator"] == {"name": "Anonymous Reviewer"}

        reviewer_view = clarifications.list_clarifications(session, setup["evaluator"], setup["proposal"].id)[0]
        assert reviewer_view["evaluator"]["name"] == "Eve Evaluator"

    def test_outsiders_denied(self, session, setup):
        with pytest.raises(AccessDenied):
            clarifications.list_clarifications(session, setup["outsider"], setup["proposal"].id)
