from __future__ import annotations

import pytest
from pydantic import ValidationError

from debtcall.context import (
    FEATURE_NAMES,
    CaseFile,
    ContextView,
    ConversationContext,
    advance,
    days_past_due_bucket,
    debt_bucket,
    feature_vector,
    perceive,
    resolve_outcome,
    state_key,
)


def test_open_starts_in_opening_with_case_flags() -> None:
    ctx = ConversationContext.open("s1", CaseFile(disputed=True, recording_consent=True))
    assert ctx.fsm_state == "OPENING"
    assert ctx.state_history == ["OPENING"]
    assert ctx.disputed is True
    assert ctx.recording_consent is True
    assert ctx.outcome is None


def test_snapshot_is_detached_and_commit_applies() -> None:
    ctx = ConversationContext.open("s1", CaseFile(amount_due=2500, days_past_due=130, attempts_total=4))
    view = ctx.snapshot()
    assert view.debt_bucket == "MEDIUM"
    assert view.days_past_due_bucket == "120+"
    assert view.prior_attempts == 4

    nxt = advance(view, "PROCEED", "DISCLOSURE")
    assert ctx.fsm_state == "OPENING"
    ctx.commit(nxt)
    assert ctx.fsm_state == "DISCLOSURE"
    assert ctx.turn_count == 1
    assert ctx.state_history == ["OPENING", "DISCLOSURE"]


def test_perceive_tracks_consent_dispute_and_objections() -> None:
    view = ContextView(fsm_state="CONSENT_RECORDING")
    assert perceive(view, "AGREEMENT", "POSITIVE").recording_consent is True
    assert perceive(view, "REFUSAL", "NEGATIVE").recording_consent is False
    assert perceive(view, None, "NEUTRAL").recording_consent is None

    elsewhere = perceive(ContextView(fsm_state="DEBT_CONTEXT"), "REFUSAL", "NEGATIVE")
    assert elsewhere.recording_consent is None
    assert elsewhere.objections_raised == 1

    disputed = perceive(ContextView(fsm_state="DEBT_CONTEXT"), "DISPUTE", "NEGATIVE")
    assert disputed.disputed is True
    assert disputed.last_signal == "DISPUTE"
    assert disputed.sentiment == "NEGATIVE"


def test_advance_sets_milestones_and_time_in_state() -> None:
    view = ContextView(fsm_state="DISCLOSURE")
    nxt = advance(view, "IDENTIFY_SELF", "IDENTITY_VERIFICATION")
    assert nxt.disclosure_complete is True
    assert nxt.identity_verified is False
    assert nxt.time_in_state == 0
    assert nxt.last_action == "IDENTIFY_SELF"

    held = advance(nxt, "ASK_VERIFICATION", "IDENTITY_VERIFICATION")
    assert held.time_in_state == 1
    assert held.turn_count == 2

    verified = advance(held, "ASK_VERIFICATION", "CONSENT_RECORDING")
    assert verified.identity_verified is True


def test_advance_counts_offers_and_payment() -> None:
    view = ContextView(fsm_state="NEGOTIATION", identity_verified=True, disclosure_complete=True)
    offered = advance(view, "OFFER_PLAN", "NEGOTIATION")
    assert offered.offers_made == 1
    assert offered.payment_arranged is False

    setup = advance(offered, "OFFER_PLAN", "PAYMENT_SETUP")
    paid = advance(setup, "CONFIRM_PLAN", "WRAPUP")
    assert paid.payment_arranged is True
    done = advance(paid, "SUMMARIZE", "END_CALL")
    assert done.outcome == "PAYMENT_ARRANGED"


def test_payment_needs_a_committing_action() -> None:
    setup = ContextView(fsm_state="PAYMENT_SETUP", identity_verified=True, disclosure_complete=True)
    # An agreeing borrower moves the call on even when the agent only asked a question.
    asked = advance(setup, "ASK_CLARIFY", "WRAPUP")
    assert asked.payment_arranged is False
    assert advance(asked, "SUMMARIZE", "END_CALL").outcome == "COMPLETED"

    assert advance(setup, "CONFIRM_PLAN", "PAYMENT_SETUP").payment_arranged is False
    assert advance(setup, "SEND_PAYMENT_LINK", "WRAPUP").payment_arranged is True
    assert advance(setup, "PROCEED", "WRAPUP").payment_arranged is True


def test_resolve_outcome_precedence() -> None:
    prev = ContextView(fsm_state="NEGOTIATION")
    assert resolve_outcome(prev, prev.replace(fsm_state="DO_NOT_CALL")) == "DO_NOT_CALL"
    assert resolve_outcome(prev, prev.replace(fsm_state="END_CALL"), "COMPLIANCE_BLOCK") == "COMPLIANCE_BLOCK"
    assert resolve_outcome(prev, prev.replace(fsm_state="END_CALL")) == "COMPLETED"
    assert resolve_outcome(prev, prev.replace(fsm_state="NEGOTIATION")) is None

    attorney = prev.replace(last_signal="ATTORNEY_REPRESENTED")
    assert resolve_outcome(attorney, attorney.replace(fsm_state="END_CALL")) == "ESCALATION"

    # The first outcome sticks once the call has one.
    settled = ContextView(fsm_state="DISPUTE_FLOW", outcome="DISPUTE")
    assert resolve_outcome(settled, settled.replace(fsm_state="END_CALL")) == "DISPUTE"


def test_feature_vector_shape_and_bounds() -> None:
    view = ContextView(
        fsm_state="NEGOTIATION",
        turn_count=50,
        time_in_state=9,
        objections_raised=7,
        offers_made=1,
        last_signal="AGREEMENT",
        sentiment="POSITIVE",
    )
    vec = feature_vector(view)
    assert len(vec) == len(FEATURE_NAMES) == 34
    assert all(0.0 <= v <= 1.0 for v in vec)
    assert vec[FEATURE_NAMES.index("state:NEGOTIATION")] == 1.0
    assert vec[FEATURE_NAMES.index("turn")] == 1.0
    assert vec[FEATURE_NAMES.index("signal:positive")] == 1.0
    assert vec[FEATURE_NAMES.index("bias")] == 1.0


def test_state_key_is_canonical() -> None:
    a = ContextView(fsm_state="NEGOTIATION", objections_raised=5)
    b = ContextView(fsm_state="NEGOTIATION", objections_raised=3)
    assert state_key(a) == state_key(b)
    assert state_key(a).startswith("fsm:NEGOTIATION|")
    assert state_key(a) != state_key(a.replace(sentiment="NEGATIVE"))


def test_buckets() -> None:
    assert debt_bucket(999) == "LOW"
    assert debt_bucket(1000) == "MEDIUM"
    assert debt_bucket(5000) == "HIGH"
    assert days_past_due_bucket(59) == "30"
    assert days_past_due_bucket(60) == "60"
    assert days_past_due_bucket(90) == "90"
    assert days_past_due_bucket(120) == "120+"


def test_case_file_validation() -> None:
    with pytest.raises(ValidationError):
        CaseFile(timezone="Mars/Olympus")
    with pytest.raises(ValidationError):
        CaseFile(amount_due=-5)
    with pytest.raises(ValidationError):
        CaseFile(balance=10)
