from __future__ import annotations

import dataclasses

import pytest

from debtcall.errors import PolicyViolation, ValidationFailure
from debtcall.policy_guard import PolicyDecision
from debtcall.reward import RewardBreakdown
from debtcall.trace import SessionTraceLog, TraceBuilder, ValidationOutcome, hash_payload


def _builder(turn_index: int = 0, session_id: str = "s1") -> TraceBuilder:
    b = TraceBuilder(session_id=session_id, turn_index=turn_index, t_ms=1000, fsm_state_before="OPENING")
    for stage in ("AWAIT_INPUT", "SELECT_ACTION", "POLICY_CHECK", "GENERATE", "VALIDATE", "SCORE", "COMMIT"):
        b.stage(stage)  # type: ignore[arg-type]
    b.proposed_action = "PROCEED"
    b.action = "PROCEED"
    b.policy = PolicyDecision(allowed=True, risk_level="LOW")
    b.validation = ValidationOutcome(passed=True)
    b.reward = RewardBreakdown.of([], -0.05, 0.0)
    b.utterance = "Hello, may I speak with Jordan Lee?"
    return b


def test_hash_payload_is_key_order_independent() -> None:
    assert hash_payload({"a": 1, "b": [1, 2]}) == hash_payload({"b": [1, 2], "a": 1})
    assert hash_payload({"a": 1}) != hash_payload({"a": 2})


def test_build_requires_every_stage_output() -> None:
    b = TraceBuilder(session_id="s1", turn_index=0, t_ms=0, fsm_state_before="OPENING")
    b.proposed_action = "PROCEED"
    with pytest.raises(ValueError) as exc:
        b.build(fsm_state_after="DISCLOSURE", latency_ms=0)
    assert "policy" in str(exc.value)
    assert "reward" in str(exc.value)


def test_hash_ignores_timing() -> None:
    a = _builder().build(fsm_state_after="DISCLOSURE", latency_ms=5)
    b = dataclasses.replace(_builder(), t_ms=99_000).build(fsm_state_after="DISCLOSURE", latency_ms=700)
    assert a.payload_hash == b.payload_hash
    c = _builder().build(fsm_state_after="OPENING", latency_ms=5)
    assert c.payload_hash != a.payload_hash


def test_payload_serializes_nested_records() -> None:
    trace = _builder().build(fsm_state_after="DISCLOSURE", latency_ms=3)
    payload = trace.to_payload()
    assert payload["policy"]["risk_level"] == "LOW"
    assert payload["validation"]["fallback_used"] is False
    assert payload["reward"]["total"] == pytest.approx(-0.05)
    assert payload["stages"][-1] == "COMMIT"
    assert trace.fallback_used is False


def test_log_counts_schema_violations_and_digests() -> None:
    log = SessionTraceLog("s1")
    log.append(_builder(0).build(fsm_state_after="DISCLOSURE", latency_ms=1))
    assert log.schema_violations_total == 0
    log.append(_builder(5).build(fsm_state_after="DISCLOSURE", latency_ms=1))
    log.append(_builder(2, session_id="other").build(fsm_state_after="DISCLOSURE", latency_ms=1))
    assert log.schema_violations_total == 2
    assert len(log) == 3

    again = SessionTraceLog("s1")
    again.append(_builder(0).build(fsm_state_after="DISCLOSURE", latency_ms=40))
    first = SessionTraceLog("s1")
    first.append(_builder(0).build(fsm_state_after="DISCLOSURE", latency_ms=1))
    assert again.replay_digest() == first.replay_digest()
    assert again.replay_digest() != log.replay_digest()


def test_raise_for_helpers() -> None:
    ValidationOutcome(passed=True).raise_for_failure()
    with pytest.raises(ValidationFailure) as exc:
        ValidationOutcome(passed=False, failures=(("tone", "pushy"), ("length", "too_long"))).raise_for_failure()
    assert (exc.value.validator, exc.value.detail) == ("tone", "pushy")
    with pytest.raises(ValidationFailure):
        ValidationOutcome(passed=False, timed_out=True, fallback_used=True).raise_for_failure()

    PolicyDecision(allowed=True, risk_level="LOW").raise_for_block()
    blocked = PolicyDecision(allowed=False, risk_level="HIGH", blocked_reasons=("do_not_call", "outside_call_window"))
    with pytest.raises(PolicyViolation) as pv:
        blocked.raise_for_block()
    assert pv.value.reasons == ["do_not_call", "outside_call_window"]
    assert str(pv.value) == "do_not_call; outside_call_window"
