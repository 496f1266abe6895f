from __future__ import annotations

import asyncio
import random

import pytest

from debtcall.context import ContextView
from debtcall.learners import (
    BASELINE_NAMES,
    BaselineSelector,
    FixedScriptPolicy,
    HeuristicPolicy,
    RandomPolicy,
    make_baseline,
)
from debtcall.state_machine import StateMachine
from tests.harness.engine_harness import EngineHarness


FSM = StateMachine()


def test_fixed_script_takes_the_first_legal_action() -> None:
    policy = FixedScriptPolicy()
    for state in FSM.states:
        legal = FSM.legal_actions(state)
        if legal:
            assert policy.choose(ContextView(fsm_state=state), legal) == legal[0]


def test_random_policy_is_seeded_and_stays_legal() -> None:
    legal = FSM.legal_actions("NEGOTIATION")
    view = ContextView(fsm_state="NEGOTIATION")
    picks = RandomPolicy(random.Random(3))
    again = RandomPolicy(random.Random(3))
    seq = [picks.choose(view, legal) for _ in range(20)]
    assert seq == [again.choose(view, legal) for _ in range(20)]
    assert set(seq) <= set(legal)
    assert len(set(seq)) > 1


@pytest.mark.parametrize(
    "state,fields,expected",
    [
        ("NEGOTIATION", {"objections_raised": 1}, "EMPATHIZE"),
        ("NEGOTIATION", {"sentiment": "POSITIVE"}, "OFFER_PLAN"),
        ("NEGOTIATION", {"offers_made": 1}, "COUNTER_OFFER"),
        ("NEGOTIATION", {}, "OFFER_PLAN"),
        ("IDENTITY_VERIFICATION", {"last_signal": "AGREEMENT"}, "CONFIRM_IDENTITY"),
        ("IDENTITY_VERIFICATION", {}, "ASK_VERIFICATION"),
        ("PAYMENT_SETUP", {}, "SEND_PAYMENT_LINK"),
        ("DEBT_CONTEXT", {}, "PROCEED"),
    ],
)
def test_heuristic_rules(state: str, fields: dict, expected: str) -> None:
    view = ContextView(fsm_state=state, **fields)  # type: ignore[arg-type]
    assert HeuristicPolicy().choose(view, FSM.legal_actions(state)) == expected


def test_make_baseline() -> None:
    assert BASELINE_NAMES == ("random", "fixed_script", "heuristic")
    assert isinstance(make_baseline("heuristic"), HeuristicPolicy)
    assert isinstance(make_baseline("random", random.Random(0)), RandomPolicy)
    with pytest.raises(ValueError):
        make_baseline("random")
    with pytest.raises(ValueError):
        make_baseline("oracle")


def test_baseline_selector_rejects_illegal_choices() -> None:
    class _Stubborn:
        name = "stubborn"

        def choose(self, view, legal):
            return "ESCALATE"

    selector = BaselineSelector(_Stubborn())
    assert selector.kind == "stubborn"
    with pytest.raises(ValueError):
        selector.select(ContextView(fsm_state="OPENING"), FSM.legal_actions("OPENING"))
    with pytest.raises(ValueError):
        selector.select(ContextView(fsm_state="END_CALL"), ())


def test_baseline_selector_drives_the_turn_processor() -> None:
    async def _run() -> None:
        h = EngineHarness.start(selector=BaselineSelector(FixedScriptPolicy()))
        sid = h.open()
        result = await h.processor.generate_opening(sid)
        assert result.trace.proposed_action == "PROCEED"
        assert result.trace.table_version == 0
        result = await h.processor.process_turn(sid, "Yes, this is Jordan.")
        assert result.trace.proposed_action == "IDENTIFY_SELF"

    asyncio.run(_run())
