from __future__ import annotations

import pytest

from debtcall.domain import ALL_ACTIONS, ALL_STATES, BRANCH_STATES, MAIN_FLOW
from debtcall.errors import IllegalAction
from debtcall.state_machine import ADVANCING_ACTIONS, LEGAL_ACTIONS, StateMachine


def test_legal_actions_nonempty_unless_terminal() -> None:
    fsm = StateMachine()
    for state in ALL_STATES:
        if fsm.is_terminal(state):
            assert fsm.legal_actions(state) == ()
        else:
            assert len(fsm.legal_actions(state)) > 0


def test_every_legal_action_is_known() -> None:
    for actions in LEGAL_ACTIONS.values():
        for a in actions:
            assert a in ALL_ACTIONS


def test_branch_states_always_exit_to_end_call() -> None:
    fsm = StateMachine()
    signals = [None, "AGREEMENT", "DISPUTE", "STOP_CONTACT", "HOSTILITY", "CALLBACK_REQUEST"]
    for branch in BRANCH_STATES:
        for action in fsm.legal_actions(branch):
            for signal in signals:
                assert fsm.transition(branch, action, signal) == "END_CALL"


def test_main_flow_advances_in_order_on_advancing_actions() -> None:
    fsm = StateMachine()
    state = fsm.initial_state()
    visited = [state]
    while not fsm.is_terminal(state):
        action = sorted(ADVANCING_ACTIONS[state])[0]
        state = fsm.transition(state, action)
        visited.append(state)
    assert tuple(visited) == MAIN_FLOW


def test_non_advancing_action_retains_state() -> None:
    fsm = StateMachine()
    assert fsm.transition("IDENTITY_VERIFICATION", "ASK_VERIFICATION") == "IDENTITY_VERIFICATION"
    assert fsm.transition("NEGOTIATION", "OFFER_PLAN") == "NEGOTIATION"
    assert fsm.transition("DEBT_CONTEXT", "EMPATHIZE", "CONFUSION") == "DEBT_CONTEXT"


def test_agreement_signal_advances_without_advancing_action() -> None:
    fsm = StateMachine()
    assert fsm.transition("IDENTITY_VERIFICATION", "ASK_VERIFICATION", "AGREEMENT") == "CONSENT_RECORDING"


def test_negotiation_decision_point() -> None:
    fsm = StateMachine()
    assert fsm.transition("NEGOTIATION", "OFFER_PLAN", "AGREEMENT") == "PAYMENT_SETUP"
    assert fsm.transition("NEGOTIATION", "EMPATHIZE", "CALLBACK_REQUEST") == "CALLBACK_SCHEDULED"
    assert fsm.transition("NEGOTIATION", "EMPATHIZE", "INCONVENIENT_TIME") == "CALLBACK_SCHEDULED"
    assert fsm.transition("NEGOTIATION", "COUNTER_OFFER", "DISPUTE") == "DISPUTE_FLOW"
    assert fsm.transition("NEGOTIATION", "COUNTER_OFFER", "HOSTILITY") == "ESCALATE_HUMAN"
    assert fsm.transition("NEGOTIATION", "REQUEST_CALLBACK") == "CALLBACK_SCHEDULED"


def test_callback_signal_outside_negotiation_does_not_branch() -> None:
    fsm = StateMachine()
    assert fsm.transition("DEBT_CONTEXT", "EMPATHIZE", "CALLBACK_REQUEST") == "DEBT_CONTEXT"


@pytest.mark.parametrize(
    "signal,target",
    [
        ("STOP_CONTACT", "DO_NOT_CALL"),
        ("WRONG_PARTY", "WRONG_PARTY_FLOW"),
        ("DISPUTE", "DISPUTE_FLOW"),
        ("HOSTILITY", "ESCALATE_HUMAN"),
        ("ATTORNEY_REPRESENTED", "END_CALL"),
    ],
)
def test_escape_signals_from_every_main_flow_state(signal: str, target: str) -> None:
    fsm = StateMachine()
    for state in MAIN_FLOW[:-1]:
        action = fsm.legal_actions(state)[0]
        assert fsm.transition(state, action, signal) == target
        assert fsm.escape_target(state, signal) == target


def test_illegal_action_raises() -> None:
    fsm = StateMachine()
    with pytest.raises(IllegalAction) as exc:
        fsm.transition("OPENING", "OFFER_PLAN")
    assert exc.value.state == "OPENING"
    assert exc.value.action == "OFFER_PLAN"
    with pytest.raises(IllegalAction):
        fsm.transition("END_CALL", "PROCEED")


def test_unknown_state_raises_key_error() -> None:
    with pytest.raises(KeyError):
        StateMachine().legal_actions("LIMBO")


def test_force_accepts_only_branch_states_and_end_call() -> None:
    fsm = StateMachine()
    assert fsm.force("NEGOTIATION", "DO_NOT_CALL") == "DO_NOT_CALL"
    assert fsm.force("OPENING", "END_CALL") == "END_CALL"
    with pytest.raises(ValueError):
        fsm.force("OPENING", "NEGOTIATION")
    with pytest.raises(IllegalAction):
        fsm.force("END_CALL", "DO_NOT_CALL")


def test_exit_and_holding_actions() -> None:
    fsm = StateMachine()
    for branch in BRANCH_STATES:
        assert fsm.exit_action(branch) in fsm.legal_actions(branch)
    assert fsm.exit_action("END_CALL") == "SUMMARIZE"
    assert fsm.holding_action("OPENING") == "ASK_CLARIFY"
    assert fsm.holding_action("NEGOTIATION") == "EMPATHIZE"
    # WRAPUP has only advancing actions.
    for state in MAIN_FLOW[:-2]:
        held = fsm.holding_action(state)
        assert held in fsm.legal_actions(state)
        assert held not in ADVANCING_ACTIONS[state]


def test_successors_are_data_driven() -> None:
    fsm = StateMachine()
    assert fsm.successors("WRAPUP") >= {"END_CALL", "DO_NOT_CALL"}
    assert fsm.successors("DISPUTE_FLOW") == {"END_CALL"}
    assert fsm.successors("END_CALL") == set()
