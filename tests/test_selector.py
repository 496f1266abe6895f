from __future__ import annotations

import random

import pytest

from debtcall.clock import FakeClock
from debtcall.context import ContextView, state_key
from debtcall.learners import ActionSelector, ActionValueStore, ActionValueTable, argmax, fresh_table
from debtcall.learners.table import QTableParams
from debtcall.state_machine import StateMachine


NEGOTIATION_LEGAL = StateMachine().legal_actions("NEGOTIATION")


def test_argmax_ties_resolve_to_earliest() -> None:
    assert argmax(("A", "B", "C"), (0.0, 0.0, 0.0)) == "A"
    assert argmax(("A", "B", "C"), (0.0, 2.0, 2.0)) == "B"


def test_serving_never_explores() -> None:
    store = ActionValueStore(fresh_table("qlearning", epsilon=1.0))
    selector = ActionSelector(store, mode="serving", rng=random.Random(1), clock=FakeClock())
    view = ContextView(fsm_state="NEGOTIATION")
    for _ in range(50):
        sel = selector.select(view, NEGOTIATION_LEGAL)
        assert sel.action == "EMPATHIZE"
        assert sel.explored is False
        assert sel.latency_ms == 0


def test_training_explores_with_full_epsilon() -> None:
    store = ActionValueStore(fresh_table("bandit", epsilon=1.0))
    selector = ActionSelector(store, mode="training", rng=random.Random(5))
    view = ContextView(fsm_state="NEGOTIATION")
    picks = [selector.select(view, NEGOTIATION_LEGAL) for _ in range(40)]
    assert all(p.explored for p in picks)
    assert all(p.action in NEGOTIATION_LEGAL for p in picks)


def test_mode_validation() -> None:
    store = ActionValueStore(fresh_table("qlearning"))
    with pytest.raises(ValueError):
        ActionSelector(store, mode="training")
    with pytest.raises(ValueError):
        ActionSelector(store, mode="shadow")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        ActionSelector(store).select(ContextView(fsm_state="END_CALL"), ())


def test_serving_selector_cannot_learn_or_publish() -> None:
    selector = ActionSelector(ActionValueStore(fresh_table("qlearning")))
    with pytest.raises(RuntimeError):
        selector.update([])
    with pytest.raises(RuntimeError):
        selector.publish()


def test_publish_swaps_and_serving_sees_new_values() -> None:
    store = ActionValueStore(fresh_table("qlearning", alpha=1.0))
    serving = ActionSelector(store, mode="serving")
    view = ContextView(fsm_state="NEGOTIATION")
    assert serving.select(view, NEGOTIATION_LEGAL).action == "EMPATHIZE"

    swaps: list[int] = []
    store.on_swap(lambda t: swaps.append(t.version))

    table = ActionValueTable(
        kind="qlearning",
        params=QTableParams(rows={state_key(view): {"OFFER_PLAN": 1.0}}),
        version=0,
    )
    trainer = ActionSelector(ActionValueStore(table), mode="training", rng=random.Random(0))
    trainer_table = trainer.publish()
    assert trainer_table.version == 1

    store.swap(trainer_table)
    sel = serving.select(view, NEGOTIATION_LEGAL)
    assert sel.action == "OFFER_PLAN"
    assert sel.table_version == 1
    assert swaps == [1]


def test_swap_rejects_stale_expected_version() -> None:
    store = ActionValueStore(fresh_table("qlearning"))
    store.swap(fresh_table("qlearning"), expected_version=0)
    bumped = ActionValueTable(kind="qlearning", params=QTableParams(rows={}), version=4)
    store.swap(bumped)
    with pytest.raises(RuntimeError):
        store.swap(fresh_table("qlearning"), expected_version=0)


def test_update_counts_finished_episodes() -> None:
    from debtcall.context import advance
    from debtcall.episode import Transition

    store = ActionValueStore(fresh_table("qlearning"))
    selector = ActionSelector(store, mode="training", rng=random.Random(0))
    view = ContextView(fsm_state="WRAPUP")
    done = Transition(view, "SUMMARIZE", 1.0, advance(view, "SUMMARIZE", "END_CALL"), True)
    selector.update([done, done])
    assert selector.episodes_trained == 2
    assert store.current().episodes_trained == 0
    published = selector.publish()
    assert published.episodes_trained == 2
    assert store.current() is published


def test_import_snapshot_reloads_training_learner() -> None:
    store = ActionValueStore(fresh_table("qlearning"))
    selector = ActionSelector(store, mode="training", rng=random.Random(0))
    view = ContextView(fsm_state="NEGOTIATION")
    blob = {
        "type": "qlearning",
        "version": 9,
        "episodesTrained": 40,
        "hyperparameters": {"alpha": 0.1, "gamma": 0.9, "epsilon": 0.0, "initialQ": 0.0},
        "parameters": {"rows": {state_key(view): {"COUNTER_OFFER": 0.7}}},
    }
    table = selector.import_snapshot(blob)
    assert store.current() is table
    assert selector.episodes_trained == 40
    assert selector.select(view, NEGOTIATION_LEGAL).action == "COUNTER_OFFER"
    assert selector.export_snapshot()["version"] == 9


def test_greedy_policy() -> None:
    view = ContextView(fsm_state="NEGOTIATION")
    table = ActionValueTable(
        kind="qlearning",
        params=QTableParams(rows={state_key(view): {"OFFER_PLAN": 0.5}, "fsm:LIMBO|x": {"PROCEED": 1.0}}),
    )
    policy = ActionSelector(ActionValueStore(table)).greedy_policy()
    assert policy == {state_key(view): "OFFER_PLAN"}

    bandit_policy = ActionSelector(ActionValueStore(fresh_table("bandit"))).greedy_policy()
    assert "END_CALL" not in bandit_policy
    assert bandit_policy["OPENING"] == "PROCEED"
