from __future__ import annotations

import asyncio

import pytest

from debtcall.domain import Outcome
from debtcall.context import ContextView, advance
from debtcall.episode import Episode, Transition
from debtcall.evaluation import (
    AggregateMetrics,
    compare_metrics,
    compare_policies,
    compute_metrics,
    evaluate_baseline,
    evaluate_policy,
    format_metrics,
    metrics_by_persona,
    metrics_by_temperament,
    metrics_by_willingness,
    rolling_average,
)
from debtcall.learners import ActionValueStore, fresh_table
from debtcall.training import Trainer, TrainingConfig


KNOWN_OUTCOMES = {
    "PAYMENT_ARRANGED",
    "CALLBACK",
    "ESCALATION",
    "DISPUTE",
    "WRONG_PARTY",
    "DO_NOT_CALL",
    "HANGUP",
    "MAX_TURNS_EXCEEDED",
    "COMPLIANCE_BLOCK",
    "SYSTEM_ERROR",
    "COMPLETED",
}


def _train(kind: str = "qlearning", episodes: int = 6, seed: int = 1):
    store = ActionValueStore(fresh_table(kind))
    trainer = Trainer(store, training=TrainingConfig(episodes=episodes, seed=seed, publish_every=3))
    return store, asyncio.run(trainer.train())


@pytest.mark.parametrize("kind", ["qlearning", "bandit"])
def test_training_publishes_and_counts_episodes(kind: str) -> None:
    store, report = _train(kind)
    assert len(report.curve) == 6
    assert [p.episode for p in report.curve] == [1, 2, 3, 4, 5, 6]
    assert report.table.episodes_trained == 6
    assert report.table.kind == kind
    assert store.current() is report.table
    assert store.current().version == 2
    for ep in report.episodes:
        assert ep.outcome in KNOWN_OUTCOMES
        assert ep.persona
        assert sum(1 for t in ep.transitions if t.done) == 1


def test_training_is_deterministic_for_a_seed() -> None:
    _, a = _train(seed=9)
    _, b = _train(seed=9)
    assert [(p.persona, p.outcome, p.length) for p in a.curve] == [(p.persona, p.outcome, p.length) for p in b.curve]
    assert [p.total_return for p in a.curve] == pytest.approx([p.total_return for p in b.curve])


def test_evaluation_never_updates_the_table() -> None:
    store, report = _train()
    before = store.current()
    episodes = asyncio.run(
        evaluate_policy(store, episodes_per_persona=2, personas=["cooperative_stable", "hostile_disputing"])
    )
    assert len(episodes) == 4
    assert store.current() is before
    grouped = metrics_by_persona(episodes)
    assert list(grouped) == ["cooperative_stable", "hostile_disputing"]
    assert grouped["cooperative_stable"].num_episodes == 2


def _episode(outcome: Outcome, rewards: list[float], persona: str | None = None) -> Episode:
    view = ContextView(fsm_state="NEGOTIATION")
    ts = tuple(
        Transition(view, "EMPATHIZE", r, advance(view, "EMPATHIZE", "NEGOTIATION"), i == len(rewards) - 1)
        for i, r in enumerate(rewards)
    )
    return Episode(f"ep-{outcome}", "s", outcome, ts, persona)


def test_compute_metrics() -> None:
    eps = [
        _episode("PAYMENT_ARRANGED", [0.5, 1.0], "cooperative_stable"),
        _episode("CALLBACK", [0.2]),
        _episode("HANGUP", [-0.3, -0.3, -0.4]),
        _episode("ESCALATION", [0.0]),
    ]
    m = compute_metrics(eps)
    assert m.num_episodes == 4
    assert m.avg_return == pytest.approx((1.5 + 0.2 - 1.0 + 0.0) / 4)
    assert m.success_rate == pytest.approx(0.25)
    assert m.partial_success_rate == pytest.approx(0.5)
    assert m.hangup_rate == pytest.approx(0.25)
    assert m.escalation_rate == pytest.approx(0.25)
    assert m.avg_length == pytest.approx(7 / 4)
    assert m.std_return > 0
    assert "Success Rate: 25.0%" in format_metrics(m)
    assert m.to_payload()["num_episodes"] == 4

    assert set(metrics_by_persona(eps)) == {"cooperative_stable", "live"}
    assert compute_metrics([]).num_episodes == 0


def test_rolling_average() -> None:
    assert rolling_average([1.0, 2.0, 3.0, 4.0], 2) == pytest.approx([1.0, 1.5, 2.5, 3.5])
    assert rolling_average([2.0], 0) == [2.0]
    assert rolling_average([], 5) == []


def test_metrics_by_temperament_and_willingness() -> None:
    eps = [
        _episode("PAYMENT_ARRANGED", [1.0], "cooperative_stable"),
        _episode("HANGUP", [-0.5], "hostile_disputing"),
        _episode("HANGUP", [-0.5], "hostile_struggling"),
        _episode("CALLBACK", [0.2], "random_medium_neutral"),
        _episode("COMPLETED", [0.0]),
    ]
    by_temperament = metrics_by_temperament(eps)
    assert set(by_temperament) == {"COOPERATIVE", "HOSTILE", "NEUTRAL", "unknown"}
    assert by_temperament["HOSTILE"].num_episodes == 2
    assert by_temperament["HOSTILE"].hangup_rate == pytest.approx(1.0)

    by_willingness = metrics_by_willingness(eps)
    assert set(by_willingness) == {"HIGH", "LOW", "MEDIUM", "unknown"}
    assert by_willingness["HIGH"].success_rate == pytest.approx(1.0)
    assert by_willingness["MEDIUM"].partial_success_rate == pytest.approx(1.0)


def test_compare_metrics_improvement() -> None:
    baseline = AggregateMetrics(num_episodes=4, avg_return=-0.5, success_rate=0.0, hangup_rate=0.5)
    learned = AggregateMetrics(num_episodes=4, avg_return=0.25, success_rate=0.5, hangup_rate=0.25)
    cmp = compare_metrics(baseline, learned)
    assert cmp["avg_return"]["improvement"] == pytest.approx(150.0)
    assert cmp["success_rate"]["improvement"] == pytest.approx(100.0)
    assert cmp["hangup_rate"]["improvement"] == pytest.approx(-50.0)
    assert cmp["avg_length"]["improvement"] == pytest.approx(0.0)


def test_baselines_are_evaluated_on_the_same_calls() -> None:
    store, _ = _train()
    before = store.current()
    personas = ["cooperative_stable", "neutral_confused"]

    scripted = asyncio.run(evaluate_baseline("fixed_script", episodes_per_persona=2, personas=personas))
    assert len(scripted) == 4
    assert [e.persona for e in scripted] == ["cooperative_stable"] * 2 + ["neutral_confused"] * 2
    assert all(e.session_id.startswith("fixed_script-") for e in scripted)

    results = asyncio.run(compare_policies(store, episodes_per_persona=2, personas=personas))
    assert list(results) == ["learned", "random", "fixed_script", "heuristic"]
    assert all(m.num_episodes == 4 for m in results.values())
    assert results["fixed_script"] == compute_metrics(scripted)
    assert store.current() is before
