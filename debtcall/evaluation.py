from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .config import EngineConfig
from .episode import Episode, InMemoryEpisodeRecorder
from .generation import RuleValidator, TemplateResponseGenerator
from .jurisdictions import rules_for
from .learners.baselines import BASELINE_NAMES, BaselineSelector, make_baseline
from .learners.selector import ActionSelector
from .learners.table import ActionValueStore
from .simulator import BorrowerSimulator, get_persona, persona_names, persona_traits
from .training import midday_clock, run_simulated_call, simulated_case
from .turn_processor import TurnProcessor


SUCCESS_OUTCOMES = frozenset({"PAYMENT_ARRANGED"})
PARTIAL_SUCCESS_OUTCOMES = frozenset({"PAYMENT_ARRANGED", "CALLBACK"})


@dataclass(frozen=True, slots=True)
class AggregateMetrics:
    num_episodes: int = 0
    avg_return: float = 0.0
    std_return: float = 0.0
    success_rate: float = 0.0
    partial_success_rate: float = 0.0
    avg_length: float = 0.0
    hangup_rate: float = 0.0
    escalation_rate: float = 0.0

    def to_payload(self) -> dict[str, float]:
        return {
            "num_episodes": self.num_episodes,
            "avg_return": self.avg_return,
            "std_return": self.std_return,
            "success_rate": self.success_rate,
            "partial_success_rate": self.partial_success_rate,
            "avg_length": self.avg_length,
            "hangup_rate": self.hangup_rate,
            "escalation_rate": self.escalation_rate,
        }


def compute_metrics(episodes: Iterable[Episode]) -> AggregateMetrics:
    eps = list(episodes)
    n = len(eps)
    if n == 0:
        return AggregateMetrics()
    returns = [e.total_return for e in eps]
    avg = sum(returns) / n
    variance = sum((r - avg) ** 2 for r in returns) / n

    def rate(pred: Callable[[Episode], bool]) -> float:
        return sum(1 for e in eps if pred(e)) / n

    return AggregateMetrics(
        num_episodes=n,
        avg_return=avg,
        std_return=math.sqrt(variance),
        success_rate=rate(lambda e: e.outcome in SUCCESS_OUTCOMES),
        partial_success_rate=rate(lambda e: e.outcome in PARTIAL_SUCCESS_OUTCOMES),
        avg_length=sum(e.length for e in eps) / n,
        hangup_rate=rate(lambda e: e.outcome == "HANGUP"),
        escalation_rate=rate(lambda e: e.outcome == "ESCALATION"),
    )


def _grouped(episodes: Iterable[Episode], key: Callable[[Episode], str]) -> dict[str, AggregateMetrics]:
    grouped: dict[str, list[Episode]] = {}
    for ep in episodes:
        grouped.setdefault(key(ep), []).append(ep)
    return {k: compute_metrics(eps) for k, eps in sorted(grouped.items())}


def metrics_by_persona(episodes: Iterable[Episode]) -> dict[str, AggregateMetrics]:
    return _grouped(episodes, lambda e: e.persona or "live")


def _trait(ep: Episode, index: int) -> str:
    traits = persona_traits(ep.persona) if ep.persona else None
    return traits[index] if traits is not None else "unknown"


def metrics_by_willingness(episodes: Iterable[Episode]) -> dict[str, AggregateMetrics]:
    """Grouped by the simulated borrower's willingness to pay; live calls land under "unknown"."""
    return _grouped(episodes, lambda e: _trait(e, 0))


def metrics_by_temperament(episodes: Iterable[Episode]) -> dict[str, AggregateMetrics]:
    return _grouped(episodes, lambda e: _trait(e, 1))


def rolling_average(values: list[float], window: int) -> list[float]:
    window = max(1, window)
    out: list[float] = []
    for i in range(len(values)):
        chunk = values[max(0, i - window + 1) : i + 1]
        out.append(sum(chunk) / len(chunk))
    return out


def format_metrics(m: AggregateMetrics) -> str:
    return "\n".join(
        [
            f"Episodes: {m.num_episodes}",
            f"Avg Return: {m.avg_return:.3f} ± {m.std_return:.3f}",
            f"Success Rate: {m.success_rate * 100:.1f}%",
            f"Partial Success: {m.partial_success_rate * 100:.1f}%",
            f"Avg Length: {m.avg_length:.1f} turns",
            f"Hangup Rate: {m.hangup_rate * 100:.1f}%",
            f"Escalation Rate: {m.escalation_rate * 100:.1f}%",
        ]
    )


def compare_metrics(baseline: AggregateMetrics, learned: AggregateMetrics) -> dict[str, dict[str, float]]:
    """Per-metric baseline, learned and relative improvement in percent."""

    def pair(base: float, value: float) -> dict[str, float]:
        if base != 0:
            improvement = (value - base) / abs(base) * 100
        else:
            improvement = 100.0 if value > 0 else 0.0
        return {"baseline": base, "learned": value, "improvement": improvement}

    return {
        "avg_return": pair(baseline.avg_return, learned.avg_return),
        "success_rate": pair(baseline.success_rate, learned.success_rate),
        "partial_success_rate": pair(baseline.partial_success_rate, learned.partial_success_rate),
        "avg_length": pair(baseline.avg_length, learned.avg_length),
        "hangup_rate": pair(baseline.hangup_rate, learned.hangup_rate),
    }


async def evaluate_selector(
    selector: ActionSelector,
    *,
    episodes_per_persona: int = 10,
    personas: Optional[Iterable[str]] = None,
    seed: int = 11,
    cfg: Optional[EngineConfig] = None,
    session_prefix: str = "eval",
) -> list[Episode]:
    """Rollouts of `selector` against each persona; nothing is learned or published."""
    cfg = cfg or EngineConfig()
    rng = random.Random(seed)
    recorder = InMemoryEpisodeRecorder()
    processor = TurnProcessor(
        selector=selector,
        generator=TemplateResponseGenerator(),
        validator=RuleValidator(rules_for(cfg.jurisdiction)),
        recorder=recorder,
        cfg=cfg,
        now=midday_clock(cfg.jurisdiction),
    )
    index = 0
    for key in personas or persona_names():
        persona = get_persona(key)
        for _ in range(episodes_per_persona):
            simulator = BorrowerSimulator(persona, random.Random(rng.getrandbits(32)))
            case = simulated_case(rng, index, cfg.jurisdiction)
            await run_simulated_call(processor, simulator, f"{session_prefix}-{index}", case)
            index += 1
    await processor.drain()
    return recorder.episodes


async def evaluate_policy(
    store: ActionValueStore,
    *,
    episodes_per_persona: int = 10,
    personas: Optional[Iterable[str]] = None,
    seed: int = 11,
    cfg: Optional[EngineConfig] = None,
) -> list[Episode]:
    """Greedy rollouts of the published table against each persona; the table is never updated."""
    return await evaluate_selector(
        ActionSelector(store, mode="serving"),
        episodes_per_persona=episodes_per_persona,
        personas=personas,
        seed=seed,
        cfg=cfg,
    )


async def evaluate_baseline(
    name: str,
    *,
    episodes_per_persona: int = 10,
    personas: Optional[Iterable[str]] = None,
    seed: int = 11,
    cfg: Optional[EngineConfig] = None,
) -> list[Episode]:
    policy = make_baseline(name, random.Random(seed + 1))
    return await evaluate_selector(
        BaselineSelector(policy),
        episodes_per_persona=episodes_per_persona,
        personas=personas,
        seed=seed,
        cfg=cfg,
        session_prefix=name,
    )


async def compare_policies(
    store: ActionValueStore,
    *,
    baselines: Iterable[str] = BASELINE_NAMES,
    episodes_per_persona: int = 10,
    personas: Optional[Iterable[str]] = None,
    seed: int = 11,
    cfg: Optional[EngineConfig] = None,
) -> dict[str, AggregateMetrics]:
    """
    Aggregate metrics for the learned table and each named baseline.

    Every policy meets the same personas, cases and simulator seeds, so the
    differences come from action choice alone. The learned policy is keyed
    "learned".
    """
    keys = list(personas) if personas is not None else persona_names()
    out = {
        "learned": compute_metrics(
            await evaluate_policy(
                store, episodes_per_persona=episodes_per_persona, personas=keys, seed=seed, cfg=cfg
            )
        )
    }
    for name in baselines:
        episodes = await evaluate_baseline(
            name, episodes_per_persona=episodes_per_persona, personas=keys, seed=seed, cfg=cfg
        )
        out[name] = compute_metrics(episodes)
    return out
