from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        self.histograms.setdefault(name, []).append(int(value))

    def set(self, name: str, value: int) -> None:
        self.gauges[name] = int(value)

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_gauge(self, name: str) -> int:
        return int(self.gauges.get(name, 0))

    def percentile(self, name: str, p: float) -> int | None:
        values = sorted(self.histograms.get(name, []))
        if not values:
            return None
        if p <= 0:
            return values[0]
        if p >= 100:
            return values[-1]
        k = int(round((p / 100.0) * (len(values) - 1)))
        return values[k]

    def mean(self, name: str) -> float | None:
        values = self.histograms.get(name, [])
        if not values:
            return None
        return sum(values) / len(values)

    def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        # Stored flat as "name{label}" so snapshot() stays a plain dict.
        self.inc(f"{name}{{{label}}}", value)

    def labeled(self, name: str) -> dict[str, int]:
        """Counts per label for a counter written with inc_labeled()."""
        prefix = name + "{"
        return {
            k[len(prefix) : -1]: v
            for k, v in sorted(self.counters.items())
            if k.startswith(prefix) and k.endswith("}")
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: list(v) for k, v in self.histograms.items()},
            "gauges": dict(self.gauges),
        }


ENGINE = {
    # Turn loop
    "turns_total": "engine.turns_total",
    "turn_latency_ms": "engine.turn_latency_ms",
    "selection_latency_ms": "engine.selection_latency_ms",
    "sessions_open": "engine.sessions_open",
    "sessions_closed_total": "engine.sessions_closed_total",
    "session_outcomes_total": "engine.session_outcomes_total",
    # Compliance
    "policy_blocks_total": "policy.blocks_total",
    "policy_block_reasons_total": "policy.block_reasons_total",
    "policy_forced_transitions_total": "policy.forced_transitions_total",
    "policy_utterance_blocks_total": "policy.utterance_blocks_total",
    # Generation / validation
    "repair_attempts_total": "generation.repair_attempts_total",
    "fallback_used_total": "generation.fallback_used_total",
    "external_timeouts_total": "generation.external_timeouts_total",
    "external_retries_total": "generation.external_retries_total",
    "system_errors_total": "engine.system_errors_total",
    "max_turns_exceeded_total": "engine.max_turns_exceeded_total",
    # Learning
    "snapshot_swaps_total": "learner.snapshot_swaps_total",
    "episodes_recorded_total": "episodes.recorded_total",
    "episode_record_failures_total": "episodes.record_failures_total",
}
