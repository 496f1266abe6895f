from __future__ import annotations

from typing import Iterable, Sequence

from ..context import FEATURE_NAMES, ContextView, feature_vector
from ..episode import Transition
from .table import BanditParams


def _dot(weights: Sequence[float], features: Sequence[float]) -> float:
    return sum(w * x for w, x in zip(weights, features))


def action_values(params: BanditParams, view: ContextView, legal: Sequence[str]) -> list[float]:
    # Unseen actions have all-zero weights and therefore score 0.0.
    x = feature_vector(view)
    return [_dot(params.weights[a], x) if a in params.weights else 0.0 for a in legal]


class ContextualBandit:
    """
    Per-action linear value model over the context feature vector.

    No temporal credit assignment: each transition's immediate reward is the
    regression target for the action taken in that context.
    """

    def __init__(self, params: BanditParams) -> None:
        if tuple(params.feature_names) != FEATURE_NAMES:
            raise ValueError("bandit parameters were trained on a different feature set")
        self.learning_rate = params.learning_rate
        self.epsilon = params.epsilon
        self._weights: dict[str, list[float]] = {a: list(w) for a, w in params.weights.items()}

    def values(self, view: ContextView, legal: Sequence[str]) -> list[float]:
        x = feature_vector(view)
        return [_dot(self._weights[a], x) if a in self._weights else 0.0 for a in legal]

    def update(self, transitions: Iterable[Transition]) -> None:
        lr = self.learning_rate
        for t in transitions:
            x = feature_vector(t.state)
            w = self._weights.setdefault(t.action, [0.0] * len(x))
            err = t.reward - _dot(w, x)
            for i, xi in enumerate(x):
                if xi:
                    w[i] += lr * err * xi

    def to_params(self) -> BanditParams:
        return BanditParams(
            feature_names=FEATURE_NAMES,
            weights={a: tuple(w) for a, w in sorted(self._weights.items())},
            learning_rate=self.learning_rate,
            epsilon=self.epsilon,
        )
