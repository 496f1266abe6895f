from __future__ import annotations

from typing import Callable, Iterable, Sequence

from ..context import ContextView, state_key
from ..episode import Transition
from .table import QTableParams


LegalActions = Callable[[str], Sequence[str]]


def action_values(params: QTableParams, view: ContextView, legal: Sequence[str]) -> list[float]:
    row = params.rows.get(state_key(view), {})
    return [row.get(a, params.initial_q) for a in legal]


class TabularQLearner:
    """
    One-step Q-learning over discretized context keys.

    Q(s,a) += alpha * (r + gamma * max_a' Q(s',a') - Q(s,a)), with the max taken
    over the actions legal in s'. Terminal transitions drop the bootstrap term.
    """

    def __init__(self, params: QTableParams, legal_actions: LegalActions) -> None:
        self.alpha = params.alpha
        self.gamma = params.gamma
        self.epsilon = params.epsilon
        self.initial_q = params.initial_q
        self._legal = legal_actions
        self._rows: dict[str, dict[str, float]] = {k: dict(v) for k, v in params.rows.items()}

    def q(self, key: str, action: str) -> float:
        return self._rows.get(key, {}).get(action, self.initial_q)

    def values(self, view: ContextView, legal: Sequence[str]) -> list[float]:
        key = state_key(view)
        return [self.q(key, a) for a in legal]

    def update(self, transitions: Iterable[Transition]) -> None:
        for t in transitions:
            key = state_key(t.state)
            current = self.q(key, t.action)
            if t.done:
                target = t.reward
            else:
                next_key = state_key(t.next_state)
                next_legal = self._legal(t.next_state.fsm_state)
                best_next = max((self.q(next_key, a) for a in next_legal), default=0.0)
                target = t.reward + self.gamma * best_next
            self._rows.setdefault(key, {})[t.action] = current + self.alpha * (target - current)

    def to_params(self) -> QTableParams:
        return QTableParams(
            rows={k: dict(sorted(v.items())) for k, v in sorted(self._rows.items())},
            alpha=self.alpha,
            gamma=self.gamma,
            epsilon=self.epsilon,
            initial_q=self.initial_q,
        )
