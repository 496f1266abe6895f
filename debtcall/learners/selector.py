from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Optional, Sequence, Union

from ..clock import Clock, RealClock
from ..context import ContextView
from ..domain import ALL_STATES, Action
from ..episode import Transition
from ..state_machine import StateMachine
from . import bandit, qlearning
from .bandit import ContextualBandit
from .qlearning import TabularQLearner
from .snapshot import export_snapshot, import_snapshot
from .table import ActionValueStore, ActionValueTable, BanditParams, QTableParams


SelectorMode = Literal["serving", "training"]


@dataclass(frozen=True, slots=True)
class Selection:
    action: Action
    latency_ms: int
    explored: bool = False
    table_version: int = 0


def argmax(actions: Sequence[str], values: Sequence[float]) -> str:
    # Ties resolve to the earliest action in legal order.
    best_i = 0
    for i in range(1, len(values)):
        if values[i] > values[best_i]:
            best_i = i
    return actions[best_i]


class ActionSelector:
    """
    Chooses one legal action per turn from the published action values.

    A serving selector reads the shared store on every call and never explores
    or learns. A training selector owns a private learner seeded from the store,
    explores epsilon-greedily with its injected RNG, and pushes new versions back
    through publish().
    """

    def __init__(
        self,
        store: ActionValueStore,
        *,
        mode: SelectorMode = "serving",
        rng: Optional[random.Random] = None,
        clock: Optional[Clock] = None,
        state_machine: Optional[StateMachine] = None,
    ) -> None:
        if mode not in ("serving", "training"):
            raise ValueError(f"unknown selector mode: {mode}")
        if mode == "training" and rng is None:
            raise ValueError("a training selector needs an injected random.Random")
        self.mode: SelectorMode = mode
        self._store = store
        self._rng = rng
        self._clock = clock or RealClock()
        self._fsm = state_machine or StateMachine()
        self._learner: Optional[Union[ContextualBandit, TabularQLearner]] = None
        self._kind: str = store.current().kind
        self._episodes_trained = store.current().episodes_trained
        if mode == "training":
            self._load_learner(store.current())

    @property
    def store(self) -> ActionValueStore:
        return self._store

    @property
    def kind(self) -> str:
        if self._learner is None:
            return self._store.current().kind
        return self._kind

    @property
    def episodes_trained(self) -> int:
        if self._learner is None:
            return self._store.current().episodes_trained
        return self._episodes_trained

    def _load_learner(self, table: ActionValueTable) -> None:
        self._kind = table.kind
        self._episodes_trained = table.episodes_trained
        if table.kind == "bandit" and isinstance(table.params, BanditParams):
            self._learner = ContextualBandit(table.params)
        elif table.kind == "qlearning" and isinstance(table.params, QTableParams):
            self._learner = TabularQLearner(table.params, self._fsm.legal_actions)
        else:
            raise ValueError(f"unknown learner kind: {table.kind}")

    def values(
        self,
        view: ContextView,
        legal: Sequence[str],
        table: Optional[ActionValueTable] = None,
    ) -> list[float]:
        if self._learner is not None:
            return self._learner.values(view, legal)
        if table is None:
            table = self._store.current()
        if table.kind == "bandit" and isinstance(table.params, BanditParams):
            return bandit.action_values(table.params, view, legal)
        elif table.kind == "qlearning" and isinstance(table.params, QTableParams):
            return qlearning.action_values(table.params, view, legal)
        raise ValueError(f"unknown learner kind: {table.kind}")

    def select(self, view: ContextView, legal: Sequence[Action]) -> Selection:
        if not legal:
            raise ValueError(f"no legal actions in state {view.fsm_state}")
        started = self._clock.now_ms()
        table = self._store.current()

        if self._learner is not None and self._rng is not None:
            if self._rng.random() < self._learner.epsilon:
                action = self._rng.choice(list(legal))
                return Selection(action, self._clock.now_ms() - started, True, table.version)

        action = argmax(legal, self.values(view, legal, table))
        return Selection(action, self._clock.now_ms() - started, False, table.version)  # type: ignore[arg-type]

    def update(self, transitions: Iterable[Transition]) -> None:
        if self._learner is None:
            raise RuntimeError("update() is only available on a training selector")
        batch = list(transitions)
        self._learner.update(batch)
        self._episodes_trained += sum(1 for t in batch if t.done)

    def working_table(self) -> ActionValueTable:
        if self._learner is None:
            return self._store.current()
        return ActionValueTable(
            kind=self._kind,  # type: ignore[arg-type]
            params=self._learner.to_params(),
            episodes_trained=self._episodes_trained,
            version=self._store.current().version,
        )

    def publish(self) -> ActionValueTable:
        if self._learner is None:
            raise RuntimeError("publish() is only available on a training selector")
        prev = self._store.current()
        table = ActionValueTable(
            kind=self._kind,  # type: ignore[arg-type]
            params=self._learner.to_params(),
            episodes_trained=self._episodes_trained,
            version=prev.version + 1,
        )
        self._store.swap(table, expected_version=prev.version)
        return table

    def export_snapshot(self) -> dict[str, Any]:
        return export_snapshot(self.working_table())

    def import_snapshot(self, blob: Any) -> ActionValueTable:
        table = import_snapshot(blob)
        self._store.swap(table)
        if self._learner is not None:
            self._load_learner(table)
        return table

    def greedy_policy(self) -> dict[str, str]:
        """Best action per known Q row, or per state for a bandit (from a blank context)."""
        table = self.working_table()
        out: dict[str, str] = {}
        if isinstance(table.params, QTableParams):
            for key, row in table.params.rows.items():
                state = key.split("|", 1)[0].removeprefix("fsm:")
                if state not in ALL_STATES:
                    continue
                legal = self._fsm.legal_actions(state)
                if not legal:
                    continue
                out[key] = argmax(legal, [row.get(a, table.params.initial_q) for a in legal])
            return out
        for state in ALL_STATES:
            legal = self._fsm.legal_actions(state)
            if not legal:
                continue
            view = ContextView(fsm_state=state)
            out[state] = argmax(legal, self.values(view, legal))
        return out
