from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional, Union

from ..context import FEATURE_NAMES


LearnerKind = Literal["bandit", "qlearning"]


@dataclass(frozen=True, slots=True)
class BanditParams:
    feature_names: tuple[str, ...]
    # action -> weight vector aligned with feature_names
    weights: dict[str, tuple[float, ...]]
    learning_rate: float = 0.01
    epsilon: float = 0.1


@dataclass(frozen=True, slots=True)
class QTableParams:
    # state key -> action -> value
    rows: dict[str, dict[str, float]]
    alpha: float = 0.1
    gamma: float = 0.95
    epsilon: float = 0.1
    initial_q: float = 0.0


@dataclass(frozen=True, slots=True)
class ActionValueTable:
    """
    A published set of learned action values.

    Never mutated after construction: learners build a new table and the store
    swaps the reference.
    """

    kind: LearnerKind
    params: Union[BanditParams, QTableParams]
    episodes_trained: int = 0
    version: int = 0


def fresh_table(
    kind: str,
    *,
    learning_rate: float = 0.01,
    epsilon: float = 0.1,
    alpha: float = 0.1,
    gamma: float = 0.95,
    initial_q: float = 0.0,
) -> ActionValueTable:
    if kind == "bandit":
        return ActionValueTable(
            kind="bandit",
            params=BanditParams(
                feature_names=FEATURE_NAMES,
                weights={},
                learning_rate=learning_rate,
                epsilon=epsilon,
            ),
        )
    elif kind == "qlearning":
        return ActionValueTable(
            kind="qlearning",
            params=QTableParams(
                rows={},
                alpha=alpha,
                gamma=gamma,
                epsilon=epsilon,
                initial_q=initial_q,
            ),
        )
    raise ValueError(f"unknown learner kind: {kind}")


@dataclass
class ActionValueStore:
    """
    Shared holder for the serving table.

    Readers take a single reference read per selection; swap() replaces the
    reference under a lock so concurrent publishers are serialized and no
    reader observes a half-built table.
    """

    _table: ActionValueTable
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _listeners: list[Callable[[ActionValueTable], None]] = field(default_factory=list, repr=False)

    def current(self) -> ActionValueTable:
        return self._table

    def swap(self, table: ActionValueTable, *, expected_version: Optional[int] = None) -> ActionValueTable:
        with self._lock:
            prev = self._table
            if expected_version is not None and prev.version != expected_version:
                raise RuntimeError(
                    f"table version moved: expected {expected_version}, found {prev.version}"
                )
            self._table = table
        for listener in list(self._listeners):
            listener(table)
        return prev

    def on_swap(self, listener: Callable[[ActionValueTable], None]) -> None:
        self._listeners.append(listener)
