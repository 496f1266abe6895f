from __future__ import annotations

import random
from typing import Literal, Optional, Protocol, Sequence

from ..clock import Clock
from ..context import ContextView
from ..domain import Action
from ..state_machine import StateMachine
from .selector import ActionSelector, Selection
from .table import ActionValueStore, fresh_table


BaselineName = Literal["random", "fixed_script", "heuristic"]
BASELINE_NAMES: tuple[BaselineName, ...] = ("random", "fixed_script", "heuristic")


class BaselinePolicy(Protocol):
    name: str

    def choose(self, view: ContextView, legal: Sequence[Action]) -> Action: ...


class RandomPolicy:
    """Uniform over the legal actions; the floor any learned policy should beat."""

    name = "random"

    def __init__(self, rng: random.Random) -> None:
        self._rng = rng

    def choose(self, view: ContextView, legal: Sequence[Action]) -> Action:
        return self._rng.choice(list(legal))


class FixedScriptPolicy:
    """Always the first legal action: the bare call script with nothing learned."""

    name = "fixed_script"

    def choose(self, view: ContextView, legal: Sequence[Action]) -> Action:
        return legal[0]


class HeuristicPolicy:
    name = "heuristic"

    def choose(self, view: ContextView, legal: Sequence[Action]) -> Action:
        state = view.fsm_state
        if state == "NEGOTIATION":
            if view.objections_raised > 0 and "EMPATHIZE" in legal:
                return "EMPATHIZE"
            if view.sentiment == "POSITIVE" and "OFFER_PLAN" in legal:
                return "OFFER_PLAN"
            if view.offers_made > 0 and "COUNTER_OFFER" in legal:
                return "COUNTER_OFFER"
            if "OFFER_PLAN" in legal:
                return "OFFER_PLAN"
        elif state == "IDENTITY_VERIFICATION":
            if view.last_signal == "AGREEMENT" and "CONFIRM_IDENTITY" in legal:
                return "CONFIRM_IDENTITY"
            if "ASK_VERIFICATION" in legal:
                return "ASK_VERIFICATION"
        elif state == "PAYMENT_SETUP":
            for action in ("SEND_PAYMENT_LINK", "CONFIRM_PLAN"):
                if action in legal:
                    return action
        return legal[0]


def make_baseline(name: str, rng: Optional[random.Random] = None) -> BaselinePolicy:
    if name == "random":
        if rng is None:
            raise ValueError("the random baseline needs an injected random.Random")
        return RandomPolicy(rng)
    if name == "fixed_script":
        return FixedScriptPolicy()
    if name == "heuristic":
        return HeuristicPolicy()
    raise ValueError(f"unknown baseline: {name}")


class BaselineSelector(ActionSelector):
    """
    Serving-mode selector that asks a fixed policy instead of an action-value table.

    It keeps a private, never-published table only so it can sit wherever an
    ActionSelector is expected; selections always report table version 0.
    """

    def __init__(
        self,
        policy: BaselinePolicy,
        *,
        clock: Optional[Clock] = None,
        state_machine: Optional[StateMachine] = None,
    ) -> None:
        super().__init__(
            ActionValueStore(fresh_table("qlearning")),
            mode="serving",
            clock=clock,
            state_machine=state_machine,
        )
        self.policy = policy

    @property
    def kind(self) -> str:
        return self.policy.name

    def select(self, view: ContextView, legal: Sequence[Action]) -> Selection:
        if not legal:
            raise ValueError(f"no legal actions in state {view.fsm_state}")
        started = self._clock.now_ms()
        action = self.policy.choose(view, legal)
        if action not in legal:
            raise ValueError(f"{self.policy.name} chose {action} outside {list(legal)}")
        return Selection(action, self._clock.now_ms() - started, False, 0)
