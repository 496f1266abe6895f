from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from .domain import (
    ALL_STATES,
    BRANCH_STATES,
    MAIN_FLOW,
    Action,
    FSMState,
    Signal,
)
from .errors import IllegalAction


EdgeKind = Literal["signal", "action", "advance", "exit"]


@dataclass(frozen=True, slots=True)
class Edge:
    src: int
    dst: int
    kind: EdgeKind
    # Signal name for "signal" edges, action name for "action" edges.
    guard: Optional[str] = None


_INDEX: dict[str, int] = {name: i for i, name in enumerate(ALL_STATES)}

TERMINAL: FSMState = "END_CALL"


LEGAL_ACTIONS: dict[FSMState, tuple[Action, ...]] = {
    "OPENING": ("PROCEED", "ASK_CLARIFY", "HANDLE_PUSHBACK"),
    "DISCLOSURE": ("IDENTIFY_SELF", "ASK_CLARIFY", "PROCEED"),
    "IDENTITY_VERIFICATION": ("ASK_VERIFICATION", "CONFIRM_IDENTITY", "ASK_CLARIFY"),
    "CONSENT_RECORDING": ("PROCEED", "ASK_CLARIFY", "HANDLE_PUSHBACK"),
    "DEBT_CONTEXT": ("PROCEED", "EMPATHIZE", "ASK_CLARIFY"),
    "NEGOTIATION": (
        "EMPATHIZE",
        "OFFER_PLAN",
        "COUNTER_OFFER",
        "REQUEST_CALLBACK",
        "HANDLE_PUSHBACK",
        "PROCEED",
    ),
    "PAYMENT_SETUP": ("CONFIRM_PLAN", "SEND_PAYMENT_LINK", "ASK_CLARIFY", "PROCEED"),
    "WRAPUP": ("SUMMARIZE", "PROCEED"),
    "END_CALL": (),
    "WRONG_PARTY_FLOW": ("APOLOGIZE", "PROCEED"),
    "DISPUTE_FLOW": ("ACKNOWLEDGE_DISPUTE", "EMPATHIZE", "PROCEED"),
    "CALLBACK_SCHEDULED": ("SUMMARIZE", "PROCEED"),
    "DO_NOT_CALL": ("ACKNOWLEDGE_DNC", "PROCEED"),
    "ESCALATE_HUMAN": ("ESCALATE", "PROCEED"),
}

ADVANCING_ACTIONS: dict[FSMState, frozenset[Action]] = {
    "OPENING": frozenset({"PROCEED"}),
    "DISCLOSURE": frozenset({"IDENTIFY_SELF", "PROCEED"}),
    "IDENTITY_VERIFICATION": frozenset({"CONFIRM_IDENTITY"}),
    "CONSENT_RECORDING": frozenset({"PROCEED"}),
    "DEBT_CONTEXT": frozenset({"PROCEED"}),
    "NEGOTIATION": frozenset({"PROCEED"}),
    "PAYMENT_SETUP": frozenset({"SEND_PAYMENT_LINK", "PROCEED"}),
    "WRAPUP": frozenset({"SUMMARIZE", "PROCEED"}),
}

# Signals that leave the main flow from any non-terminal main-flow state.
ESCAPE_SIGNALS: dict[Signal, FSMState] = {
    "STOP_CONTACT": "DO_NOT_CALL",
    "WRONG_PARTY": "WRONG_PARTY_FLOW",
    "DISPUTE": "DISPUTE_FLOW",
    "HOSTILITY": "ESCALATE_HUMAN",
    "ATTORNEY_REPRESENTED": "END_CALL",
}

# Outcome branches at the negotiation decision point.
NEGOTIATION_SIGNALS: dict[Signal, FSMState] = {
    "AGREEMENT": "PAYMENT_SETUP",
    "CALLBACK_REQUEST": "CALLBACK_SCHEDULED",
    "INCONVENIENT_TIME": "CALLBACK_SCHEDULED",
}

# Exit action spoken when a state is entered by force rather than selection.
_EXIT_ACTIONS: dict[FSMState, Action] = {
    "WRONG_PARTY_FLOW": "APOLOGIZE",
    "DISPUTE_FLOW": "ACKNOWLEDGE_DISPUTE",
    "CALLBACK_SCHEDULED": "SUMMARIZE",
    "DO_NOT_CALL": "ACKNOWLEDGE_DNC",
    "ESCALATE_HUMAN": "ESCALATE",
    "END_CALL": "SUMMARIZE",
}

_HOLDING_ACTIONS: tuple[Action, ...] = ("ASK_CLARIFY", "EMPATHIZE", "HANDLE_PUSHBACK")


def _build_edges() -> tuple[Edge, ...]:
    edges: list[Edge] = []
    # Signal edges are listed first: resolution scans in order and the first
    # matching edge wins.
    for signal, dst in NEGOTIATION_SIGNALS.items():
        edges.append(Edge(_INDEX["NEGOTIATION"], _INDEX[dst], "signal", signal))
    for src in MAIN_FLOW[:-1]:
        for signal, dst in ESCAPE_SIGNALS.items():
            edges.append(Edge(_INDEX[src], _INDEX[dst], "signal", signal))
    edges.append(Edge(_INDEX["NEGOTIATION"], _INDEX["CALLBACK_SCHEDULED"], "action", "REQUEST_CALLBACK"))
    for i, src in enumerate(MAIN_FLOW[:-1]):
        edges.append(Edge(_INDEX[src], _INDEX[MAIN_FLOW[i + 1]], "advance"))
    for branch in BRANCH_STATES:
        edges.append(Edge(_INDEX[branch], _INDEX[TERMINAL], "exit"))
    return tuple(edges)


class StateMachine:
    """
    Deterministic conversation FSM over a static state/edge arena.

    States and edges are plain data; transition() is a scan over the outgoing
    edges of the current state with a fixed precedence: exit edges, then signal
    edges, then action edges, then the main-flow advance edge. A state with no
    matching edge is retained.
    """

    def __init__(self) -> None:
        self.states: tuple[FSMState, ...] = ALL_STATES
        self.edges: tuple[Edge, ...] = _build_edges()
        self._outgoing: dict[int, tuple[Edge, ...]] = {
            i: tuple(e for e in self.edges if e.src == i) for i in range(len(self.states))
        }

    def initial_state(self) -> FSMState:
        return "OPENING"

    def is_terminal(self, state: str) -> bool:
        return state == TERMINAL

    def legal_actions(self, state: str) -> tuple[Action, ...]:
        if state not in _INDEX:
            raise KeyError(f"unknown state: {state}")
        return LEGAL_ACTIONS[state]  # type: ignore[index]

    def successors(self, state: str) -> set[FSMState]:
        return {self.states[e.dst] for e in self._outgoing[_INDEX[state]]}

    def transition(self, state: str, action: str, signal: Optional[str] = None) -> FSMState:
        if action not in self.legal_actions(state):
            raise IllegalAction(state, action)
        outgoing = self._outgoing[_INDEX[state]]

        for kind in ("exit", "signal", "action"):
            for edge in outgoing:
                if edge.kind != kind:
                    continue
                if kind == "exit":
                    return self.states[edge.dst]
                if kind == "signal" and signal is not None and edge.guard == signal:
                    return self.states[edge.dst]
                if kind == "action" and edge.guard == action:
                    return self.states[edge.dst]

        advancing = ADVANCING_ACTIONS.get(state, frozenset())  # type: ignore[arg-type]
        if action in advancing or signal == "AGREEMENT":
            for edge in outgoing:
                if edge.kind == "advance":
                    return self.states[edge.dst]
        return state  # type: ignore[return-value]

    def force(self, state: str, target: str) -> FSMState:
        if self.is_terminal(state):
            raise IllegalAction(state, f"force:{target}")
        if target != TERMINAL and target not in BRANCH_STATES:
            raise ValueError(f"forced target must be a branch state or {TERMINAL}: {target}")
        return target  # type: ignore[return-value]

    def escape_target(self, state: str, signal: Optional[str]) -> Optional[FSMState]:
        """Branch entered by an escape signal from `state`, if any."""
        if signal is None or state not in MAIN_FLOW[:-1]:
            return None
        return ESCAPE_SIGNALS.get(signal)  # type: ignore[arg-type]

    def exit_action(self, target: str) -> Action:
        return _EXIT_ACTIONS.get(target, "SUMMARIZE")  # type: ignore[arg-type]

    def holding_action(self, state: str) -> Action:
        """A legal action that keeps the conversation in `state` where possible."""
        legal = self.legal_actions(state)
        advancing = ADVANCING_ACTIONS.get(state, frozenset())  # type: ignore[arg-type]
        for action in _HOLDING_ACTIONS:
            if action in legal and action not in advancing:
                return action
        for action in legal:
            if action not in advancing:
                return action
        if not legal:
            raise IllegalAction(state, "hold")
        return legal[0]
