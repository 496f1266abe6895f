from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .context import ContextView
from .domain import (
    DEESCALATION_ACTIONS,
    OBJECTION_SIGNALS,
    OFFER_ACTIONS,
    Action,
    Outcome,
    Signal,
)


@dataclass(frozen=True, slots=True)
class RewardConfig:
    # Shaping milestones, each paid at most once per episode.
    identity_verified: float = 0.1
    disclosure_complete: float = 0.1
    entered_negotiation: float = 0.2
    willingness_signal: float = 0.2
    offer_accepted: float = 0.3
    # Offer generosity multiplier: 1 + step * min(prior offers, cap), so later and
    # softer offers that still land are worth up to 1.5x.
    offer_generosity_step: float = 0.25
    offer_generosity_cap: int = 2

    # Per-occurrence penalties.
    repeated_action: float = -0.1
    repeated_objection: float = -0.15
    turn_penalty: float = -0.05

    payment_arranged: float = 1.0
    callback: float = 0.2
    escalation: float = 0.0
    dispute: float = -0.1
    wrong_party: float = 0.0
    do_not_call: float = -0.3
    hangup_before_disclosure: float = -0.5
    hangup_after_disclosure: float = -0.3
    max_turns_exceeded: float = -0.2
    compliance_block: float = -1.0
    system_error: float = -0.2
    completed: float = 0.0


@dataclass(frozen=True, slots=True)
class RewardBreakdown:
    shaping: float
    turn_penalty: float
    terminal: float
    total: float
    components: tuple[tuple[str, float], ...] = ()

    @staticmethod
    def of(
        shaping_parts: list[tuple[str, float]], turn_penalty: float, terminal: float
    ) -> "RewardBreakdown":
        shaping = sum(v for _, v in shaping_parts)
        return RewardBreakdown(
            shaping=shaping,
            turn_penalty=turn_penalty,
            terminal=terminal,
            total=shaping + turn_penalty + terminal,
            components=tuple(shaping_parts),
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "shaping": self.shaping,
            "turn_penalty": self.turn_penalty,
            "terminal": self.terminal,
            "total": self.total,
            "components": [list(c) for c in self.components],
        }


@dataclass
class RewardComputer:
    """
    Per-session reward shaping.

    One instance per episode: it remembers which milestones have already been
    paid so that looping through a milestone state does not farm reward.
    """

    config: RewardConfig = field(default_factory=RewardConfig)
    _paid: set[str] = field(default_factory=set, repr=False)

    def reset(self) -> None:
        self._paid.clear()

    def _milestone(self, name: str, value: float, parts: list[tuple[str, float]]) -> None:
        if name in self._paid:
            return
        self._paid.add(name)
        parts.append((name, value))

    def compute(
        self,
        prev: ContextView,
        action: Action,
        nxt: ContextView,
        signal: Optional[Signal] = None,
    ) -> RewardBreakdown:
        cfg = self.config
        parts: list[tuple[str, float]] = []

        if nxt.identity_verified and not prev.identity_verified:
            self._milestone("identity_verified", cfg.identity_verified, parts)
        if nxt.disclosure_complete and not prev.disclosure_complete:
            self._milestone("disclosure_complete", cfg.disclosure_complete, parts)
        if nxt.fsm_state == "NEGOTIATION" and prev.fsm_state != "NEGOTIATION":
            self._milestone("entered_negotiation", cfg.entered_negotiation, parts)
        if signal == "AGREEMENT":
            self._milestone("willingness_signal", cfg.willingness_signal, parts)
            if action in OFFER_ACTIONS:
                prior = min(prev.offers_made, cfg.offer_generosity_cap)
                multiplier = 1.0 + cfg.offer_generosity_step * prior
                self._milestone("offer_accepted", cfg.offer_accepted * multiplier, parts)

        if prev.last_action is not None and prev.last_action == action:
            parts.append(("repeated_action", cfg.repeated_action))
        if (
            signal in OBJECTION_SIGNALS
            and prev.objections_raised >= 2
            and action not in DEESCALATION_ACTIONS
        ):
            parts.append(("repeated_objection", cfg.repeated_objection))

        terminal = 0.0
        if nxt.outcome is not None and prev.outcome is None:
            terminal = self.terminal_value(
                nxt.outcome, disclosure_complete=prev.disclosure_complete
            )
        return RewardBreakdown.of(parts, cfg.turn_penalty, terminal)

    def terminal_value(self, outcome: Outcome, *, disclosure_complete: bool = False) -> float:
        cfg = self.config
        if outcome == "HANGUP":
            return cfg.hangup_after_disclosure if disclosure_complete else cfg.hangup_before_disclosure
        values: dict[str, float] = {
            "PAYMENT_ARRANGED": cfg.payment_arranged,
            "CALLBACK": cfg.callback,
            "ESCALATION": cfg.escalation,
            "DISPUTE": cfg.dispute,
            "WRONG_PARTY": cfg.wrong_party,
            "DO_NOT_CALL": cfg.do_not_call,
            "MAX_TURNS_EXCEEDED": cfg.max_turns_exceeded,
            "COMPLIANCE_BLOCK": cfg.compliance_block,
            "SYSTEM_ERROR": cfg.system_error,
            "COMPLETED": cfg.completed,
        }
        if outcome not in values:
            raise ValueError(f"unknown outcome: {outcome}")
        return values[outcome]
