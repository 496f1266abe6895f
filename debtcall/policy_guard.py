from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .context import CaseFile, ContextView
from .domain import IDENTITY_ACTIONS, MAIN_FLOW, PAYMENT_ACTIONS, Action, FSMState, Outcome, RiskLevel
from .errors import PolicyViolation
from .jurisdictions import JurisdictionRules, find_prohibited, rules_for


TEMPLATES: dict[str, str] = {
    "MINI_MIRANDA": (
        "This is an attempt to collect a debt and any information obtained will be used "
        "for that purpose."
    ),
    "RECORDING_CONSENT": "This call may be recorded. Do I have your consent to continue?",
    "DNC_ACKNOWLEDGMENT": (
        "I understand. Your number will be added to our do not call list and you will not "
        "be contacted again."
    ),
    "DISPUTE_ACKNOWLEDGMENT": (
        "I have noted your dispute. Collection will pause while we send you validation "
        "of this debt in writing."
    ),
}

RISK_HIGH_AT = 3
RISK_MEDIUM_AT = 1
WINDOW_EDGE_MINUTES = 30

# Right-party checks spoken before anyone is confirmed on the line.
_OPENING_CHECKS: frozenset[Action] = frozenset({"PROCEED", "ASK_CLARIFY"})


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    allowed: bool
    risk_level: RiskLevel
    risk_score: int = 0
    blocked_reasons: tuple[str, ...] = ()
    required_templates: tuple[str, ...] = ()
    forced_transition: Optional[FSMState] = None
    # Outcome recorded when the forced transition ends the call.
    forced_outcome: Optional[Outcome] = None

    def raise_for_block(self) -> None:
        if not self.allowed:
            raise PolicyViolation(list(self.blocked_reasons))

    def to_payload(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "risk_level": self.risk_level,
            "risk_score": self.risk_score,
            "blocked_reasons": list(self.blocked_reasons),
            "required_templates": list(self.required_templates),
            "forced_transition": self.forced_transition,
            "forced_outcome": self.forced_outcome,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def risk_level_for(score: int) -> RiskLevel:
    if score >= RISK_HIGH_AT:
        return "HIGH"
    if score >= RISK_MEDIUM_AT:
        return "MEDIUM"
    return "LOW"


def needs_disclosure(view: ContextView, action: Action) -> bool:
    """
    Whether the debt-collection disclosure must accompany `action`.

    In DISCLOSURE only PROCEED is exempt, since its line is the disclosure;
    self-identification there completes the state, so the script rides with it.
    A wrong party never hears it.
    """
    if view.disclosure_complete:
        return False
    state = view.fsm_state
    if state == "DISCLOSURE":
        return action != "PROCEED"
    if state == "OPENING":
        return action not in _OPENING_CHECKS
    if state == "WRONG_PARTY_FLOW":
        return False
    return action not in IDENTITY_ACTIONS


class PolicyGuard:
    """
    Compliance gate evaluated once per turn, before generation and again on the
    generated utterance.

    Evaluation is a pure function of (context view, case file, action, wall
    time); wall time comes from the injected `now` callable so tests can pin it.
    Hard violations never raise: they are reported as `allowed=False` plus a
    forced transition to the compliant exit state.
    """

    def __init__(
        self,
        rules: JurisdictionRules,
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.rules = rules
        self._now = now

    @classmethod
    def for_jurisdiction(cls, code: str, **kwargs) -> "PolicyGuard":
        return cls(rules_for(code), **kwargs)

    def evaluate(
        self,
        view: ContextView,
        case: CaseFile,
        action: Action,
        proposed_utterance: Optional[str] = None,
    ) -> PolicyDecision:
        blocked: list[str] = []
        if proposed_utterance:
            for phrase in find_prohibited(proposed_utterance, self.rules.prohibited_phrases):
                blocked.append(f"prohibited_phrase:{phrase}")

        local = self._now().astimezone(case.tzinfo()).time()
        score = self._risk_score(view, case, action, local)
        templates = self._templates(view, action)

        forced: Optional[FSMState] = None
        forced_outcome: Optional[Outcome] = None
        hard_block = False
        # Branch states and END_CALL already lead to a compliant exit.
        if view.fsm_state in MAIN_FLOW[:-1]:
            for reason, target, outcome, blocks in self._hard_violations(view, case, local):
                if blocks:
                    hard_block = True
                    blocked.append(reason)
                if forced is None:
                    forced = target
                    forced_outcome = outcome

        if forced == "WRONG_PARTY_FLOW":
            # Nothing about the debt is disclosed to a third party.
            templates = [t for t in templates if t != "MINI_MIRANDA"]
        if forced == "DO_NOT_CALL" and "DNC_ACKNOWLEDGMENT" not in templates:
            templates.append("DNC_ACKNOWLEDGMENT")
        if forced == "DISPUTE_FLOW" and "DISPUTE_ACKNOWLEDGMENT" not in templates:
            templates.append("DISPUTE_ACKNOWLEDGMENT")

        return PolicyDecision(
            allowed=not blocked and not hard_block,
            risk_level=risk_level_for(score),
            risk_score=score,
            blocked_reasons=tuple(blocked),
            required_templates=tuple(templates),
            forced_transition=forced,
            forced_outcome=forced_outcome,
        )

    def screen_utterance(self, decision: PolicyDecision, utterance: str) -> PolicyDecision:
        hits = find_prohibited(utterance, self.rules.prohibited_phrases)
        if not hits:
            return decision
        reasons = list(decision.blocked_reasons)
        for phrase in hits:
            reason = f"prohibited_phrase:{phrase}"
            if reason not in reasons:
                reasons.append(reason)
        return dataclasses.replace(decision, allowed=False, blocked_reasons=tuple(reasons))

    def _risk_score(self, view: ContextView, case: CaseFile, action: Action, local) -> int:
        score = 0
        if not view.identity_verified and action in PAYMENT_ACTIONS:
            score += 3
        if (view.disputed or case.disputed) and not view.disclosure_complete:
            score += 3
        if case.attempts_total > 10:
            score += 1
        if case.days_past_due >= 120:
            score += 1
        if self.rules.minutes_to_window_edge(local) <= WINDOW_EDGE_MINUTES:
            score += 1
        if case.do_not_call or case.wrong_party:
            score += 3
        return score

    def _templates(self, view: ContextView, action: Action) -> list[str]:
        out: list[str] = []
        if needs_disclosure(view, action):
            out.append("MINI_MIRANDA")
        if (
            view.fsm_state == "CONSENT_RECORDING"
            and self.rules.require_recording_consent
            and view.recording_consent is None
        ):
            out.append("RECORDING_CONSENT")
        if view.fsm_state == "DO_NOT_CALL":
            out.append("DNC_ACKNOWLEDGMENT")
        if view.fsm_state == "DISPUTE_FLOW":
            out.append("DISPUTE_ACKNOWLEDGMENT")
        return out

    def _hard_violations(self, view: ContextView, case: CaseFile, local):
        """(reason, forced target, outcome, blocks) in precedence order."""
        signal = view.last_signal
        if case.do_not_call or signal == "STOP_CONTACT":
            yield "do_not_call", "DO_NOT_CALL", None, True
        if not self.rules.within_call_window(local):
            yield "outside_call_window", "END_CALL", "COMPLIANCE_BLOCK", True
        if case.attempts_today >= self.rules.max_attempts_per_day:
            yield "max_attempts_per_day", "END_CALL", "COMPLIANCE_BLOCK", True
        if case.attempts_total >= self.rules.max_attempts_total:
            yield "max_attempts_total", "END_CALL", "COMPLIANCE_BLOCK", True
        if signal == "ATTORNEY_REPRESENTED":
            yield "attorney_represented", "END_CALL", "ESCALATION", True
        if case.wrong_party or signal == "WRONG_PARTY":
            yield "wrong_party", "WRONG_PARTY_FLOW", None, True
        if (
            self.rules.require_recording_consent
            and view.recording_consent is False
        ):
            yield "recording_consent_declined", "END_CALL", "COMPLIANCE_BLOCK", True
        if case.disputed or view.disputed:
            yield "disputed", "DISPUTE_FLOW", None, False
        if signal == "HOSTILITY":
            yield "hostility", "ESCALATE_HUMAN", None, False
