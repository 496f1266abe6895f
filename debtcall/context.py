from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import (
    ALL_STATES,
    BRANCH_OUTCOMES,
    NEGATIVE_SIGNALS,
    OBJECTION_SIGNALS,
    OFFER_ACTIONS,
    PAYMENT_COMMIT_ACTIONS,
    POSITIVE_SIGNALS,
    Action,
    DaysPastDueBucket,
    DebtBucket,
    FSMState,
    Outcome,
    Sentiment,
    Signal,
)


class CaseFile(BaseModel):
    """Account and contact-history facts for the borrower being called."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    case_id: str = "case"
    debtor_name: str = "the account holder"
    creditor_name: str = "the creditor"
    amount_due: float = Field(default=0.0, ge=0.0)
    days_past_due: int = Field(default=0, ge=0)
    jurisdiction: str = "US-CA"
    timezone: str = "America/Los_Angeles"
    do_not_call: bool = False
    disputed: bool = False
    wrong_party: bool = False
    # None until asked; False only when the borrower explicitly declined.
    recording_consent: Optional[bool] = None
    attempts_today: int = Field(default=0, ge=0)
    attempts_total: int = Field(default=0, ge=0)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value}") from exc
        return value

    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def debt_bucket(amount: float) -> DebtBucket:
    if amount < 1000:
        return "LOW"
    if amount < 5000:
        return "MEDIUM"
    return "HIGH"


def days_past_due_bucket(days: int) -> DaysPastDueBucket:
    if days < 60:
        return "30"
    if days < 90:
        return "60"
    if days < 120:
        return "90"
    return "120+"


@dataclass(frozen=True, slots=True)
class ContextView:
    """
    Immutable copy of the conversation context at one decision point.

    Learners, the reward computer and the policy guard only ever see views;
    Transitions store them so an episode can be replayed after the live
    context has moved on.
    """

    fsm_state: FSMState
    turn_count: int = 0
    time_in_state: int = 0
    identity_verified: bool = False
    disclosure_complete: bool = False
    last_signal: Optional[Signal] = None
    sentiment: Sentiment = "NEUTRAL"
    objections_raised: int = 0
    offers_made: int = 0
    debt_bucket: DebtBucket = "LOW"
    days_past_due_bucket: DaysPastDueBucket = "30"
    prior_attempts: int = 0
    recording_consent: Optional[bool] = None
    disputed: bool = False
    payment_arranged: bool = False
    last_action: Optional[Action] = None
    outcome: Optional[Outcome] = None

    def replace(self, **changes: object) -> "ContextView":
        return dataclasses.replace(self, **changes)  # type: ignore[arg-type]


@dataclass
class ConversationContext:
    """Live, mutable per-session context. Only TurnProcessor COMMIT mutates it."""

    session_id: str
    case: CaseFile
    fsm_state: FSMState = "OPENING"
    turn_count: int = 0
    time_in_state: int = 0
    identity_verified: bool = False
    disclosure_complete: bool = False
    last_signal: Optional[Signal] = None
    sentiment: Sentiment = "NEUTRAL"
    objections_raised: int = 0
    offers_made: int = 0
    recording_consent: Optional[bool] = None
    disputed: bool = False
    payment_arranged: bool = False
    last_action: Optional[Action] = None
    outcome: Optional[Outcome] = None
    state_history: list[FSMState] = field(default_factory=list)

    @classmethod
    def open(cls, session_id: str, case: CaseFile) -> "ConversationContext":
        return cls(
            session_id=session_id,
            case=case,
            recording_consent=case.recording_consent,
            disputed=case.disputed,
            state_history=["OPENING"],
        )

    def snapshot(self) -> ContextView:
        return ContextView(
            fsm_state=self.fsm_state,
            turn_count=self.turn_count,
            time_in_state=self.time_in_state,
            identity_verified=self.identity_verified,
            disclosure_complete=self.disclosure_complete,
            last_signal=self.last_signal,
            sentiment=self.sentiment,
            objections_raised=self.objections_raised,
            offers_made=self.offers_made,
            debt_bucket=debt_bucket(self.case.amount_due),
            days_past_due_bucket=days_past_due_bucket(self.case.days_past_due),
            prior_attempts=self.case.attempts_total,
            recording_consent=self.recording_consent,
            disputed=self.disputed,
            payment_arranged=self.payment_arranged,
            last_action=self.last_action,
            outcome=self.outcome,
        )

    def commit(self, view: ContextView) -> None:
        if view.fsm_state != self.fsm_state:
            self.state_history.append(view.fsm_state)
        self.fsm_state = view.fsm_state
        self.turn_count = view.turn_count
        self.time_in_state = view.time_in_state
        self.identity_verified = view.identity_verified
        self.disclosure_complete = view.disclosure_complete
        self.last_signal = view.last_signal
        self.sentiment = view.sentiment
        self.objections_raised = view.objections_raised
        self.offers_made = view.offers_made
        self.recording_consent = view.recording_consent
        self.disputed = view.disputed
        self.payment_arranged = view.payment_arranged
        self.last_action = view.last_action
        self.outcome = view.outcome


def perceive(view: ContextView, signal: Optional[Signal], sentiment: Sentiment) -> ContextView:
    """Fold the borrower's latest utterance into the view before an action is chosen."""
    consent = view.recording_consent
    if view.fsm_state == "CONSENT_RECORDING":
        if signal == "AGREEMENT":
            consent = True
        elif signal == "REFUSAL":
            consent = False
    return view.replace(
        last_signal=signal,
        sentiment=sentiment,
        objections_raised=view.objections_raised + (1 if signal in OBJECTION_SIGNALS else 0),
        recording_consent=consent,
        disputed=view.disputed or signal == "DISPUTE",
    )


def advance(
    view: ContextView,
    action: Action,
    next_state: FSMState,
    *,
    forced_outcome: Optional[Outcome] = None,
) -> ContextView:
    """The view after `action` is taken and the FSM lands in `next_state`."""
    prev = view.fsm_state
    moved = next_state != prev
    identity = view.identity_verified or action == "CONFIRM_IDENTITY" or (
        prev == "IDENTITY_VERIFICATION" and next_state == "CONSENT_RECORDING"
    )
    disclosure = view.disclosure_complete or (
        prev == "DISCLOSURE" and next_state == "IDENTITY_VERIFICATION"
    )
    payment = view.payment_arranged or (
        prev == "PAYMENT_SETUP" and next_state == "WRAPUP" and action in PAYMENT_COMMIT_ACTIONS
    )
    nxt = view.replace(
        fsm_state=next_state,
        turn_count=view.turn_count + 1,
        time_in_state=0 if moved else view.time_in_state + 1,
        identity_verified=identity,
        disclosure_complete=disclosure,
        offers_made=view.offers_made + (1 if action in OFFER_ACTIONS else 0),
        payment_arranged=payment,
        last_action=action,
    )
    return nxt.replace(outcome=resolve_outcome(view, nxt, forced_outcome))


def resolve_outcome(
    prev: ContextView, nxt: ContextView, forced_outcome: Optional[Outcome] = None
) -> Optional[Outcome]:
    if prev.outcome is not None:
        return prev.outcome
    if forced_outcome is not None:
        return forced_outcome
    branch = BRANCH_OUTCOMES.get(nxt.fsm_state)
    if branch is not None:
        return branch
    if nxt.fsm_state != "END_CALL":
        return None
    if nxt.payment_arranged:
        return "PAYMENT_ARRANGED"
    if prev.last_signal == "ATTORNEY_REPRESENTED":
        return "ESCALATION"
    return "COMPLETED"


def _feature_names() -> tuple[str, ...]:
    names = [f"state:{s}" for s in ALL_STATES]
    names += ["turn", "time_in_state", "prior_attempts", "objections", "offers"]
    names += ["identity_verified", "disclosure_complete"]
    names += ["debt:LOW", "debt:MEDIUM", "debt:HIGH"]
    names += ["dpd:30", "dpd:60", "dpd:90", "dpd:120+"]
    names += ["sent:POSITIVE", "sent:NEUTRAL", "sent:NEGATIVE"]
    names += ["signal:positive", "signal:negative", "bias"]
    return tuple(names)


FEATURE_NAMES: tuple[str, ...] = _feature_names()


def feature_vector(view: ContextView) -> tuple[float, ...]:
    """Dense features in FEATURE_NAMES order; continuous counts are capped to [0, 1]."""
    values = [1.0 if view.fsm_state == s else 0.0 for s in ALL_STATES]
    values += [
        min(view.turn_count / 20.0, 1.0),
        min(view.time_in_state / 5.0, 1.0),
        min(view.prior_attempts / 5.0, 1.0),
        min(view.objections_raised / 3.0, 1.0),
        min(view.offers_made / 3.0, 1.0),
        1.0 if view.identity_verified else 0.0,
        1.0 if view.disclosure_complete else 0.0,
    ]
    values += [1.0 if view.debt_bucket == b else 0.0 for b in ("LOW", "MEDIUM", "HIGH")]
    values += [1.0 if view.days_past_due_bucket == b else 0.0 for b in ("30", "60", "90", "120+")]
    values += [1.0 if view.sentiment == s else 0.0 for s in ("POSITIVE", "NEUTRAL", "NEGATIVE")]
    values += [
        1.0 if view.last_signal in POSITIVE_SIGNALS else 0.0,
        1.0 if view.last_signal in NEGATIVE_SIGNALS else 0.0,
        1.0,
    ]
    return tuple(values)


def state_key(view: ContextView) -> str:
    """Canonical discretized key used to index tabular action values."""
    return "|".join(
        (
            f"fsm:{view.fsm_state}",
            f"id:{1 if view.identity_verified else 0}",
            f"disc:{1 if view.disclosure_complete else 0}",
            f"sent:{view.sentiment}",
            f"obj:{min(view.objections_raised, 3)}",
            f"off:{min(view.offers_made, 3)}",
            f"sig:{view.last_signal or 'none'}",
            f"tis:{min(view.time_in_state, 3)}",
        )
    )
