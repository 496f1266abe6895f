from __future__ import annotations

from typing import Literal


FSMState = Literal[
    "OPENING",
    "DISCLOSURE",
    "IDENTITY_VERIFICATION",
    "CONSENT_RECORDING",
    "DEBT_CONTEXT",
    "NEGOTIATION",
    "PAYMENT_SETUP",
    "WRAPUP",
    "END_CALL",
    "WRONG_PARTY_FLOW",
    "DISPUTE_FLOW",
    "CALLBACK_SCHEDULED",
    "DO_NOT_CALL",
    "ESCALATE_HUMAN",
]

Action = Literal[
    "PROCEED",
    "ASK_CLARIFY",
    "HANDLE_PUSHBACK",
    "IDENTIFY_SELF",
    "ASK_VERIFICATION",
    "CONFIRM_IDENTITY",
    "EMPATHIZE",
    "OFFER_PLAN",
    "COUNTER_OFFER",
    "REQUEST_CALLBACK",
    "CONFIRM_PLAN",
    "SEND_PAYMENT_LINK",
    "SUMMARIZE",
    "ACKNOWLEDGE_DISPUTE",
    "ACKNOWLEDGE_DNC",
    "APOLOGIZE",
    "ESCALATE",
]

Signal = Literal[
    "STOP_CONTACT",
    "DISPUTE",
    "WRONG_PARTY",
    "ATTORNEY_REPRESENTED",
    "INCONVENIENT_TIME",
    "CALLBACK_REQUEST",
    "AGREEMENT",
    "REFUSAL",
    "CONFUSION",
    "HOSTILITY",
]

# Terminal categories. Ordered roughly from most to least desirable for the
# collector; reward values live in reward.RewardConfig.
Outcome = Literal[
    "PAYMENT_ARRANGED",
    "CALLBACK",
    "ESCALATION",
    "DISPUTE",
    "WRONG_PARTY",
    "DO_NOT_CALL",
    "HANGUP",
    "MAX_TURNS_EXCEEDED",
    "COMPLIANCE_BLOCK",
    "SYSTEM_ERROR",
    "COMPLETED",
]

RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]
Sentiment = Literal["POSITIVE", "NEUTRAL", "NEGATIVE"]
DebtBucket = Literal["LOW", "MEDIUM", "HIGH"]
DaysPastDueBucket = Literal["30", "60", "90", "120+"]
Directive = Literal["normal", "forced", "repair", "fallback"]


MAIN_FLOW: tuple[FSMState, ...] = (
    "OPENING",
    "DISCLOSURE",
    "IDENTITY_VERIFICATION",
    "CONSENT_RECORDING",
    "DEBT_CONTEXT",
    "NEGOTIATION",
    "PAYMENT_SETUP",
    "WRAPUP",
    "END_CALL",
)

BRANCH_STATES: tuple[FSMState, ...] = (
    "WRONG_PARTY_FLOW",
    "DISPUTE_FLOW",
    "CALLBACK_SCHEDULED",
    "DO_NOT_CALL",
    "ESCALATE_HUMAN",
)

ALL_STATES: tuple[FSMState, ...] = MAIN_FLOW + BRANCH_STATES

ALL_ACTIONS: tuple[Action, ...] = (
    "PROCEED",
    "ASK_CLARIFY",
    "HANDLE_PUSHBACK",
    "IDENTIFY_SELF",
    "ASK_VERIFICATION",
    "CONFIRM_IDENTITY",
    "EMPATHIZE",
    "OFFER_PLAN",
    "COUNTER_OFFER",
    "REQUEST_CALLBACK",
    "CONFIRM_PLAN",
    "SEND_PAYMENT_LINK",
    "SUMMARIZE",
    "ACKNOWLEDGE_DISPUTE",
    "ACKNOWLEDGE_DNC",
    "APOLOGIZE",
    "ESCALATE",
)

OBJECTION_SIGNALS: frozenset[Signal] = frozenset({"REFUSAL", "DISPUTE", "HOSTILITY"})
POSITIVE_SIGNALS: frozenset[Signal] = frozenset({"AGREEMENT"})
NEGATIVE_SIGNALS: frozenset[Signal] = frozenset({"REFUSAL", "DISPUTE", "HOSTILITY", "STOP_CONTACT"})

OFFER_ACTIONS: frozenset[Action] = frozenset({"OFFER_PLAN", "COUNTER_OFFER"})
DEESCALATION_ACTIONS: frozenset[Action] = frozenset({"EMPATHIZE", "HANDLE_PUSHBACK"})
PAYMENT_ACTIONS: frozenset[Action] = frozenset(
    {"OFFER_PLAN", "COUNTER_OFFER", "CONFIRM_PLAN", "SEND_PAYMENT_LINK"}
)
# Agent actions that close out payment setup once the borrower goes along with them.
PAYMENT_COMMIT_ACTIONS: frozenset[Action] = frozenset({"CONFIRM_PLAN", "SEND_PAYMENT_LINK", "PROCEED"})
IDENTITY_ACTIONS: frozenset[Action] = frozenset({"IDENTIFY_SELF", "ASK_VERIFICATION", "CONFIRM_IDENTITY"})

# Outcome assigned when a branch state is entered.
BRANCH_OUTCOMES: dict[FSMState, Outcome] = {
    "WRONG_PARTY_FLOW": "WRONG_PARTY",
    "DISPUTE_FLOW": "DISPUTE",
    "CALLBACK_SCHEDULED": "CALLBACK",
    "DO_NOT_CALL": "DO_NOT_CALL",
    "ESCALATE_HUMAN": "ESCALATION",
}

