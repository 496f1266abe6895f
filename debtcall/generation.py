from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol

from .config import EngineConfig
from .context import CaseFile, ContextView
from .domain import Action, Directive, FSMState
from .errors import GenerationFailure
from .jurisdictions import JurisdictionRules, find_prohibited
from .llm_client import LLMClient, build_llm_client
from .policy_guard import TEMPLATES


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    view: ContextView
    case: CaseFile
    action: Action
    directive: Directive
    # State the utterance is spoken for; differs from view.fsm_state when the
    # policy forced a transition.
    target_state: FSMState
    required_templates: tuple[str, ...] = ()
    borrower_utterance: str = ""
    # Validator findings from the previous attempt when directive == "repair".
    repair_notes: tuple[str, ...] = ()
    prohibited_phrases: tuple[str, ...] = ()
    attempt: int = 0


@dataclass(frozen=True, slots=True)
class ValidationReport:
    passed: bool
    failures: tuple[tuple[str, str], ...] = ()
    repairable: bool = True


class ResponseGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> str: ...


class Validator(Protocol):
    async def check(self, text: str, view: ContextView, action: Action) -> ValidationReport: ...


CANNED_FALLBACKS: dict[str, str] = {
    "OPENING": "Hello, thank you for taking my call. May I speak with the account holder?",
    "DISCLOSURE": (
        "This is a call from a debt collection agency. This is an attempt to collect a debt "
        "and any information obtained will be used for that purpose."
    ),
    "IDENTITY_VERIFICATION": (
        "For security purposes, I need to verify some information. Can you please confirm "
        "your identity?"
    ),
    "CONSENT_RECORDING": (
        "This call may be recorded for quality and training purposes. Do I have your consent "
        "to continue?"
    ),
    "DEBT_CONTEXT": (
        "I'm calling regarding an outstanding balance on your account. I'd like to discuss "
        "some options with you."
    ),
    "NEGOTIATION": (
        "I understand this may be a difficult situation. Let's work together to find a "
        "solution that works for you."
    ),
    "PAYMENT_SETUP": "Thank you for working with us. Let me help you set up a payment arrangement.",
    "WRAPUP": (
        "Thank you for your time today. Is there anything else I can help you with before we "
        "end the call?"
    ),
    "CALLBACK_SCHEDULED": "Thank you. We will call you back at a better time. Goodbye.",
    "DISPUTE_FLOW": (
        "I understand you'd like to dispute this debt. I'm noting your dispute and will "
        "provide you with the necessary information."
    ),
    "WRONG_PARTY_FLOW": (
        "I apologize for the confusion. It seems I may have reached the wrong person. Thank "
        "you for your time."
    ),
    "DO_NOT_CALL": (
        "I understand you don't wish to be contacted. I'm adding your number to our do not "
        "call list. Thank you."
    ),
    "ESCALATE_HUMAN": "I understand. Let me connect you with a supervisor who can better assist you.",
    "END_CALL": "Thank you for your time. Have a good day.",
}


# What each canned line does, so a fallback turn is scored as the line that was spoken.
FALLBACK_ACTIONS: dict[str, Action] = {
    "OPENING": "PROCEED",
    "DISCLOSURE": "IDENTIFY_SELF",
    "IDENTITY_VERIFICATION": "ASK_VERIFICATION",
    "CONSENT_RECORDING": "ASK_CLARIFY",
    "DEBT_CONTEXT": "EMPATHIZE",
    "NEGOTIATION": "EMPATHIZE",
    "PAYMENT_SETUP": "ASK_CLARIFY",
    "WRAPUP": "PROCEED",
    "CALLBACK_SCHEDULED": "SUMMARIZE",
    "DISPUTE_FLOW": "ACKNOWLEDGE_DISPUTE",
    "WRONG_PARTY_FLOW": "APOLOGIZE",
    "DO_NOT_CALL": "ACKNOWLEDGE_DNC",
    "ESCALATE_HUMAN": "ESCALATE",
    "END_CALL": "SUMMARIZE",
}


def fallback_utterance(state: str) -> str:
    return CANNED_FALLBACKS.get(state, "Thank you for your patience. How may I assist you?")


def fallback_action(state: str) -> Action:
    return FALLBACK_ACTIONS.get(state, "ASK_CLARIFY")


def _money(value: float) -> str:
    return f"${value:,.2f}"


def _template_table(case: CaseFile) -> dict[str, tuple[str, ...]]:
    name = case.debtor_name
    creditor = case.creditor_name
    return {
        "OPENING:PROCEED": (f"Hello, may I speak with {name}?", f"Hi, is this {name}?"),
        "OPENING:ASK_CLARIFY": (
            "I'm sorry, I didn't catch that. Is this the right number?",
            "Could you please confirm your name?",
        ),
        "OPENING:HANDLE_PUSHBACK": (
            "I understand you're busy. This will only take a moment.",
            "I appreciate your time. This is an important matter.",
        ),
        "DISCLOSURE:IDENTIFY_SELF": (
            f"This is a call from {creditor}. My name is Alex and I'm calling about your account.",
            f"I'm calling from {creditor} regarding your account.",
        ),
        "DISCLOSURE:ASK_CLARIFY": ("Is now an okay moment to talk about your account?",),
        "DISCLOSURE:PROCEED": (
            "This is an attempt to collect a debt. Any information obtained will be used for "
            "that purpose.",
        ),
        "IDENTITY_VERIFICATION:ASK_VERIFICATION": (
            "For security, can you please confirm the last four digits of your Social Security number?",
            "To verify your identity, what is your date of birth?",
        ),
        "IDENTITY_VERIFICATION:CONFIRM_IDENTITY": (
            "Thank you for confirming. I've verified your identity.",
            "Perfect, that matches our records.",
        ),
        "IDENTITY_VERIFICATION:ASK_CLARIFY": ("Sorry, could you repeat that for me?",),
        "CONSENT_RECORDING:PROCEED": (
            "This call may be recorded for quality and training purposes. Do you consent to "
            "being recorded?",
        ),
        "CONSENT_RECORDING:ASK_CLARIFY": ("Just to confirm, is it okay if this call is recorded?",),
        "CONSENT_RECORDING:HANDLE_PUSHBACK": (
            "I understand. Recording helps us keep an accurate record of what we agree.",
        ),
        "DEBT_CONTEXT:PROCEED": (
            f"I'm calling about your outstanding balance of {_money(case.amount_due)} with {creditor}.",
        ),
        "DEBT_CONTEXT:EMPATHIZE": ("I understand this may be unexpected. Let me explain the details.",),
        "DEBT_CONTEXT:ASK_CLARIFY": ("Do you have any questions about the balance so far?",),
        "NEGOTIATION:EMPATHIZE": (
            "I understand that money can be tight. Let's see what options we can work out.",
            "I hear you. Many people are in similar situations. Let's find a solution together.",
        ),
        "NEGOTIATION:OFFER_PLAN": (
            f"We can set up a payment plan. Would you be able to pay {_money(case.amount_due / 3)} per month?",
            f"How about we split this into manageable payments? We could do {_money(case.amount_due / 6)} monthly.",
        ),
        "NEGOTIATION:COUNTER_OFFER": (
            "I understand that might be difficult. What amount would work better for you?",
            "Let me see if we can adjust that. What can you comfortably afford?",
        ),
        "NEGOTIATION:REQUEST_CALLBACK": (
            "I understand now isn't a good time. When would be better to discuss this?",
            "No problem. Should I call back tomorrow or later this week?",
        ),
        "NEGOTIATION:HANDLE_PUSHBACK": ("I understand your concerns. Let me address them.",),
        "NEGOTIATION:PROCEED": ("Great, let's move forward with setting this up.",),
        "PAYMENT_SETUP:CONFIRM_PLAN": ("So we're agreeing to the payment plan we discussed. Is that correct?",),
        "PAYMENT_SETUP:SEND_PAYMENT_LINK": (
            "I'll send you a link to complete the payment. You should receive it shortly.",
        ),
        "PAYMENT_SETUP:ASK_CLARIFY": ("Which payment method would you prefer to use?",),
        "PAYMENT_SETUP:PROCEED": (
            "Everything is set up. Your first payment will be due on the date we discussed.",
        ),
        "WRAPUP:SUMMARIZE": (
            "To summarize, we've agreed on a payment plan. You'll receive confirmation shortly.",
            "Thank you for working with us today. Is there anything else I can help with?",
        ),
        "WRAPUP:PROCEED": ("Thank you for your time today. Have a great day.",),
        "CALLBACK_SCHEDULED:SUMMARIZE": ("I've scheduled a callback for a better time. Thank you.",),
        "CALLBACK_SCHEDULED:PROCEED": ("We'll talk again soon. Have a good day.",),
        "DISPUTE_FLOW:ACKNOWLEDGE_DISPUTE": (
            "I understand you're disputing this debt. I'll make a note of that and we'll send you verification.",
        ),
        "DISPUTE_FLOW:EMPATHIZE": ("I understand your concern. Let's sort this out.",),
        "DISPUTE_FLOW:PROCEED": ("We'll send you the documentation. Thank you for your time.",),
        "WRONG_PARTY_FLOW:APOLOGIZE": ("I apologize for the confusion. We'll update our records.",),
        "WRONG_PARTY_FLOW:PROCEED": ("Sorry for the inconvenience. Have a good day.",),
        "DO_NOT_CALL:ACKNOWLEDGE_DNC": ("I've noted your request. You won't receive any more calls from us.",),
        "DO_NOT_CALL:PROCEED": ("Your number has been added to our do-not-call list. Goodbye.",),
        "ESCALATE_HUMAN:ESCALATE": ("I'll transfer you to a supervisor who can better assist you.",),
        "ESCALATE_HUMAN:PROCEED": ("Please hold while I connect you.",),
        "END_CALL:SUMMARIZE": ("Thank you for your time. Have a good day.",),
    }


class TemplateResponseGenerator:
    """
    Deterministic generator backed by per (state, action) phrase tables.

    Variants rotate with the turn count so repeated actions do not produce the
    exact same sentence twice in a row.
    """

    async def generate(self, request: GenerationRequest) -> str:
        table = _template_table(request.case)
        key = f"{request.target_state}:{request.action}"
        variants = table.get(key)
        if not variants:
            body = fallback_utterance(request.target_state)
        elif request.directive in ("forced", "repair"):
            body = variants[0]
        else:
            body = variants[request.view.turn_count % len(variants)]

        prefix = [TEMPLATES[t] for t in request.required_templates if t in TEMPLATES]
        # Skip templates whose wording the chosen line already carries.
        prefix = [p for p in prefix if p.lower() not in body.lower()]
        return " ".join(prefix + [body]).strip()


_STATE_GUIDANCE: dict[str, str] = {
    "OPENING": "Greet the borrower and confirm you are speaking with the right person.",
    "DISCLOSURE": "Identify yourself and give the required debt-collection disclosure.",
    "IDENTITY_VERIFICATION": "Verify identity before discussing any account details.",
    "CONSENT_RECORDING": "Ask for consent to record the call.",
    "DEBT_CONTEXT": "Explain the balance owed clearly and calmly.",
    "NEGOTIATION": "Work toward an affordable payment arrangement.",
    "PAYMENT_SETUP": "Confirm the plan and how payment will be made.",
    "WRAPUP": "Summarize what was agreed and close politely.",
    "CALLBACK_SCHEDULED": "Confirm the callback and close politely.",
    "DISPUTE_FLOW": "Acknowledge the dispute; do not press for payment.",
    "WRONG_PARTY_FLOW": "Apologize; reveal nothing about the debt.",
    "DO_NOT_CALL": "Acknowledge the request to stop contact and end the call.",
    "ESCALATE_HUMAN": "Offer to transfer to a supervisor.",
    "END_CALL": "Close the call politely.",
}


def build_prompt(request: GenerationRequest) -> str:
    case = request.case
    lines = [
        "You are a professional, compliant debt collection agent on a phone call.",
        f"Current state: {request.target_state}. {_STATE_GUIDANCE.get(request.target_state, '')}",
        f"Required action: {request.action}.",
        f"Debtor: {case.debtor_name}. Creditor: {case.creditor_name}. "
        f"Amount due: {_money(case.amount_due)}. Days past due: {case.days_past_due}.",
        "Reply with one or two short spoken sentences and nothing else.",
    ]
    if request.prohibited_phrases:
        lines.append("Never use these phrases: " + ", ".join(request.prohibited_phrases) + ".")
    for t in request.required_templates:
        if t in TEMPLATES:
            lines.append(f"Include this statement verbatim: {TEMPLATES[t]}")
    if request.directive == "forced":
        lines.append("Compliance requires this exact action now; keep it brief and neutral.")
    if request.directive == "repair" and request.repair_notes:
        lines.append("Your previous reply was rejected: " + "; ".join(request.repair_notes) + ".")
    if request.borrower_utterance:
        lines.append(f'Debtor said: "{request.borrower_utterance}"')
    else:
        lines.append("The debtor has just answered the call.")
    return "\n".join(lines)


class LLMResponseGenerator:
    def __init__(self, client: LLMClient) -> None:
        self._client = client

    async def generate(self, request: GenerationRequest) -> str:
        prompt = build_prompt(request)
        parts: list[str] = []
        try:
            async for chunk in self._client.stream_text(prompt=prompt):
                parts.append(chunk)
        except (GenerationFailure, TimeoutError):
            raise
        except RuntimeError as e:
            # Missing optional dependency or misconfiguration.
            raise GenerationFailure(str(e)) from e
        except Exception as e:
            raise GenerationFailure(f"llm stream failed: {type(e).__name__}: {e}") from e
        return "".join(parts).strip()


_TONE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"you must pay (immediately|now)",
        r"we will sue you",
        r"you have no choice",
        r"you'?re lying",
        r"don'?t hang up",
    )
)
_PLACEHOLDER = re.compile(r"\[(NAME|AMOUNT|[A-Z_]+)\]|\{[a-z_]+\}|\bTODO\b|\bFIXME\b")
_REPEATED_CHAR = re.compile(r"(.)\1{9,}")

MIN_LENGTH = 10
MAX_LENGTH = 500


class RuleValidator:
    """Length, tone, coherence and prohibited-phrase checks on a candidate utterance."""

    def __init__(self, rules: Optional[JurisdictionRules] = None) -> None:
        self._rules = rules

    async def check(self, text: str, view: ContextView, action: Action) -> ValidationReport:
        return self.check_sync(text)

    def check_sync(self, text: str) -> ValidationReport:
        failures: list[tuple[str, str]] = []
        stripped = (text or "").strip()
        if not stripped:
            return ValidationReport(False, (("coherence", "empty"),), repairable=False)
        if _REPEATED_CHAR.search(stripped):
            failures.append(("coherence", "repeated_characters"))
        if len(stripped) < MIN_LENGTH:
            failures.append(("length", f"too_short:{len(stripped)}"))
        if len(stripped) > MAX_LENGTH:
            failures.append(("length", f"too_long:{len(stripped)}"))
        for pattern in _TONE_PATTERNS:
            m = pattern.search(stripped)
            if m:
                failures.append(("tone", m.group(0).lower()))
        m = _PLACEHOLDER.search(stripped)
        if m:
            failures.append(("coherence", f"placeholder:{m.group(0)}"))
        phrases = self._rules.prohibited_phrases if self._rules is not None else ()
        for phrase in find_prohibited(stripped, phrases):
            failures.append(("prohibited_phrase", phrase))
        repairable = not any(f == ("coherence", "repeated_characters") for f in failures)
        return ValidationReport(not failures, tuple(failures), repairable=repairable)


def build_response_generator(cfg: EngineConfig, client: Optional[LLMClient] = None) -> ResponseGenerator:
    """LLM-backed generator when a client is configured, otherwise the template tables."""
    if client is None:
        client = build_llm_client(cfg)
    if client is not None:
        return LLMResponseGenerator(client)
    return TemplateResponseGenerator()
