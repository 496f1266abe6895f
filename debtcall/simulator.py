from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import Literal, Optional

from .domain import FSMState, Signal
from .signals import detect_signal


WillingnessToPay = Literal["LOW", "MEDIUM", "HIGH"]
FinancialSituation = Literal["STABLE", "STRUGGLING", "HARDSHIP"]
Temperament = Literal["COOPERATIVE", "NEUTRAL", "HOSTILE"]
DebtKnowledge = Literal["AWARE", "CONFUSED", "DISPUTING"]


@dataclass(frozen=True, slots=True)
class Persona:
    key: str
    name: str
    willingness: WillingnessToPay
    situation: FinancialSituation
    temperament: Temperament
    knowledge: DebtKnowledge
    # Turns of friction tolerated before hanging up, on a 0..10 scale.
    patience: float


PRESET_PERSONAS: dict[str, Persona] = {
    p.key: p
    for p in (
        Persona("cooperative_stable", "Cooperative & Stable", "HIGH", "STABLE", "COOPERATIVE", "AWARE", 8),
        Persona(
            "cooperative_struggling",
            "Cooperative but Struggling",
            "MEDIUM",
            "STRUGGLING",
            "COOPERATIVE",
            "AWARE",
            7,
        ),
        Persona("neutral_confused", "Neutral & Confused", "MEDIUM", "STRUGGLING", "NEUTRAL", "CONFUSED", 5),
        Persona("hostile_struggling", "Hostile & Struggling", "LOW", "STRUGGLING", "HOSTILE", "AWARE", 3),
        Persona("hostile_disputing", "Hostile & Disputing", "LOW", "STABLE", "HOSTILE", "DISPUTING", 2),
        Persona(
            "hardship_cooperative",
            "Hardship but Cooperative",
            "LOW",
            "HARDSHIP",
            "COOPERATIVE",
            "AWARE",
            6,
        ),
        Persona("neutral_disputing", "Neutral & Disputing", "LOW", "STABLE", "NEUTRAL", "DISPUTING", 4),
        Persona("impatient_aware", "Impatient but Aware", "MEDIUM", "STABLE", "NEUTRAL", "AWARE", 2),
    )
}


def persona_names() -> list[str]:
    return list(PRESET_PERSONAS)


def get_persona(key: str) -> Persona:
    persona = PRESET_PERSONAS.get(key)
    if persona is None:
        raise KeyError(f"unknown persona: {key!r}")
    return persona


def random_persona(rng: random.Random) -> Persona:
    willingness = rng.choice(("LOW", "MEDIUM", "HIGH"))
    situation = rng.choice(("STABLE", "STRUGGLING", "HARDSHIP"))
    temperament = rng.choice(("COOPERATIVE", "NEUTRAL", "HOSTILE"))
    knowledge = rng.choice(("AWARE", "CONFUSED", "DISPUTING"))
    # Patience correlates with temperament.
    if temperament == "COOPERATIVE":
        lo, hi = 5, 9
    elif temperament == "HOSTILE":
        lo, hi = 1, 4
    else:
        lo, hi = 3, 7
    return Persona(
        key=f"random_{willingness.lower()}_{temperament.lower()}",
        name=f"Random {willingness} {temperament}",
        willingness=willingness,  # type: ignore[arg-type]
        situation=situation,  # type: ignore[arg-type]
        temperament=temperament,  # type: ignore[arg-type]
        knowledge=knowledge,  # type: ignore[arg-type]
        patience=rng.randint(lo, hi),
    )


def persona_traits(key: str) -> Optional[tuple[WillingnessToPay, Temperament]]:
    """(willingness, temperament) for a preset key or a random_<willingness>_<temperament> key."""
    preset = PRESET_PERSONAS.get(key)
    if preset is not None:
        return preset.willingness, preset.temperament
    parts = key.split("_")
    if len(parts) == 3 and parts[0] == "random":
        willingness, temperament = parts[1].upper(), parts[2].upper()
        if willingness in ("LOW", "MEDIUM", "HIGH") and temperament in ("COOPERATIVE", "NEUTRAL", "HOSTILE"):
            return willingness, temperament  # type: ignore[return-value]
    return None


def sample_persona(rng: random.Random, weights: Optional[dict[str, float]] = None) -> Persona:
    names = persona_names()
    if not weights:
        return PRESET_PERSONAS[rng.choice(names)]
    w = [float(weights.get(n, 1.0)) for n in names]
    return PRESET_PERSONAS[rng.choices(names, weights=w, k=1)[0]]


_ACCEPT_BASE: dict[str, float] = {"HIGH": 0.8, "MEDIUM": 0.5, "LOW": 0.15}
_SITUATION_FACTOR: dict[str, float] = {"STABLE": 1.0, "STRUGGLING": 0.8, "HARDSHIP": 0.5}
_HOSTILE_OUTBURST = 0.1

_OFFER = re.compile(r"\$\d|payment plan|per month|monthly|what amount", re.IGNORECASE)
_EMPATHY = re.compile(r"\bi (understand|hear you)\b", re.IGNORECASE)
_WORD = re.compile(r"[a-z0-9]+")


def _similar(a: str, b: str) -> bool:
    aw = _WORD.findall(a.lower())
    bw = set(_WORD.findall(b.lower()))
    if not aw or not bw:
        return False
    union = set(aw) | bw
    return sum(1 for w in aw if w in bw) / len(union) > 0.5


@dataclass(frozen=True, slots=True)
class BorrowerReply:
    text: str
    hangup: bool
    signal: Optional[Signal]
    patience_remaining: float


@dataclass
class BorrowerSimulator:
    """
    Rule-based borrower driven by persona traits and a seeded RNG.

    `respond` reacts to what the agent just said and the state it was said in.
    Replies are plain sentences carrying phrases the signal detector picks up, so
    the engine sees the simulated borrower exactly like a live transcript.
    """

    persona: Persona
    rng: random.Random
    patience: float = field(init=False)
    frustration_events: int = field(init=False, default=0)
    history: list[tuple[str, str]] = field(init=False, default_factory=list)
    _last_agent: Optional[str] = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        self.patience = float(self.persona.patience)

    def reset(self, persona: Optional[Persona] = None) -> None:
        if persona is not None:
            self.persona = persona
        self.patience = float(self.persona.patience)
        self.frustration_events = 0
        self.history = []
        self._last_agent = None

    def respond(self, agent_utterance: str, state: FSMState) -> BorrowerReply:
        if self._last_agent is not None and _similar(agent_utterance, self._last_agent):
            self.frustration_events += 1
            self.patience = max(0.0, self.patience - 1)
        self._last_agent = agent_utterance

        if self.patience <= 0:
            text = "I'm done with this. Goodbye."
        else:
            text = self._reply(agent_utterance, state)

        signal = detect_signal(text)
        if signal in ("HOSTILITY", "REFUSAL", "STOP_CONTACT"):
            self.patience = max(0.0, self.patience - 1)
        if self.rng.random() < 0.1:
            self.patience = max(0.0, self.patience - 0.5)

        self.history.append(("agent", agent_utterance))
        self.history.append(("borrower", text))
        hangup = self.patience <= 0 or "goodbye" in text.lower()
        return BorrowerReply(text=text, hangup=hangup, signal=signal, patience_remaining=self.patience)

    def _reply(self, agent_utterance: str, state: FSMState) -> str:
        p = self.persona
        hostile = p.temperament == "HOSTILE"
        main_flow = state not in (
            "WRONG_PARTY_FLOW",
            "DISPUTE_FLOW",
            "CALLBACK_SCHEDULED",
            "DO_NOT_CALL",
            "ESCALATE_HUMAN",
            "END_CALL",
        )
        if hostile and main_flow and state != "OPENING" and self.rng.random() < _HOSTILE_OUTBURST:
            return "This is a scam and you know it."

        if state == "OPENING":
            if hostile:
                return "Who is this? What do you want?"
            return "Yes, this is me. Who's calling?"
        elif state == "DISCLOSURE":
            if p.knowledge == "CONFUSED":
                return "What is this about? I don't understand."
            if hostile:
                return "Fine, get on with it."
            return "Okay, go ahead."
        elif state == "IDENTITY_VERIFICATION":
            if hostile:
                return "Why do you need that?"
            return "Sure, my date of birth is March 3rd."
        elif state == "CONSENT_RECORDING":
            if hostile and self.rng.random() < 0.2:
                return "No, I don't want to be recorded."
            return "Yes, that's fine." if not hostile else "Whatever, sure."
        elif state == "DEBT_CONTEXT":
            if p.knowledge == "DISPUTING":
                return "I don't owe this. Send me proof."
            if p.knowledge == "CONFUSED":
                return "I don't understand what this is for."
            return "Yes, I know about it."
        elif state == "NEGOTIATION":
            return self._negotiate(agent_utterance)
        elif state == "PAYMENT_SETUP":
            if hostile:
                return "Fine, send it."
            return "Sounds good."
        elif state == "WRAPUP":
            return "That's all, thank you."
        elif state == "CALLBACK_SCHEDULED":
            return "Thanks, talk to you then."
        if hostile:
            return "Whatever."
        return "Okay, thank you."

    def _negotiate(self, agent_utterance: str) -> str:
        p = self.persona
        if not _OFFER.search(agent_utterance):
            if p.temperament == "HOSTILE":
                if _EMPATHY.search(agent_utterance):
                    return "Fine, what are you offering?"
                return "Just get to the point."
            if p.temperament == "COOPERATIVE":
                return "Thanks, I appreciate that. What are my options?"
            return "What are my options?"

        accept = _ACCEPT_BASE[p.willingness] * _SITUATION_FACTOR[p.situation]
        if "what amount" in agent_utterance.lower() and p.situation != "STABLE":
            accept += 0.2
        if self.rng.random() < accept:
            return "That works, I can pay that."
        if p.temperament == "HOSTILE":
            if self.rng.random() < 0.15:
                return "I'm busy, call me back later."
            return "No way, I'm not paying that."
        if p.temperament == "NEUTRAL":
            return "I can't afford that right now."
        return "I want to pay, but that is more than I can manage."
