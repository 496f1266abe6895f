from __future__ import annotations

import re
from typing import Optional

from .domain import Sentiment, Signal


# Checked in this order; the first signal with a matching pattern is the turn's
# outcome signal. Compliance-relevant signals come first so that "no, stop
# calling me" is read as STOP_CONTACT rather than REFUSAL.
_PATTERNS: tuple[tuple[Signal, tuple[re.Pattern[str], ...]], ...] = tuple(
    (name, tuple(re.compile(p, re.IGNORECASE) for p in patterns))
    for name, patterns in (
        (
            "STOP_CONTACT",
            (
                r"stop calling",
                r"don'?t (call|contact) me",
                r"do not call",
                r"remove (me|my number)",
                r"take me off",
                r"leave me alone",
                r"stop harassing",
            ),
        ),
        (
            "ATTORNEY_REPRESENTED",
            (
                r"my (attorney|lawyer)",
                r"talk to my lawyer",
                r"i have (an |legal )?representation",
            ),
        ),
        (
            "WRONG_PARTY",
            (
                r"wrong (number|person)",
                r"that'?s not me",
                r"never heard of",
                r"you have the wrong",
                r"no one (here )?by that name",
            ),
        ),
        (
            "DISPUTE",
            (
                r"i dispute",
                r"not my debt",
                r"i don'?t owe",
                r"this is wrong",
                r"never had (an |this )?account",
                r"send (me )?(proof|validation|verification)",
                r"prove it",
            ),
        ),
        (
            "HOSTILITY",
            (
                r"f[*u]ck",
                r"go to hell",
                r"\bscam",
                r"\bfraud",
                r"threatening",
                r"i'?ll (sue|report) you",
                r"harassment",
            ),
        ),
        (
            "CALLBACK_REQUEST",
            (
                r"call me (back|later|tomorrow)",
                r"can i call you",
                r"i'?ll call you",
                r"give me (a |the )?number",
            ),
        ),
        (
            "INCONVENIENT_TIME",
            (
                r"not a good time",
                r"i'?m (busy|at work|driving)",
                r"can you call later",
                r"bad time",
            ),
        ),
        (
            "CONFUSION",
            (
                r"i don'?t understand",
                r"can you (explain|repeat)",
                r"what (do you mean|are you talking about)",
                r"\bhuh\b",
                r"^\s*what\?",
            ),
        ),
        (
            "REFUSAL",
            (
                r"\bno\b",
                r"i (can'?t|won'?t|refuse)",
                r"not going to",
                r"forget it",
                r"i'?m not paying",
            ),
        ),
        (
            "AGREEMENT",
            (
                r"\bok(ay)?\b",
                r"\byes\b",
                r"\bsure\b",
                r"i (can|will) (do|pay|agree)",
                r"that works",
                r"sounds good",
                r"let'?s do (it|that)",
            ),
        ),
    )
)


def detect_signals(text: str) -> list[Signal]:
    """All signals present in `text`, in precedence order."""
    if not text:
        return []
    found: list[Signal] = []
    for name, patterns in _PATTERNS:
        if any(p.search(text) for p in patterns):
            found.append(name)
    return found


def detect_signal(text: str) -> Optional[Signal]:
    found = detect_signals(text)
    return found[0] if found else None


_POSITIVE_WORDS = (
    "yes",
    "okay",
    "sure",
    "i can",
    "i will",
    "agree",
    "understand",
    "thank",
    "appreciate",
    "pay",
    "help",
)

_NEGATIVE_WORDS = (
    "no",
    "can't",
    "cannot",
    "won't",
    "refuse",
    "never",
    "stop",
    "harass",
    "scam",
    "fraud",
    "lawyer",
    "sue",
    "angry",
    "upset",
    "ridiculous",
)


def classify_sentiment(text: str) -> Sentiment:
    # Keyword vote; one stray word either way stays NEUTRAL.
    lowered = (text or "").lower()
    words = set(re.findall(r"[a-z']+", lowered))

    def hits(vocab: tuple[str, ...]) -> int:
        n = 0
        for kw in vocab:
            if " " in kw or "'" in kw:
                n += kw in lowered
            else:
                n += any(w == kw or (len(kw) >= 4 and w.startswith(kw)) for w in words)
        return n

    positive = hits(_POSITIVE_WORDS)
    negative = hits(_NEGATIVE_WORDS)
    if positive > negative + 1:
        return "POSITIVE"
    if negative > positive + 1:
        return "NEGATIVE"
    return "NEUTRAL"
