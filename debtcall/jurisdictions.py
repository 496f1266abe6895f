from __future__ import annotations

from dataclasses import dataclass
from datetime import time


@dataclass(frozen=True, slots=True)
class JurisdictionRules:
    code: str
    call_window_start: time
    call_window_end: time
    max_attempts_per_day: int
    max_attempts_total: int
    prohibited_phrases: tuple[str, ...]
    require_recording_consent: bool

    def within_call_window(self, local: time) -> bool:
        # Compared at minute resolution; the closing minute is still inside.
        return self.call_window_start <= local.replace(second=0, microsecond=0) <= self.call_window_end

    def minutes_to_window_edge(self, local: time) -> int:
        """Distance in minutes from `local` to the nearer call-window boundary."""
        at = local.hour * 60 + local.minute
        start = self.call_window_start.hour * 60 + self.call_window_start.minute
        end = self.call_window_end.hour * 60 + self.call_window_end.minute
        return min(abs(at - start), abs(end - at))


_US_PHRASES = (
    "jail",
    "arrest",
    "garnish your wages",
    "sue you",
    "legal action guaranteed",
    "police",
)


PRESETS: dict[str, JurisdictionRules] = {
    "US-CA": JurisdictionRules(
        code="US-CA",
        call_window_start=time(8, 0),
        call_window_end=time(21, 0),
        max_attempts_per_day=3,
        max_attempts_total=15,
        prohibited_phrases=_US_PHRASES,
        require_recording_consent=True,
    ),
    "US-NY": JurisdictionRules(
        code="US-NY",
        call_window_start=time(8, 0),
        call_window_end=time(21, 0),
        max_attempts_per_day=3,
        max_attempts_total=15,
        prohibited_phrases=_US_PHRASES,
        require_recording_consent=False,
    ),
    "US-TX": JurisdictionRules(
        code="US-TX",
        call_window_start=time(8, 0),
        call_window_end=time(21, 0),
        max_attempts_per_day=5,
        max_attempts_total=20,
        prohibited_phrases=("jail", "arrest", "sue you", "police"),
        require_recording_consent=False,
    ),
    "UAE": JurisdictionRules(
        code="UAE",
        call_window_start=time(9, 0),
        call_window_end=time(18, 0),
        max_attempts_per_day=2,
        max_attempts_total=10,
        prohibited_phrases=("jail", "prison", "deport", "travel ban", "police", "criminal"),
        require_recording_consent=True,
    ),
}


def rules_for(code: str) -> JurisdictionRules:
    key = (code or "").strip().upper()
    rules = PRESETS.get(key)
    if rules is None:
        raise KeyError(f"unknown jurisdiction: {code!r}")
    return rules


def find_prohibited(text: str, phrases: tuple[str, ...]) -> list[str]:
    # Case-insensitive substring match; returns hits in preset order.
    lowered = (text or "").lower()
    return [p for p in phrases if p in lowered]
