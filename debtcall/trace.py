from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from .domain import Action, Directive, FSMState, Signal
from .errors import ValidationFailure
from .policy_guard import PolicyDecision
from .reward import RewardBreakdown


TurnStage = Literal[
    "AWAIT_INPUT",
    "SELECT_ACTION",
    "POLICY_CHECK",
    "GENERATE",
    "VALIDATE",
    "SCORE",
    "COMMIT",
]


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_payload(obj: Any) -> str:
    # Canonical JSON to make hashing stable for replay.
    blob = json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=True).encode(
        "utf-8"
    )
    return _sha256_hex(blob)


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    passed: bool
    failures: tuple[tuple[str, str], ...] = ()
    repair_attempts: int = 0
    fallback_used: bool = False
    timed_out: bool = False

    def raise_for_failure(self) -> None:
        if self.passed:
            return
        validator, detail = self.failures[0] if self.failures else ("timeout", "no verdict")
        raise ValidationFailure(validator, detail)

    def to_payload(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "failures": [list(f) for f in self.failures],
            "repair_attempts": self.repair_attempts,
            "fallback_used": self.fallback_used,
            "timed_out": self.timed_out,
        }


@dataclass(frozen=True, slots=True)
class TurnTrace:
    session_id: str
    turn_index: int
    t_ms: int
    fsm_state_before: FSMState
    fsm_state_after: FSMState
    signal: Optional[Signal]
    proposed_action: Action
    action: Action
    directive: Directive
    policy: PolicyDecision
    validation: ValidationOutcome
    reward: RewardBreakdown
    utterance: str
    stages: tuple[TurnStage, ...]
    latency_ms: int
    selection_latency_ms: int
    explored: bool
    table_version: int
    payload_hash: str

    @property
    def fallback_used(self) -> bool:
        return self.validation.fallback_used

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn_index": self.turn_index,
            "t_ms": self.t_ms,
            "fsm_state_before": self.fsm_state_before,
            "fsm_state_after": self.fsm_state_after,
            "signal": self.signal,
            "proposed_action": self.proposed_action,
            "action": self.action,
            "directive": self.directive,
            "policy": self.policy.to_payload(),
            "validation": self.validation.to_payload(),
            "reward": self.reward.to_payload(),
            "utterance": self.utterance,
            "stages": list(self.stages),
            "latency_ms": self.latency_ms,
            "selection_latency_ms": self.selection_latency_ms,
            "explored": self.explored,
            "table_version": self.table_version,
            "payload_hash": self.payload_hash,
        }


@dataclass
class TraceBuilder:
    """
    Collects one turn's facts as the pipeline produces them and seals them into
    a TurnTrace. build() refuses to seal a turn that skipped a required stage.
    """

    session_id: str
    turn_index: int
    t_ms: int
    fsm_state_before: FSMState
    signal: Optional[Signal] = None
    stages: list[TurnStage] = field(default_factory=list)
    proposed_action: Optional[Action] = None
    action: Optional[Action] = None
    directive: Directive = "normal"
    policy: Optional[PolicyDecision] = None
    validation: Optional[ValidationOutcome] = None
    reward: Optional[RewardBreakdown] = None
    utterance: str = ""
    selection_latency_ms: int = 0
    explored: bool = False
    table_version: int = 0

    def stage(self, name: TurnStage) -> None:
        self.stages.append(name)

    def build(self, *, fsm_state_after: FSMState, latency_ms: int) -> TurnTrace:
        missing = [
            name
            for name, value in (
                ("proposed_action", self.proposed_action),
                ("action", self.action),
                ("policy", self.policy),
                ("validation", self.validation),
                ("reward", self.reward),
            )
            if value is None
        ]
        if missing:
            raise ValueError(f"turn {self.turn_index} trace incomplete: {', '.join(missing)}")
        assert self.proposed_action is not None and self.action is not None
        assert self.policy is not None and self.validation is not None and self.reward is not None

        hashed = {
            "session_id": self.session_id,
            "turn_index": self.turn_index,
            "fsm_state_before": self.fsm_state_before,
            "fsm_state_after": fsm_state_after,
            "signal": self.signal,
            "proposed_action": self.proposed_action,
            "action": self.action,
            "directive": self.directive,
            "policy": self.policy.to_payload(),
            "validation": self.validation.to_payload(),
            "reward": self.reward.to_payload(),
            "utterance": self.utterance,
            "stages": list(self.stages),
        }
        return TurnTrace(
            session_id=self.session_id,
            turn_index=self.turn_index,
            t_ms=self.t_ms,
            fsm_state_before=self.fsm_state_before,
            fsm_state_after=fsm_state_after,
            signal=self.signal,
            proposed_action=self.proposed_action,
            action=self.action,
            directive=self.directive,
            policy=self.policy,
            validation=self.validation,
            reward=self.reward,
            utterance=self.utterance,
            stages=tuple(self.stages),
            latency_ms=int(latency_ms),
            selection_latency_ms=int(self.selection_latency_ms),
            explored=self.explored,
            table_version=self.table_version,
            payload_hash=hash_payload(hashed),
        )


class SessionTraceLog:
    """Append-only per-session trace list."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._traces: list[TurnTrace] = []
        self.schema_violations_total = 0

    def __len__(self) -> int:
        return len(self._traces)

    @property
    def traces(self) -> tuple[TurnTrace, ...]:
        return tuple(self._traces)

    def append(self, trace: TurnTrace) -> None:
        if not self._validate(trace):
            self.schema_violations_total += 1
        self._traces.append(trace)

    def replay_digest(self) -> str:
        blob = "|".join(
            f"{t.turn_index}:{t.fsm_state_before}:{t.action}:{t.fsm_state_after}:{t.payload_hash}"
            for t in self._traces
        ).encode("utf-8")
        return _sha256_hex(blob)

    def _validate(self, trace: TurnTrace) -> bool:
        if trace.session_id != self.session_id:
            return False
        if trace.turn_index != len(self._traces):
            return False
        if trace.t_ms < 0 or trace.latency_ms < 0:
            return False
        if not trace.stages or trace.stages[-1] != "COMMIT":
            return False
        if not trace.payload_hash:
            return False
        return True
