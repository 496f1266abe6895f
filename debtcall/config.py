from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


JURISDICTION_CHOICES = ("US-CA", "US-NY", "US-TX", "UAE")
LEARNER_CHOICES = ("bandit", "qlearning")
LLM_PROVIDER_CHOICES = ("template", "openai")


@dataclass(frozen=True, slots=True)
class EngineConfig:
    # Compliance
    jurisdiction: str = "US-CA"  # US-CA | US-NY | US-TX | UAE

    # Turn loop
    max_turns: int = 30
    max_repair_attempts: int = 2
    generate_timeout_ms: int = 3000
    validate_timeout_ms: int = 1000
    external_retry_max: int = 2
    retry_backoff_ms: int = 100
    idle_timeout_ms: int = 120_000
    structured_logging: bool = False

    # Learner
    learner_kind: str = "qlearning"  # bandit | qlearning
    epsilon: float = 0.1
    learning_rate: float = 0.01
    alpha: float = 0.1
    gamma: float = 0.95
    initial_q: float = 0.0
    snapshot_path: str = ""

    # Utterance generation
    llm_provider: str = "template"  # template | openai
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_ms: int = 8000

    @staticmethod
    def from_env() -> "EngineConfig":
        jurisdiction = _getenv_str("DEBTCALL_JURISDICTION", "US-CA").strip().upper()
        if jurisdiction not in JURISDICTION_CHOICES:
            jurisdiction = "US-CA"
        learner_kind = _getenv_str("DEBTCALL_LEARNER", "qlearning").strip().lower()
        if learner_kind not in LEARNER_CHOICES:
            learner_kind = "qlearning"
        llm_provider = _getenv_str("DEBTCALL_LLM_PROVIDER", "template").strip().lower()
        if llm_provider not in LLM_PROVIDER_CHOICES:
            llm_provider = "template"

        return EngineConfig(
            jurisdiction=jurisdiction,
            max_turns=max(1, _getenv_int("DEBTCALL_MAX_TURNS", 30)),
            max_repair_attempts=max(0, _getenv_int("DEBTCALL_MAX_REPAIR_ATTEMPTS", 2)),
            generate_timeout_ms=_getenv_int("DEBTCALL_GENERATE_TIMEOUT_MS", 3000),
            validate_timeout_ms=_getenv_int("DEBTCALL_VALIDATE_TIMEOUT_MS", 1000),
            external_retry_max=max(0, _getenv_int("DEBTCALL_EXTERNAL_RETRY_MAX", 2)),
            retry_backoff_ms=max(0, _getenv_int("DEBTCALL_RETRY_BACKOFF_MS", 100)),
            idle_timeout_ms=_getenv_int("DEBTCALL_IDLE_TIMEOUT_MS", 120_000),
            structured_logging=_getenv_bool("DEBTCALL_STRUCTURED_LOGGING", False),
            learner_kind=learner_kind,
            epsilon=max(0.0, min(1.0, _getenv_float("DEBTCALL_EPSILON", 0.1))),
            learning_rate=_getenv_float("DEBTCALL_LEARNING_RATE", 0.01),
            alpha=max(0.0, min(1.0, _getenv_float("DEBTCALL_ALPHA", 0.1))),
            gamma=max(0.0, min(1.0, _getenv_float("DEBTCALL_GAMMA", 0.95))),
            initial_q=_getenv_float("DEBTCALL_INITIAL_Q", 0.0),
            snapshot_path=_getenv_str("DEBTCALL_SNAPSHOT_PATH", ""),
            llm_provider=llm_provider,
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("DEBTCALL_OPENAI_MODEL", "gpt-4o-mini"),
            openai_timeout_ms=_getenv_int("DEBTCALL_OPENAI_TIMEOUT_MS", 8000),
        )
