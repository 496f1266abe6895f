from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    pass


class IllegalAction(EngineError):
    """
    An action was applied in a state that does not permit it.

    Selectors only ever choose from legal actions, so this indicates a bug in the
    engine rather than a runtime condition. Never caught by the turn loop.
    """

    def __init__(self, state: str, action: str) -> None:
        super().__init__(f"action {action} is not legal in state {state}")
        self.state = state
        self.action = action


class PolicyViolation(EngineError):
    """
    A blocked policy decision turned into an exception.

    The turn loop never raises it: blocks are handled as forced actions and
    recorded on the trace. PolicyDecision.raise_for_block() raises it for
    callers that evaluate the guard on their own.
    """

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("; ".join(reasons) or "policy_violation")
        self.reasons = list(reasons)


class ValidationFailure(EngineError):
    """First recorded validator failure, raised by ValidationOutcome.raise_for_failure()."""

    def __init__(self, validator: str, detail: str) -> None:
        super().__init__(f"{validator}: {detail}")
        self.validator = validator
        self.detail = detail


class GenerationFailure(EngineError):
    pass


class ValidatorUnavailable(EngineError):
    pass


class SerializationError(EngineError):
    pass


class UnknownSession(EngineError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"unknown session: {session_id}")
        self.session_id = session_id


class SessionTerminated(EngineError):
    def __init__(self, session_id: str, outcome: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"session {session_id} ended: {outcome}")
        self.session_id = session_id
        self.outcome = outcome
        self.cause = cause
