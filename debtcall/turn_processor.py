from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .clock import Clock, RealClock
from .config import EngineConfig
from .context import CaseFile, ContextView, ConversationContext, advance, perceive
from .domain import Action, Directive, FSMState, Outcome, Signal
from .episode import EpisodeBuilder, EpisodeRecorder, Transition
from .errors import GenerationFailure, SessionTerminated, UnknownSession, ValidatorUnavailable
from .generation import (
    GenerationRequest,
    ResponseGenerator,
    ValidationReport,
    Validator,
    fallback_action,
    fallback_utterance,
)
from .jurisdictions import find_prohibited
from .learners.selector import ActionSelector
from .learners.table import ActionValueTable
from .log import log_event
from .metrics import ENGINE, Metrics
from .policy_guard import PolicyDecision, PolicyGuard
from .reward import RewardComputer, RewardConfig
from .signals import classify_sentiment, detect_signal
from .state_machine import StateMachine, TERMINAL
from .trace import SessionTraceLog, TraceBuilder, TurnTrace, ValidationOutcome


@dataclass(frozen=True, slots=True)
class TurnResult:
    agent_utterance: str
    trace: TurnTrace
    new_state: FSMState


@dataclass
class _Session:
    session_id: str
    context: ConversationContext
    guard: PolicyGuard
    rewards: RewardComputer
    traces: SessionTraceLog
    episode: EpisodeBuilder
    last_active_ms: int
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False
    recorded: bool = False


@dataclass
class _Utterance:
    text: str
    action: Action
    directive: Directive
    decision: PolicyDecision
    failures: list[tuple[str, str]] = field(default_factory=list)
    repair_attempts: int = 0
    fallback_used: bool = False
    timed_out: bool = False


class TurnProcessor:
    """
    Drives one conversation turn at a time per session through
    AWAIT_INPUT, SELECT_ACTION, POLICY_CHECK, GENERATE, VALIDATE, SCORE and COMMIT.

    Each session owns an asyncio.Lock held for the whole turn, so turns within a
    session are strictly sequential and teardown waits for the in-flight COMMIT.
    Sessions share nothing except the selector's action-value store.
    """

    def __init__(
        self,
        *,
        selector: ActionSelector,
        generator: ResponseGenerator,
        validator: Validator,
        recorder: EpisodeRecorder,
        cfg: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[Metrics] = None,
        now: Optional[Callable[[], datetime]] = None,
        reward_config: Optional[RewardConfig] = None,
        state_machine: Optional[StateMachine] = None,
    ) -> None:
        self._cfg = cfg or EngineConfig()
        self._selector = selector
        self._generator = generator
        self._validator = validator
        self._recorder = recorder
        self._clock = clock or RealClock()
        self._metrics = metrics or Metrics()
        self._now = now
        self._reward_config = reward_config or RewardConfig()
        self._fsm = state_machine or StateMachine()
        self._sessions: dict[str, _Session] = {}
        self._pending: set[asyncio.Task[None]] = set()
        selector.store.on_swap(self._on_table_swap)

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def state_machine(self) -> StateMachine:
        return self._fsm

    def _log(self, event: str, **payload: Any) -> None:
        log_event(self._cfg.structured_logging, component="turn_processor", event=event, **payload)

    def _on_table_swap(self, table: ActionValueTable) -> None:
        self._metrics.inc(ENGINE["snapshot_swaps_total"], 1)
        self._log("snapshot_swap", kind=table.kind, version=table.version)

    # Session registry

    def open_session(
        self,
        session_id: str,
        case: CaseFile,
        *,
        jurisdiction: Optional[str] = None,
        persona: Optional[str] = None,
    ) -> ConversationContext:
        if session_id in self._sessions:
            raise ValueError(f"session already open: {session_id}")
        kwargs: dict[str, Any] = {}
        if self._now is not None:
            kwargs["now"] = self._now
        guard = PolicyGuard.for_jurisdiction(jurisdiction or case.jurisdiction, **kwargs)
        context = ConversationContext.open(session_id, case)
        self._sessions[session_id] = _Session(
            session_id=session_id,
            context=context,
            guard=guard,
            rewards=RewardComputer(self._reward_config),
            traces=SessionTraceLog(session_id),
            episode=EpisodeBuilder(
                episode_id=f"ep-{session_id}",
                session_id=session_id,
                case_id=case.case_id,
                persona=persona,
            ),
            last_active_ms=self._clock.now_ms(),
        )
        self._metrics.set(ENGINE["sessions_open"], len(self._sessions))
        self._log("session_open", session_id=session_id, jurisdiction=guard.rules.code)
        return context

    def _get(self, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def context(self, session_id: str) -> ContextView:
        return self._get(session_id).context.snapshot()

    def traces(self, session_id: str) -> tuple[TurnTrace, ...]:
        return self._get(session_id).traces.traces

    def replay_digest(self, session_id: str) -> str:
        return self._get(session_id).traces.replay_digest()

    def session_ids(self) -> list[str]:
        return sorted(self._sessions)

    async def generate_opening(self, session_id: str) -> TurnResult:
        session = self._get(session_id)
        async with session.lock:
            if len(session.traces) > 0:
                raise ValueError(f"session {session_id} already has an opening turn")
            return await self._turn(session, None)

    async def process_turn(self, session_id: str, borrower_utterance: str) -> TurnResult:
        session = self._get(session_id)
        async with session.lock:
            return await self._turn(session, borrower_utterance)

    async def end_session(self, session_id: str, reason: Outcome = "HANGUP") -> None:
        """Tear a session down once its in-flight turn (if any) has committed."""
        session = self._get(session_id)
        async with session.lock:
            if not session.closed:
                ctx = session.context
                if ctx.outcome is None:
                    terminal = session.rewards.terminal_value(
                        reason, disclosure_complete=ctx.disclosure_complete
                    )
                    session.episode.terminate(terminal, reason)
                    ctx.outcome = reason
                else:
                    session.episode.terminate(0.0, ctx.outcome)
                self._close(session, ctx.outcome)
            self._sessions.pop(session_id, None)
        self._metrics.inc(ENGINE["sessions_closed_total"], 1)
        self._metrics.set(ENGINE["sessions_open"], len(self._sessions))
        self._log("session_end", session_id=session_id, reason=reason)

    async def reap_idle(self, now_ms: Optional[int] = None) -> list[str]:
        now_ms = self._clock.now_ms() if now_ms is None else now_ms
        idle = [
            s.session_id
            for s in self._sessions.values()
            if not s.lock.locked() and now_ms - s.last_active_ms >= self._cfg.idle_timeout_ms
        ]
        for session_id in idle:
            await self.end_session(session_id, "HANGUP")
        return idle

    async def drain(self) -> None:
        """Wait for detached episode-recording tasks."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # Turn pipeline

    async def _turn(self, session: _Session, borrower_utterance: Optional[str]) -> TurnResult:
        ctx = session.context
        if session.closed or self._fsm.is_terminal(ctx.fsm_state):
            raise SessionTerminated(session.session_id, ctx.outcome or "COMPLETED")
        try:
            return await self._run(session, borrower_utterance)
        except (GenerationFailure, ValidatorUnavailable) as exc:
            self._fail(session, exc)
            raise SessionTerminated(session.session_id, "SYSTEM_ERROR", exc) from exc

    async def _run(self, session: _Session, borrower_utterance: Optional[str]) -> TurnResult:
        cfg = self._cfg
        ctx = session.context
        case = ctx.case
        started = self._clock.now_ms()
        before = ctx.snapshot()
        builder = TraceBuilder(
            session_id=session.session_id,
            turn_index=len(session.traces),
            t_ms=started,
            fsm_state_before=before.fsm_state,
        )

        builder.stage("AWAIT_INPUT")
        signal: Optional[Signal] = None
        sentiment = before.sentiment
        if borrower_utterance:
            signal = detect_signal(borrower_utterance)
            sentiment = classify_sentiment(borrower_utterance)
        view = perceive(before, signal, sentiment)
        builder.signal = signal

        builder.stage("SELECT_ACTION")
        legal = self._fsm.legal_actions(view.fsm_state)
        selection = self._selector.select(view, legal)
        builder.proposed_action = selection.action
        builder.selection_latency_ms = selection.latency_ms
        builder.explored = selection.explored
        builder.table_version = selection.table_version
        self._metrics.observe(ENGINE["selection_latency_ms"], selection.latency_ms)

        builder.stage("POLICY_CHECK")
        decision = session.guard.evaluate(view, case, selection.action)
        target: Optional[FSMState] = None
        if decision.forced_transition is not None:
            target = self._fsm.force(view.fsm_state, decision.forced_transition)
            action = self._fsm.exit_action(target)
            directive: Directive = "forced"
            self._metrics.inc(ENGINE["policy_forced_transitions_total"], 1)
        elif not decision.allowed:
            action = self._fsm.holding_action(view.fsm_state)
            directive = "forced"
        else:
            action = selection.action
            directive = "normal"
        if not decision.allowed:
            self._metrics.inc(ENGINE["policy_blocks_total"], 1)
            for reason in decision.blocked_reasons:
                self._metrics.inc_labeled(ENGINE["policy_block_reasons_total"], reason.split(":", 1)[0])
        if directive == "forced":
            self._log(
                "policy_override",
                session_id=session.session_id,
                proposed=selection.action,
                action=action,
                forced_transition=target,
                reasons=list(decision.blocked_reasons),
            )

        builder.stage("GENERATE")
        speak_state = target or view.fsm_state
        request = GenerationRequest(
            view=view,
            case=case,
            action=action,
            directive=directive,
            target_state=speak_state,
            required_templates=decision.required_templates,
            borrower_utterance=borrower_utterance or "",
            prohibited_phrases=session.guard.rules.prohibited_phrases,
        )
        out = await self._generate_screened(session, request, decision, target)

        builder.stage("VALIDATE")
        if not out.fallback_used:
            await self._validate(session, request, out)
        if out.fallback_used:
            out.text = fallback_utterance(speak_state)
            out.directive = "fallback"
            if target is None:
                # Score the line that was spoken, not the one that was proposed.
                out.action = (
                    fallback_action(view.fsm_state)
                    if out.decision.allowed
                    else self._fsm.holding_action(view.fsm_state)
                )
            self._metrics.inc(ENGINE["fallback_used_total"], 1)
            self._log(
                "fallback_used",
                session_id=session.session_id,
                state=speak_state,
                action=out.action,
                failures=[list(f) for f in out.failures],
                timed_out=out.timed_out,
            )
        action = out.action

        builder.stage("SCORE")
        if target is not None:
            next_state: FSMState = target
        else:
            next_state = self._fsm.transition(view.fsm_state, action, signal)
        nxt = advance(view, action, next_state, forced_outcome=out.decision.forced_outcome)
        if nxt.turn_count >= cfg.max_turns and next_state != TERMINAL and target is None:
            next_state = self._fsm.force(view.fsm_state, TERMINAL)
            nxt = advance(
                view,
                action,
                next_state,
                forced_outcome=nxt.outcome or "MAX_TURNS_EXCEEDED",
            )
            if nxt.outcome == "MAX_TURNS_EXCEEDED":
                self._metrics.inc(ENGINE["max_turns_exceeded_total"], 1)
        reward = session.rewards.compute(view, action, nxt, signal)

        builder.action = action
        builder.directive = out.directive
        builder.policy = out.decision
        builder.utterance = out.text
        builder.reward = reward
        builder.validation = ValidationOutcome(
            passed=not out.fallback_used,
            failures=tuple(out.failures),
            repair_attempts=out.repair_attempts,
            fallback_used=out.fallback_used,
            timed_out=out.timed_out,
        )

        builder.stage("COMMIT")
        ctx.commit(nxt)
        latency = self._clock.now_ms() - started
        trace = builder.build(fsm_state_after=next_state, latency_ms=latency)
        session.traces.append(trace)
        done = self._fsm.is_terminal(next_state)
        info = {
            "signal": signal,
            "directive": out.directive,
            "fallback_used": out.fallback_used,
            "forced_transition": target,
            "proposed_action": selection.action,
            "reward": reward.to_payload(),
        }
        session.episode.append(Transition(view, action, reward.total, nxt, done, info))
        session.last_active_ms = self._clock.now_ms()
        self._metrics.inc(ENGINE["turns_total"], 1)
        self._metrics.observe(ENGINE["turn_latency_ms"], latency)
        if done:
            self._close(session, nxt.outcome or "COMPLETED")
        return TurnResult(agent_utterance=out.text, trace=trace, new_state=next_state)

    async def _generate_screened(
        self,
        session: _Session,
        request: GenerationRequest,
        decision: PolicyDecision,
        target: Optional[FSMState],
    ) -> _Utterance:
        """GENERATE plus the post-generation prohibited-phrase screen."""
        out = _Utterance(text="", action=request.action, directive=request.directive, decision=decision)
        text = await self._call_generator(request)
        if text is None:
            out.timed_out = True
            out.fallback_used = True
            return out

        screened = session.guard.screen_utterance(decision, text)
        if screened is not decision:
            self._metrics.inc(ENGINE["policy_utterance_blocks_total"], 1)
            out.decision = screened
            out.directive = "forced"
            if target is None:
                out.action = self._fsm.holding_action(request.view.fsm_state)
            retry = dataclasses.replace(request, action=out.action, directive="forced")
            text = await self._call_generator(retry)
            if text is None:
                out.timed_out = True
                out.fallback_used = True
                return out
            hits = find_prohibited(text, session.guard.rules.prohibited_phrases)
            if hits:
                out.failures.extend(("prohibited_phrase", h) for h in hits)
                out.fallback_used = True
                return out
        out.text = text
        return out

    async def _validate(self, session: _Session, request: GenerationRequest, out: _Utterance) -> None:
        """VALIDATE with bounded repair; marks `out` for fallback when the budget runs out."""
        cfg = self._cfg
        while True:
            hits = find_prohibited(out.text, session.guard.rules.prohibited_phrases)
            if hits:
                report: Optional[ValidationReport] = ValidationReport(
                    False, tuple(("prohibited_phrase", h) for h in hits), True
                )
            else:
                report = await self._call_validator(out.text, request.view, out.action)
            if report is None:
                out.timed_out = True
                out.fallback_used = True
                return
            if report.passed:
                return
            out.failures.extend(report.failures)
            if not report.repairable or out.repair_attempts >= cfg.max_repair_attempts:
                out.fallback_used = True
                return

            out.repair_attempts += 1
            self._metrics.inc(ENGINE["repair_attempts_total"], 1)
            repair = dataclasses.replace(
                request,
                action=out.action,
                directive="repair",
                repair_notes=tuple(f"{v}: {d}" for v, d in report.failures),
                attempt=out.repair_attempts,
            )
            text = await self._call_generator(repair)
            if text is None:
                out.timed_out = True
                out.fallback_used = True
                return
            out.text = text

    async def _call_generator(self, request: GenerationRequest) -> Optional[str]:
        """One generation with retry/backoff; None on timeout, raises once retries run out."""
        cfg = self._cfg
        attempt = 0
        while True:
            try:
                return await self._clock.run_with_timeout(
                    self._generator.generate(request), cfg.generate_timeout_ms
                )
            except (TimeoutError, asyncio.TimeoutError):
                self._metrics.inc(ENGINE["external_timeouts_total"], 1)
                return None
            except GenerationFailure as e:
                if attempt >= cfg.external_retry_max:
                    raise
                await self._backoff("generate", attempt, e)
                attempt += 1

    async def _call_validator(
        self, text: str, view: ContextView, action: Action
    ) -> Optional[ValidationReport]:
        cfg = self._cfg
        attempt = 0
        while True:
            try:
                return await self._clock.run_with_timeout(
                    self._validator.check(text, view, action), cfg.validate_timeout_ms
                )
            except (TimeoutError, asyncio.TimeoutError):
                self._metrics.inc(ENGINE["external_timeouts_total"], 1)
                return None
            except ValidatorUnavailable as e:
                if attempt >= cfg.external_retry_max:
                    raise
                await self._backoff("validate", attempt, e)
                attempt += 1

    async def _backoff(self, stage: str, attempt: int, error: Exception) -> None:
        delay = self._cfg.retry_backoff_ms * (2**attempt)
        self._metrics.inc(ENGINE["external_retries_total"], 1)
        self._log("external_retry", stage=stage, attempt=attempt + 1, delay_ms=delay, error=str(error))
        await self._clock.sleep_ms(delay)

    # Episode sealing

    def _fail(self, session: _Session, exc: BaseException) -> None:
        self._metrics.inc(ENGINE["system_errors_total"], 1)
        self._log("system_error", session_id=session.session_id, error=str(exc))
        ctx = session.context
        terminal = session.rewards.terminal_value(
            "SYSTEM_ERROR", disclosure_complete=ctx.disclosure_complete
        )
        session.episode.terminate(terminal, "SYSTEM_ERROR")
        ctx.outcome = "SYSTEM_ERROR"
        self._close(session, "SYSTEM_ERROR")

    def _close(self, session: _Session, outcome: Outcome) -> None:
        session.closed = True
        if session.recorded:
            return
        session.recorded = True
        episode = session.episode.seal(outcome)
        self._metrics.inc_labeled(ENGINE["session_outcomes_total"], outcome)
        self._log(
            "episode_sealed",
            session_id=session.session_id,
            outcome=outcome,
            length=episode.length,
            total_return=round(episode.total_return, 6),
        )
        task = asyncio.get_running_loop().create_task(self._record(episode))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record(self, episode: Any) -> None:
        try:
            await self._recorder.record(episode)
        except Exception as e:
            self._metrics.inc(ENGINE["episode_record_failures_total"], 1)
            self._log("episode_record_failed", episode_id=episode.episode_id, error=str(e))
            return
        self._metrics.inc(ENGINE["episodes_recorded_total"], 1)
