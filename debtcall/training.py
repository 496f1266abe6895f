from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from .clock import Clock
from .config import EngineConfig
from .context import CaseFile
from .episode import Episode, InMemoryEpisodeRecorder
from .errors import SessionTerminated
from .generation import ResponseGenerator, RuleValidator, TemplateResponseGenerator, Validator
from .jurisdictions import rules_for
from .learners.selector import ActionSelector
from .learners.table import ActionValueStore, ActionValueTable
from .log import log_event
from .metrics import Metrics
from .simulator import BorrowerSimulator, Persona, get_persona, sample_persona
from .state_machine import TERMINAL
from .turn_processor import TurnProcessor


JURISDICTION_TIMEZONES: dict[str, str] = {
    "US-CA": "America/Los_Angeles",
    "US-NY": "America/New_York",
    "US-TX": "America/Chicago",
    "UAE": "Asia/Dubai",
}


def midday_clock(jurisdiction: str) -> Callable[[], datetime]:
    """Wall time pinned to local noon, well inside every preset call window."""
    tz = ZoneInfo(JURISDICTION_TIMEZONES[jurisdiction])
    fixed = datetime(2024, 1, 16, 12, 0, tzinfo=tz)
    return lambda: fixed


def simulated_case(rng: random.Random, index: int, jurisdiction: str) -> CaseFile:
    return CaseFile(
        case_id=f"sim-{index}",
        debtor_name="Jordan Lee",
        creditor_name="Acme Credit",
        amount_due=float(rng.randrange(300, 8000, 50)),
        days_past_due=rng.choice((45, 75, 100, 150)),
        jurisdiction=jurisdiction,
        timezone=JURISDICTION_TIMEZONES[jurisdiction],
    )


async def run_simulated_call(
    processor: TurnProcessor,
    simulator: BorrowerSimulator,
    session_id: str,
    case: CaseFile,
) -> None:
    """Play one call between the engine and a simulated borrower until either side ends it."""
    processor.open_session(session_id, case, persona=simulator.persona.key)
    try:
        result = await processor.generate_opening(session_id)
        while result.new_state != TERMINAL:
            reply = simulator.respond(result.agent_utterance, result.trace.fsm_state_before)
            if reply.hangup:
                break
            result = await processor.process_turn(session_id, reply.text)
    except SessionTerminated:
        pass
    await processor.end_session(session_id, "HANGUP")


@dataclass(frozen=True, slots=True)
class TrainingConfig:
    episodes: int = 200
    seed: int = 7
    # Publish the working table to the shared store every N episodes.
    publish_every: int = 25
    # Preset persona keys to sample from; empty means all presets.
    personas: tuple[str, ...] = ()
    session_prefix: str = "train"


@dataclass(frozen=True, slots=True)
class CurvePoint:
    episode: int
    persona: str
    outcome: str
    total_return: float
    length: int


@dataclass(frozen=True, slots=True)
class TrainingReport:
    curve: tuple[CurvePoint, ...]
    table: ActionValueTable
    episodes: tuple[Episode, ...]


class Trainer:
    """
    Offline training loop: simulated calls through the full TurnProcessor with a
    training-mode selector, one learner update per finished episode.
    """

    def __init__(
        self,
        store: ActionValueStore,
        *,
        cfg: Optional[EngineConfig] = None,
        training: Optional[TrainingConfig] = None,
        generator: Optional[ResponseGenerator] = None,
        validator: Optional[Validator] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.cfg = cfg or EngineConfig()
        self.training = training or TrainingConfig()
        self._rng = random.Random(self.training.seed)
        self._sim_rng = random.Random(self.training.seed + 1)
        self.selector = ActionSelector(
            store, mode="training", rng=random.Random(self.training.seed + 2), clock=clock
        )
        self.recorder = InMemoryEpisodeRecorder()
        jurisdiction = self.cfg.jurisdiction
        self.processor = TurnProcessor(
            selector=self.selector,
            generator=generator or TemplateResponseGenerator(),
            validator=validator or RuleValidator(rules_for(jurisdiction)),
            recorder=self.recorder,
            cfg=self.cfg,
            clock=clock,
            metrics=metrics,
            now=midday_clock(jurisdiction),
        )

    def _persona(self) -> Persona:
        if self.training.personas:
            return get_persona(self._rng.choice(self.training.personas))
        return sample_persona(self._rng)

    async def run_episode(self, index: int) -> Episode:
        persona = self._persona()
        session_id = f"{self.training.session_prefix}-{index}"
        case = simulated_case(self._rng, index, self.cfg.jurisdiction)
        simulator = BorrowerSimulator(persona, self._sim_rng)
        await run_simulated_call(self.processor, simulator, session_id, case)
        await self.processor.drain()
        for episode in reversed(self.recorder.episodes):
            if episode.session_id == session_id:
                return episode
        raise RuntimeError(f"episode for {session_id} was not recorded")

    async def train(self) -> TrainingReport:
        cfg = self.training
        curve: list[CurvePoint] = []
        episodes: list[Episode] = []
        table = self.selector.working_table()
        for i in range(cfg.episodes):
            episode = await self.run_episode(i)
            self.selector.update(episode.transitions)
            episodes.append(episode)
            curve.append(
                CurvePoint(
                    episode=i + 1,
                    persona=episode.persona or "",
                    outcome=episode.outcome,
                    total_return=episode.total_return,
                    length=episode.length,
                )
            )
            if (i + 1) % max(1, cfg.publish_every) == 0 or i + 1 == cfg.episodes:
                table = self.selector.publish()
                log_event(
                    self.cfg.structured_logging,
                    component="trainer",
                    event="published",
                    episode=i + 1,
                    version=table.version,
                    episodes_trained=table.episodes_trained,
                )
        return TrainingReport(curve=tuple(curve), table=table, episodes=tuple(episodes))
