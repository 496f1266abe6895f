from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from .context import ContextView
from .domain import Action, Outcome


@dataclass(frozen=True, slots=True)
class Transition:
    state: ContextView
    action: Action
    reward: float
    next_state: ContextView
    done: bool
    # Per-step diagnostics: signal, directive, fallback, forced target, reward parts.
    info: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Episode:
    episode_id: str
    session_id: str
    outcome: Outcome
    transitions: tuple[Transition, ...]
    # Persona name when produced by the simulator; None for live calls.
    persona: Optional[str] = None
    case_id: str = ""

    @property
    def total_return(self) -> float:
        return sum(t.reward for t in self.transitions)

    @property
    def length(self) -> int:
        return len(self.transitions)


@dataclass(frozen=True, slots=True)
class EpisodeFilter:
    outcome: Optional[Outcome] = None
    persona: Optional[str] = None
    min_return: Optional[float] = None
    limit: Optional[int] = None


class EpisodeRecorder(Protocol):
    async def record(self, episode: Episode) -> None: ...

    async def query_episodes(self, flt: EpisodeFilter) -> list[Episode]: ...


class InMemoryEpisodeRecorder:
    def __init__(self) -> None:
        self._episodes: list[Episode] = []

    @property
    def episodes(self) -> list[Episode]:
        return list(self._episodes)

    async def record(self, episode: Episode) -> None:
        self._episodes.append(episode)

    async def query_episodes(self, flt: EpisodeFilter) -> list[Episode]:
        out: list[Episode] = []
        for ep in self._episodes:
            if flt.outcome is not None and ep.outcome != flt.outcome:
                continue
            if flt.persona is not None and ep.persona != flt.persona:
                continue
            if flt.min_return is not None and ep.total_return < flt.min_return:
                continue
            out.append(ep)
        if flt.limit is not None:
            out = out[-flt.limit :]
        return out


@dataclass
class EpisodeBuilder:
    """
    Accumulates one session's transitions until the episode is sealed.

    Each appended transition's `state` is the view the action was chosen from,
    which already includes the borrower's reply. The previous transition's
    `next_state` is rewritten to that view so value bootstrapping sees what the
    selector actually saw at the next decision.
    """

    episode_id: str
    session_id: str
    case_id: str = ""
    persona: Optional[str] = None
    transitions: list[Transition] = field(default_factory=list)
    sealed: Optional[Episode] = None

    def append(self, transition: Transition) -> None:
        if self.sealed is not None:
            raise RuntimeError(f"episode {self.episode_id} already sealed")
        if self.transitions and not self.transitions[-1].done:
            prev = self.transitions[-1]
            self.transitions[-1] = dataclasses.replace(prev, next_state=transition.state)
        self.transitions.append(transition)

    def terminate(self, terminal_reward: float, outcome: Outcome) -> None:
        """Mark the last transition done, folding in a terminal reward it never saw."""
        if not self.transitions or self.transitions[-1].done:
            return
        last = self.transitions[-1]
        self.transitions[-1] = dataclasses.replace(
            last,
            reward=last.reward + terminal_reward,
            next_state=last.next_state.replace(outcome=outcome),
            done=True,
            info={**last.info, "terminal_reward": terminal_reward},
        )

    def seal(self, outcome: Outcome) -> Episode:
        if self.sealed is None:
            self.sealed = Episode(
                episode_id=self.episode_id,
                session_id=self.session_id,
                outcome=outcome,
                transitions=tuple(self.transitions),
                persona=self.persona,
                case_id=self.case_id,
            )
        return self.sealed
