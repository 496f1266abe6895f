from __future__ import annotations

import asyncio

import pytest

from debtcall.context import ContextView, advance
from debtcall.episode import Episode, EpisodeBuilder, EpisodeFilter, InMemoryEpisodeRecorder, Transition


def _t(state: str, action: str, nxt: str, reward: float, done: bool = False) -> Transition:
    view = ContextView(fsm_state=state)  # type: ignore[arg-type]
    return Transition(view, action, reward, advance(view, action, nxt), done)  # type: ignore[arg-type]


def test_append_rewrites_previous_next_state() -> None:
    b = EpisodeBuilder(episode_id="ep-1", session_id="s1")
    b.append(_t("OPENING", "PROCEED", "DISCLOSURE", -0.05))
    second = _t("DISCLOSURE", "IDENTIFY_SELF", "IDENTITY_VERIFICATION", 0.05)
    b.append(second)
    assert b.transitions[0].next_state is second.state


def test_terminate_folds_terminal_reward_once() -> None:
    b = EpisodeBuilder(episode_id="ep-1", session_id="s1")
    b.append(_t("OPENING", "PROCEED", "DISCLOSURE", -0.05))
    b.terminate(-0.5, "HANGUP")
    b.terminate(-0.5, "HANGUP")
    last = b.transitions[-1]
    assert last.done is True
    assert last.reward == pytest.approx(-0.55)
    assert last.next_state.outcome == "HANGUP"


def test_transition_info_defaults_empty_and_terminate_records_terminal_reward() -> None:
    bare = _t("OPENING", "PROCEED", "DISCLOSURE", -0.05)
    assert dict(bare.info) == {}

    view = ContextView(fsm_state="OPENING")
    info = {"signal": None, "directive": "normal", "fallback_used": False, "forced_transition": None}
    b = EpisodeBuilder(episode_id="ep-1", session_id="s1")
    b.append(Transition(view, "PROCEED", -0.05, advance(view, "PROCEED", "DISCLOSURE"), False, info))
    b.terminate(-0.5, "HANGUP")
    last = b.transitions[-1]
    assert last.info["directive"] == "normal"
    assert last.info["terminal_reward"] == pytest.approx(-0.5)
    assert "terminal_reward" not in info


def test_seal_is_idempotent_and_final() -> None:
    b = EpisodeBuilder(episode_id="ep-1", session_id="s1", case_id="c1", persona="impatient_aware")
    b.append(_t("OPENING", "PROCEED", "DISCLOSURE", -0.05))
    ep = b.seal("HANGUP")
    assert b.seal("COMPLETED") is ep
    assert ep.outcome == "HANGUP"
    assert ep.length == 1
    assert ep.persona == "impatient_aware"
    with pytest.raises(RuntimeError):
        b.append(_t("DISCLOSURE", "IDENTIFY_SELF", "IDENTITY_VERIFICATION", 0.0))


def test_terminate_without_transitions_is_a_noop() -> None:
    b = EpisodeBuilder(episode_id="ep-1", session_id="s1")
    b.terminate(-0.5, "HANGUP")
    assert b.seal("HANGUP").length == 0


def test_in_memory_recorder_queries() -> None:
    async def _run() -> None:
        rec = InMemoryEpisodeRecorder()
        win = Episode("e1", "s1", "PAYMENT_ARRANGED", (_t("WRAPUP", "SUMMARIZE", "END_CALL", 0.95, True),), "cooperative_stable")
        loss = Episode("e2", "s2", "HANGUP", (_t("OPENING", "PROCEED", "DISCLOSURE", -0.55, True),), "impatient_aware")
        live = Episode("e3", "s3", "HANGUP", ())
        for ep in (win, loss, live):
            await rec.record(ep)

        assert await rec.query_episodes(EpisodeFilter(outcome="HANGUP")) == [loss, live]
        assert await rec.query_episodes(EpisodeFilter(persona="cooperative_stable")) == [win]
        assert await rec.query_episodes(EpisodeFilter(min_return=0.0)) == [win, live]
        assert await rec.query_episodes(EpisodeFilter(limit=1)) == [live]
        assert rec.episodes == [win, loss, live]

    asyncio.run(_run())
