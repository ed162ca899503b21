from __future__ import annotations

import asyncio
import random
from dataclasses import replace
from pathlib import Path
from typing import Any, Sequence, TypeVar

import pytest

from gamehub.ai.engine import GameAI
from gamehub.ai.store import FileModelStore
from gamehub.browser.engine import BrowserGameEngine
from gamehub.config import AIConfig
from gamehub.errors import EngineUnavailableError
from gamehub.games.base import ActionOutcome
from gamehub.games.browser_game import BrowserGame
from gamehub.games.simple_test import SimpleTestGame
from gamehub.session import GameSession, SessionOptions
from tests.conftest import WEB_DEMO, FakeClock, FakeLauncher

T = TypeVar("T")


class FirstChoice(random.Random):
    def choice(self, seq: Sequence[T]) -> T:
        return seq[0]


def _quiet_game(clock: FakeClock) -> SimpleTestGame:
    game = SimpleTestGame(clock=clock, seed=3, spawn_interval_s=None, initial_items=0, initial_enemies=0)
    game.item_spawn_rate = 0.0
    game.enemy_spawn_rate = 0.0
    return game


def _ai(tmp_path: Path) -> GameAI:
    return GameAI(replace(AIConfig(), save_interval_s=0), store=FileModelStore(tmp_path / "ai"), rng=FirstChoice())


async def _native_session(
    tmp_path: Path,
    clock: FakeClock,
    *,
    ai: GameAI | None = None,
    options: SessionOptions | None = None,
    history_limit: int = 1000,
) -> GameSession:
    session = GameSession(
        session_id="game_test",
        user_id="alice",
        game_id="simple_test",
        game=_quiet_game(clock),
        ai=ai if ai is not None else _ai(tmp_path),
        options=options,
        history_limit=history_limit,
        clock=clock,
    )
    await session.initialize()
    return session


@pytest.mark.asyncio
async def test_initialize_starts_game_and_loads_model(tmp_path: Path, clock: FakeClock) -> None:
    ai = _ai(tmp_path)
    session = await _native_session(tmp_path, clock, ai=ai)

    assert session.is_active
    assert session.game.is_running
    assert ai.cached_model("simple_test") is not None
    assert session.info().game_state["phase"] == "running"


@pytest.mark.asyncio
async def test_actions_recorded_in_submission_order(tmp_path: Path, clock: FakeClock) -> None:
    session = await _native_session(tmp_path, clock)

    actions = ["up", "left", "status", "down", "right", "jump"]
    results = await asyncio.gather(*(session.process_action(a) for a in actions))

    assert [r.action for r in session.history] == actions
    assert results[-1].code == "invalid_action"
    assert session.move_count == len(actions)
    stats = session.statistics.as_dict()
    assert stats["actions_performed"] == 6
    assert stats["correct_moves"] == 5
    assert stats["incorrect_moves"] == 1


@pytest.mark.asyncio
async def test_history_is_capped(tmp_path: Path, clock: FakeClock) -> None:
    session = await _native_session(tmp_path, clock, history_limit=3)

    for action in ("up", "up", "left", "left", "status"):
        await session.process_action(action)

    assert len(session.history) == 3
    assert [r.action for r in session.history] == ["left", "left", "status"]
    assert session.move_count == 5


@pytest.mark.asyncio
async def test_training_skips_rejected_inputs(tmp_path: Path, clock: FakeClock) -> None:
    ai = _ai(tmp_path)
    session = await _native_session(tmp_path, clock, ai=ai)

    await session.process_action("up")
    await session.process_action("jump")
    await session.process_action("collect")
    await session.wait_for_training()

    model = ai.cached_model("simple_test")
    assert model is not None
    assert model.total_actions == 2
    assert model.all_actions() == ["collect", "up"]


@pytest.mark.asyncio
async def test_paused_session_rejects_actions(tmp_path: Path, clock: FakeClock) -> None:
    session = await _native_session(tmp_path, clock)

    assert await session.pause() is True
    assert await session.pause() is False
    paused = await session.process_action("up")
    assert (paused.success, paused.code) == (False, "session_paused")

    assert await session.resume() is True
    assert (await session.process_action("up")).success


@pytest.mark.asyncio
async def test_end_is_idempotent_and_blocks_actions(tmp_path: Path, clock: FakeClock) -> None:
    session = await _native_session(tmp_path, clock)
    await session.process_action("up")
    clock.advance(12)

    assert await session.end("manual") is True
    assert await session.end("again") is False

    assert session.end_reason == "manual"
    assert session.summary is not None
    assert session.summary.duration_s == 12
    assert session.summary.actions == 1
    assert session.summary.moves == (("up", 0),)
    rejected = await session.process_action("up")
    assert rejected.code == "session_ended"
    assert session.move_count == 1


@pytest.mark.asyncio
async def test_end_during_running_action_keeps_summary_final(tmp_path: Path, clock: FakeClock) -> None:
    ai = _ai(tmp_path)
    session = await _native_session(tmp_path, clock, ai=ai)
    released = asyncio.Event()

    async def held_wait(data: dict[str, Any]) -> ActionOutcome:
        await released.wait()
        return ActionOutcome(success=True, message="waited", score_delta=7)

    session.game._handle_wait = held_wait  # type: ignore[method-assign]
    pending = asyncio.create_task(session.process_action("wait", {"duration": 50}))
    await asyncio.sleep(0)

    assert await session.end("manual") is True
    released.set()
    result = await pending
    await session.release_resources()

    assert result.success is False
    assert result.code == "session_ended"
    assert session.move_count == 0
    assert list(session.history) == []
    assert session.game.state.actions == 0
    assert session.game.state.score == 0
    assert session.summary is not None
    assert session.summary.actions == 0
    assert session.summary.final_score == 0
    model = ai.cached_model("simple_test")
    assert model is not None
    assert model.total_actions == 0
    assert model.total_games == 1


@pytest.mark.asyncio
async def test_release_folds_summary_and_persists(tmp_path: Path, clock: FakeClock) -> None:
    ai = _ai(tmp_path)
    session = await _native_session(tmp_path, clock, ai=ai)
    await session.process_action("up")

    await session.end("manual")
    await session.release_resources()
    await session.release_resources()

    model = ai.cached_model("simple_test")
    assert model is not None
    assert model.total_games == 1
    assert model.exploration_rate < AIConfig().initial_exploration_rate
    persisted = FileModelStore(tmp_path / "ai").load("simple_test")
    assert persisted is not None
    assert persisted.total_games == 1


@pytest.mark.asyncio
async def test_ai_suggestion_and_execution(tmp_path: Path, clock: FakeClock) -> None:
    ai = _ai(tmp_path)
    session = await _native_session(tmp_path, clock, ai=ai)

    suggestion = await session.get_ai_suggestion()
    assert suggestion is not None
    assert suggestion.strategy == "exploration"
    assert suggestion.action == "attack"

    outcome = await session.execute_ai_action()
    assert outcome is not None
    executed, result = outcome
    assert executed.action == "attack"
    assert result.success is False
    await session.wait_for_training()
    model = ai.cached_model("simple_test")
    assert model is not None
    assert model.total_actions == 1


@pytest.mark.asyncio
async def test_ai_disabled_session(tmp_path: Path, clock: FakeClock) -> None:
    ai = _ai(tmp_path)
    session = await _native_session(tmp_path, clock, ai=ai, options=SessionOptions(ai_enabled=False))

    await session.process_action("up")

    assert session.ai_enabled is False
    assert await session.get_ai_suggestion() is None
    assert await session.execute_ai_action() is None
    assert ai.cached_model("simple_test") is None


@pytest.mark.asyncio
async def test_browser_session_closes_page_exactly_once(tmp_path: Path, clock: FakeClock, launcher: FakeLauncher) -> None:
    engine = BrowserGameEngine(launcher=launcher)
    await engine.initialize()
    session = GameSession(
        session_id="game_web",
        user_id="bob",
        game_id=WEB_DEMO.id,
        game=BrowserGame(WEB_DEMO, clock=clock),
        browser=engine,
        options=SessionOptions(url=WEB_DEMO.url),
        clock=clock,
    )
    await session.initialize()
    page = engine.get_page("game_web")

    await session.end("manual")
    await session.release_resources()
    await session.release_resources()

    assert page.close_count == 1
    assert not engine.has_page("game_web")


class _BrokenBrowserGame(BrowserGame):
    async def on_initialize(self) -> None:
        raise RuntimeError("game script missing")


@pytest.mark.asyncio
async def test_failed_initialize_releases_the_page(clock: FakeClock, launcher: FakeLauncher) -> None:
    engine = BrowserGameEngine(launcher=launcher)
    await engine.initialize()
    session = GameSession(
        session_id="game_broken",
        user_id="carol",
        game_id=WEB_DEMO.id,
        game=_BrokenBrowserGame(WEB_DEMO, clock=clock),
        browser=engine,
        options=SessionOptions(url=WEB_DEMO.url),
        clock=clock,
    )

    with pytest.raises(RuntimeError):
        await session.initialize()

    assert session.is_ended
    assert not session.is_active
    assert launcher.browser.pages[0].close_count == 1
    assert not engine.has_page("game_broken")


@pytest.mark.asyncio
async def test_browser_game_without_engine(clock: FakeClock) -> None:
    session = GameSession(
        session_id="game_none",
        user_id="dave",
        game_id=WEB_DEMO.id,
        game=BrowserGame(WEB_DEMO, clock=clock),
        clock=clock,
    )
    with pytest.raises(EngineUnavailableError):
        await session.initialize()
    assert session.is_ended


@pytest.mark.asyncio
async def test_export_includes_history(tmp_path: Path, clock: FakeClock) -> None:
    session = await _native_session(tmp_path, clock)
    await session.process_action("status")

    exported: dict[str, Any] = session.export()

    assert exported["user_id"] == "alice"
    assert [h["action"] for h in exported["history"]] == ["status"]
    assert exported["game"]["id"] == "simple_test"
