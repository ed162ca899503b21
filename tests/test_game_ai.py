from __future__ import annotations

import asyncio
import random
from dataclasses import replace
from pathlib import Path

import pytest

from gamehub.ai.engine import GameAI, SessionSummary, TrainingSample
from gamehub.ai.model import PersistedModel
from gamehub.ai.store import FileModelStore
from gamehub.config import AIConfig
from gamehub.errors import PersistenceError


class FlakyStore:
    """In-memory store whose saves can be made to fail per game id."""

    def __init__(self) -> None:
        self.saved: dict[str, PersistedModel] = {}
        self.failing: set[str] = set()
        self.save_calls = 0

    def load(self, game_id: str) -> PersistedModel | None:
        return self.saved.get(game_id)

    def save(self, model: PersistedModel) -> None:
        self.save_calls += 1
        if model.game_id in self.failing:
            raise PersistenceError(f"disk full for {model.game_id}")
        self.saved[model.game_id] = model

    def list_ids(self) -> list[str]:
        return sorted(self.saved)


def _ai(store: object | None = None, **overrides: object) -> GameAI:
    cfg = replace(AIConfig(), save_interval_s=0, **overrides)
    return GameAI(cfg, store=store or FlakyStore(), rng=random.Random(0))  # type: ignore[arg-type]


def _sample(action: str = "up", *, success: bool = True, delta: int = 0, score: int = 0, sig: str = "s") -> TrainingSample:
    return TrainingSample(signature=sig, action=action, success=success, score_delta=delta, score=score)


def test_reward_blends_and_clamps() -> None:
    ai = _ai()
    assert ai.reward(success=True, score_delta=0, score=0) == pytest.approx(1.0)
    assert ai.reward(success=False, score_delta=0, score=0) == pytest.approx(-0.5)
    assert ai.reward(success=False, score_delta=2, score=100) == pytest.approx(-0.5 + 0.2 + 0.1)
    assert ai.reward(success=True, score_delta=50, score=10_000) == 1.0
    assert ai.reward(success=False, score_delta=-50, score=0) == -1.0


@pytest.mark.asyncio
async def test_train_applies_q_update() -> None:
    ai = _ai(learning_rate=0.5)

    first = await ai.train("g", _sample(success=True))
    second = await ai.train("g", _sample(success=False))

    assert first == pytest.approx(0.5)
    assert second == pytest.approx(0.5 + 0.5 * (-0.5 - 0.5))
    model = await ai.load_model("g")
    assert model.visit_counts == {"s": {"up": 2}}
    assert model.total_actions == 2
    assert len(model.learning_history) == 2
    assert model.dirty is True


@pytest.mark.asyncio
async def test_learning_disabled_is_a_noop() -> None:
    ai = GameAI(AIConfig(), store=FlakyStore(), learning_enabled=False)  # type: ignore[arg-type]
    assert await ai.train("g", _sample()) is None
    assert ai.cached_model("g") is None


@pytest.mark.asyncio
async def test_suggest_explores_before_min_actions() -> None:
    ai = _ai(min_actions_for_prediction=10)
    for _ in range(9):
        await ai.train("g", _sample("right", success=True))

    for _ in range(20):
        s = await ai.suggest_action("g", "s")
        assert s.strategy == "exploration"
        assert s.confidence < 0.2


@pytest.mark.asyncio
async def test_suggest_exploits_best_known_action() -> None:
    ai = _ai(min_actions_for_prediction=2, initial_exploration_rate=0.0)
    for _ in range(30):
        await ai.train("g", _sample("left", success=True))
    await ai.train("g", _sample("right", success=False))

    s = await ai.suggest_action("g", "s")

    assert s.strategy == "exploitation"
    assert s.action == "left"
    assert s.confidence == pytest.approx(0.3)
    assert s.data["visits"] == 30


@pytest.mark.asyncio
async def test_exploitation_confidence_is_capped() -> None:
    ai = _ai(min_actions_for_prediction=1, initial_exploration_rate=0.0)
    for _ in range(150):
        await ai.train("g", _sample("left"))
    s = await ai.suggest_action("g", "s")
    assert s.confidence == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_unknown_state_falls_back_to_candidates() -> None:
    ai = _ai(min_actions_for_prediction=1, initial_exploration_rate=0.0)
    for _ in range(5):
        await ai.train("g", _sample("left", sig="known"))

    s = await ai.suggest_action("g", "never-seen", ["collect", "attack"])

    assert s.strategy == "exploration"
    assert s.action in {"collect", "attack"}


@pytest.mark.asyncio
async def test_exploration_rate_decays_per_session() -> None:
    ai = _ai(initial_exploration_rate=0.1, decay_rate=0.5, min_exploration_rate=0.01)

    for n in range(1, 6):
        task = await ai.on_session_end("g", SessionSummary("s", final_score=10 * n, actions=1, duration_s=1, reason="manual"))
        assert task is not None
        await task
        model = await ai.load_model("g")
        assert model.exploration_rate == pytest.approx(max(0.01, 0.1 * 0.5**n))

    model = await ai.load_model("g")
    assert model.total_games == 5
    assert model.average_score == pytest.approx(30)
    assert model.best_score == 50


@pytest.mark.asyncio
async def test_concurrent_training_serializes_per_game() -> None:
    ai = _ai()

    await asyncio.gather(*(ai.train("g", _sample(f"a{i % 3}")) for i in range(300)))

    model = await ai.load_model("g")
    assert model.total_actions == 300
    assert sum(model.visit_counts["s"].values()) == 300


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_model() -> None:
    ai = _ai()
    models = await asyncio.gather(*(ai.load_model("g") for _ in range(10)))
    assert all(m is models[0] for m in models)


@pytest.mark.asyncio
async def test_failed_save_keeps_model_dirty_and_retries() -> None:
    store = FlakyStore()
    store.failing.add("g")
    ai = _ai(store)
    await ai.train("g", _sample())
    before = (await ai.load_model("g")).action_values

    assert await ai.save_model("g") is False
    model = await ai.load_model("g")
    assert model.dirty is True
    assert model.action_values == before

    store.failing.clear()
    assert await ai.save_model("g") is True
    assert model.dirty is False
    assert store.saved["g"].total_actions == 1


@pytest.mark.asyncio
async def test_save_all_tolerates_partial_failure() -> None:
    store = FlakyStore()
    store.failing.add("bad")
    ai = _ai(store)
    await ai.train("good", _sample())
    await ai.train("bad", _sample())

    results = await ai.save_all()

    assert results == {"good": True, "bad": False}
    assert "good" in store.saved


@pytest.mark.asyncio
async def test_model_survives_restart(tmp_path: Path) -> None:
    store = FileModelStore(tmp_path)
    ai = _ai(store)
    await ai.train("g", _sample("up", sig="level=1"))
    moves = (("collect", 5),) * 3
    await ai.on_session_end("g", SessionSummary("s", final_score=15, actions=3, duration_s=1, reason="manual", moves=moves))
    await ai.stop()

    fresh = _ai(FileModelStore(tmp_path))
    await fresh.start()
    model = fresh.cached_model("g")

    assert fresh.is_ready is True
    assert model is not None
    assert model.visit_counts == {"level=1": {"up": 1}}
    assert model.total_games == 1
    assert model.exploration_rate == pytest.approx(0.1 * 0.995)
    assert [s.sequence for s in model.strategies] == [["collect", "collect", "collect"]]


@pytest.mark.asyncio
async def test_stats_shape() -> None:
    ai = _ai()
    await ai.train("g", _sample())

    overall = await ai.stats()
    single = await ai.stats("g")

    assert overall["total_models"] == 1
    assert overall["models"]["g"]["total_actions"] == 1
    assert single["game_id"] == "g"
    assert single["patterns"] == []
    assert single["total_strategies"] == 0


@pytest.mark.asyncio
async def test_repeated_wins_become_a_pattern() -> None:
    ai = _ai()
    steps = [("collect", True), ("collect", True), ("up", False), ("collect", True)]
    for action, success in steps:
        await ai.train("g", _sample(action, success=success))
    model = await ai.load_model("g")
    assert model.patterns == {}

    await ai.train("g", _sample("up", success=True))

    pattern = model.patterns["collect"]
    assert pattern.count == 3
    assert pattern.confidence == pytest.approx(0.75)
    assert (await ai.stats("g"))["patterns"][0]["action"] == "collect"


@pytest.mark.asyncio
async def test_failures_never_form_a_pattern() -> None:
    ai = _ai()
    for _ in range(10):
        await ai.train("g", _sample("attack", success=False))
    model = await ai.load_model("g")
    assert model.patterns == {}


@pytest.mark.asyncio
async def test_scoring_sequences_become_strategies() -> None:
    ai = _ai(strategy_limit=2)
    moves = (("up", 0), ("collect", 6), ("attack", 3), ("up", 0), ("up", 0), ("wait", 0))
    summary = SessionSummary("s", final_score=9, actions=len(moves), duration_s=1, reason="manual", moves=moves)

    await ai.on_session_end("g", summary)
    model = await ai.load_model("g")
    assert [s.sequence for s in model.strategies] == [["collect", "attack", "up"], ["up", "collect", "attack"]]
    assert model.strategies[0].avg_score_delta == pytest.approx(3.0)

    await ai.on_session_end("g", summary)
    assert [s.seen for s in model.strategies] == [2, 2]
    assert len(model.strategies) == 2

    short = SessionSummary("s2", final_score=5, actions=2, duration_s=1, reason="manual", moves=(("collect", 5),) * 2)
    await ai.on_session_end("g", short)
    assert len(model.strategies) == 2
    await ai.flush_pending()
