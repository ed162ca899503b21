from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from gamehub.ai.model import LearnedModel, LearningEvent, Strategy, SuccessPattern
from gamehub.ai.store import ModelStore
from gamehub.config import AIConfig
from gamehub.core.state import utcnow
from gamehub.lock import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TrainingSample:
    signature: str
    action: str
    success: bool
    score_delta: int
    score: int


@dataclass(frozen=True, slots=True)
class Suggestion:
    action: str
    confidence: float
    strategy: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"action": self.action, "confidence": self.confidence, "strategy": self.strategy, "data": self.data}


@dataclass(frozen=True, slots=True)
class SessionSummary:
    session_id: str
    final_score: int
    actions: int
    duration_s: float
    reason: str
    # (action, score_delta) in submission order.
    moves: tuple[tuple[str, int], ...] = ()


class GameAI:
    """Owns one LearnedModel per game id.

    Model mutations happen under a per-game asyncio.Lock and never await inside it.
    Persistence runs in a worker thread on a snapshot taken under the lock, so a slow or
    failing store never blocks training and never corrupts the in-memory model.
    """

    def __init__(
        self,
        config: AIConfig | None = None,
        *,
        store: ModelStore,
        rng: random.Random | None = None,
        learning_enabled: bool = True,
    ) -> None:
        self.config = config or AIConfig()
        self.store = store
        self.rng = rng or random.Random()
        self.learning_enabled = learning_enabled
        self.is_ready = False
        self._models: dict[str, LearnedModel] = {}
        self._write_locks = KeyedLocks()
        self._load_locks = KeyedLocks()
        self._save_locks = KeyedLocks()
        self._pending: set[asyncio.Task[bool]] = set()
        self._autosave_task: asyncio.Task[None] | None = None

    # ---- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Preload persisted models and start the autosave loop."""

        try:
            ids = await asyncio.to_thread(self.store.list_ids)
        except Exception as e:
            logger.warning("could not list persisted models: %s", e)
            ids = []
        for game_id in ids:
            await self.load_model(game_id)
        logger.info("game AI ready (%d model(s) loaded)", len(ids))

        if self.config.save_interval_s > 0 and self._autosave_task is None:
            self._autosave_task = asyncio.create_task(self._autosave_loop(), name="gamehub:ai-autosave")
        self.is_ready = True

    async def stop(self) -> dict[str, bool]:
        task, self._autosave_task = self._autosave_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.flush_pending()
        results = await self.save_all()
        self.is_ready = False
        logger.info("game AI stopped")
        return results

    # ---- models ----------------------------------------------------------

    def cached_model(self, game_id: str) -> LearnedModel | None:
        return self._models.get(game_id)

    async def load_model(self, game_id: str) -> LearnedModel:
        model = self._models.get(game_id)
        if model is not None:
            return model

        async with self._load_locks.hold(game_id):
            model = self._models.get(game_id)
            if model is not None:
                return model

            try:
                persisted = await asyncio.to_thread(self.store.load, game_id)
            except Exception as e:
                logger.warning("could not load model %s, starting empty: %s", game_id, e)
                persisted = None

            if persisted is None:
                model = LearnedModel(
                    game_id=game_id,
                    exploration_rate=self.config.initial_exploration_rate,
                    history_limit=self.config.learning_history_limit,
                )
                logger.info("created new model for %s", game_id)
            else:
                model = LearnedModel.from_persisted(persisted, history_limit=self.config.learning_history_limit)
                logger.info(
                    "loaded model for %s: %d games, %d actions",
                    game_id,
                    model.total_games,
                    model.total_actions,
                )
            self._models[game_id] = model
            return model

    # ---- learning --------------------------------------------------------

    def reward(self, *, success: bool, score_delta: int, score: int) -> float:
        base = self.config.success_reward if success else self.config.failure_penalty
        value = base + score_delta * self.config.score_delta_weight + score * self.config.score_weight
        return max(-1.0, min(1.0, value))

    async def train(self, game_id: str, sample: TrainingSample) -> float | None:
        """Fold one observed transition into the model. Returns the updated action value."""

        if not self.learning_enabled:
            return None

        model = await self.load_model(game_id)
        target = self.reward(success=sample.success, score_delta=sample.score_delta, score=sample.score)

        async with self._write_locks.hold(game_id):
            counts = model.visit_counts.setdefault(sample.signature, {})
            counts[sample.action] = counts.get(sample.action, 0) + 1

            values = model.action_values.setdefault(sample.signature, {})
            current = values.get(sample.action, 0.0)
            updated = current + self.config.learning_rate * (target - current)
            values[sample.action] = updated

            model.total_actions += 1
            model.updated_at = utcnow()
            model.learning_history.append(
                LearningEvent(
                    ts=model.updated_at,
                    signature=sample.signature,
                    action=sample.action,
                    success=sample.success,
                    score=sample.score,
                    reward=target,
                    value=updated,
                )
            )
            self._detect_pattern(model)
            model.dirty = True
        return updated

    async def suggest_action(
        self,
        game_id: str,
        signature: str,
        candidate_actions: list[str] | None = None,
    ) -> Suggestion:
        model = await self.load_model(game_id)
        candidates = sorted(candidate_actions) if candidate_actions else None

        async with self._write_locks.hold(game_id):
            if model.total_actions < self.config.min_actions_for_prediction:
                return self._explore(model, signature, candidates)

            if self.rng.random() < model.exploration_rate:
                return self._explore(model, signature, candidates)

            best = model.best_action(signature, candidates)
            if best is None:
                return self._explore(model, signature, candidates)

            action, value, visits = best
            confidence = min(self.config.max_confidence, visits / self.config.confidence_visits)
            return Suggestion(
                action=action,
                confidence=confidence,
                strategy="exploitation",
                data={"value": value, "visits": visits},
            )

    def _explore(self, model: LearnedModel, signature: str, candidates: list[str] | None) -> Suggestion:
        known = model.known_actions(signature)
        if candidates is not None:
            known = [a for a in known if a in candidates]
        pool = known or candidates or list(self.config.fallback_actions)
        return Suggestion(
            action=self.rng.choice(pool),
            confidence=self.config.exploration_confidence,
            strategy="exploration",
        )

    async def on_session_end(self, game_id: str, summary: SessionSummary) -> asyncio.Task[bool] | None:
        """Fold a finished session into the aggregates, decay exploration, schedule a flush."""

        model = await self.load_model(game_id)
        async with self._write_locks.hold(game_id):
            model.total_games += 1
            n = model.total_games
            model.average_score = (model.average_score * (n - 1) + summary.final_score) / n
            model.best_score = max(model.best_score, summary.final_score)
            model.exploration_rate = max(
                self.config.min_exploration_rate,
                model.exploration_rate * self.config.decay_rate,
            )
            self._fold_strategies(model, summary.moves)
            model.updated_at = utcnow()
            model.dirty = True

        logger.info(
            "session %s folded into %s model (games=%d, exploration=%.4f)",
            summary.session_id,
            game_id,
            model.total_games,
            model.exploration_rate,
        )
        return self.schedule_flush(game_id)

    # Both helpers run under the game's write lock.

    def _detect_pattern(self, model: LearnedModel) -> None:
        window = list(model.learning_history)[-self.config.pattern_window :]
        if len(window) < self.config.pattern_min_events:
            return
        wins = [e.action for e in window if e.success]
        if not wins:
            return
        action, count = Counter(wins).most_common(1)[0]
        if count < self.config.pattern_min_count:
            return
        model.patterns[action] = SuccessPattern(
            action=action,
            count=count,
            confidence=count / len(wins),
            detected_at=model.updated_at,
        )

    def _fold_strategies(self, model: LearnedModel, moves: tuple[tuple[str, int], ...]) -> None:
        size = self.config.strategy_length
        if len(moves) < size:
            return

        known = {tuple(s.sequence): s for s in model.strategies}
        now = utcnow()
        for i in range(len(moves) - size + 1):
            run = moves[i : i + size]
            avg = sum(delta for _, delta in run) / size
            if avg <= 0:
                continue
            sequence = tuple(action for action, _ in run)
            existing = known.get(sequence)
            if existing is None:
                known[sequence] = Strategy(sequence=list(sequence), avg_score_delta=avg, discovered_at=now)
            else:
                existing.seen += 1
                existing.avg_score_delta = max(existing.avg_score_delta, avg)

        ranked = sorted(known.values(), key=lambda s: (-s.avg_score_delta, -s.seen, s.sequence))
        model.strategies = ranked[: self.config.strategy_limit]

    # ---- persistence -----------------------------------------------------

    def schedule_flush(self, game_id: str) -> asyncio.Task[bool]:
        task = asyncio.create_task(self.save_model(game_id), name=f"gamehub:ai-flush:{game_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def save_model(self, game_id: str, *, force: bool = False) -> bool:
        model = self._models.get(game_id)
        if model is None:
            return True

        async with self._save_locks.hold(game_id):
            async with self._write_locks.hold(game_id):
                if not model.dirty and not force:
                    return True
                snapshot = model.to_persisted()
                model.dirty = False

            try:
                await asyncio.to_thread(self.store.save, snapshot)
            except Exception as e:
                # Retried on the next flush; the in-memory model is untouched.
                model.dirty = True
                logger.error("failed to save model %s: %s", game_id, e)
                return False

        logger.info("saved model %s (%d actions)", game_id, snapshot.total_actions)
        return True

    async def save_all(self) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for game_id in list(self._models):
            results[game_id] = await self.save_model(game_id, force=True)
        failed = [gid for gid, ok in results.items() if not ok]
        if failed:
            logger.warning("model save failed for: %s", ", ".join(failed))
        return results

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.save_interval_s)
            for game_id, model in list(self._models.items()):
                if model.dirty:
                    await self.save_model(game_id)

    # ---- stats -----------------------------------------------------------

    async def stats(self, game_id: str | None = None) -> dict[str, Any]:
        if game_id is not None:
            model = await self.load_model(game_id)
            return model.summary()
        return {
            "is_ready": self.is_ready,
            "learning_enabled": self.learning_enabled,
            "total_models": len(self._models),
            "models": {gid: m.summary() for gid, m in sorted(self._models.items())},
        }
