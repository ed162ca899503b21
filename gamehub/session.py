from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from gamehub.ai.engine import GameAI, SessionSummary, Suggestion, TrainingSample
from gamehub.browser.engine import BrowserGameEngine
from gamehub.core.state import ActionRecord, ActionResult, utcnow
from gamehub.errors import EngineUnavailableError, FatalEngineError, SessionNotFoundError
from gamehub.games.base import BaseGame, Clock, GameContext

logger = logging.getLogger(__name__)

# Results with these codes never reached the game, so there is nothing to learn from them.
_UNTRAINABLE_CODES = frozenset({"invalid_action", "not_running", "engine_failure"})


@dataclass(frozen=True, slots=True)
class SessionOptions:
    url: str | None = None
    ai_enabled: bool = True
    channel_id: str | None = None


@dataclass(slots=True)
class SessionStatistics:
    actions_performed: int = 0
    correct_moves: int = 0
    incorrect_moves: int = 0
    average_response_ms: float = 0.0
    peak_score: int = 0

    def observe(self, *, success: bool, response_ms: float, score: int) -> None:
        self.actions_performed += 1
        if success:
            self.correct_moves += 1
        else:
            self.incorrect_moves += 1
        n = self.actions_performed
        self.average_response_ms = (self.average_response_ms * (n - 1) + response_ms) / n
        self.peak_score = max(self.peak_score, score)

    def as_dict(self) -> dict[str, Any]:
        return {
            "actions_performed": self.actions_performed,
            "correct_moves": self.correct_moves,
            "incorrect_moves": self.incorrect_moves,
            "average_response_ms": self.average_response_ms,
            "peak_score": self.peak_score,
        }


@dataclass(frozen=True, slots=True)
class SessionInfo:
    id: str
    user_id: str
    game_id: str
    is_active: bool
    is_paused: bool
    duration_s: float
    score: int
    moves: int
    ai_enabled: bool
    statistics: dict[str, Any]
    game_state: dict[str, Any]
    created_at: str
    channel_id: str | None = None
    end_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "game_id": self.game_id,
            "channel_id": self.channel_id,
            "is_active": self.is_active,
            "is_paused": self.is_paused,
            "duration_s": self.duration_s,
            "score": self.score,
            "moves": self.moves,
            "ai_enabled": self.ai_enabled,
            "statistics": self.statistics,
            "game_state": self.game_state,
            "created_at": self.created_at,
            "end_reason": self.end_reason,
        }


class GameSession:
    """One user playing one game instance.

    Actions are serialized by a per-session lock so history and statistics follow
    submission order. Training samples go through a per-session queue drained by a single
    worker task: the caller gets its result without waiting for training, and training
    still happens in order.
    """

    def __init__(
        self,
        *,
        session_id: str,
        user_id: str,
        game_id: str,
        game: BaseGame,
        ai: GameAI | None = None,
        browser: BrowserGameEngine | None = None,
        options: SessionOptions | None = None,
        history_limit: int = 1000,
        clock: Clock = time.monotonic,
    ) -> None:
        self.options = options or SessionOptions()
        self.id = session_id
        self.user_id = user_id
        self.game_id = game_id
        self.game = game
        self.ai = ai
        self.browser = browser
        self.url = self.options.url
        self.ai_enabled = self.options.ai_enabled and ai is not None
        self.clock = clock

        self.history: deque[ActionRecord] = deque(maxlen=history_limit)
        self.statistics = SessionStatistics()
        self.created_at = utcnow()
        self.started_at: float | None = None
        self.ended_at: float | None = None
        self.last_activity = clock()
        self.is_active = False
        self.is_paused = False
        self.score = 0
        self.move_count = 0
        self.end_reason: str | None = None
        self.summary: SessionSummary | None = None

        self._action_lock = asyncio.Lock()
        self._ended = False
        self._released = False
        self._page_open = False
        self._training: asyncio.Queue[TrainingSample | None] = asyncio.Queue()
        self._trainer: asyncio.Task[None] | None = None

    @property
    def is_ended(self) -> bool:
        return self._ended

    @property
    def has_page(self) -> bool:
        return self._page_open

    @property
    def requires_browser(self) -> bool:
        return self.game.requires_browser

    # ---- lifecycle -------------------------------------------------------

    async def initialize(self) -> None:
        """Acquire the page, set the game up and start it.

        On failure everything acquired so far is released before the error propagates.
        """

        try:
            if self.game.requires_browser:
                if self.browser is None:
                    raise EngineUnavailableError(f"Game {self.game_id} needs a browser engine")
                await self.browser.create_page_for_session(self.id, self.url)
                self._page_open = True

            self.game.bind(GameContext(session_id=self.id, browser=self.browser, url=self.url))
            await self.game.initialize()

            if self.ai is not None and self.ai_enabled:
                await self.ai.load_model(self.game_id)

            await self.game.start()
            if self._ended:
                raise SessionNotFoundError(f"Session {self.id} was ended while starting ({self.end_reason})")
        except Exception:
            self._ended = True
            await self.game.end(self.end_reason or "initFailed")
            await self._close_page()
            raise

        self.started_at = self.clock()
        self.last_activity = self.started_at
        self.is_active = True
        if self.ai_enabled:
            self._trainer = asyncio.create_task(self._train_worker(), name=f"gamehub:train:{self.id}")
        logger.info("session %s started: user=%s game=%s", self.id, self.user_id, self.game_id)

    async def pause(self) -> bool:
        if not self.is_active or self.is_paused:
            return False
        async with self._action_lock:
            if not await self.game.pause():
                return False
            self.is_paused = True
        logger.info("session %s paused", self.id)
        return True

    async def resume(self) -> bool:
        if not self.is_active or not self.is_paused:
            return False
        async with self._action_lock:
            if not await self.game.resume():
                return False
            self.is_paused = False
            self.last_activity = self.clock()
        logger.info("session %s resumed", self.id)
        return True

    async def end(self, reason: str = "manual") -> bool:
        """Mark the session ended and finalize the game. Only the first call does anything.

        Resource release is separate (`release_resources`) so callers can bound it.
        """

        if self._ended:
            return False
        # No await before this point, so exactly one caller gets here.
        self._ended = True
        self.is_active = False
        self.is_paused = False
        self.end_reason = reason
        self.ended_at = self.clock()

        await self.game.end(reason)
        started = self.started_at if self.started_at is not None else self.ended_at
        self.summary = SessionSummary(
            session_id=self.id,
            final_score=self.game.state.score,
            actions=self.move_count,
            duration_s=max(0.0, self.ended_at - started),
            reason=self.game.end_reason or reason,
            moves=tuple((r.action, r.score_delta) for r in self.history),
        )
        logger.info("session %s ended (%s) score=%s moves=%s", self.id, reason, self.score, self.move_count)
        return True

    async def release_resources(self) -> None:
        """Wait out the in-flight action, drain training, fold the summary into the model
        and close the page. Safe to call more than once."""

        if self._released:
            return
        self._released = True

        try:
            async with self._action_lock:
                await self._stop_trainer()
                if self.ai is not None and self.ai_enabled and self.summary is not None:
                    flush = await self.ai.on_session_end(self.game_id, self.summary)
                    if flush is not None:
                        await flush
        finally:
            await self._close_page()

    # ---- actions ---------------------------------------------------------

    async def process_action(self, action: str, data: Mapping[str, Any] | None = None) -> ActionResult:
        rejected = self._reject_reason()
        if rejected is not None:
            return rejected

        async with self._action_lock:
            # The session may have ended while this call waited for the lock.
            rejected = self._reject_reason()
            if rejected is not None:
                return rejected

            self.last_activity = self.clock()
            signature = self.game.signature()
            payload = dict(data or {})
            started = self.clock()

            try:
                result = await self.game.process_action(action, payload)
            except FatalEngineError as e:
                logger.error("session %s lost its browser engine: %s", self.id, e)
                result = ActionResult.failure(str(e), code=FatalEngineError.code, state=self.game.get_state())
            else:
                if self._ended:
                    # Ended while the game handled the action; the summary is already final.
                    return ActionResult.failure(
                        f"Session {self.id} ended while {action} was running ({self.end_reason})",
                        code="session_ended",
                        state=self.game.get_state(),
                    )

            elapsed_ms = max(0.0, (self.clock() - started) * 1000.0)
            self.score = self.game.state.score
            self.move_count += 1
            self.statistics.observe(success=result.success, response_ms=elapsed_ms, score=self.score)
            self.history.append(ActionRecord.of(action=action, data=payload, result=result))

            if self.ai_enabled and result.code not in _UNTRAINABLE_CODES:
                self._training.put_nowait(
                    TrainingSample(
                        signature=signature,
                        action=action,
                        success=result.success,
                        score_delta=result.score_delta,
                        score=self.score,
                    )
                )
            return result

    def _reject_reason(self) -> ActionResult | None:
        if self._ended:
            return ActionResult.failure(
                f"Session {self.id} has ended ({self.end_reason})",
                code="session_ended",
                state=self.game.get_state(),
            )
        if not self.is_active:
            return ActionResult.failure(f"Session {self.id} is still starting", code="session_starting")
        if self.is_paused:
            return ActionResult.failure(
                f"Session {self.id} is paused",
                code="session_paused",
                state=self.game.get_state(),
            )
        return None

    async def get_ai_suggestion(self) -> Suggestion | None:
        if self.ai is None or not self.ai_enabled or not self.is_active:
            return None
        try:
            return await self.ai.suggest_action(self.game_id, self.game.signature(), sorted(self.game.actions))
        except Exception:
            logger.exception("AI suggestion failed for session %s", self.id)
            return None

    async def execute_ai_action(self) -> tuple[Suggestion, ActionResult] | None:
        suggestion = await self.get_ai_suggestion()
        if suggestion is None:
            return None
        result = await self.process_action(suggestion.action, suggestion.data)
        return suggestion, result

    # ---- training --------------------------------------------------------

    async def _train_worker(self) -> None:
        ai = self.ai
        if ai is None:
            return
        while True:
            sample = await self._training.get()
            try:
                if sample is None:
                    return
                await ai.train(self.game_id, sample)
            except Exception:
                logger.exception("training failed for session %s", self.id)
            finally:
                self._training.task_done()

    async def wait_for_training(self) -> None:
        """Block until every queued sample has been trained."""

        await self._training.join()

    async def _stop_trainer(self) -> None:
        task, self._trainer = self._trainer, None
        if task is None:
            return
        self._training.put_nowait(None)
        try:
            await task
        except asyncio.CancelledError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise

    async def _close_page(self) -> None:
        if not self._page_open or self.browser is None:
            return
        self._page_open = False
        await self.browser.close_page_for_session(self.id)

    # ---- snapshots -------------------------------------------------------

    def info(self) -> SessionInfo:
        if self.started_at is None:
            duration = 0.0
        else:
            until = self.ended_at if self.ended_at is not None else self.clock()
            duration = max(0.0, until - self.started_at)
        return SessionInfo(
            id=self.id,
            user_id=self.user_id,
            game_id=self.game_id,
            channel_id=self.options.channel_id,
            is_active=self.is_active,
            is_paused=self.is_paused,
            duration_s=duration,
            score=self.score,
            moves=self.move_count,
            ai_enabled=self.ai_enabled,
            statistics=self.statistics.as_dict(),
            game_state=self.game.get_state(),
            created_at=self.created_at.isoformat(),
            end_reason=self.end_reason,
        )

    def export(self) -> dict[str, Any]:
        out = self.info().as_dict()
        out["history"] = [r.as_dict() for r in self.history]
        out["game"] = self.game.metadata()
        return out
