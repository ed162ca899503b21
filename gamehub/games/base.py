from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from statemachine.exceptions import TransitionNotAllowed

from gamehub.core.state import ActionRecord, ActionResult, GameState, state_signature, utcnow
from gamehub.errors import FatalEngineError, GamingError, ValidationError
from gamehub.fsm import GameLifecycle, GamePhase
from gamehub.turn_processing.validators import (
    ActionValidator,
    ValidationContext,
    ValidatorPipeline,
    build_pipelines,
    pipeline_for_action,
)

if TYPE_CHECKING:
    from gamehub.browser.engine import BrowserGameEngine

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class GameKind(StrEnum):
    native = "native"
    browser = "browser"


@dataclass(frozen=True, slots=True)
class GameConfig:
    time_limit_s: float | None = None
    score_limit: int | None = None
    max_players: int = 1
    difficulty: str = "normal"
    history_limit: int = 1000


@dataclass(frozen=True, slots=True)
class GameContext:
    """Resources a session lends to its game for the game's lifetime."""

    session_id: str
    browser: "BrowserGameEngine | None" = None
    url: str | None = None


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """What a game-specific handler reports back to BaseGame.

    BaseGame applies `score_delta` to the score when `success` is true.
    """

    success: bool
    message: str
    score_delta: int = 0
    data: dict[str, Any] | None = None


@dataclass(slots=True)
class GameStats:
    total_actions: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    average_action_time_ms: float = 0.0
    best_score: int = 0
    total_time_s: float = 0.0
    success_rate: float = 0.0
    actions_per_minute: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_actions": self.total_actions,
            "successful_actions": self.successful_actions,
            "failed_actions": self.failed_actions,
            "average_action_time_ms": self.average_action_time_ms,
            "best_score": self.best_score,
            "total_time_s": self.total_time_s,
            "success_rate": self.success_rate,
            "actions_per_minute": self.actions_per_minute,
        }


@dataclass(frozen=True, slots=True)
class GameSummary:
    game_id: str
    reason: str
    total_time_s: float
    final_state: dict[str, Any]
    stats: dict[str, Any]
    ended_at: str = field(default_factory=lambda: utcnow().isoformat())


class BaseGame(ABC):
    """Pluggable game state machine.

    Subclasses declare their identity and action vocabulary as class attributes and
    implement `on_action`; everything else (lifecycle, validation, recording, end
    conditions) is handled here.
    """

    game_id: str
    name: str
    description: str = ""
    kind: ClassVar[GameKind] = GameKind.native
    actions: ClassVar[frozenset[str]] = frozenset()
    # Fields of the state snapshot that feed the AI state signature.
    signature_fields: ClassVar[tuple[str, ...]] = ("level", "lives")

    def __init__(self, *, config: GameConfig | None = None, clock: Clock = time.monotonic) -> None:
        self.config = config or self.default_config()
        self.clock = clock
        self.fsm = GameLifecycle()
        self.state = GameState()
        self.stats = GameStats()
        self.history: deque[ActionRecord] = deque(maxlen=self.config.history_limit)
        self.context: GameContext | None = None
        self.start_time: float | None = None
        self.end_time: float | None = None
        self.end_reason: str | None = None
        self._pipelines: dict[str, ValidatorPipeline] = build_pipelines(
            actions=self.actions,
            per_action=self.action_rules(),
        )

    # ---- lifecycle -------------------------------------------------------

    @classmethod
    def default_config(cls) -> GameConfig:
        return GameConfig()

    @property
    def phase(self) -> GamePhase:
        return self.fsm.phase

    @property
    def is_running(self) -> bool:
        return self.phase == GamePhase.running

    @property
    def is_paused(self) -> bool:
        return self.phase == GamePhase.paused

    @property
    def is_ended(self) -> bool:
        return self.phase == GamePhase.ended

    @property
    def requires_browser(self) -> bool:
        return self.kind == GameKind.browser

    def bind(self, context: GameContext) -> None:
        self.context = context

    async def initialize(self) -> None:
        if self.phase != GamePhase.uninitialized:
            raise ValidationError(f"Game {self.game_id} is already {self.phase.value}")

        logger.info("initializing game %s", self.game_id)
        self.reset_state()
        await self.on_initialize()
        self.fsm.setup()

    async def start(self) -> None:
        try:
            self.fsm.begin()
        except TransitionNotAllowed as e:
            raise ValidationError(f"Game must be initialized before start (phase={self.phase.value})") from e

        self.start_time = self.clock()
        try:
            await self.on_start()
        except Exception:
            logger.exception("game %s failed to start", self.game_id)
            await self.end("startFailed")
            raise
        logger.info("game %s started", self.game_id)

    async def pause(self) -> bool:
        if not self.is_running:
            return False
        self.fsm.pause()
        await self.on_pause()
        logger.info("game %s paused", self.game_id)
        return True

    async def resume(self) -> bool:
        if not self.is_paused:
            return False
        self.fsm.resume()
        await self.on_resume()
        logger.info("game %s resumed", self.game_id)
        return True

    async def end(self, reason: str = "manual") -> GameSummary | None:
        """Move to `ended` once. Later calls (and calls before initialize) return None."""

        if self.phase in (GamePhase.ended, GamePhase.uninitialized):
            return None

        # Transition first so concurrent callers see `ended` before any await.
        self.fsm.finish()
        self.end_time = self.clock()
        self.end_reason = reason
        self._finalize_stats()

        try:
            await self.on_end(reason)
        except Exception:
            logger.exception("game %s on_end hook failed", self.game_id)

        summary = GameSummary(
            game_id=self.game_id,
            reason=reason,
            total_time_s=self.stats.total_time_s,
            final_state=self.get_state(),
            stats=self.stats.as_dict(),
        )
        logger.info("game %s ended (%s) score=%s", self.game_id, reason, self.state.score)
        return summary

    # ---- actions ---------------------------------------------------------

    async def process_action(self, action: str, data: Mapping[str, Any] | None = None) -> ActionResult:
        payload: dict[str, Any] = dict(data or {})

        if not self.is_running:
            return ActionResult.failure(
                f"Game is not active (phase={self.phase.value})",
                code="not_running",
                state=self.get_state(),
            )

        started = self.clock()
        try:
            ctx = ValidationContext(game_id=self.game_id, action=action, data=payload)
            pipeline_for_action(self._pipelines, action).validate(ctx=ctx)
            self.validate_action(action, payload)
        except ValidationError as e:
            return ActionResult.failure(str(e), code=e.code, state=self.get_state())

        # If the game stops running while on_action awaits, the action leaves no trace.
        try:
            outcome = await self.on_action(action, payload)
        except FatalEngineError:
            if self.is_running:
                self._record(action, payload, ActionOutcome(success=False, message="engine failure"), started)
            raise
        except Exception as e:
            logger.warning("action %s failed in game %s: %s", action, self.game_id, e, exc_info=True)
            if not self.is_running:
                return self._interrupted(action)
            code = e.code if isinstance(e, GamingError) else "action_error"
            self._record(action, payload, ActionOutcome(success=False, message=str(e)), started)
            return ActionResult.failure(str(e), code=code, state=self.get_state())

        if not self.is_running:
            return self._interrupted(action)

        if outcome.success and outcome.score_delta:
            self.state.score += outcome.score_delta

        elapsed_ms = self._record(action, payload, outcome, started)
        await self.check_end_conditions()

        return ActionResult(
            success=outcome.success,
            message=outcome.message,
            score_delta=outcome.score_delta if outcome.success else 0,
            state=self.get_state(),
            data=outcome.data,
            code=None if outcome.success else "action_rejected",
            action_time_ms=elapsed_ms,
        )

    async def check_end_conditions(self) -> str | None:
        if not self.is_running:
            return None

        reason: str | None = None
        if self.config.time_limit_s is not None and self.start_time is not None:
            if self.clock() - self.start_time >= self.config.time_limit_s:
                reason = "timeLimit"
        if reason is None and self.config.score_limit is not None and self.state.score >= self.config.score_limit:
            reason = "scoreLimit"
        if reason is None and self.state.lives <= 0:
            reason = "gameOver"
        if reason is None:
            reason = self.custom_end_reason()

        if reason is not None:
            await self.end(reason)
        return reason

    # ---- snapshots -------------------------------------------------------

    def get_state(self) -> dict[str, Any]:
        if self.start_time is not None:
            until = self.end_time if self.end_time is not None else self.clock()
            self.state.elapsed_s = max(0.0, until - self.start_time)
        out = self.state.as_dict()
        out.update(
            {
                "phase": self.phase.value,
                "is_running": self.is_running,
                "is_paused": self.is_paused,
                "is_ended": self.is_ended,
                "end_reason": self.end_reason,
            }
        )
        return out

    def signature(self) -> str:
        return state_signature(self.get_state(), self.signature_fields)

    def metadata(self) -> dict[str, Any]:
        return {
            "id": self.game_id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind.value,
            "actions": sorted(self.actions),
            "time_limit_s": self.config.time_limit_s,
            "score_limit": self.config.score_limit,
        }

    def reset_state(self) -> None:
        self.state = GameState()
        self.stats = GameStats(best_score=self.stats.best_score)
        self.history.clear()
        self.start_time = None
        self.end_time = None
        self.end_reason = None

    # ---- internals -------------------------------------------------------

    def _interrupted(self, action: str) -> ActionResult:
        logger.info("game %s left running while %s was in flight; discarding it", self.game_id, action)
        return ActionResult.failure(
            f"Game became {self.phase.value} while {action} was running",
            code="not_running",
            state=self.get_state(),
        )

    def _record(self, action: str, data: dict[str, Any], outcome: ActionOutcome, started: float) -> float:
        elapsed_ms = max(0.0, (self.clock() - started) * 1000.0)

        self.state.actions += 1
        self.stats.total_actions += 1
        if outcome.success:
            self.stats.successful_actions += 1
        else:
            self.stats.failed_actions += 1
        n = self.stats.total_actions
        self.stats.average_action_time_ms = (self.stats.average_action_time_ms * (n - 1) + elapsed_ms) / n

        snapshot = ActionResult(
            success=outcome.success,
            message=outcome.message,
            score_delta=outcome.score_delta if outcome.success else 0,
            state=self.state.as_dict(),
        )
        self.history.append(ActionRecord.of(action=action, data=data, result=snapshot))
        return elapsed_ms

    def _finalize_stats(self) -> None:
        total = 0.0
        if self.start_time is not None and self.end_time is not None:
            total = max(0.0, self.end_time - self.start_time)
        self.stats.total_time_s = total
        self.stats.best_score = max(self.stats.best_score, self.state.score)
        self.stats.success_rate = (
            self.stats.successful_actions / self.stats.total_actions if self.stats.total_actions else 0.0
        )
        self.stats.actions_per_minute = self.stats.total_actions / (total / 60.0) if total > 0 else 0.0

    # ---- hooks -----------------------------------------------------------

    def action_rules(self) -> Mapping[str, tuple[ActionValidator, ...]]:
        return {}

    def validate_action(self, action: str, data: Mapping[str, Any]) -> None:
        """Game-specific checks that need live game state. Raise ValidationError to reject."""

    async def on_initialize(self) -> None:
        pass

    async def on_start(self) -> None:
        pass

    @abstractmethod
    async def on_action(self, action: str, data: dict[str, Any]) -> ActionOutcome:
        raise NotImplementedError

    async def on_pause(self) -> None:
        pass

    async def on_resume(self) -> None:
        pass

    async def on_end(self, reason: str) -> None:
        pass

    def custom_end_reason(self) -> str | None:
        return None
