from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

import httpx

from gamehub.ai.engine import GameAI, Suggestion
from gamehub.browser.engine import BrowserGameEngine
from gamehub.config import GamingConfig
from gamehub.core.state import ActionResult
from gamehub.errors import (
    EngineUnavailableError,
    FatalEngineError,
    ResourceLimitError,
    SessionNotFoundError,
    UserAlreadyPlayingError,
)
from gamehub.games.base import Clock, GameKind
from gamehub.games.registry import GameDefinition, GameRegistry, discover_browser_games
from gamehub.notifications import EventOutbox
from gamehub.session import GameSession, SessionOptions

logger = logging.getLogger(__name__)


class GamingManager:
    """Top-level orchestrator: catalog, session registry, idle reaper, engine lifecycles.

    The registry has two indices (session id and user id). Every check-and-insert and
    every removal happens under `_lock` with no await inside, which keeps the
    one-session-per-user and capacity rules true at every instant.
    """

    def __init__(
        self,
        config: GamingConfig,
        registry: GameRegistry,
        *,
        ai: GameAI | None = None,
        browser: BrowserGameEngine | None = None,
        outbox: EventOutbox | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.config = config
        self.registry = registry
        self.ai = ai
        self.browser = browser
        self.outbox = outbox or EventOutbox()
        self.http_client = http_client
        self.clock = clock

        self._sessions: dict[str, GameSession] = {}
        self._by_user: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._reaper: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        # Sessions whose cleanup timed out or failed; their page or model flush may be leaked.
        self.leaked_sessions: set[str] = set()
        self.is_running = False

        if self.browser is not None:
            self.browser.add_failure_listener(self._on_engine_failure)

    # ---- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if self.browser is not None and self.config.enable_browser_games:
            try:
                await self.browser.initialize()
            except FatalEngineError as e:
                # Native games keep working; browser games report engine_unavailable.
                logger.error("browser games disabled: %s", e)

        if self.ai is not None:
            await self.ai.start()

        if self.config.enable_browser_games and self.config.static_manifest_url:
            await self._discover_games(self.config.static_manifest_url)

        if self.config.cleanup_interval_s > 0 and self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_loop(), name="gamehub:reaper")

        self.is_running = True
        logger.info(
            "gaming manager started: %d game(s), max %d session(s)",
            len(self.registry),
            self.config.max_concurrent_sessions,
        )

    async def shutdown(self) -> None:
        logger.info("gaming manager shutting down (%d active session(s))", len(self._sessions))
        self.is_running = False

        task, self._reaper = self._reaper, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await asyncio.gather(
            *(self.end_session(sid, "shutdown") for sid in list(self._sessions)),
            return_exceptions=True,
        )
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        if self.ai is not None:
            await self.ai.stop()
        if self.browser is not None:
            await self.browser.shutdown()
        logger.info("gaming manager stopped")

    async def _discover_games(self, manifest_url: str) -> None:
        if self.http_client is not None:
            await discover_browser_games(self.registry, client=self.http_client, manifest_url=manifest_url)
            return
        async with httpx.AsyncClient(timeout=10.0) as client:
            await discover_browser_games(self.registry, client=client, manifest_url=manifest_url)

    # ---- catalog ---------------------------------------------------------

    def list_games(self) -> list[GameDefinition]:
        return self.registry.list_games()

    # ---- sessions --------------------------------------------------------

    async def start_session(
        self,
        user_id: str,
        game_id: str,
        options: SessionOptions | None = None,
    ) -> GameSession:
        definition = self.registry.get(game_id)
        options = options or SessionOptions()

        if definition.kind == GameKind.browser:
            if not self.config.enable_browser_games:
                raise EngineUnavailableError("Browser games are disabled")
            if self.browser is None or not self.browser.is_ready:
                raise EngineUnavailableError("Browser engine is not ready")

        url = options.url or definition.url
        session = GameSession(
            session_id=f"game_{uuid4().hex}",
            user_id=user_id,
            game_id=game_id,
            game=definition.create(clock=self.clock),
            ai=self.ai if self.config.enable_learning else None,
            browser=self.browser if definition.kind == GameKind.browser else None,
            options=SessionOptions(url=url, ai_enabled=options.ai_enabled, channel_id=options.channel_id),
            history_limit=self.config.history_limit,
            clock=self.clock,
        )

        async with self._lock:
            if user_id in self._by_user:
                raise UserAlreadyPlayingError(f"User {user_id} already has an active session")
            if len(self._sessions) >= self.config.max_concurrent_sessions:
                raise ResourceLimitError(
                    f"Session limit reached ({self.config.max_concurrent_sessions} concurrent sessions)"
                )
            # Reserve both index entries before the first await.
            self._sessions[session.id] = session
            self._by_user[user_id] = session.id

        try:
            await session.initialize()
        except BaseException:
            async with self._lock:
                self._remove(session)
            logger.warning("session %s for user %s failed to start", session.id, user_id, exc_info=True)
            raise

        await self.outbox.publish(user_id, "session_started", session_id=session.id, game_id=game_id)
        return session

    async def end_session(self, session_id: str, reason: str = "manual") -> bool:
        """End a session and remove it from the registry.

        Idempotent and race tolerant: the first caller does the work and gets True, every
        other caller (concurrent or later) gets False.
        """

        session = self._sessions.get(session_id)
        if session is None:
            return False
        if not await session.end(reason):
            return False

        try:
            await self._release(session)
        finally:
            async with self._lock:
                self._remove(session)

        await self.outbox.publish(
            session.user_id,
            "session_ended",
            session_id=session.id,
            game_id=session.game_id,
            reason=session.game.end_reason or reason,
            score=session.score,
            moves=session.move_count,
        )
        return True

    async def _release(self, session: GameSession) -> None:
        task = asyncio.create_task(session.release_resources(), name=f"gamehub:release:{session.id}")
        done, _ = await asyncio.wait({task}, timeout=self.config.cleanup_timeout_s)

        if not done:
            # Abandon the cleanup; the registry entry is still removed by the caller.
            task.cancel()
            task.add_done_callback(self._log_abandoned)
            self.leaked_sessions.add(session.id)
            logger.error(
                "cleanup of session %s timed out after %.1fs; resources flagged as leaked",
                session.id,
                self.config.cleanup_timeout_s,
            )
            return

        exc = task.exception()
        if exc is not None:
            self.leaked_sessions.add(session.id)
            logger.error("cleanup of session %s failed", session.id, exc_info=exc)

    @staticmethod
    def _log_abandoned(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("abandoned cleanup %s raised: %s", task.get_name(), exc)

    def _remove(self, session: GameSession) -> None:
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
        if self._by_user.get(session.user_id) == session.id:
            del self._by_user[session.user_id]

    async def stop_user_session(self, user_id: str, reason: str = "manual") -> bool:
        session = self.session_for_user(user_id)
        return await self.end_session(session.id, reason)

    def get_session(self, session_id: str) -> GameSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        return session

    def session_for_user(self, user_id: str) -> GameSession:
        session_id = self._by_user.get(user_id)
        if session_id is None:
            raise SessionNotFoundError(f"User {user_id} has no active session")
        return self._sessions[session_id]

    def active_sessions(self) -> list[GameSession]:
        return list(self._sessions.values())

    # ---- actions ---------------------------------------------------------

    async def process_action(self, user_id: str, action: str, data: Mapping[str, Any] | None = None) -> ActionResult:
        session = self.session_for_user(user_id)
        result = await session.process_action(action, data)
        await self._notify_action(session, action, result)
        await self._after_action(session, result)
        return result

    async def _after_action(self, session: GameSession, result: ActionResult) -> None:
        if result.code == FatalEngineError.code:
            await self.end_session(session.id, "engine_failure")
        elif session.game.is_ended and not session.is_ended:
            # The game ended itself (time/score limit, game over).
            await self.end_session(session.id, session.game.end_reason or "ended")

    async def _notify_action(self, session: GameSession, action: str, result: ActionResult, *, ai: bool = False) -> None:
        await self.outbox.notify(
            session.user_id,
            "action_processed",
            session_id=session.id,
            action=action,
            success=result.success,
            code=result.code,
            score=session.score,
            ai=ai,
        )

    async def pause(self, user_id: str) -> bool:
        return await self.session_for_user(user_id).pause()

    async def resume(self, user_id: str) -> bool:
        return await self.session_for_user(user_id).resume()

    async def suggest(self, user_id: str) -> Suggestion | None:
        return await self.session_for_user(user_id).get_ai_suggestion()

    async def execute_ai(self, user_id: str) -> tuple[Suggestion, ActionResult] | None:
        session = self.session_for_user(user_id)
        outcome = await session.execute_ai_action()
        if outcome is not None:
            await self._notify_action(session, outcome[0].action, outcome[1], ai=True)
            await self._after_action(session, outcome[1])
        return outcome

    # ---- reaper ----------------------------------------------------------

    async def reap_idle_sessions(self, now: float | None = None) -> list[str]:
        now = self.clock() if now is None else now
        idle = [
            s.id
            for s in list(self._sessions.values())
            if s.is_active and now - s.last_activity > self.config.session_timeout_s
        ]
        reaped: list[str] = []
        for session_id in idle:
            if await self.end_session(session_id, "idle_timeout"):
                reaped.append(session_id)
        if reaped:
            logger.info("reaped %d idle session(s)", len(reaped))
        return reaped

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_s)
            try:
                await self.reap_idle_sessions()
            except Exception:
                logger.exception("idle session sweep failed")

    # ---- engine failure --------------------------------------------------

    def _on_engine_failure(self, reason: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("browser engine failed outside the event loop: %s", reason)
            return
        task = loop.create_task(self._end_browser_sessions(reason), name="gamehub:engine-failure")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _end_browser_sessions(self, reason: str) -> None:
        affected = [s for s in list(self._sessions.values()) if s.requires_browser]
        logger.error("browser engine failed (%s); ending %d session(s)", reason, len(affected))
        await self.outbox.publish_to_users((s.user_id for s in affected), "engine_failure", reason=reason)
        await asyncio.gather(
            *(self.end_session(s.id, "engine_failure") for s in affected),
            return_exceptions=True,
        )

    # ---- status ----------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "max_sessions": self.config.max_concurrent_sessions,
            "engine_ready": bool(self.browser is not None and self.browser.is_ready),
            "ai_ready": bool(self.ai is not None and self.ai.is_ready),
            "leaked_sessions": len(self.leaked_sessions),
        }

    async def ai_stats(self, game_id: str | None = None) -> dict[str, Any]:
        if self.ai is None:
            raise EngineUnavailableError("Game AI is disabled")
        if game_id is not None:
            self.registry.get(game_id)
        return await self.ai.stats(game_id)
