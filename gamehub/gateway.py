from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from pydantic import BaseModel

from gamehub.errors import GamingError
from gamehub.manager import GamingManager
from gamehub.session import SessionOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorBody(BaseModel):
    code: str
    message: str


class Reply(BaseModel):
    """Every gateway call returns one of these; nothing raises past the gateway."""

    ok: bool
    data: Any = None
    error: ErrorBody | None = None

    @classmethod
    def success(cls, data: Any = None) -> "Reply":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, code: str, message: str) -> "Reply":
        return cls(ok=False, error=ErrorBody(code=code, message=message))


class GamingGateway:
    """The operations the chat layer is allowed to call."""

    def __init__(self, manager: GamingManager) -> None:
        self.manager = manager

    async def _call(self, op: str, fn: Callable[[], Awaitable[T]], render: Callable[[T], Any]) -> Reply:
        try:
            value = await fn()
        except GamingError as e:
            logger.info("%s rejected (%s): %s", op, e.code, e)
            return Reply.failure(e.code, str(e))
        except Exception as e:
            logger.exception("%s failed", op)
            return Reply.failure("internal_error", str(e) or e.__class__.__name__)
        return Reply.success(render(value))

    async def start_session(self, user_id: str, game_id: str, options: Mapping[str, Any] | None = None) -> Reply:
        opts = dict(options or {})
        session_options = SessionOptions(
            url=opts.get("url"),
            ai_enabled=bool(opts.get("ai_enabled", True)),
            channel_id=opts.get("channel_id"),
        )
        return await self._call(
            "start_session",
            lambda: self.manager.start_session(user_id, game_id, session_options),
            lambda session: session.info().as_dict(),
        )

    async def submit_action(self, user_id: str, action: str, data: Mapping[str, Any] | None = None) -> Reply:
        return await self._call(
            "submit_action",
            lambda: self.manager.process_action(user_id, action, data),
            lambda result: result.as_dict(),
        )

    async def stop_session(self, user_id: str) -> Reply:
        return await self._call(
            "stop_session",
            lambda: self.manager.stop_user_session(user_id),
            lambda ended: {"ended": ended},
        )

    async def get_session(self, user_id: str) -> Reply:
        async def _get() -> dict[str, Any]:
            return self.manager.session_for_user(user_id).info().as_dict()

        return await self._call("get_session", _get, lambda info: info)

    async def pause(self, user_id: str) -> Reply:
        return await self._call("pause", lambda: self.manager.pause(user_id), lambda changed: {"paused": changed})

    async def resume(self, user_id: str) -> Reply:
        return await self._call("resume", lambda: self.manager.resume(user_id), lambda changed: {"resumed": changed})

    async def suggest(self, user_id: str) -> Reply:
        return await self._call(
            "suggest",
            lambda: self.manager.suggest(user_id),
            lambda s: s.as_dict() if s is not None else None,
        )

    async def execute_ai(self, user_id: str) -> Reply:
        return await self._call(
            "execute_ai",
            lambda: self.manager.execute_ai(user_id),
            lambda out: {"suggestion": out[0].as_dict(), "result": out[1].as_dict()} if out is not None else None,
        )

    async def list_games(self) -> Reply:
        async def _list() -> list[dict[str, Any]]:
            return [d.as_dict() for d in self.manager.list_games()]

        return await self._call("list_games", _list, lambda games: games)

    async def get_status(self) -> Reply:
        async def _status() -> dict[str, Any]:
            return self.manager.status()

        return await self._call("get_status", _status, lambda status: status)

    async def get_ai_stats(self, game_id: str | None = None) -> Reply:
        return await self._call("get_ai_stats", lambda: self.manager.ai_stats(game_id), lambda stats: stats)
