from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class GameState:
    """Mutable per-game counters. Only BaseGame writes to it.

    Game-specific fields (board position, inventory, ...) live in `extra`.
    """

    score: int = 0
    level: int = 1
    lives: int = 3
    elapsed_s: float = 0.0
    actions: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "score": self.score,
            "level": self.level,
            "lives": self.lives,
            "elapsed_s": self.elapsed_s,
            "actions": self.actions,
        }
        out.update(json.loads(json.dumps(self.extra, default=str)))
        return out


@dataclass(frozen=True, slots=True)
class ActionResult:
    """What one action produced.

    - `code` is None on success; otherwise a stable reason (`invalid_action`,
      `session_ended`, `not_running`, `transient_io`, `engine_failure`, ...).
    - `state` is the game snapshot right after the action.
    """

    success: bool
    message: str
    score_delta: int = 0
    state: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] | None = None
    code: str | None = None
    action_time_ms: float = 0.0

    @staticmethod
    def failure(message: str, *, code: str, state: dict[str, Any] | None = None) -> "ActionResult":
        return ActionResult(success=False, message=message, state=state or {}, code=code)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "score_delta": self.score_delta,
            "state": self.state,
            "data": self.data,
            "code": self.code,
            "action_time_ms": self.action_time_ms,
        }


@dataclass(frozen=True, slots=True)
class ActionRecord:
    action: str
    data: dict[str, Any]
    success: bool
    message: str
    score_delta: int
    state: dict[str, Any]
    ts: datetime

    @staticmethod
    def of(*, action: str, data: Mapping[str, Any], result: ActionResult) -> "ActionRecord":
        return ActionRecord(
            action=action,
            data=dict(data),
            success=result.success,
            message=result.message,
            score_delta=result.score_delta,
            state=dict(result.state),
            ts=utcnow(),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "data": self.data,
            "success": self.success,
            "message": self.message,
            "score_delta": self.score_delta,
            "state": self.state,
            "ts": self.ts.isoformat(),
        }


def state_signature(state: Mapping[str, Any], fields: Iterable[str]) -> str:
    """Order-independent lookup key for a game state.

    Only `fields` participate; missing fields are skipped. Values are JSON encoded with
    sorted keys so nested dicts hash the same regardless of insertion order.
    """

    parts = []
    for key in sorted(set(fields)):
        if key not in state:
            continue
        parts.append(f"{key}={json.dumps(state[key], sort_keys=True, separators=(',', ':'), default=str)}")
    return "|".join(parts)
