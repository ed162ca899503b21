from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from gamehub.core.state import utcnow

SCHEMA_VERSION = 1


class LearningEvent(BaseModel):
    ts: datetime
    signature: str
    action: str
    success: bool
    score: int
    reward: float
    value: float


class SuccessPattern(BaseModel):
    """An action that kept winning in the recent learning window."""

    action: str
    count: int
    confidence: float
    detected_at: datetime


class Strategy(BaseModel):
    sequence: list[str]
    avg_score_delta: float
    seen: int = 1
    discovered_at: datetime


class PersistedModel(BaseModel):
    """On-disk/in-Redis shape of a LearnedModel.

    Map fields are stored as association lists (`[[key, [[action, n], ...]], ...]`) so
    that signature strings never need to be JSON object keys.
    """

    schema_version: int = SCHEMA_VERSION
    game_id: str
    visit_counts: list[tuple[str, list[tuple[str, int]]]] = Field(default_factory=list)
    action_values: list[tuple[str, list[tuple[str, float]]]] = Field(default_factory=list)
    total_games: int = 0
    total_actions: int = 0
    average_score: float = 0.0
    best_score: int = 0
    exploration_rate: float
    learning_history: list[LearningEvent] = Field(default_factory=list)
    patterns: list[tuple[str, SuccessPattern]] = Field(default_factory=list)
    strategies: list[Strategy] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class LearnedModel:
    game_id: str
    exploration_rate: float
    history_limit: int = 1000
    visit_counts: dict[str, dict[str, int]] = field(default_factory=dict)
    action_values: dict[str, dict[str, float]] = field(default_factory=dict)
    total_games: int = 0
    total_actions: int = 0
    average_score: float = 0.0
    best_score: int = 0
    learning_history: deque[LearningEvent] = field(default_factory=deque)
    # Keyed by action, so bounded by the game's action vocabulary.
    patterns: dict[str, SuccessPattern] = field(default_factory=dict)
    # Best first, at most `strategy_limit` entries.
    strategies: list[Strategy] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Changed since the last successful save.
    dirty: bool = False

    def __post_init__(self) -> None:
        if self.learning_history.maxlen != self.history_limit:
            self.learning_history = deque(self.learning_history, maxlen=self.history_limit)

    def known_actions(self, signature: str) -> list[str]:
        return sorted(self.visit_counts.get(signature, {}))

    def all_actions(self) -> list[str]:
        seen: set[str] = set()
        for per_action in self.visit_counts.values():
            seen.update(per_action)
        return sorted(seen)

    def best_action(self, signature: str, candidates: list[str] | None = None) -> tuple[str, float, int] | None:
        """Highest-valued action for `signature` as (action, value, visits); ties break by name."""

        values = self.action_values.get(signature) or {}
        counts = self.visit_counts.get(signature) or {}
        pool = [a for a in values if candidates is None or a in candidates]
        if not pool:
            return None
        best = max(sorted(pool), key=lambda a: values[a])
        return best, values[best], counts.get(best, 0)

    def to_persisted(self) -> PersistedModel:
        return PersistedModel(
            game_id=self.game_id,
            visit_counts=[(sig, sorted(per.items())) for sig, per in sorted(self.visit_counts.items())],
            action_values=[(sig, sorted(per.items())) for sig, per in sorted(self.action_values.items())],
            total_games=self.total_games,
            total_actions=self.total_actions,
            average_score=self.average_score,
            best_score=self.best_score,
            exploration_rate=self.exploration_rate,
            learning_history=list(self.learning_history),
            patterns=sorted(self.patterns.items()),
            strategies=[s.model_copy() for s in self.strategies],
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_persisted(cls, data: PersistedModel, *, history_limit: int = 1000) -> "LearnedModel":
        return cls(
            game_id=data.game_id,
            exploration_rate=data.exploration_rate,
            history_limit=history_limit,
            visit_counts={sig: dict(per) for sig, per in data.visit_counts},
            action_values={sig: dict(per) for sig, per in data.action_values},
            total_games=data.total_games,
            total_actions=data.total_actions,
            average_score=data.average_score,
            best_score=data.best_score,
            learning_history=deque(data.learning_history, maxlen=history_limit),
            patterns=dict(data.patterns),
            strategies=list(data.strategies),
            created_at=data.created_at,
            updated_at=data.updated_at,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "game_id": self.game_id,
            "total_games": self.total_games,
            "total_actions": self.total_actions,
            "average_score": self.average_score,
            "best_score": self.best_score,
            "exploration_rate": self.exploration_rate,
            "states": len(self.visit_counts),
            "learning_events": len(self.learning_history),
            "patterns": [p.model_dump(mode="json") for _, p in sorted(self.patterns.items())],
            "strategies": [s.model_dump(mode="json") for s in self.strategies[:5]],
            "total_strategies": len(self.strategies),
            "updated_at": self.updated_at.isoformat(),
        }
