from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SessionOptionsModel(BaseModel):
    url: str | None = None
    ai_enabled: bool = True
    channel_id: str | None = None


class SessionCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    game_id: str = Field(..., min_length=1, max_length=128)
    options: SessionOptionsModel = Field(default_factory=SessionOptionsModel)


class ActionRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict)


class GameDefinitionModel(BaseModel):
    id: str
    kind: str
    name: str
    description: str = ""
    url: str | None = None
    actions: list[str] = Field(default_factory=list)
    time_limit_s: float | None = None
    score_limit: int | None = None


class GameListResponse(BaseModel):
    games: list[GameDefinitionModel]


class SessionStatisticsModel(BaseModel):
    actions_performed: int
    correct_moves: int
    incorrect_moves: int
    average_response_ms: float
    peak_score: int


class SessionInfoModel(BaseModel):
    id: str
    user_id: str
    game_id: str
    channel_id: str | None = None
    is_active: bool
    is_paused: bool
    duration_s: float
    score: int
    moves: int
    ai_enabled: bool
    statistics: SessionStatisticsModel
    game_state: dict[str, Any]
    created_at: str
    end_reason: str | None = None


class ActionResultModel(BaseModel):
    success: bool
    message: str
    score_delta: int = 0
    state: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] | None = None
    code: str | None = None
    action_time_ms: float = 0.0


class SuggestionModel(BaseModel):
    action: str
    confidence: float
    strategy: str
    data: dict[str, Any] = Field(default_factory=dict)


class AIExecuteResponse(BaseModel):
    suggestion: SuggestionModel
    result: ActionResultModel


class StatusResponse(BaseModel):
    active_sessions: int
    max_sessions: int
    engine_ready: bool
    ai_ready: bool
    leaked_sessions: int = 0


class MailboxEntry(BaseModel):
    id: str
    fields: dict[str, str]


class MailboxResponse(BaseModel):
    key: str
    entries: list[MailboxEntry]
