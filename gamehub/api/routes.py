from __future__ import annotations

from typing import Any

import redis
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from gamehub.api.deps import get_gateway, get_redis
from gamehub.api.models import (
    ActionRequest,
    ActionResultModel,
    AIExecuteResponse,
    GameListResponse,
    MailboxEntry,
    MailboxResponse,
    SessionCreateRequest,
    SessionInfoModel,
    StatusResponse,
    SuggestionModel,
)
from gamehub.gateway import GamingGateway, Reply
from gamehub.streams import Mailbox, read_mailbox

router = APIRouter()

_STATUS_BY_CODE = {
    "game_not_found": status.HTTP_404_NOT_FOUND,
    "session_not_found": status.HTTP_404_NOT_FOUND,
    "page_not_found": status.HTTP_404_NOT_FOUND,
    "not_found": status.HTTP_404_NOT_FOUND,
    "user_already_playing": status.HTTP_409_CONFLICT,
    "session_limit_reached": status.HTTP_409_CONFLICT,
    "page_conflict": status.HTTP_409_CONFLICT,
    "engine_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "engine_failure": status.HTTP_503_SERVICE_UNAVAILABLE,
    "internal_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _unwrap(reply: Reply) -> Any:
    if reply.ok or reply.error is None:
        return reply.data
    code = _STATUS_BY_CODE.get(reply.error.code, status.HTTP_422_UNPROCESSABLE_ENTITY)
    raise HTTPException(status_code=code, detail={"code": reply.error.code, "message": reply.error.message})


def _require_ai(data: Any) -> Any:
    if data is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "ai_disabled", "message": "AI is not enabled for this session"},
        )
    return data


@router.websocket("/ws/users/{user_id}")
async def user_updates_ws(websocket: WebSocket, user_id: str) -> None:
    subscribers = websocket.app.state.subscribers
    await subscribers.subscribe(user_id, websocket)

    try:
        # Keep the socket open; client can optionally send pings.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await subscribers.unsubscribe(user_id, websocket)
    except Exception:
        await subscribers.unsubscribe(user_id, websocket)
        raise


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/games", response_model=GameListResponse)
async def list_games_route(gateway: GamingGateway = Depends(get_gateway)) -> GameListResponse:
    return GameListResponse.model_validate({"games": _unwrap(await gateway.list_games())})


@router.post("/sessions", response_model=SessionInfoModel, status_code=status.HTTP_201_CREATED)
async def start_session_route(
    payload: SessionCreateRequest,
    gateway: GamingGateway = Depends(get_gateway),
) -> SessionInfoModel:
    reply = await gateway.start_session(payload.user_id, payload.game_id, payload.options.model_dump())
    return SessionInfoModel.model_validate(_unwrap(reply))


@router.get("/users/{user_id}/session", response_model=SessionInfoModel)
async def get_session_route(user_id: str, gateway: GamingGateway = Depends(get_gateway)) -> SessionInfoModel:
    return SessionInfoModel.model_validate(_unwrap(await gateway.get_session(user_id)))


@router.delete("/users/{user_id}/session")
async def stop_session_route(user_id: str, gateway: GamingGateway = Depends(get_gateway)) -> dict[str, bool]:
    return _unwrap(await gateway.stop_session(user_id))


@router.post("/users/{user_id}/actions", response_model=ActionResultModel)
async def submit_action_route(
    user_id: str,
    payload: ActionRequest,
    gateway: GamingGateway = Depends(get_gateway),
) -> ActionResultModel:
    reply = await gateway.submit_action(user_id, payload.action, payload.data)
    return ActionResultModel.model_validate(_unwrap(reply))


@router.post("/users/{user_id}/pause")
async def pause_route(user_id: str, gateway: GamingGateway = Depends(get_gateway)) -> dict[str, bool]:
    return _unwrap(await gateway.pause(user_id))


@router.post("/users/{user_id}/resume")
async def resume_route(user_id: str, gateway: GamingGateway = Depends(get_gateway)) -> dict[str, bool]:
    return _unwrap(await gateway.resume(user_id))


@router.post("/users/{user_id}/ai/suggest", response_model=SuggestionModel)
async def suggest_route(user_id: str, gateway: GamingGateway = Depends(get_gateway)) -> SuggestionModel:
    data = _require_ai(_unwrap(await gateway.suggest(user_id)))
    return SuggestionModel.model_validate(data)


@router.post("/users/{user_id}/ai/execute", response_model=AIExecuteResponse)
async def execute_ai_route(user_id: str, gateway: GamingGateway = Depends(get_gateway)) -> AIExecuteResponse:
    data = _require_ai(_unwrap(await gateway.execute_ai(user_id)))
    return AIExecuteResponse.model_validate(data)


@router.get("/status", response_model=StatusResponse)
async def status_route(gateway: GamingGateway = Depends(get_gateway)) -> StatusResponse:
    return StatusResponse.model_validate(_unwrap(await gateway.get_status()))


@router.get("/ai/stats")
async def ai_stats_route(
    game_id: str | None = Query(default=None),
    gateway: GamingGateway = Depends(get_gateway),
) -> dict[str, Any]:
    return _unwrap(await gateway.get_ai_stats(game_id))


@router.get("/users/{user_id}/mailbox", response_model=MailboxResponse)
async def mailbox_route(
    user_id: str,
    count: int = Query(default=100, ge=1, le=1000),
    r: redis.Redis = Depends(get_redis),
) -> MailboxResponse:
    mailbox = Mailbox(user_id=user_id)
    entries = read_mailbox(r=r, mailbox=mailbox, count=count)
    return MailboxResponse(
        key=mailbox.key,
        entries=[MailboxEntry(id=sid, fields=fields) for sid, fields in entries],
    )
