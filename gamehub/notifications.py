from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import redis
from fastapi import WebSocket

from gamehub.core.state import utcnow
from gamehub.streams import Mailbox, publish_many, publish_to_mailbox

logger = logging.getLogger(__name__)


class UserSubscribers:
    """Live WebSocket subscribers per user, in this process only.

    A socket that fails a send is unsubscribed on the spot; the user keeps the Redis
    mailbox as the durable copy of lifecycle events.
    """

    def __init__(self) -> None:
        self._sockets: dict[str, list[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._sockets.setdefault(user_id, []).append(websocket)
        logger.debug("websocket subscribed for %s", user_id)

    async def unsubscribe(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._drop(user_id, [websocket])

    def count(self, user_id: str) -> int:
        return len(self._sockets.get(user_id, ()))

    async def send(self, user_id: str, event: dict[str, Any]) -> int:
        """Send `event` to every socket of `user_id`; returns how many received it."""

        async with self._lock:
            sockets = list(self._sockets.get(user_id, ()))

        delivered = 0
        dead: list[WebSocket] = []
        for ws in sockets:
            try:
                await ws.send_json(event)
            except Exception as e:
                logger.info("dropping websocket for %s after failed %s: %s", user_id, event.get("type"), e)
                dead.append(ws)
            else:
                delivered += 1

        if dead:
            async with self._lock:
                self._drop(user_id, dead)
        return delivered

    def _drop(self, user_id: str, sockets: list[WebSocket]) -> None:
        live = [ws for ws in self._sockets.get(user_id, ()) if ws not in sockets]
        if live:
            self._sockets[user_id] = live
        else:
            self._sockets.pop(user_id, None)


class EventOutbox:
    """Delivers lifecycle events to the chat layer.

    Each event goes to the user's Redis Stream mailbox (when a client is configured) and
    to any WebSocket subscribers of that user. Delivery problems are logged and swallowed:
    a notification must never change session state.
    """

    def __init__(self, *, r: redis.Redis | None = None, subscribers: UserSubscribers | None = None) -> None:
        self.r = r
        self.subscribers = subscribers

    async def publish(self, user_id: str, event_type: str, **fields: Any) -> None:
        payload: dict[str, Any] = {"type": event_type, "user_id": user_id, "ts": utcnow().isoformat(), **fields}

        if self.r is not None:
            try:
                publish_to_mailbox(r=self.r, mailbox=Mailbox(user_id=user_id), fields=payload)
            except redis.RedisError as e:
                logger.warning("mailbox publish failed for %s (%s): %s", user_id, event_type, e)

        await self._broadcast(user_id, payload)

    async def notify(self, user_id: str, event_type: str, **fields: Any) -> None:
        """WebSocket only; per-action updates are too chatty for the mailbox."""

        await self._broadcast(user_id, {"type": event_type, "user_id": user_id, "ts": utcnow().isoformat(), **fields})

    async def publish_to_users(self, user_ids: Iterable[str], event_type: str, **fields: Any) -> None:
        users = sorted(set(user_ids))
        if not users:
            return
        ts = utcnow().isoformat()
        payloads = {uid: {"type": event_type, "user_id": uid, "ts": ts, **fields} for uid in users}

        if self.r is not None:
            try:
                publish_many(r=self.r, entries=[(Mailbox(user_id=uid).key, p) for uid, p in payloads.items()])
            except redis.RedisError as e:
                logger.warning("mailbox publish failed for %d user(s) (%s): %s", len(users), event_type, e)

        for uid, payload in payloads.items():
            await self._broadcast(uid, payload)

    async def _broadcast(self, user_id: str, payload: dict[str, Any]) -> None:
        if self.subscribers is None:
            return
        try:
            await self.subscribers.send(user_id, payload)
        except Exception:
            logger.exception("websocket broadcast failed for %s", user_id)
