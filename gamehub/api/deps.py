from __future__ import annotations

import redis
from fastapi import HTTPException, Request, status

from gamehub.gateway import GamingGateway


def get_gateway(request: Request) -> GamingGateway:
    gateway: GamingGateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Gaming service is not started")
    return gateway


def get_redis(request: Request) -> redis.Redis:
    r: redis.Redis | None = getattr(request.app.state, "redis", None)
    if r is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Redis is not configured")
    return r
