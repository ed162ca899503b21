from __future__ import annotations

import logging
import os

import redis

logger = logging.getLogger(__name__)


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL", "redis://localhost:6379/0")


def create_redis(url: str | None = None) -> redis.Redis:
    # decode_responses=True => model JSON and stream fields come back as str
    return redis.Redis.from_url(url or get_redis_url(), decode_responses=True)


def is_reachable(r: redis.Redis) -> bool:
    try:
        return bool(r.ping())
    except redis.RedisError as e:
        logger.warning("redis is not reachable: %s", e)
        return False


def close_quietly(r: redis.Redis | None) -> None:
    if r is None:
        return
    try:
        r.close()
    except Exception:
        # Some redis client versions don't require explicit close.
        pass
