from __future__ import annotations

import logging
import os

import httpx
import redis
from fastapi import FastAPI

from gamehub.ai.engine import GameAI
from gamehub.ai.store import create_model_store
from gamehub.api.routes import router
from gamehub.browser.engine import BrowserGameEngine, BrowserLauncher
from gamehub.config import GamingConfig
from gamehub.gateway import GamingGateway
from gamehub.games.registry import default_registry
from gamehub.infra.redis_client import close_quietly, create_redis
from gamehub.manager import GamingManager
from gamehub.notifications import EventOutbox, UserSubscribers

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def build_manager(
    config: GamingConfig,
    *,
    r: redis.Redis | None = None,
    subscribers: UserSubscribers | None = None,
    launcher: BrowserLauncher | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> GamingManager:
    """Wire the services once; nothing here is a module-level singleton."""

    store = create_model_store(kind=config.ai.store, root=config.ai_data_dir, r=r)
    ai = GameAI(config.ai, store=store, learning_enabled=config.enable_learning)
    browser = BrowserGameEngine(config.browser, launcher=launcher) if config.enable_browser_games else None
    outbox = EventOutbox(r=r if config.enable_mailbox else None, subscribers=subscribers)
    return GamingManager(
        config,
        default_registry(config),
        ai=ai,
        browser=browser,
        outbox=outbox,
        http_client=http_client,
    )


def create_app(
    config: GamingConfig | None = None,
    *,
    redis_client: redis.Redis | None = None,
    launcher: BrowserLauncher | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    app = FastAPI(title="gamehub", version=__version__)
    app.include_router(router)
    app.state.subscribers = UserSubscribers()
    app.state.gateway = None

    @app.on_event("startup")
    async def _startup() -> None:
        cfg = config or GamingConfig.from_env()
        owns_redis = redis_client is None and (cfg.enable_mailbox or cfg.ai.store == "redis")
        r = create_redis() if owns_redis else redis_client
        manager = build_manager(cfg, r=r, subscribers=app.state.subscribers, launcher=launcher, http_client=http_client)
        await manager.start()
        app.state.redis = r
        app.state.owns_redis = owns_redis
        app.state.manager = manager
        app.state.gateway = GamingGateway(manager)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        manager: GamingManager | None = getattr(app.state, "manager", None)
        if manager is not None:
            await manager.shutdown()
        app.state.gateway = None
        if getattr(app.state, "owns_redis", False):
            close_quietly(app.state.redis)

    @app.get("/info")
    async def info() -> dict[str, str]:
        return {"name": "gamehub", "version": __version__}

    return app


logging.basicConfig(level=os.environ.get("GAMEHUB_LOG_LEVEL", "INFO").upper())

app = create_app()
