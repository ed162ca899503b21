from __future__ import annotations

from dataclasses import replace

import httpx
import pytest

from gamehub.config import GamingConfig
from gamehub.errors import GameNotFoundError, ValidationError
from gamehub.games.base import GameKind
from gamehub.games.browser_game import BrowserGame
from gamehub.games.registry import GameRegistry, default_registry, discover_browser_games, parse_manifest
from gamehub.games.simple_test import SimpleTestGame
from tests.conftest import WEB_DEMO, FakeClock

MANIFEST_URL = "https://assets.local/games/manifest.json"


def _client(handler: httpx.MockTransport) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=handler)


def test_default_registry(gaming_config: GamingConfig) -> None:
    registry = default_registry(gaming_config)

    assert [d.id for d in registry.list_games()] == ["simple_test", WEB_DEMO.id]
    assert [d.id for d in registry.list_games(kind=GameKind.browser)] == [WEB_DEMO.id]
    assert "simple_test" in registry
    assert len(registry) == 2


def test_default_registry_without_browser_games(gaming_config: GamingConfig) -> None:
    registry = default_registry(replace(gaming_config, enable_browser_games=False))
    assert [d.id for d in registry.list_games()] == ["simple_test"]


def test_definitions_build_fresh_games(clock: FakeClock) -> None:
    registry = GameRegistry()
    native = registry.register_native(SimpleTestGame, seed=5, spawn_interval_s=None)
    web = registry.register_browser(WEB_DEMO)

    a, b = native.create(clock=clock), native.create(clock=clock)
    page_game = web.create(clock=clock)

    assert isinstance(a, SimpleTestGame)
    assert a is not b
    assert a.seed == 5
    assert isinstance(page_game, BrowserGame)
    assert page_game.config.score_limit == 50
    assert web.as_dict()["url"] == WEB_DEMO.url


def test_duplicates_and_unknown_ids() -> None:
    registry = GameRegistry()
    registry.register_browser(WEB_DEMO)

    with pytest.raises(ValidationError):
        registry.register_browser(WEB_DEMO)
    registry.register_browser(replace(WEB_DEMO, name="Renamed"), replace=True)
    assert registry.get(WEB_DEMO.id).name == "Renamed"

    with pytest.raises(GameNotFoundError):
        registry.get("missing")


def test_parse_manifest_shapes() -> None:
    entries = [{"id": "tetris2", "url": "https://assets.local/tetris2/"}, {"id": "no-url"}, "junk"]

    assert [s.id for s in parse_manifest(entries)] == ["tetris2"]
    assert [s.id for s in parse_manifest({"games": entries})] == ["tetris2"]
    assert parse_manifest("nope") == []
    assert parse_manifest(entries)[0].name == "tetris2"


@pytest.mark.asyncio
async def test_discovery_registers_new_games() -> None:
    registry = GameRegistry()
    registry.register_browser(WEB_DEMO)

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == MANIFEST_URL
        return httpx.Response(
            200,
            json={
                "games": [
                    {"id": "breakout", "name": "Breakout", "url": "https://assets.local/breakout/"},
                    {"id": WEB_DEMO.id, "url": "https://assets.local/other/"},
                ]
            },
        )

    async with _client(httpx.MockTransport(handler)) as client:
        added = await discover_browser_games(registry, client=client, manifest_url=MANIFEST_URL)

    assert added == ["breakout"]
    assert registry.get("breakout").kind == GameKind.browser
    assert registry.get(WEB_DEMO.id).url == WEB_DEMO.url


@pytest.mark.asyncio
async def test_discovery_failure_leaves_catalog_alone() -> None:
    registry = GameRegistry()

    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    for handler in (server_error, not_json, unreachable):
        async with _client(httpx.MockTransport(handler)) as client:
            assert await discover_browser_games(registry, client=client, manifest_url=MANIFEST_URL) == []

    assert len(registry) == 0
