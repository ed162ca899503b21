from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from gamehub.config import BrowserGameSpec, GamingConfig
from gamehub.errors import GameNotFoundError, ValidationError
from gamehub.games.base import BaseGame, Clock, GameKind
from gamehub.games.browser_game import BrowserGame
from gamehub.games.simple_test import SimpleTestGame

logger = logging.getLogger(__name__)

GameFactory = Callable[[Clock], BaseGame]


@dataclass(frozen=True, slots=True)
class GameDefinition:
    id: str
    kind: GameKind
    name: str
    factory: GameFactory
    description: str = ""
    url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def create(self, *, clock: Clock = time.monotonic) -> BaseGame:
        return self.factory(clock)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "description": self.description,
            "url": self.url,
            **self.metadata,
        }


class GameRegistry:
    """Explicit game id -> factory catalog, assembled once at startup."""

    def __init__(self) -> None:
        self._games: dict[str, GameDefinition] = {}

    def register(self, definition: GameDefinition, *, replace: bool = False) -> None:
        if definition.id in self._games and not replace:
            raise ValidationError(f"Game {definition.id} is already registered")
        self._games[definition.id] = definition
        logger.info("registered game %s (%s)", definition.id, definition.kind.value)

    def register_native(self, cls: type[BaseGame], **kwargs: Any) -> GameDefinition:
        definition = GameDefinition(
            id=cls.game_id,
            kind=GameKind.native,
            name=cls.name,
            description=cls.description,
            factory=lambda clock: cls(clock=clock, **kwargs),
            metadata=_native_metadata(cls),
        )
        self.register(definition)
        return definition

    def register_browser(self, spec: BrowserGameSpec, *, replace: bool = False) -> GameDefinition:
        definition = GameDefinition(
            id=spec.id,
            kind=GameKind.browser,
            name=spec.name,
            description=spec.description,
            url=spec.url,
            factory=lambda clock: BrowserGame(spec, clock=clock),
            metadata={
                "actions": sorted(BrowserGame.actions),
                "time_limit_s": spec.time_limit_s,
                "score_limit": spec.score_limit,
            },
        )
        self.register(definition, replace=replace)
        return definition

    def get(self, game_id: str) -> GameDefinition:
        definition = self._games.get(game_id)
        if definition is None:
            raise GameNotFoundError(f"Unknown game: {game_id}")
        return definition

    def __contains__(self, game_id: object) -> bool:
        return game_id in self._games

    def __len__(self) -> int:
        return len(self._games)

    def list_games(self, *, kind: GameKind | None = None) -> list[GameDefinition]:
        games = sorted(self._games.values(), key=lambda d: d.id)
        if kind is None:
            return games
        return [d for d in games if d.kind == kind]


def _native_metadata(cls: type[BaseGame]) -> dict[str, Any]:
    cfg = cls.default_config()
    return {
        "actions": sorted(cls.actions),
        "time_limit_s": cfg.time_limit_s,
        "score_limit": cfg.score_limit,
    }


def default_registry(config: GamingConfig) -> GameRegistry:
    registry = GameRegistry()
    registry.register_native(SimpleTestGame)
    if config.enable_browser_games:
        for spec in config.browser_games:
            registry.register_browser(spec)
    return registry


def parse_manifest(payload: Any) -> list[BrowserGameSpec]:
    """Accept either a bare list of entries or `{"games": [...]}`.

    Entries without both `id` and `url` are skipped.
    """

    entries: Iterable[Any]
    if isinstance(payload, dict):
        entries = payload.get("games") or []
    elif isinstance(payload, list):
        entries = payload
    else:
        return []

    specs: list[BrowserGameSpec] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        game_id, url = entry.get("id"), entry.get("url")
        if not game_id or not url:
            logger.warning("skipping manifest entry without id/url: %r", entry)
            continue
        specs.append(
            BrowserGameSpec(
                id=str(game_id),
                name=str(entry.get("name") or game_id),
                url=str(url),
                description=str(entry.get("description") or ""),
            )
        )
    return specs


async def discover_browser_games(
    registry: GameRegistry,
    *,
    client: httpx.AsyncClient,
    manifest_url: str,
) -> list[str]:
    """Register browser games listed by the static asset server.

    Discovery failures leave the catalog untouched. Returns the ids that were added.
    """

    try:
        resp = await client.get(manifest_url)
        resp.raise_for_status()
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("browser game discovery failed (%s): %s", manifest_url, e)
        return []

    added: list[str] = []
    for spec in parse_manifest(payload):
        if spec.id in registry:
            logger.debug("manifest game %s already registered", spec.id)
            continue
        registry.register_browser(spec)
        added.append(spec.id)

    logger.info("discovered %d browser game(s) from %s", len(added), manifest_url)
    return added
