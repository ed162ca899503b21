from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_FALLBACK_ACTIONS: tuple[str, ...] = ("up", "down", "left", "right", "click", "wait", "interact")

DEFAULT_LAUNCH_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
)


@dataclass(frozen=True, slots=True)
class AIConfig:
    min_actions_for_prediction: int = 10
    learning_rate: float = 0.01
    initial_exploration_rate: float = 0.1
    decay_rate: float = 0.995
    min_exploration_rate: float = 0.01
    learning_history_limit: int = 1000
    save_interval_s: float = 300.0

    # A success pattern needs `pattern_min_count` wins of one action within the last
    # `pattern_window` learning events (and at least `pattern_min_events` of them).
    pattern_window: int = 10
    pattern_min_events: int = 5
    pattern_min_count: int = 3
    # Strategies are scoring runs of `strategy_length` consecutive actions; best N kept.
    strategy_length: int = 3
    strategy_limit: int = 50

    # Reward shaping; the blended reward is clamped to [-1, 1].
    success_reward: float = 1.0
    failure_penalty: float = -0.5
    score_delta_weight: float = 0.1
    score_weight: float = 0.001

    exploration_confidence: float = 0.1
    max_confidence: float = 0.9
    # Visit count at which exploitation confidence saturates.
    confidence_visits: int = 100

    fallback_actions: tuple[str, ...] = DEFAULT_FALLBACK_ACTIONS

    # "file" (one JSON document per game id) or "redis".
    store: str = "file"


@dataclass(frozen=True, slots=True)
class BrowserConfig:
    headless: bool = True
    launch_args: tuple[str, ...] = DEFAULT_LAUNCH_ARGS
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: str = "GameHub Browser Engine 1.0"
    default_timeout_ms: int = 30_000
    navigation_wait_until: str = "networkidle"
    # Empty means every domain is allowed.
    allowed_domains: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BrowserGameSpec:
    id: str
    name: str
    url: str
    description: str = ""
    time_limit_s: float | None = 300.0
    score_limit: int | None = None


DEFAULT_BROWSER_GAMES: tuple[BrowserGameSpec, ...] = (
    BrowserGameSpec(
        id="browser_example",
        name="Browser Example",
        url="https://example.com/game",
        description="Example game demonstrating browser automation",
        time_limit_s=300.0,
    ),
    BrowserGameSpec(
        id="2048",
        name="2048",
        url="https://play2048.co/",
        description="Classic sliding number puzzle",
        time_limit_s=600.0,
        score_limit=2048,
    ),
    BrowserGameSpec(
        id="snake",
        name="Snake",
        url="https://www.google.com/fbx?fbx=snake_arcade",
        description="Classic snake game",
        time_limit_s=300.0,
    ),
    BrowserGameSpec(
        id="tetris",
        name="Tetris",
        url="https://tetris.com/play-tetris",
        description="Classic falling blocks game",
        time_limit_s=600.0,
    ),
    BrowserGameSpec(
        id="pacman",
        name="Pac-Man",
        url="https://www.google.com/fbx?fbx=pac_man",
        description="Classic Pac-Man",
        time_limit_s=900.0,
    ),
)


@dataclass(frozen=True, slots=True)
class GamingConfig:
    max_concurrent_sessions: int = 5
    session_timeout_s: float = 1800.0
    cleanup_interval_s: float = 300.0
    # Upper bound for page close + model flush when a session ends.
    cleanup_timeout_s: float = 10.0
    enable_browser_games: bool = True
    enable_learning: bool = True
    # Publish lifecycle events to per-user Redis Stream mailboxes.
    enable_mailbox: bool = True
    history_limit: int = 1000
    static_manifest_url: str | None = None
    data_dir: Path = Path("./data/gaming")
    ai: AIConfig = field(default_factory=AIConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    browser_games: tuple[BrowserGameSpec, ...] = DEFAULT_BROWSER_GAMES

    @property
    def ai_data_dir(self) -> Path:
        return self.data_dir / "ai"

    @classmethod
    def from_env(cls) -> "GamingConfig":
        """Build the configuration from `GAMEHUB_*` environment variables.

        Unset variables keep the defaults above.
        """

        base = cls()
        ai = replace(
            base.ai,
            min_actions_for_prediction=_env_int("GAMEHUB_AI_MIN_ACTIONS", base.ai.min_actions_for_prediction),
            learning_rate=_env_float("GAMEHUB_AI_LEARNING_RATE", base.ai.learning_rate),
            initial_exploration_rate=_env_float("GAMEHUB_AI_EXPLORATION_RATE", base.ai.initial_exploration_rate),
            decay_rate=_env_float("GAMEHUB_AI_DECAY_RATE", base.ai.decay_rate),
            min_exploration_rate=_env_float("GAMEHUB_AI_MIN_EXPLORATION_RATE", base.ai.min_exploration_rate),
            save_interval_s=_env_float("GAMEHUB_AI_SAVE_INTERVAL_S", base.ai.save_interval_s),
            store=os.environ.get("GAMEHUB_AI_STORE", base.ai.store),
        )
        domains = os.environ.get("GAMEHUB_BROWSER_ALLOWED_DOMAINS", "")
        browser = replace(
            base.browser,
            headless=_env_bool("GAMEHUB_BROWSER_HEADLESS", base.browser.headless),
            default_timeout_ms=_env_int("GAMEHUB_BROWSER_TIMEOUT_MS", base.browser.default_timeout_ms),
            allowed_domains=tuple(d.strip() for d in domains.split(",") if d.strip()),
        )
        return replace(
            base,
            max_concurrent_sessions=_env_int("GAMEHUB_MAX_SESSIONS", base.max_concurrent_sessions),
            session_timeout_s=_env_float("GAMEHUB_SESSION_TIMEOUT_S", base.session_timeout_s),
            cleanup_interval_s=_env_float("GAMEHUB_CLEANUP_INTERVAL_S", base.cleanup_interval_s),
            cleanup_timeout_s=_env_float("GAMEHUB_CLEANUP_TIMEOUT_S", base.cleanup_timeout_s),
            enable_browser_games=_env_bool("GAMEHUB_ENABLE_BROWSER", base.enable_browser_games),
            enable_learning=_env_bool("GAMEHUB_ENABLE_LEARNING", base.enable_learning),
            enable_mailbox=_env_bool("GAMEHUB_ENABLE_MAILBOX", base.enable_mailbox),
            static_manifest_url=os.environ.get("GAMEHUB_STATIC_MANIFEST_URL") or None,
            data_dir=Path(os.environ.get("GAMEHUB_DATA_DIR", str(base.data_dir))),
            ai=ai,
            browser=browser,
        )
