from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError

from gamehub.config import AIConfig, BrowserConfig, BrowserGameSpec, GamingConfig

WEB_DEMO = BrowserGameSpec(
    id="web_demo",
    name="Web Demo",
    url="https://games.local/demo/index.html",
    description="Static demo served by the asset server",
    time_limit_s=None,
    score_limit=50,
)


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    """Load repo .env for local runs, but never in CI so tests stay hermetic."""

    if os.environ.get("CI") and os.environ.get("GAMEHUB_LOAD_DOTENV_FOR_TESTS") != "1":
        return

    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        from dotenv import load_dotenv

        load_dotenv(dotenv_path=env_path, override=False)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _FakeMouse:
    def __init__(self, page: "FakePage") -> None:
        self.page = page

    async def click(self, x: float, y: float) -> None:
        self.page.record("mouse.click", x, y)

    async def move(self, x: float, y: float, steps: int = 1) -> None:
        self.page.record("mouse.move", x, y, steps)

    async def wheel(self, delta_x: float, delta_y: float) -> None:
        self.page.record("mouse.wheel", delta_x, delta_y)


class _FakeKeyboard:
    def __init__(self, page: "FakePage") -> None:
        self.page = page

    async def type(self, text: str) -> None:
        self.page.record("keyboard.type", text)

    async def press(self, key: str) -> None:
        self.page.record("keyboard.press", key)


class FakePage:
    """Stands in for a Playwright Page; records every call and counts closes."""

    def __init__(self, browser: "FakeBrowser") -> None:
        self.browser = browser
        self.url = "about:blank"
        self.calls: list[tuple[Any, ...]] = []
        self.close_count = 0
        self.score: int | None = 0
        self.elements: set[str] = {"body", "canvas", "#score"}
        self.eval_result: Any = None
        self.fail_with: Exception | None = None
        self.fail_close = False
        self.mouse = _FakeMouse(self)
        self.keyboard = _FakeKeyboard(self)

    def record(self, *call: Any) -> None:
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    def set_default_timeout(self, ms: int) -> None:
        self.calls.append(("set_default_timeout", ms))

    def on(self, event: str, handler: Any) -> None:
        self.calls.append(("on", event))

    async def goto(self, url: str, wait_until: str | None = None) -> None:
        self.record("goto", url, wait_until)
        self.url = url

    async def click(self, selector: str) -> None:
        self.record("click", selector)

    async def screenshot(self, type: str = "png", full_page: bool = False) -> bytes:
        self.record("screenshot")
        return b"\x89PNG fake"

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.record("evaluate", script, arg)
        if isinstance(arg, list):
            return self.score
        return self.eval_result

    async def wait_for_selector(self, selector: str, timeout: int | None = None) -> None:
        self.record("wait_for_selector", selector, timeout)

    async def wait_for_timeout(self, ms: int) -> None:
        self.record("wait_for_timeout", ms)

    async def content(self) -> str:
        self.record("content")
        return "<html><body><canvas></canvas></body></html>"

    async def text_content(self, selector: str) -> str | None:
        self.record("text_content", selector)
        return "Score: 7" if selector in self.elements else None

    async def query_selector(self, selector: str) -> object | None:
        return object() if selector in self.elements else None

    async def get_attribute(self, selector: str, attribute: str) -> str | None:
        self.record("get_attribute", selector, attribute)
        return None

    async def title(self) -> str:
        self.record("title")
        return "Fake Game"

    async def close(self) -> None:
        self.close_count += 1
        if self.fail_close:
            raise PlaywrightError("page already closed")


class FakeBrowser:
    def __init__(self) -> None:
        self.pages: list[FakePage] = []
        self.connected = True
        self.closed = False
        self._handlers: dict[str, list[Any]] = {}

    def on(self, event: str, handler: Any) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def is_connected(self) -> bool:
        return self.connected

    async def new_page(self, viewport: dict[str, int] | None = None, user_agent: str | None = None) -> FakePage:
        if not self.connected:
            raise PlaywrightError("Target page, context or browser has been closed")
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    def crash(self) -> None:
        self.connected = False
        for handler in self._handlers.get("disconnected", []):
            handler(self)


class FakeLauncher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.browser = FakeBrowser()
        self.launch_count = 0
        self.stopped = False

    async def launch(self, config: BrowserConfig) -> FakeBrowser:
        self.launch_count += 1
        if self.fail:
            raise RuntimeError("chromium not installed")
        return self.browser

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def gaming_config(tmp_path: Path) -> GamingConfig:
    base = GamingConfig()
    return replace(
        base,
        max_concurrent_sessions=3,
        session_timeout_s=60.0,
        cleanup_interval_s=0,
        cleanup_timeout_s=2.0,
        static_manifest_url=None,
        enable_mailbox=False,
        data_dir=tmp_path / "gaming",
        ai=replace(AIConfig(), save_interval_s=0),
        browser_games=(WEB_DEMO,),
    )
