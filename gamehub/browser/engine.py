from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn, Protocol
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Playwright, async_playwright

from gamehub.config import BrowserConfig
from gamehub.errors import (
    EngineUnavailableError,
    FatalEngineError,
    PageConflictError,
    PageNotFoundError,
    TransientIOError,
    ValidationError,
)

logger = logging.getLogger(__name__)

FailureListener = Callable[[str], None]


class BrowserLauncher(Protocol):
    async def launch(self, config: BrowserConfig) -> Any:  # pragma: no cover
        ...

    async def stop(self) -> None:  # pragma: no cover
        ...


class PlaywrightLauncher:
    """Starts Playwright and one chromium process."""

    def __init__(self) -> None:
        self._playwright: Playwright | None = None

    async def launch(self, config: BrowserConfig) -> Any:
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=config.headless, args=list(config.launch_args))

    async def stop(self) -> None:
        pw, self._playwright = self._playwright, None
        if pw is not None:
            await pw.stop()


class BrowserGameEngine:
    """Pool of browser pages over one shared headless browser, keyed by session id.

    Every primitive requires a page registered for the session. Browser errors surface as
    TransientIOError unless the browser process itself is gone, which is FatalEngineError
    and flips the engine to not-ready.
    """

    def __init__(self, config: BrowserConfig | None = None, *, launcher: BrowserLauncher | None = None) -> None:
        self.config = config or BrowserConfig()
        self._launcher: BrowserLauncher = launcher or PlaywrightLauncher()
        self._browser: Any = None
        self._pages: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[FailureListener] = []
        self._shutting_down = False
        self.is_ready = False
        self.failure_reason: str | None = None

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._listeners.append(listener)

    async def initialize(self) -> None:
        logger.info("starting browser engine (headless=%s)", self.config.headless)
        try:
            self._browser = await self._launcher.launch(self.config)
        except Exception as e:
            self.is_ready = False
            self.failure_reason = str(e)
            logger.error("browser engine failed to start: %s", e)
            raise FatalEngineError(f"Browser failed to start: {e}") from e

        self._browser.on("disconnected", lambda *_: self._on_disconnected())
        self._shutting_down = False
        self.failure_reason = None
        self.is_ready = True
        logger.info("browser engine ready")

    # ---- pages -----------------------------------------------------------

    async def create_page_for_session(self, session_id: str, url: str | None = None) -> Any:
        if not self.is_ready or self._browser is None:
            raise EngineUnavailableError("Browser engine is not ready")

        async with self._lock:
            if session_id in self._pages:
                raise PageConflictError(f"Session {session_id} already has a page")
            # Reserve the slot so a concurrent call for the same session fails fast.
            self._pages[session_id] = None

        try:
            page = await self._browser.new_page(
                viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
                user_agent=self.config.user_agent,
            )
        except PlaywrightError as e:
            self._pages.pop(session_id, None)
            self._raise_for(e, f"open page for session {session_id}")

        page.set_default_timeout(self.config.default_timeout_ms)
        page.on("console", lambda msg: logger.debug("[browser %s] console: %s", session_id, msg.text))
        page.on("pageerror", lambda err: logger.warning("[browser %s] page error: %s", session_id, err))
        self._pages[session_id] = page

        if url:
            try:
                await self.navigate(session_id, url)
            except Exception:
                await self.close_page_for_session(session_id)
                raise

        logger.info("page opened for session %s", session_id)
        return page

    def get_page(self, session_id: str) -> Any:
        page = self._pages.get(session_id)
        if page is None:
            raise PageNotFoundError(f"No page for session {session_id}")
        return page

    def has_page(self, session_id: str) -> bool:
        return self._pages.get(session_id) is not None

    async def close_page_for_session(self, session_id: str) -> bool:
        """Close and forget the session's page. Returns False if there was nothing to close."""

        page = self._pages.pop(session_id, None)
        if page is None:
            return False
        try:
            await page.close()
            logger.info("page closed for session %s", session_id)
        except Exception as e:
            logger.warning("failed to close page for session %s: %s", session_id, e)
        return True

    # ---- primitives ------------------------------------------------------

    async def navigate(self, session_id: str, url: str) -> None:
        self._check_domain(url)
        page = self.get_page(session_id)
        await self._run(page.goto(url, wait_until=self.config.navigation_wait_until), f"navigate to {url}")
        logger.debug("session %s navigated to %s", session_id, url)

    async def click(self, session_id: str, selector: str | None = None, *, x: float | None = None, y: float | None = None) -> None:
        page = self.get_page(session_id)
        if selector:
            await self._run(page.click(selector), f"click {selector}")
        elif x is not None and y is not None:
            await self._run(page.mouse.click(x, y), f"click ({x}, {y})")
        else:
            raise ValidationError("click requires a selector or x/y coordinates")

    async def type_text(self, session_id: str, text: str, selector: str | None = None) -> None:
        page = self.get_page(session_id)
        if selector:
            await self._run(page.click(selector), f"focus {selector}")
        await self._run(page.keyboard.type(text), "type text")

    async def press_key(self, session_id: str, key: str) -> None:
        page = self.get_page(session_id)
        await self._run(page.keyboard.press(key), f"press {key}")

    async def scroll(self, session_id: str, delta_x: float = 0, delta_y: float = 100) -> None:
        page = self.get_page(session_id)
        await self._run(page.mouse.wheel(delta_x, delta_y), "scroll")

    async def mouse_move(self, session_id: str, x: float, y: float, steps: int = 1) -> None:
        page = self.get_page(session_id)
        await self._run(page.mouse.move(x, y, steps=steps), f"move mouse to ({x}, {y})")

    async def screenshot(self, session_id: str) -> bytes:
        page = self.get_page(session_id)
        return await self._run(page.screenshot(type="png", full_page=False), "screenshot")

    async def evaluate_script(self, session_id: str, script: str, arg: Any = None) -> Any:
        page = self.get_page(session_id)
        if arg is None:
            return await self._run(page.evaluate(script), "evaluate script")
        return await self._run(page.evaluate(script, arg), "evaluate script")

    async def wait_for_selector(self, session_id: str, selector: str, timeout_ms: int | None = None) -> None:
        page = self.get_page(session_id)
        timeout = timeout_ms if timeout_ms is not None else self.config.default_timeout_ms
        await self._run(page.wait_for_selector(selector, timeout=timeout), f"wait for {selector}")

    async def wait(self, session_id: str, ms: int) -> None:
        page = self.get_page(session_id)
        await self._run(page.wait_for_timeout(ms), "wait")

    async def get_content(self, session_id: str, selector: str | None = None) -> str | None:
        page = self.get_page(session_id)
        if selector is None:
            return await self._run(page.content(), "read content")
        return await self._run(page.text_content(selector), f"read {selector}")

    async def element_exists(self, session_id: str, selector: str) -> bool:
        page = self.get_page(session_id)
        try:
            return await page.query_selector(selector) is not None
        except PlaywrightError:
            return False

    async def get_attribute(self, session_id: str, selector: str, attribute: str) -> str | None:
        page = self.get_page(session_id)
        return await self._run(page.get_attribute(selector, attribute), f"read {selector}@{attribute}")

    async def page_info(self, session_id: str) -> dict[str, Any]:
        page = self.get_page(session_id)
        title = await self._run(page.title(), "read title")
        return {"url": page.url, "title": title}

    # ---- lifecycle -------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        active = [sid for sid, page in self._pages.items() if page is not None]
        return {"is_ready": self.is_ready, "active_pages": len(active), "sessions": sorted(active)}

    async def shutdown(self) -> None:
        logger.info("shutting down browser engine")
        self._shutting_down = True
        self.is_ready = False

        for session_id in list(self._pages):
            await self.close_page_for_session(session_id)
        self._pages.clear()

        browser, self._browser = self._browser, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.warning("failed to close browser: %s", e)
        try:
            await self._launcher.stop()
        except Exception as e:
            logger.warning("failed to stop browser driver: %s", e)
        logger.info("browser engine stopped")

    # ---- internals -------------------------------------------------------

    async def _run(self, op: Awaitable[Any], what: str) -> Any:
        try:
            return await op
        except PlaywrightError as e:
            self._raise_for(e, what)

    def _raise_for(self, e: Exception, what: str) -> NoReturn:
        if self._shutting_down:
            raise EngineUnavailableError(f"Browser engine is shutting down ({what})") from e
        if self._browser is None or not self._browser.is_connected():
            self._mark_failed(f"browser disconnected during {what}")
            raise FatalEngineError(f"Browser is gone ({what}): {e}") from e
        raise TransientIOError(f"Failed to {what}: {e}") from e

    def _check_domain(self, url: str) -> None:
        allowed = self.config.allowed_domains
        if not allowed:
            return
        host = urlparse(url).hostname or ""
        if not any(host == d or host.endswith(f".{d}") for d in allowed):
            raise ValidationError(f"Domain not allowed: {host}")

    def _on_disconnected(self) -> None:
        if self._shutting_down:
            return
        self._mark_failed("browser disconnected")

    def _mark_failed(self, reason: str) -> None:
        if not self.is_ready and self.failure_reason is not None:
            return
        self.is_ready = False
        self.failure_reason = reason
        logger.error("browser engine failure: %s", reason)
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("browser failure listener raised")
