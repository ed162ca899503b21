from __future__ import annotations

import logging
import time
from typing import Any

from gamehub.browser.engine import BrowserGameEngine
from gamehub.config import BrowserGameSpec
from gamehub.errors import EngineUnavailableError, TransientIOError
from gamehub.games.base import ActionOutcome, BaseGame, Clock, GameConfig, GameKind
from gamehub.turn_processing.validators import (
    ActionValidator,
    AnyOfFieldsValidator,
    NumericFieldsValidator,
    RequiredFieldsValidator,
)

logger = logging.getLogger(__name__)

START_SELECTORS = (
    ".start-button",
    "#startButton",
    "button[onclick*='start']",
    "button[onclick*='play']",
)
AREA_SELECTORS = ("canvas", "#game", ".game-area", "#gameArea")
SCORE_SELECTORS = ("#score", ".score", "[id*='score']", "[class*='score']", "#points", ".points")

# Returns the first integer found in the first matching score element, or null.
READ_SCORE_SCRIPT = """
(selectors) => {
  for (const sel of selectors) {
    const el = document.querySelector(sel);
    if (!el) continue;
    const text = el.textContent || el.innerText || el.value || "";
    const m = String(text).match(/\\d+/);
    if (m) return parseInt(m[0], 10);
  }
  return null;
}
"""


class BrowserGame(BaseGame):
    """A web game driven through a BrowserGameEngine page owned by the session.

    Input actions map onto engine primitives; after each action the score is scraped
    from the page and the difference is reported as the action's score delta.
    """

    kind = GameKind.browser
    actions = frozenset({"click", "key", "type", "move", "scroll", "screenshot", "wait", "analyze", "evaluate"})
    signature_fields = ("level", "lives", "score")

    def __init__(
        self,
        spec: BrowserGameSpec,
        *,
        config: GameConfig | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.game_id = spec.id
        self.name = spec.name
        self.description = spec.description
        self.spec = spec
        super().__init__(
            config=config or GameConfig(time_limit_s=spec.time_limit_s, score_limit=spec.score_limit),
            clock=clock,
        )
        self.start_selector: str | None = None
        self.area_selector: str | None = None
        self.score_selector: str | None = None
        self.last_screenshot: bytes | None = None

    def action_rules(self) -> dict[str, tuple[ActionValidator, ...]]:
        return {
            "click": (AnyOfFieldsValidator(groups=(("selector",), ("x", "y"))), NumericFieldsValidator(fields=("x", "y"))),
            "key": (AnyOfFieldsValidator(groups=(("key",), ("keys",), ("text",))),),
            "type": (RequiredFieldsValidator(fields=("text",)),),
            "move": (RequiredFieldsValidator(fields=("x", "y")), NumericFieldsValidator(fields=("x", "y", "steps"))),
            "scroll": (NumericFieldsValidator(fields=("deltaX", "deltaY")),),
            "wait": (NumericFieldsValidator(fields=("ms",), minimum=0, maximum=30_000),),
            "evaluate": (RequiredFieldsValidator(fields=("script",)),),
        }

    @property
    def browser(self) -> BrowserGameEngine:
        if self.context is None or self.context.browser is None:
            raise EngineUnavailableError(f"Game {self.game_id} has no browser engine bound")
        return self.context.browser

    @property
    def session_id(self) -> str:
        if self.context is None:
            raise EngineUnavailableError(f"Game {self.game_id} is not bound to a session")
        return self.context.session_id

    # ---- lifecycle hooks -------------------------------------------------

    async def on_initialize(self) -> None:
        await self.browser.wait_for_selector(self.session_id, "body", timeout_ms=10_000)

        for sel in START_SELECTORS:
            if await self.browser.element_exists(self.session_id, sel):
                self.start_selector = sel
                break
        for sel in AREA_SELECTORS:
            if await self.browser.element_exists(self.session_id, sel):
                self.area_selector = sel
                break
        for sel in SCORE_SELECTORS:
            if await self.browser.element_exists(self.session_id, sel):
                self.score_selector = sel
                break

        logger.info(
            "browser game %s loaded (start=%s area=%s score=%s)",
            self.game_id,
            self.start_selector,
            self.area_selector,
            self.score_selector,
        )

    async def on_start(self) -> None:
        if self.start_selector:
            await self.browser.click(self.session_id, self.start_selector)

    # ---- actions ---------------------------------------------------------

    async def on_action(self, action: str, data: dict[str, Any]) -> ActionOutcome:
        sid = self.session_id
        payload: dict[str, Any] | None = None

        if action == "click":
            if data.get("selector"):
                await self.browser.click(sid, str(data["selector"]))
                message = f"Clicked {data['selector']}"
            else:
                await self.browser.click(sid, x=float(data["x"]), y=float(data["y"]))
                message = f"Clicked ({data['x']}, {data['y']})"
        elif action == "key":
            if data.get("key"):
                await self.browser.press_key(sid, str(data["key"]))
                message = f"Pressed {data['key']}"
            elif data.get("keys"):
                keys = [str(k) for k in data["keys"]]
                for key in keys:
                    await self.browser.press_key(sid, key)
                message = f"Pressed {', '.join(keys)}"
            else:
                await self.browser.type_text(sid, str(data["text"]))
                message = "Typed text"
        elif action == "type":
            await self.browser.type_text(sid, str(data["text"]), selector=data.get("selector"))
            message = "Typed text"
        elif action == "move":
            await self.browser.mouse_move(sid, float(data["x"]), float(data["y"]), steps=int(data.get("steps") or 1))
            message = f"Mouse moved to ({data['x']}, {data['y']})"
        elif action == "scroll":
            dx, dy = data.get("deltaX") or 0, data.get("deltaY", 100)
            await self.browser.scroll(sid, dx, dy)
            message = f"Scrolled {dy}"
        elif action == "screenshot":
            self.last_screenshot = await self.browser.screenshot(sid)
            payload = {"screenshot_bytes": len(self.last_screenshot)}
            message = "Screenshot captured"
        elif action == "wait":
            if data.get("selector"):
                await self.browser.wait_for_selector(sid, str(data["selector"]), timeout_ms=int(data.get("ms") or 5000))
                message = f"Waited for {data['selector']}"
            else:
                ms = int(data.get("ms") or 1000)
                await self.browser.wait(sid, ms)
                message = f"Waited {ms}ms"
        elif action == "analyze":
            payload = await self.browser.page_info(sid)
            payload["score"] = await self.read_score()
            message = "Page analyzed"
        else:
            payload = {"value": await self.browser.evaluate_script(sid, str(data["script"]))}
            message = "Script evaluated"

        new_score = await self.read_score()
        delta = new_score - self.state.score if new_score is not None else 0
        return ActionOutcome(success=True, message=message, score_delta=delta, data=payload)

    async def read_score(self) -> int | None:
        selectors = [self.score_selector] if self.score_selector else list(SCORE_SELECTORS)
        try:
            value = await self.browser.evaluate_script(self.session_id, READ_SCORE_SCRIPT, selectors)
        except TransientIOError as e:
            logger.debug("score read failed for %s: %s", self.game_id, e)
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value)
