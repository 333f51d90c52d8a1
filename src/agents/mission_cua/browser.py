"""
Browser computer built on Playwright.

``PlaywrightComputer`` implements the viewport operations the computer-use
model asks for (click, type, scroll, keypress, drag, move, wait), navigation,
and a short-lived screenshot cache. Subclasses decide where the page comes
from: ``LocalPlaywrightComputer`` launches Chromium on this machine, the
remote session manager attaches to a provider-hosted browser over CDP.
"""

import asyncio
import base64
import logging
import re
import time
from typing import Any, Iterable, Optional

from playwright.async_api import async_playwright, Browser, Page, Playwright

from . import config

logger = logging.getLogger(__name__)

# ── Key translation ───────────────────────────────────────────────────────

CUA_KEY_TO_PLAYWRIGHT_KEY = {
    "/": "Divide",
    "\\": "Backslash",
    "alt": "Alt",
    "arrowdown": "ArrowDown",
    "arrowleft": "ArrowLeft",
    "arrowright": "ArrowRight",
    "arrowup": "ArrowUp",
    "down": "ArrowDown",
    "left": "ArrowLeft",
    "right": "ArrowRight",
    "up": "ArrowUp",
    "backspace": "Backspace",
    "capslock": "CapsLock",
    "cmd": "Meta",
    "command": "Meta",
    "super": "Meta",
    "win": "Meta",
    "meta": "Meta",
    "ctrl": "Control",
    "control": "Control",
    "delete": "Delete",
    "end": "End",
    "enter": "Enter",
    "return": "Enter",
    "esc": "Escape",
    "escape": "Escape",
    "home": "Home",
    "insert": "Insert",
    "option": "Alt",
    "pagedown": "PageDown",
    "pageup": "PageUp",
    "shift": "Shift",
    "space": " ",
    "tab": "Tab",
}

# Keys that are held down while the rest of a combo is pressed
HOTKEYS = {
    "alt": "Alt",
    "option": "Alt",
    "ctrl": "Control",
    "control": "Control",
    "shift": "Shift",
    "meta": "Meta",
    "cmd": "Meta",
    "command": "Meta",
    "super": "Meta",
    "win": "Meta",
}

_MOUSE_BUTTONS = {"left": "left", "right": "right", "middle": "middle", "wheel": "middle"}

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")


def translate_key(key: str) -> str:
    return CUA_KEY_TO_PLAYWRIGHT_KEY.get(key.lower(), key)


def sanitize_url(url: str) -> str:
    """Trim the URL and prepend https:// when it has no scheme."""
    if url is None or not str(url).strip():
        raise ValueError("URL must not be empty")
    url = str(url).strip()
    if _SCHEME_RE.match(url):
        return url
    return f"https://{url}"


def coerce_coordinate(value: Any, name: str = "coordinate") -> int:
    """Pixel coordinate as int. Non-numeric input raises ValueError."""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric, got {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            raise ValueError(f"{name} must be numeric, got {value!r}") from None
    raise ValueError(f"{name} must be numeric, got {value!r}")


class PlaywrightComputer:
    """Viewport operations and navigation over a Playwright page."""

    environment = "browser"

    def __init__(
        self,
        viewport_width: int = config.VIEWPORT_WIDTH,
        viewport_height: int = config.VIEWPORT_HEIGHT,
        screenshot_ttl: float = config.SCREENSHOT_CACHE_SECONDS,
        navigation_timeout_ms: int = config.NAVIGATION_TIMEOUT_MS,
        navigation_guard_wait: float = config.NAVIGATION_GUARD_WAIT_SECONDS,
    ):
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.screenshot_ttl = screenshot_ttl
        self.navigation_timeout_ms = navigation_timeout_ms
        self.navigation_guard_wait = navigation_guard_wait
        self._page: Optional[Page] = None
        self._screenshot_cache: Optional[tuple[float, str]] = None
        self.last_screenshot: Optional[str] = None
        self._navigating = False
        self._navigation_idle = asyncio.Event()
        self._navigation_idle.set()
        self.expired = False

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.viewport_width, self.viewport_height

    @property
    def page(self) -> Optional[Page]:
        return self._page

    def _require_page(self) -> Page:
        assert self._page, "Browser not started"
        return self._page

    # ── Lifecycle ───────────────────────────────────────────────────

    async def connect(self) -> None:
        raise NotImplementedError

    async def disconnect(self, login_completed: bool = True) -> None:
        raise NotImplementedError

    async def __aenter__(self) -> "PlaywrightComputer":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def ensure_connected(self) -> None:
        """Hook for subclasses that can lose their transport."""
        self._require_page()

    # ── Screenshots ─────────────────────────────────────────────────

    async def _capture_screenshot(self) -> bytes:
        return await self._require_page().screenshot(type="png", full_page=False)

    async def screenshot(self, force_refresh: bool = False) -> str:
        """Base64 PNG of the viewport, served from cache when fresh enough."""
        now = time.monotonic()
        if not force_refresh and self._screenshot_cache is not None:
            taken_at, cached = self._screenshot_cache
            if now - taken_at < self.screenshot_ttl:
                return cached

        img_bytes = await self._capture_screenshot()
        encoded = base64.b64encode(img_bytes).decode("utf-8")
        self._screenshot_cache = (time.monotonic(), encoded)
        self.last_screenshot = encoded
        return encoded

    def invalidate_screenshot_cache(self) -> None:
        self._screenshot_cache = None

    async def live_view_url(self) -> Optional[str]:
        return None

    async def wait_until_ready(self, timeout: float = config.BROWSER_READY_TIMEOUT_SECONDS) -> None:
        """Poll for a screenshot until the browser answers or ``timeout`` passes."""
        deadline = time.monotonic() + timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.screenshot(force_refresh=True)
                if attempt > 1:
                    logger.info(f"Browser ready after {attempt} attempts")
                return
            except Exception as e:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RuntimeError(
                        f"Browser not ready after {timeout:.0f}s: {e}"
                    ) from e
                delay = min(2.0 if attempt <= 3 else 5.0, remaining)
                logger.info(f"Browser not ready yet (attempt {attempt}), retrying in {delay:.0f}s")
                await asyncio.sleep(delay)

    # ── Viewport operations ─────────────────────────────────────────

    async def click(self, x: Any, y: Any, button: str = "left") -> None:
        page = self._require_page()
        px, py = coerce_coordinate(x, "x"), coerce_coordinate(y, "y")
        if button == "back":
            await page.go_back()
            return
        if button == "forward":
            await page.go_forward()
            return
        mouse_button = _MOUSE_BUTTONS.get(button)
        if mouse_button is None:
            raise ValueError(f"Unsupported mouse button: {button!r}")
        await page.mouse.click(px, py, button=mouse_button)

    async def double_click(self, x: Any, y: Any) -> None:
        page = self._require_page()
        await page.mouse.dblclick(coerce_coordinate(x, "x"), coerce_coordinate(y, "y"))

    async def scroll(self, x: Any, y: Any, scroll_x: Any = 0, scroll_y: Any = 0) -> None:
        page = self._require_page()
        await page.mouse.move(coerce_coordinate(x, "x"), coerce_coordinate(y, "y"))
        await page.mouse.wheel(
            coerce_coordinate(scroll_x, "scroll_x"), coerce_coordinate(scroll_y, "scroll_y")
        )

    async def type(self, text: str) -> None:
        if not isinstance(text, str):
            raise ValueError(f"text must be a string, got {type(text).__name__}")
        await self._require_page().keyboard.type(text)

    async def wait(self, ms: int = 1000) -> None:
        await asyncio.sleep(max(0, int(ms)) / 1000)

    async def move(self, x: Any, y: Any) -> None:
        page = self._require_page()
        await page.mouse.move(coerce_coordinate(x, "x"), coerce_coordinate(y, "y"))

    async def keypress(self, keys: Iterable[str]) -> None:
        """Press keys; leading modifiers are held while the rest are pressed."""
        keys = list(keys)
        if not keys or not all(isinstance(k, str) and k for k in keys):
            raise ValueError(f"keys must be a non-empty list of strings, got {keys!r}")
        keyboard = self._require_page().keyboard

        held = []
        for key in keys[:-1]:
            modifier = HOTKEYS.get(key.lower())
            if modifier is None:
                break
            held.append(modifier)

        if not held:
            for key in keys:
                await keyboard.press(translate_key(key))
            return

        for modifier in held:
            await keyboard.down(modifier)
        try:
            for key in keys[len(held):]:
                await keyboard.press(translate_key(key))
        finally:
            for modifier in reversed(held):
                await keyboard.up(modifier)

    async def drag(self, path: Iterable[Any]) -> None:
        points = [self._point(p) for p in path]
        if not points:
            raise ValueError("drag path must contain at least one point")
        mouse = self._require_page().mouse
        await mouse.move(*points[0])
        await mouse.down()
        for point in points[1:]:
            await mouse.move(*point)
        await mouse.up()

    @staticmethod
    def _point(p: Any) -> tuple[int, int]:
        if isinstance(p, dict):
            return coerce_coordinate(p.get("x"), "x"), coerce_coordinate(p.get("y"), "y")
        return coerce_coordinate(getattr(p, "x", None), "x"), coerce_coordinate(getattr(p, "y", None), "y")

    # ── Navigation ──────────────────────────────────────────────────

    async def goto(self, url: str) -> dict:
        """Navigate to ``url`` with a bounded timeout.

        A navigation already in flight gets a short grace period to finish;
        after that this one proceeds anyway with a warning.
        """
        target = sanitize_url(url)
        page = self._require_page()

        if self._navigating:
            logger.warning(f"Navigation already in progress, waiting before going to {target}")
            try:
                await asyncio.wait_for(self._navigation_idle.wait(), timeout=self.navigation_guard_wait)
            except asyncio.TimeoutError:
                logger.warning("Previous navigation still in progress, proceeding anyway")

        self._navigating = True
        self._navigation_idle.clear()
        try:
            await page.goto(target, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        finally:
            self._navigating = False
            self._navigation_idle.set()
            self.invalidate_screenshot_cache()
        logger.info(f"Navigated to {target}")
        return {"status": "success", "url": target}

    async def back(self) -> dict:
        page = self._require_page()
        try:
            await page.go_back(wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        finally:
            self.invalidate_screenshot_cache()
        return {"status": "success", "url": page.url}

    # ── Data extraction ─────────────────────────────────────────────

    async def extract_data(self, extraction: dict) -> dict:
        """Pull records off the current page.

        ``structured`` mode reads ``selectors.container`` elements and maps
        ``selectors.fields`` (name → CSS selector) inside each one. ``smart``
        mode returns visible text lines containing any of ``keywords``.
        """
        page = self._require_page()
        mode = extraction.get("mode", "smart")
        max_records = int(extraction.get("max_records") or extraction.get("maxRecords") or 50)

        if mode == "structured":
            selectors = extraction.get("selectors") or {}
            container = selectors.get("container")
            fields = selectors.get("fields") or {}
            if not container or not fields:
                raise ValueError("structured extraction needs selectors.container and selectors.fields")
            records = await page.evaluate(
                """([container, fields, max]) => {
                    const out = [];
                    for (const el of document.querySelectorAll(container)) {
                        if (out.length >= max) break;
                        const rec = {};
                        for (const [name, sel] of Object.entries(fields)) {
                            const node = el.querySelector(sel);
                            rec[name] = node ? (node.innerText || node.textContent || '').trim() : null;
                        }
                        out.push(rec);
                    }
                    return out;
                }""",
                [container, fields, max_records],
            )
        else:
            keywords = [k.lower() for k in extraction.get("keywords") or [] if k]
            text = await page.evaluate("() => document.body ? document.body.innerText : ''")
            lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
            if keywords:
                lines = [line for line in lines if any(k in line.lower() for k in keywords)]
            records = [{"text": line} for line in lines[:max_records]]

        logger.info(f"Extracted {len(records)} record(s) using {mode} mode")
        return {
            "status": "success",
            "data_type": extraction.get("data_type") or extraction.get("dataType"),
            "count": len(records),
            "records": records,
        }


class LocalPlaywrightComputer(PlaywrightComputer):
    """Chromium launched on this machine. Used for development runs."""

    def __init__(self, headless: bool = config.HEADLESS, start_url: Optional[str] = config.START_URL, **kwargs):
        super().__init__(**kwargs)
        self.headless = headless
        self.start_url = start_url
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def connect(self) -> None:
        """Launch browser and create a new page."""
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--no-sandbox", "--disable-gpu", "--disable-dev-shm-usage"],
        )
        self._page = await self._browser.new_page(
            viewport={"width": self.viewport_width, "height": self.viewport_height},
            locale="en-US",
            timezone_id="America/New_York",
        )
        if self.start_url:
            await self.goto(self.start_url)
        logger.info(f"Local browser started (headless={self.headless})")

    async def disconnect(self, login_completed: bool = True) -> None:
        """Close browser and cleanup."""
        for name, closer in (
            ("page", self._page.close if self._page else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")
        self._page = None
        self._browser = None
        self._playwright = None
        logger.info("Local browser stopped")
