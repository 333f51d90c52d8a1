"""
Unit Tests for the Playwright Computer

Tests viewport operations, key translation, URL sanitisation, the screenshot
cache, the navigation guard and data extraction against a fake page.
"""

import asyncio
import base64

import pytest
from unittest.mock import AsyncMock, MagicMock, call, patch


class TestHelpers:
    """URL, key and coordinate helpers."""

    @pytest.mark.parametrize("raw, expected", [
        ("example.com", "https://example.com"),
        ("  example.com/path  ", "https://example.com/path"),
        ("http://example.com", "http://example.com"),
        ("https://example.com", "https://example.com"),
    ])
    def test_sanitize_url(self, raw, expected):
        from src.agents.mission_cua.browser import sanitize_url

        assert sanitize_url(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", None])
    def test_sanitize_url_rejects_empty(self, raw):
        from src.agents.mission_cua.browser import sanitize_url

        with pytest.raises(ValueError):
            sanitize_url(raw)

    def test_translate_key(self):
        from src.agents.mission_cua.browser import translate_key

        assert translate_key("ENTER") == "Enter"
        assert translate_key("ctrl") == "Control"
        assert translate_key("a") == "a"

    @pytest.mark.parametrize("value", ["abc", None, True, [1]])
    def test_coerce_coordinate_rejects_non_numeric(self, value):
        from src.agents.mission_cua.browser import coerce_coordinate

        with pytest.raises(ValueError):
            coerce_coordinate(value, "x")

    def test_coerce_coordinate_accepts_numeric_strings(self):
        from src.agents.mission_cua.browser import coerce_coordinate

        assert coerce_coordinate("12.7") == 12
        assert coerce_coordinate(5.9) == 5


class TestViewportOperations:
    """Mouse and keyboard calls reach the page."""

    @pytest.mark.asyncio
    async def test_click_left(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.click(10, 20)

        fake_page.mouse.click.assert_awaited_once_with(10, 20, button="left")

    @pytest.mark.asyncio
    async def test_wheel_button_maps_to_middle(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.click(1, 2, "wheel")

        fake_page.mouse.click.assert_awaited_once_with(1, 2, button="middle")

    @pytest.mark.asyncio
    async def test_back_button_navigates_back(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.click(1, 2, "back")

        fake_page.go_back.assert_awaited_once()
        fake_page.mouse.click.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_click_rejects_bad_coordinates(self, fake_computer):
        await fake_computer.connect()

        with pytest.raises(ValueError):
            await fake_computer.click("here", 20)

    @pytest.mark.asyncio
    async def test_scroll_moves_then_wheels(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.scroll(100, 200, 0, 300)

        fake_page.mouse.move.assert_awaited_once_with(100, 200)
        fake_page.mouse.wheel.assert_awaited_once_with(0, 300)

    @pytest.mark.asyncio
    async def test_type_requires_string(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.type("hello")

        fake_page.keyboard.type.assert_awaited_once_with("hello")
        with pytest.raises(ValueError):
            await fake_computer.type(42)

    @pytest.mark.asyncio
    async def test_hotkey_holds_modifier(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.keypress(["CTRL", "a"])

        fake_page.keyboard.down.assert_awaited_once_with("Control")
        fake_page.keyboard.press.assert_awaited_once_with("a")
        fake_page.keyboard.up.assert_awaited_once_with("Control")

    @pytest.mark.asyncio
    async def test_modifier_released_when_press_fails(self, fake_computer, fake_page):
        await fake_computer.connect()
        fake_page.keyboard.press.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await fake_computer.keypress(["ctrl", "shift", "t"])

        assert fake_page.keyboard.up.await_args_list == [call("Shift"), call("Control")]

    @pytest.mark.asyncio
    async def test_plain_keys_are_pressed_in_order(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.keypress(["ENTER", "TAB"])

        assert fake_page.keyboard.press.await_args_list == [call("Enter"), call("Tab")]
        fake_page.keyboard.down.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_drag_follows_path(self, fake_computer, fake_page):
        await fake_computer.connect()
        await fake_computer.drag([{"x": 1, "y": 1}, {"x": 5, "y": 6}])

        assert fake_page.mouse.move.await_args_list == [call(1, 1), call(5, 6)]
        fake_page.mouse.down.assert_awaited_once()
        fake_page.mouse.up.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_operations_need_a_started_browser(self, fake_computer):
        with pytest.raises(AssertionError, match="Browser not started"):
            await fake_computer.click(1, 1)


class TestScreenshotCache:
    """Cached image within the TTL, fresh capture otherwise."""

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, fake_computer, fake_page):
        await fake_computer.connect()

        first = await fake_computer.screenshot()
        second = await fake_computer.screenshot()

        assert first == second
        assert fake_page.screenshot.await_count == 1
        assert base64.b64decode(first).startswith(b"\x89PNG")

    @pytest.mark.asyncio
    async def test_force_refresh_recaptures(self, fake_computer, fake_page):
        await fake_computer.connect()

        await fake_computer.screenshot()
        await fake_computer.screenshot(force_refresh=True)

        assert fake_page.screenshot.await_count == 2

    @pytest.mark.asyncio
    async def test_expired_cache_recaptures(self, fake_page):
        from tests.mocks.fake_browser import FakeComputer

        computer = FakeComputer(page=fake_page, screenshot_ttl=0.0)
        await computer.connect()

        await computer.screenshot()
        await computer.screenshot()

        assert fake_page.screenshot.await_count == 2

    @pytest.mark.asyncio
    async def test_goto_invalidates_cache(self, fake_computer, fake_page):
        await fake_computer.connect()

        await fake_computer.screenshot()
        await fake_computer.goto("example.com")
        await fake_computer.screenshot()

        assert fake_page.screenshot.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_navigation_still_invalidates_cache(self, fake_computer, fake_page):
        await fake_computer.connect()
        fake_page.goto.side_effect = RuntimeError("net::ERR_ABORTED")

        await fake_computer.screenshot()
        with pytest.raises(RuntimeError):
            await fake_computer.goto("example.com")
        await fake_computer.screenshot()

        assert fake_page.screenshot.await_count == 2


class TestNavigation:
    """goto/back behaviour."""

    @pytest.mark.asyncio
    async def test_goto_sanitizes_and_bounds_timeout(self, fake_computer, fake_page):
        await fake_computer.connect()

        result = await fake_computer.goto("example.com/login")

        fake_page.goto.assert_awaited_once_with(
            "https://example.com/login", wait_until="domcontentloaded",
            timeout=fake_computer.navigation_timeout_ms,
        )
        assert result == {"status": "success", "url": "https://example.com/login"}

    @pytest.mark.asyncio
    async def test_overlapping_navigation_waits_then_proceeds(self, fake_computer, fake_page):
        await fake_computer.connect()
        release = asyncio.Event()

        async def slow_goto(url, **kwargs):
            if url.endswith("first"):
                await release.wait()

        fake_page.goto.side_effect = slow_goto

        first = asyncio.create_task(fake_computer.goto("example.com/first"))
        await asyncio.sleep(0)
        second = await fake_computer.goto("example.com/second")

        assert second["url"] == "https://example.com/second"
        release.set()
        await first
        assert fake_page.goto.await_count == 2

    @pytest.mark.asyncio
    async def test_back(self, fake_computer, fake_page):
        await fake_computer.connect()
        fake_page.url = "https://example.com/previous"

        result = await fake_computer.back()

        fake_page.go_back.assert_awaited_once()
        assert result == {"status": "success", "url": "https://example.com/previous"}


class TestReadiness:
    """wait_until_ready polling."""

    @pytest.mark.asyncio
    async def test_ready_after_retries(self, fake_computer, fake_page):
        await fake_computer.connect()
        fake_page.screenshot.side_effect = [RuntimeError("not yet"), RuntimeError("not yet"), b"png"]

        with patch("src.agents.mission_cua.browser.asyncio.sleep", new=AsyncMock()) as sleep:
            await fake_computer.wait_until_ready(timeout=30)

        assert fake_page.screenshot.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_timeout(self, fake_computer, fake_page):
        await fake_computer.connect()
        fake_page.screenshot.side_effect = RuntimeError("never")

        with pytest.raises(RuntimeError, match="Browser not ready"):
            await fake_computer.wait_until_ready(timeout=0)


class TestExtractData:
    """Structured and keyword extraction."""

    @pytest.mark.asyncio
    async def test_structured_mode(self, fake_computer, fake_page):
        await fake_computer.connect()
        fake_page.evaluate.return_value = [{"name": "Ada"}, {"name": "Grace"}]

        result = await fake_computer.extract_data({
            "mode": "structured", "data_type": "profiles",
            "selectors": {"container": ".card", "fields": {"name": ".name"}},
        })

        assert result["count"] == 2
        assert result["data_type"] == "profiles"
        assert result["records"][1] == {"name": "Grace"}

    @pytest.mark.asyncio
    async def test_structured_mode_needs_selectors(self, fake_computer):
        await fake_computer.connect()

        with pytest.raises(ValueError):
            await fake_computer.extract_data({"mode": "structured", "selectors": {}})

    @pytest.mark.asyncio
    async def test_smart_mode_filters_by_keyword(self, fake_computer, fake_page):
        await fake_computer.connect()
        fake_page.evaluate.return_value = "Header\nPrice: $10\n\nShipping free\nprice drop"

        result = await fake_computer.extract_data({"mode": "smart", "keywords": ["price"]})

        assert result["records"] == [{"text": "Price: $10"}, {"text": "price drop"}]


class TestLocalPlaywrightComputer:
    """Local Chromium lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_launches_and_opens_start_url(self, fake_page):
        from src.agents.mission_cua.browser import LocalPlaywrightComputer

        browser = MagicMock()
        browser.new_page = AsyncMock(return_value=fake_page)
        browser.close = AsyncMock()
        playwright = MagicMock()
        playwright.chromium.launch = AsyncMock(return_value=browser)
        playwright.stop = AsyncMock()
        starter = MagicMock()
        starter.start = AsyncMock(return_value=playwright)

        with patch("src.agents.mission_cua.browser.async_playwright", return_value=starter):
            computer = LocalPlaywrightComputer(headless=True, start_url="https://start.example")
            await computer.connect()

        playwright.chromium.launch.assert_awaited_once()
        fake_page.goto.assert_awaited_once()
        assert computer.page is fake_page

        await computer.disconnect()
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()
        assert computer.page is None
