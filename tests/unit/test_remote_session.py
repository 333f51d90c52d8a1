"""
Unit Tests for the Remote Session Manager

Tests the Browserbase REST client over httpx.MockTransport and the session
lifecycle (connect, reconnect, heartbeat, disconnect) with Playwright mocked.
"""

import base64
import json
import time

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch


def _client(handler):
    from src.agents.mission_cua.remote_session import BrowserbaseClient

    return BrowserbaseClient(
        api_key="bb-key", project_id="proj-1",
        base_url="https://bb.test/v1", transport=httpx.MockTransport(handler),
    )


def _mock_playwright(page):
    context = MagicMock()
    context.pages = [page]
    browser = MagicMock()
    browser.contexts = [context]
    browser.close = AsyncMock()
    playwright = MagicMock()
    playwright.chromium.connect_over_cdp = AsyncMock(return_value=browser)
    playwright.stop = AsyncMock()
    starter = MagicMock()
    starter.start = AsyncMock(return_value=playwright)
    return starter, playwright, browser


def _computer(client, **kwargs):
    from src.agents.mission_cua.remote_session import BrowserbaseComputer

    defaults = dict(
        heartbeat_interval=3600, persist_delay=0, start_url="https://start.example",
        navigation_guard_wait=0.05,
    )
    defaults.update(kwargs)
    return BrowserbaseComputer(client, **defaults)


class TestBrowserbaseClient:
    """REST calls and their payloads."""

    @pytest.mark.asyncio
    async def test_create_session_payload(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["key"] = request.headers["X-BB-API-Key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "bb_1", "connectUrl": "wss://connect"})

        session = await _client(handler).create_session(
            context_id="ctx_1", viewport_width=1024, viewport_height=768,
            region="us-east-1", proxies=True, timeout_seconds=3600,
        )

        assert session["id"] == "bb_1"
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/sessions"
        assert seen["key"] == "bb-key"
        body = seen["body"]
        assert body["projectId"] == "proj-1"
        assert body["browserSettings"]["viewport"] == {"width": 1024, "height": 768}
        assert body["browserSettings"]["context"] == {"id": "ctx_1", "persist": True}
        assert body["proxies"] is True
        assert body["keepAlive"] is True
        assert body["timeout"] == 3600

    @pytest.mark.asyncio
    async def test_create_session_without_context(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "bb_2"})

        await _client(handler).create_session(fingerprinting=False)

        assert "context" not in seen["body"]["browserSettings"]
        assert "fingerprint" not in seen["body"]["browserSettings"]

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        def handler(request):
            return httpx.Response(402, text="Payment Required: plan limit reached")

        with pytest.raises(httpx.HTTPStatusError, match="402"):
            await _client(handler).retrieve_session("bb_1")

    @pytest.mark.asyncio
    async def test_delete_context_with_empty_body(self):
        def handler(request):
            assert request.method == "DELETE"
            assert request.url.path == "/v1/contexts/ctx_9"
            return httpx.Response(204)

        assert await _client(handler).delete_context("ctx_9") is None


class TestRotateAuthContext:
    """Dropping saved login state."""

    @pytest.mark.asyncio
    async def test_rotate_deletes_and_deactivates(self, sqlite_store):
        from src.agents.mission_cua.models import AuthContextRecord
        from src.agents.mission_cua.remote_session import rotate_auth_context

        await sqlite_store.save_auth_context(
            AuthContextRecord(tenant_id="t1", platform="linkedin", context_id="ctx_1")
        )
        deleted = []

        def handler(request):
            deleted.append(request.url.path)
            return httpx.Response(204)

        rotated = await rotate_auth_context(_client(handler), sqlite_store, "t1", "LinkedIn")

        assert rotated is True
        assert deleted == ["/v1/contexts/ctx_1"]
        assert await sqlite_store.get_auth_context("t1", "linkedin") is None

    @pytest.mark.asyncio
    async def test_rotate_without_context(self, sqlite_store):
        from src.agents.mission_cua.remote_session import rotate_auth_context

        def handler(request):
            raise AssertionError("provider should not be called")

        assert await rotate_auth_context(_client(handler), sqlite_store, "t1", "x") is False


class TestConnect:
    """Session creation and attachment."""

    @pytest.mark.asyncio
    async def test_new_session_creates_and_saves_auth_context(self, fake_page, mock_auth_store):
        client = MagicMock()
        client.create_context = AsyncMock(return_value={"id": "ctx_new"})
        client.create_session = AsyncMock(return_value={"id": "bb_1", "connectUrl": "wss://connect"})
        starter, playwright, _ = _mock_playwright(fake_page)

        computer = _computer(client, auth_store=mock_auth_store, tenant_id="t1", platform="LinkedIn")
        with patch("src.agents.mission_cua.remote_session.async_playwright", return_value=starter):
            await computer.connect()

        try:
            assert computer.session_id == "bb_1"
            assert computer.context_id == "ctx_new"
            assert client.create_session.await_args.kwargs["context_id"] == "ctx_new"
            saved = mock_auth_store.save_auth_context.await_args.args[0]
            assert (saved.tenant_id, saved.platform, saved.context_id) == ("t1", "linkedin", "ctx_new")
            assert saved.last_used_at is None and saved.first_login_at is None
            playwright.chromium.connect_over_cdp.assert_awaited_once_with("wss://connect", timeout=180000)
            fake_page.goto.assert_awaited_once()
            assert computer.page is fake_page
        finally:
            await computer.disconnect()

    @pytest.mark.asyncio
    async def test_existing_auth_context_is_reused(self, fake_page, mock_auth_store):
        from src.agents.mission_cua.models import AuthContextRecord

        await mock_auth_store.save_auth_context(
            AuthContextRecord(tenant_id="t1", platform="linkedin", context_id="ctx_old")
        )
        client = MagicMock()
        client.create_context = AsyncMock()
        client.create_session = AsyncMock(return_value={"id": "bb_1", "connectUrl": "wss://connect"})
        starter, _, _ = _mock_playwright(fake_page)

        computer = _computer(client, auth_store=mock_auth_store, tenant_id="t1", platform="linkedin")
        with patch("src.agents.mission_cua.remote_session.async_playwright", return_value=starter):
            await computer.connect()
        await computer.disconnect()

        client.create_context.assert_not_awaited()
        assert client.create_session.await_args.kwargs["context_id"] == "ctx_old"

    @pytest.mark.asyncio
    async def test_reattach_skips_creation_and_start_url(self, fake_page):
        client = MagicMock()
        client.create_session = AsyncMock()
        client.retrieve_session = AsyncMock(return_value={"id": "bb_7", "connectUrl": "wss://again"})
        starter, _, _ = _mock_playwright(fake_page)

        computer = _computer(client, session_id="bb_7")
        with patch("src.agents.mission_cua.remote_session.async_playwright", return_value=starter):
            await computer.connect()
        await computer.disconnect()

        client.create_session.assert_not_awaited()
        fake_page.goto.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_context_creation_continues_without_context(self, fake_page, mock_auth_store):
        request = httpx.Request("POST", "https://bb.test/v1/contexts")
        client = MagicMock()
        client.create_context = AsyncMock(side_effect=httpx.HTTPStatusError(
            "boom", request=request, response=httpx.Response(500, request=request)
        ))
        client.create_session = AsyncMock(return_value={"id": "bb_1", "connectUrl": "wss://connect"})
        starter, _, _ = _mock_playwright(fake_page)

        computer = _computer(client, auth_store=mock_auth_store, tenant_id="t1", platform="linkedin")
        with patch("src.agents.mission_cua.remote_session.async_playwright", return_value=starter):
            await computer.connect()
        await computer.disconnect()

        assert client.create_session.await_args.kwargs["context_id"] is None
        mock_auth_store.save_auth_context.assert_not_awaited()


class TestReconnect:
    """Bounded exponential backoff."""

    @pytest.mark.asyncio
    async def test_reconnect_backs_off_until_attach_succeeds(self, fake_page):
        computer = _computer(MagicMock())
        computer._page = fake_page
        computer._disconnected = True
        computer._attach = AsyncMock(side_effect=[RuntimeError("refused"), None])

        with patch("src.agents.mission_cua.remote_session.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await computer.reconnect() is True

        assert [c.args[0] for c in sleep.await_args_list] == [2, 4]
        assert not computer.is_lost

    @pytest.mark.asyncio
    async def test_exhaustion_marks_session_lost(self, fake_page):
        from src.agents.mission_cua.errors import BrowserSessionLostError

        computer = _computer(MagicMock(), max_reconnection_attempts=3)
        computer._page = fake_page
        computer._disconnected = True
        computer._attach = AsyncMock(side_effect=RuntimeError("refused"))

        with patch("src.agents.mission_cua.remote_session.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await computer.reconnect() is False

        assert [c.args[0] for c in sleep.await_args_list] == [2, 4, 8]
        assert computer.is_lost
        with pytest.raises(BrowserSessionLostError):
            await computer.ensure_connected()
        with pytest.raises(BrowserSessionLostError):
            await computer.click(1, 1)

    @pytest.mark.asyncio
    async def test_ensure_connected_reconnects_after_disconnect_event(self, fake_page):
        computer = _computer(MagicMock())
        computer._page = fake_page
        computer._attach = AsyncMock()
        computer._on_disconnected()

        with patch("src.agents.mission_cua.remote_session.asyncio.sleep", new=AsyncMock()):
            await computer.ensure_connected()

        computer._attach.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reattach_closes_previous_browser_handle(self, fake_page):
        _, playwright, old_browser = _mock_playwright(fake_page)
        _, _, new_browser = _mock_playwright(fake_page)
        playwright.chromium.connect_over_cdp = AsyncMock(side_effect=[old_browser, new_browser])

        computer = _computer(MagicMock())
        computer._playwright = playwright
        computer.connect_url = "wss://connect"
        await computer._attach()
        computer._on_disconnected(old_browser)

        with patch("src.agents.mission_cua.remote_session.asyncio.sleep", new=AsyncMock()):
            await computer.ensure_connected()

        old_browser.close.assert_awaited_once()
        new_browser.close.assert_not_awaited()

        # the stale handle reporting its own close must not flag the new one
        computer._on_disconnected(old_browser)
        assert not computer._disconnected


class TestHeartbeat:
    """Liveness probe and deadline tracking."""

    @pytest.mark.asyncio
    async def test_healthy_probe(self, fake_page):
        computer = _computer(MagicMock())
        computer._page = fake_page
        computer._started_at = time.monotonic()

        assert await computer.heartbeat() is True
        fake_page.title.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_deadline_passed_sets_expired(self, fake_page):
        computer = _computer(MagicMock(), session_timeout=60)
        computer._page = fake_page
        computer._started_at = time.monotonic() - 120

        assert await computer.heartbeat() is False
        assert computer.expired

    @pytest.mark.asyncio
    async def test_warns_once_near_deadline(self, fake_page, caplog):
        computer = _computer(MagicMock(), session_timeout=600, timeout_warning=120)
        computer._page = fake_page
        computer._started_at = time.monotonic() - 500

        with caplog.at_level("WARNING"):
            await computer.heartbeat()
            await computer.heartbeat()

        warnings = [r for r in caplog.records if "expires in" in r.getMessage()]
        assert len(warnings) == 1
        assert not computer.expired

    @pytest.mark.asyncio
    async def test_failed_probe_triggers_reconnect(self, fake_page):
        computer = _computer(MagicMock())
        computer._page = fake_page
        fake_page.title.side_effect = RuntimeError("Target closed")
        computer._attach = AsyncMock()

        with patch("src.agents.mission_cua.remote_session.asyncio.sleep", new=AsyncMock()):
            assert await computer.heartbeat() is True

        computer._attach.assert_awaited_once()


class TestScreenshot:
    """CDP capture with Playwright fallback."""

    @pytest.mark.asyncio
    async def test_cdp_capture(self, fake_page):
        cdp = MagicMock()
        cdp.send = AsyncMock(return_value={"data": base64.b64encode(b"cdp-png").decode()})
        cdp.detach = AsyncMock()
        fake_page.context.new_cdp_session = AsyncMock(return_value=cdp)
        computer = _computer(MagicMock())
        computer._page = fake_page

        image = await computer.screenshot(force_refresh=True)

        assert base64.b64decode(image) == b"cdp-png"
        fake_page.screenshot.assert_not_awaited()
        cdp.detach.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_falls_back_to_page_screenshot(self, fake_page):
        fake_page.context.new_cdp_session = AsyncMock(side_effect=RuntimeError("no cdp"))
        computer = _computer(MagicMock())
        computer._page = fake_page

        await computer.screenshot(force_refresh=True)

        fake_page.screenshot.assert_awaited_once()


class TestDisconnect:
    """Best-effort teardown and auth context bookkeeping."""

    @pytest.mark.asyncio
    async def test_marks_context_used_after_persist_delay(self, fake_page, mock_auth_store):
        from src.agents.mission_cua.models import AuthContextRecord

        computer = _computer(MagicMock(), auth_store=mock_auth_store, persist_delay=5)
        computer._page = fake_page
        computer.auth_context = AuthContextRecord(tenant_id="t1", platform="linkedin", context_id="ctx_1")

        with patch("src.agents.mission_cua.remote_session.asyncio.sleep", new=AsyncMock()) as sleep:
            await computer.disconnect(login_completed=False)

        sleep.assert_awaited_once_with(5)
        mock_auth_store.mark_context_used.assert_awaited_once_with("t1", "linkedin", login_completed=False)
        fake_page.close.assert_awaited_once()
        assert computer.page is None

    @pytest.mark.asyncio
    async def test_close_errors_are_swallowed(self, fake_page):
        computer = _computer(MagicMock())
        fake_page.close.side_effect = RuntimeError("already closed")
        computer._page = fake_page

        await computer.disconnect()

        assert computer.page is None

    @pytest.mark.asyncio
    async def test_live_view_url(self):
        client = MagicMock()
        client.session_debug_urls = AsyncMock(return_value={"debuggerFullscreenUrl": "https://live/1"})
        computer = _computer(client, session_id="bb_1")

        assert await computer.live_view_url() == "https://live/1"
