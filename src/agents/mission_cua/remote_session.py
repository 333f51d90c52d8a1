"""
Remote session manager for a Browserbase-hosted browser attached over CDP.

Owns one remote browser session for the length of a run:

  1. connect()     create a session (or re-attach to an existing one),
                   reusing the saved auth context for (tenant, platform)
  2. heartbeat     periodic liveness probe plus session-deadline tracking
  3. reconnect     exponential backoff, capped; exhaustion marks the session lost
  4. disconnect()  stop heartbeat, close, let the provider persist the
                   context, then mark it used

Viewport operations, navigation and the screenshot cache come from
``PlaywrightComputer``.
"""

import asyncio
import base64
import logging
import time
from typing import Optional

import httpx
from playwright.async_api import async_playwright, Browser, Playwright

from . import config
from .browser import PlaywrightComputer
from .errors import BrowserSessionLostError
from .models import AuthContextRecord
from .sqlite_store import AuthContextStore

logger = logging.getLogger(__name__)


# ── Provider REST client ──────────────────────────────────────────────────

class BrowserbaseClient:
    """Thin async client for the Browserbase REST API."""

    def __init__(
        self,
        api_key: str = config.BROWSERBASE_API_KEY,
        project_id: str = config.BROWSERBASE_PROJECT_ID,
        base_url: str = config.BROWSERBASE_API_BASE,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.project_id = project_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        ) as client:
            resp = await client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers={"X-BB-API-Key": self.api_key, "Content-Type": "application/json"},
            )
            if resp.status_code >= 400:
                body = resp.text[:500]
                logger.error(f"Browserbase {method} {path} returned {resp.status_code}: {body}")
                raise httpx.HTTPStatusError(
                    f"Browserbase {resp.status_code}: {body}",
                    request=resp.request, response=resp,
                )
            if not resp.content:
                return {}
            return resp.json()

    async def create_session(
        self,
        context_id: Optional[str] = None,
        viewport_width: int = config.VIEWPORT_WIDTH,
        viewport_height: int = config.VIEWPORT_HEIGHT,
        region: str = config.BROWSERBASE_REGION,
        proxies: bool = config.BROWSERBASE_PROXIES,
        fingerprinting: bool = config.BROWSERBASE_FINGERPRINTING,
        timeout_seconds: int = config.SESSION_TIMEOUT_SECONDS,
    ) -> dict:
        browser_settings: dict = {
            "viewport": {"width": viewport_width, "height": viewport_height},
            "blockAds": True,
            "solveCaptchas": True,
        }
        if context_id:
            browser_settings["context"] = {"id": context_id, "persist": True}
        if fingerprinting:
            browser_settings["fingerprint"] = {
                "browsers": ["chrome"],
                "devices": ["desktop"],
                "operatingSystems": ["windows", "macos"],
            }
        session = await self._request("POST", "/sessions", json={
            "projectId": self.project_id,
            "browserSettings": browser_settings,
            "region": region,
            "proxies": proxies,
            "keepAlive": True,
            "timeout": timeout_seconds,
        })
        logger.info(f"Created Browserbase session {session.get('id')} (context={context_id})")
        return session

    async def retrieve_session(self, session_id: str) -> dict:
        return await self._request("GET", f"/sessions/{session_id}")

    async def session_debug_urls(self, session_id: str) -> dict:
        return await self._request("GET", f"/sessions/{session_id}/debug")

    async def create_context(self) -> dict:
        context = await self._request("POST", "/contexts", json={"projectId": self.project_id})
        logger.info(f"Created Browserbase context {context.get('id')}")
        return context

    async def delete_context(self, context_id: str) -> None:
        await self._request("DELETE", f"/contexts/{context_id}")
        logger.info(f"Deleted Browserbase context {context_id}")


async def rotate_auth_context(
    client: BrowserbaseClient, store: AuthContextStore, tenant_id: str, platform: str
) -> bool:
    """Drop the saved login state for (tenant, platform) so the next run starts fresh."""
    record = await store.get_auth_context(tenant_id, platform)
    if record is None:
        return False
    try:
        await client.delete_context(record.context_id)
    except httpx.HTTPError as e:
        logger.warning(f"Could not delete provider context {record.context_id}: {e}")
    return await store.deactivate_auth_context(tenant_id, platform)


# ── Session manager ───────────────────────────────────────────────────────

class BrowserbaseComputer(PlaywrightComputer):
    """One remote browser session, exclusively owned by one action loop."""

    def __init__(
        self,
        client: BrowserbaseClient,
        auth_store: Optional[AuthContextStore] = None,
        tenant_id: Optional[str] = None,
        platform: Optional[str] = None,
        session_id: Optional[str] = None,
        context_id: Optional[str] = None,
        start_url: Optional[str] = config.START_URL,
        session_timeout: float = config.SESSION_TIMEOUT_SECONDS,
        heartbeat_interval: float = config.HEARTBEAT_INTERVAL_SECONDS,
        timeout_warning: float = config.TIMEOUT_WARNING_SECONDS,
        max_reconnection_attempts: int = config.MAX_RECONNECTION_ATTEMPTS,
        cdp_timeout_ms: int = config.CDP_CONNECT_TIMEOUT_MS,
        persist_delay: float = config.CONTEXT_PERSIST_DELAY_SECONDS,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.client = client
        self.auth_store = auth_store
        self.tenant_id = tenant_id
        self.platform = platform.lower() if platform else None
        self.session_id = session_id
        self.context_id = context_id
        self.start_url = start_url
        self.session_timeout = session_timeout
        self.heartbeat_interval = heartbeat_interval
        self.timeout_warning = timeout_warning
        self.max_reconnection_attempts = max_reconnection_attempts
        self.cdp_timeout_ms = cdp_timeout_ms
        self.persist_delay = persist_delay

        self.connect_url: Optional[str] = None
        self.auth_context: Optional[AuthContextRecord] = None
        self.expired = False
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None
        self._timeout_warned = False
        self._disconnected = False
        self._lost = False
        self._reconnect_lock = asyncio.Lock()

    @property
    def is_lost(self) -> bool:
        return self._lost

    def _require_page(self):
        if self._lost:
            raise BrowserSessionLostError(f"Browser session {self.session_id} was lost")
        return super()._require_page()

    # ── Connect ─────────────────────────────────────────────────────

    async def connect(self) -> None:
        self._playwright = await async_playwright().start()

        if self.session_id:
            session = await self.client.retrieve_session(self.session_id)
            is_new = False
            logger.info(f"Re-attaching to Browserbase session {self.session_id}")
        else:
            context_id = await self._resolve_auth_context()
            session = await self.client.create_session(
                context_id=context_id,
                viewport_width=self.viewport_width,
                viewport_height=self.viewport_height,
                timeout_seconds=int(self.session_timeout),
            )
            self.session_id = session["id"]
            is_new = True

        self.connect_url = session.get("connectUrl")
        if not self.connect_url:
            raise RuntimeError(f"Browserbase session {self.session_id} has no connect URL")

        await self._attach()
        if is_new and self.start_url:
            await self.goto(self.start_url)

        self._started_at = time.monotonic()
        self._start_heartbeat()
        logger.info(f"Connected to Browserbase session {self.session_id}")

    async def _resolve_auth_context(self) -> Optional[str]:
        """Saved context id for (tenant, platform), creating one when missing."""
        if self.context_id:
            return self.context_id
        if self.auth_store is None or not self.tenant_id or not self.platform:
            return None

        record = await self.auth_store.get_auth_context(self.tenant_id, self.platform)
        if record is not None:
            logger.info(f"Reusing auth context {record.context_id} for {self.tenant_id}/{self.platform}")
        else:
            try:
                context = await self.client.create_context()
            except httpx.HTTPError as e:
                logger.warning(f"Could not create auth context, continuing without one: {e}")
                return None
            record = await self.auth_store.save_auth_context(AuthContextRecord(
                tenant_id=self.tenant_id,
                platform=self.platform,
                context_id=context["id"],
            ))
        self.auth_context = record
        self.context_id = record.context_id
        return record.context_id

    async def _attach(self) -> None:
        """Attach Playwright to the session's CDP endpoint."""
        assert self._playwright, "Playwright not started"
        browser = await self._playwright.chromium.connect_over_cdp(
            self.connect_url, timeout=self.cdp_timeout_ms
        )
        context = browser.contexts[0] if browser.contexts else await browser.new_context()
        page = context.pages[-1] if context.pages else await context.new_page()

        browser.on("disconnected", self._on_disconnected)
        page.on("crash", lambda *_: logger.error(f"Page crashed in session {self.session_id}"))
        page.on("close", lambda *_: logger.info(f"Page closed in session {self.session_id}"))

        previous = self._browser
        self._browser = browser
        self._page = page
        self._disconnected = False
        if previous is not None and previous is not browser:
            await self._close_stale_browser(previous)

    async def _close_stale_browser(self, browser: Browser) -> None:
        try:
            await browser.close()
        except Exception as e:
            logger.debug(f"Stale browser handle for session {self.session_id} already closed: {e}")

    def _on_disconnected(self, browser: Optional[Browser] = None) -> None:
        if browser is not None and browser is not self._browser:
            return
        logger.warning(f"Browserbase session {self.session_id} disconnected")
        self._disconnected = True

    # ── Liveness ────────────────────────────────────────────────────

    async def ensure_connected(self) -> None:
        """Reconnect if the transport dropped; raise if the session is lost."""
        if self._disconnected and not self._lost:
            await self.reconnect()
        self._require_page()

    async def reconnect(self) -> bool:
        """Re-attach with exponential backoff (2s, 4s, 8s, ...)."""
        async with self._reconnect_lock:
            if self._lost:
                return False
            if not self._disconnected:
                return True

            for attempt in range(1, self.max_reconnection_attempts + 1):
                delay = 2 ** attempt
                logger.info(
                    f"Reconnecting to session {self.session_id} in {delay}s "
                    f"(attempt {attempt}/{self.max_reconnection_attempts})"
                )
                await asyncio.sleep(delay)
                try:
                    await self._attach()
                except Exception as e:
                    logger.warning(f"Reconnection attempt {attempt} failed: {e}")
                    continue
                self.invalidate_screenshot_cache()
                logger.info(f"Reconnected to session {self.session_id}")
                return True

            self._lost = True
            logger.error(
                f"Browser session {self.session_id} lost after "
                f"{self.max_reconnection_attempts} reconnection attempts"
            )
            return False

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while not (self._lost or self.expired):
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Heartbeat check failed for session {self.session_id}: {e}")

    async def heartbeat(self) -> bool:
        """One liveness check. Returns False once the session is expired or lost."""
        if self._started_at is not None:
            remaining = self.session_timeout - (time.monotonic() - self._started_at)
            if remaining <= 0:
                self.expired = True
                logger.error(f"Session {self.session_id} reached its {self.session_timeout:.0f}s limit")
                return False
            if remaining <= self.timeout_warning and not self._timeout_warned:
                self._timeout_warned = True
                logger.warning(
                    f"Session {self.session_id} expires in {remaining / 60:.1f} min, wind down soon"
                )

        try:
            await self._require_page().title()
            return True
        except BrowserSessionLostError:
            return False
        except Exception as e:
            logger.warning(f"Heartbeat probe failed for session {self.session_id}: {e}")
            self._disconnected = True
            return await self.reconnect()

    # ── Screenshots ─────────────────────────────────────────────────

    async def _capture_screenshot(self) -> bytes:
        page = self._require_page()
        try:
            cdp = await page.context.new_cdp_session(page)
            try:
                result = await cdp.send("Page.captureScreenshot", {"format": "png", "fromSurface": True})
            finally:
                await cdp.detach()
            return base64.b64decode(result["data"])
        except Exception as e:
            logger.debug(f"CDP screenshot failed, falling back to page.screenshot: {e}")
            return await super()._capture_screenshot()

    # ── Teardown ────────────────────────────────────────────────────

    async def disconnect(self, login_completed: bool = True) -> None:
        """Release the session. Errors are logged, never raised."""
        self._stop_heartbeat()

        for name, closer in (
            ("page", self._page.close if self._page else None),
            ("browser", self._browser.close if self._browser else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Error closing {name} for session {self.session_id}: {e}")
        self._page = None
        self._browser = None

        if self.auth_context and self.auth_store:
            # The provider persists the context asynchronously after the session closes
            await asyncio.sleep(self.persist_delay)
            try:
                await self.auth_store.mark_context_used(
                    self.auth_context.tenant_id, self.auth_context.platform,
                    login_completed=login_completed,
                )
            except Exception as e:
                logger.warning(f"Could not mark auth context {self.auth_context.context_id} used: {e}")

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping Playwright: {e}")
            self._playwright = None
        logger.info(f"Disconnected from Browserbase session {self.session_id}")

    async def live_view_url(self) -> Optional[str]:
        if not self.session_id:
            return None
        try:
            urls = await self.client.session_debug_urls(self.session_id)
        except httpx.HTTPError as e:
            logger.warning(f"Could not fetch live view URL: {e}")
            return None
        return urls.get("debuggerFullscreenUrl") or urls.get("debuggerUrl")
