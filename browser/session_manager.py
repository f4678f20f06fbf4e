"""
Browser Session Manager

Owns the lifecycle of local Playwright Chromium sessions:
- one anti-detection profile (proxy + user agent) per browser process
- isolated (fresh context per page) or shared-context sessions
- retry of transient page-creation failures
- best-effort teardown of pages, contexts and the browser, in that order
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Awaitable, TypeVar

from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright

from browser.profiles import ProfilePool, ProfileEntry
from core.error_handler import SessionLifecycleError, is_transient_browser_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-crash-reporter",
    "--disable-breakpad",
    "--disable-background-networking",
    "--disable-sync",
    "--mute-audio",
    "--disable-extensions",
]


@dataclass
class BrowserSession:
    """An active browser process and the contexts/pages opened in it."""
    session_id: str
    browser: Browser
    profile: ProfileEntry
    headless: bool = True
    isolated: bool = True
    viewport: Dict[str, int] = field(default_factory=lambda: {"width": 1280, "height": 800})
    contexts: List[BrowserContext] = field(default_factory=list)
    pages: List[Page] = field(default_factory=list)
    shared_context: Optional[BrowserContext] = None
    created_at: datetime = field(default_factory=datetime.now)
    closed: bool = False


class BrowserSessionManager:
    """
    Creates, tracks and tears down browser sessions.

    Usage:
        manager = BrowserSessionManager(ProfilePool.from_config(config))
        async with manager.session(headless=True) as session:
            page = await manager.acquire_page(session)
            await page.goto(url)
    """

    def __init__(
        self,
        profile_pool: Optional[ProfilePool] = None,
        headless: bool = True,
        page_retries: int = 3,
        retry_backoff_seconds: float = 2.0,
        locale: str = "ru-RU",
        timezone_id: str = "Europe/Moscow",
        launch_args: Optional[List[str]] = None,
    ):
        """
        Initialize the session manager.

        Args:
            profile_pool: Identity profiles to draw from (default: direct connection, stock user agents)
            headless: Default headless mode for new sessions
            page_retries: Attempts for page/browser creation on transient errors
            retry_backoff_seconds: Base delay, multiplied by the attempt number
            locale: Browser context locale
            timezone_id: Browser context timezone
            launch_args: Chromium command line flags
        """
        self.profile_pool = profile_pool or ProfilePool()
        self.headless = headless
        self.page_retries = max(1, page_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.locale = locale
        self.timezone_id = timezone_id
        self.launch_args = list(launch_args or LAUNCH_ARGS)
        self.active_sessions: Dict[str, BrowserSession] = {}
        self.playwright: Optional[Playwright] = None

    @classmethod
    def from_config(cls, app_config) -> "BrowserSessionManager":
        return cls(
            profile_pool=ProfilePool.from_config(app_config),
            headless=app_config.HEADLESS,
            page_retries=app_config.PAGE_CREATE_RETRIES,
            retry_backoff_seconds=app_config.PAGE_CREATE_BACKOFF_SECONDS,
            locale=app_config.LOCALE,
        )

    async def initialize(self):
        """Initialize Playwright instance."""
        if not self.playwright:
            self.playwright = await async_playwright().start()

    async def acquire_session(
        self,
        headless: Optional[bool] = None,
        use_isolated_context: bool = True,
    ) -> BrowserSession:
        """
        Launch a browser bound to one profile from the pool.

        Raises:
            SessionLifecycleError: the browser could not be launched
        """
        await self.initialize()

        headless = self.headless if headless is None else headless
        profile = self.profile_pool.select()
        viewport = self.profile_pool.random_viewport()

        launch_options: Dict[str, Any] = {
            "headless": headless,
            "args": self.launch_args + [f"--window-size={viewport['width']},{viewport['height']}"],
        }
        if profile.proxy:
            launch_options["proxy"] = profile.proxy.to_playwright()
            logger.info(f"[Browser] Using proxy: {profile.proxy.display}")

        logger.info(f"[Browser] Using User-Agent: {profile.user_agent[:50]}...")
        browser = await self._retry_transient(
            lambda: self.playwright.chromium.launch(**launch_options),
            "Browser launch",
        )

        session = BrowserSession(
            session_id=f"session_{uuid.uuid4().hex[:12]}",
            browser=browser,
            profile=profile,
            headless=headless,
            isolated=use_isolated_context,
            viewport=viewport,
        )
        self.active_sessions[session.session_id] = session
        logger.debug(f"[Browser] Session {session.session_id} started (isolated={use_isolated_context})")
        return session

    async def acquire_page(self, session: BrowserSession) -> Page:
        """
        Open a page in the session.

        Isolated sessions get a fresh context per page; shared sessions
        reuse one lazily created context.

        Raises:
            SessionLifecycleError: page creation kept failing
        """
        if session.closed:
            raise SessionLifecycleError(f"Session {session.session_id} is already released")

        async def create_page() -> Page:
            if session.isolated:
                context = await self._new_context(session)
                try:
                    return await context.new_page()
                except Exception:
                    await self._close_quietly(context, "context")
                    session.contexts.remove(context)
                    raise

            if session.shared_context is None:
                session.shared_context = await self._new_context(session)
            return await session.shared_context.new_page()

        page = await self._retry_transient(create_page, "Page creation")
        session.pages.append(page)
        return page

    async def _new_context(self, session: BrowserSession) -> BrowserContext:
        profile = session.profile
        context = await session.browser.new_context(
            user_agent=profile.user_agent,
            viewport=session.viewport,
            locale=self.locale,
            timezone_id=self.timezone_id,
            extra_http_headers=profile.extra_headers(),
            color_scheme="light",
        )
        session.contexts.append(context)
        await context.add_init_script(profile.stealth_script())
        return context

    async def _retry_transient(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        last_error: Optional[BaseException] = None
        attempt = 0
        for attempt in range(1, self.page_retries + 1):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                if not is_transient_browser_error(e) or attempt == self.page_retries:
                    break
                delay = self.retry_backoff_seconds * attempt
                logger.warning(
                    f"[Browser] {description} failed (attempt {attempt}/{self.page_retries}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"[Browser] {description} failed after {attempt} attempt(s): {last_error}")
        raise SessionLifecycleError(f"{description} failed: {last_error}") from last_error

    async def release(self, session: BrowserSession):
        """
        Close pages, then contexts, then the browser.

        Every close failure is logged and swallowed so one stuck resource
        never keeps the rest alive. Safe to call more than once.
        """
        if session.closed:
            return
        session.closed = True

        for page in session.pages:
            await self._close_quietly(page, "page")
        contexts = list(session.contexts)
        if session.shared_context is not None and session.shared_context not in contexts:
            contexts.append(session.shared_context)
        for context in contexts:
            await self._close_quietly(context, "context")
        await self._close_quietly(session.browser, "browser")

        session.pages.clear()
        session.contexts.clear()
        session.shared_context = None
        self.active_sessions.pop(session.session_id, None)
        logger.debug(f"[Browser] Closed session: {session.session_id}")

    @staticmethod
    async def _close_quietly(resource, kind: str):
        try:
            if kind == "page" and resource.is_closed():
                return
            await resource.close()
        except Exception as e:
            logger.warning(f"[Browser] Failed to close {kind}: {e}")

    @asynccontextmanager
    async def session(self, headless: Optional[bool] = None, use_isolated_context: bool = True):
        """Acquire a session and always release it."""
        browser_session = await self.acquire_session(headless=headless, use_isolated_context=use_isolated_context)
        try:
            yield browser_session
        finally:
            await self.release(browser_session)

    async def close_all(self):
        """Close all active sessions and stop Playwright."""
        for session in list(self.active_sessions.values()):
            await self.release(session)

        if self.playwright:
            try:
                await self.playwright.stop()
            except Exception as e:
                logger.warning(f"[Browser] Failed to stop Playwright: {e}")
            self.playwright = None

        logger.info("[Browser] All sessions closed and Playwright stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get session manager statistics."""
        return {
            "total_sessions": len(self.active_sessions),
            "open_pages": sum(len(s.pages) for s in self.active_sessions.values()),
            "profiles": len(self.profile_pool),
            "proxies_enabled": self.profile_pool.has_proxies,
        }

