"""
Remote-assist relay for manual CAPTCHA solving.

A person receives a screenshot of the blocked page, taps on it from a phone,
and the taps are replayed as mouse clicks in the server-side browser. The
store keeps ephemeral sessions in memory with a TTL; the relay polls the page
on a deadline-bound ticker until the block clears.
"""

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Callable, Tuple

from playwright.async_api import Page, Error as PlaywrightError

from browser.detection import PageInspector, is_blocked
from core.error_handler import CaptchaSessionNotFound, SessionLifecycleError

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = (1280, 800)
SESSION_TTL_SECONDS = 10 * 60


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Click:
    x: int
    y: int


@dataclass
class CaptchaSession:
    """One relay attempt bound to a page it does not own."""
    session_id: str
    page: Page
    viewport: Tuple[int, int]
    created_at: float
    clicks: List[Click] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def viewport_width(self) -> int:
        return self.viewport[0]

    @property
    def viewport_height(self) -> int:
        return self.viewport[1]


class CaptchaSessionStore:
    """In-memory CAPTCHA sessions with lazy TTL expiry."""

    def __init__(self, ttl_seconds: float = SESSION_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._sessions: Dict[str, CaptchaSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, page: Page, viewport: Tuple[int, int]) -> CaptchaSession:
        session = CaptchaSession(
            session_id=uuid.uuid4().hex,
            page=page,
            viewport=viewport,
            created_at=self.clock(),
        )
        self._sessions[session.session_id] = session
        return session

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.created_at > self.ttl_seconds
        ]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f"[Relay] Expired {len(expired)} CAPTCHA session(s)")
        return len(expired)

    def get(self, session_id: str) -> CaptchaSession:
        """
        Look up a live session.

        Raises:
            CaptchaSessionNotFound: unknown or expired id
        """
        self.cleanup_expired()
        session = self._sessions.get(session_id)
        if session is None:
            raise CaptchaSessionNotFound(session_id)
        return session

    def find_by_page(self, page: Page) -> Optional[CaptchaSession]:
        for session in self._sessions.values():
            if session.page is page:
                return session
        return None

    def remove(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


class RemoteAssistRelay:
    """
    Screenshot-and-tap exchange between a remote person and a live page.

    Usage:
        session_id = await relay.begin_session(page)
        png = await relay.screenshot(session_id)
        ... deliver png and a link to the tap page ...
        solved = await relay.wait_for_resolution(page, session_id, timeout=300)
        await relay.close_session(session_id)
    """

    def __init__(
        self,
        store: Optional[CaptchaSessionStore] = None,
        inspector: Optional[PageInspector] = None,
        poll_interval: float = 2.0,
        click_pause: float = 0.5,
    ):
        self.store = store or CaptchaSessionStore()
        self.inspector = inspector or PageInspector()
        self.poll_interval = poll_interval
        self.click_pause = click_pause

    @classmethod
    def from_config(cls, app_config) -> "RemoteAssistRelay":
        relay = app_config.relay
        return cls(
            store=CaptchaSessionStore(ttl_seconds=relay.session_ttl_seconds),
            poll_interval=relay.poll_interval_seconds,
        )

    async def begin_session(self, page: Page) -> str:
        """Open a relay session for the page, replacing any earlier one."""
        if page.is_closed():
            raise SessionLifecycleError("Cannot start a CAPTCHA session on a closed page")

        existing = self.store.find_by_page(page)
        if existing is not None:
            logger.info(f"[Relay] Replacing session {existing.session_id} for the same page")
            self.store.remove(existing.session_id)

        size = page.viewport_size or {}
        width = size.get("width") or DEFAULT_VIEWPORT[0]
        height = size.get("height") or DEFAULT_VIEWPORT[1]

        session = self.store.create(page, (width, height))
        logger.info(f"[Relay] CAPTCHA session {session.session_id} created ({width}x{height})")
        return session.session_id

    def get_session(self, session_id: str) -> CaptchaSession:
        return self.store.get(session_id)

    def _live_session(self, session_id: str) -> CaptchaSession:
        session = self.store.get(session_id)
        if session.page.is_closed():
            self.store.remove(session_id)
            raise CaptchaSessionNotFound(session_id, "page is closed")
        return session

    async def record_tap(
        self,
        session_id: str,
        tap_x: float,
        tap_y: float,
        display_width: float = 0,
        display_height: float = 0,
    ) -> Click:
        """
        Queue a tap made on the displayed screenshot.

        Coordinates are rescaled from the displayed image size to the page
        viewport. Non-positive display dimensions mean the tap is already in
        viewport coordinates.
        """
        session = self._live_session(session_id)

        x, y = tap_x, tap_y
        if display_width > 0 and display_height > 0:
            x = tap_x * (session.viewport_width / display_width)
            y = tap_y * (session.viewport_height / display_height)
        click = Click(_round_half_up(x), _round_half_up(y))

        async with session.lock:
            session.clicks.append(click)
        logger.info(f"[Relay] Tap queued for {session_id}: ({click.x}, {click.y})")
        return click

    async def drain_clicks(self, session_id: str) -> List[Click]:
        """Return and clear the pending clicks; each click is handed out once."""
        session = self._live_session(session_id)
        async with session.lock:
            clicks, session.clicks = session.clicks, []
        return clicks

    async def screenshot(self, session_id: str) -> bytes:
        """PNG screenshot of the page bound to the session."""
        session = self._live_session(session_id)
        return await session.page.screenshot(type="png")

    async def close_session(self, session_id: str):
        if self.store.remove(session_id):
            logger.info(f"[Relay] CAPTCHA session {session_id} closed")

    async def wait_for_resolution(
        self,
        page: Page,
        session_id: str,
        timeout: float,
        expected: Optional[List[str]] = None,
    ) -> bool:
        """
        Replay queued taps until the page stops looking blocked.

        ``expected`` selectors confirm the document the caller was loading.

        Returns False when the deadline passes, the session expires or the
        page goes away. The wait is cancelled, not abandoned, on timeout.
        """
        try:
            return await asyncio.wait_for(
                self._poll_until_resolved(page, session_id, timeout, expected),
                timeout=timeout + self.poll_interval,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[Relay] Session {session_id} timed out after {timeout:.0f}s")
            return False

    def start_wait(self, page: Page, session_id: str, timeout: float) -> "asyncio.Task[bool]":
        """Run ``wait_for_resolution`` as a task the caller can await or cancel."""
        return asyncio.create_task(self.wait_for_resolution(page, session_id, timeout))

    async def _poll_until_resolved(
        self,
        page: Page,
        session_id: str,
        timeout: float,
        expected: Optional[List[str]],
    ) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"[Relay] Session {session_id} reached its deadline")
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

            try:
                clicks = await self.drain_clicks(session_id)
            except CaptchaSessionNotFound as e:
                logger.warning(f"[Relay] Stopped waiting: {e}")
                return False

            try:
                for click in clicks:
                    logger.info(f"[Relay] Clicking ({click.x}, {click.y}) for {session_id}")
                    await page.mouse.click(click.x, click.y)
                    await asyncio.sleep(self.click_pause)

                signals = await self.inspector.inspect(page, expected)
            except PlaywrightError as e:
                # The page may be mid-navigation after a click
                logger.debug(f"[Relay] Page not ready for inspection: {e}")
                continue

            if not is_blocked(signals, self.inspector.markers):
                logger.info(f"[Relay] CAPTCHA session {session_id} resolved")
                return True


# Global instance
_relay: Optional[RemoteAssistRelay] = None


def get_relay() -> RemoteAssistRelay:
    """Get or create the global relay shared by the resolver and the HTTP endpoints."""
    global _relay
    if _relay is None:
        from api.config import get_config
        _relay = RemoteAssistRelay.from_config(get_config())
    return _relay
