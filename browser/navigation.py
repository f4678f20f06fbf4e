"""
Navigation with retry under anti-bot defenses.

Each attempt loads the URL, lets the page settle, inspects it and either
accepts it, hands a CAPTCHA to the resolver, or backs off and retries.
"""

import asyncio
import logging
import random
from typing import Optional, List, Callable, Awaitable

from playwright.async_api import Page, Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from api.config import NavigationConfig
from browser.detection import PageInspector, is_blocked, has_captcha
from core.error_handler import TransientNavigationError
from core.models import NavigationOutcome, NavigationResult

logger = logging.getLogger(__name__)


class NavigationController:
    """
    Navigate a page to a URL, retrying on transport errors and blocks.

    Usage:
        navigator = NavigationController(resolver=resolver)
        if await navigator.navigate(page, url):
            ... page shows real content ...

    Holds no per-call state; ``load`` returns the attempt log of its call.
    """

    def __init__(
        self,
        config: Optional[NavigationConfig] = None,
        inspector: Optional[PageInspector] = None,
        resolver=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or NavigationConfig()
        self.inspector = inspector or PageInspector()
        self.resolver = resolver
        self._sleep = sleep

    async def _pause(self, seconds: float):
        if seconds > 0:
            await self._sleep(seconds)

    def _jitter(self) -> float:
        return random.uniform(0, self.config.jitter_seconds) if self.config.jitter_seconds > 0 else 0.0

    async def navigate(
        self,
        page: Page,
        url: str,
        max_attempts: Optional[int] = None,
        expected: Optional[List[str]] = None,
    ) -> bool:
        """
        Load ``url`` until the page shows content or attempts run out.

        Args:
            expected: selectors that confirm the document being loaded, for
                pages the built-in listing markers do not recognize

        Returns:
            True once a non-blocked page is confirmed, False after
            ``max_attempts`` failed attempts (or as soon as the page is closed)
        """
        result = await self.load(page, url, max_attempts=max_attempts, expected=expected)
        return result.success

    async def load(
        self,
        page: Page,
        url: str,
        max_attempts: Optional[int] = None,
        expected: Optional[List[str]] = None,
    ) -> NavigationResult:
        """Same as ``navigate`` but returns the per-attempt log."""
        max_attempts = max_attempts or self.config.max_attempts
        result = NavigationResult(url=url)
        last_outcome: Optional[NavigationOutcome] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                blocked = last_outcome in (NavigationOutcome.BLOCKED_CAPTCHA, NavigationOutcome.BLOCKED_NO_CAPTCHA)
                base = self.config.blocked_backoff_seconds if blocked else self.config.retry_delay_seconds
                delay = base * attempt + self._jitter()
                logger.info(f"[Navigation] Attempt {attempt}/{max_attempts} for {url} in {delay:.1f}s")
                await self._pause(delay)

            if page.is_closed():
                result.record(attempt, NavigationOutcome.TRANSPORT_ERROR, "page is closed")
                logger.error(f"[Navigation] Page closed before loading {url}")
                return result

            try:
                await self._load(page, url)
                await self._pause(random.uniform(self.config.settle_min_seconds, self.config.settle_max_seconds))
                signals = await self.inspector.inspect(page, expected)
            except TransientNavigationError as e:
                last_outcome = NavigationOutcome.TRANSPORT_ERROR
                result.record(attempt, last_outcome, str(e))
                logger.warning(f"[Navigation] {e} (attempt {attempt}/{max_attempts})")
                continue
            except PlaywrightError as e:
                last_outcome = NavigationOutcome.TRANSPORT_ERROR
                result.record(attempt, last_outcome, str(e))
                logger.warning(f"[Navigation] Inspection of {url} failed: {e} (attempt {attempt}/{max_attempts})")
                continue

            if not is_blocked(signals, self.inspector.markers):
                result.record(attempt, NavigationOutcome.SUCCESS)
                result.success = True
                return result

            if has_captcha(signals, self.inspector.markers):
                last_outcome = NavigationOutcome.BLOCKED_CAPTCHA
                logger.warning(f"[Navigation] CAPTCHA on {url} (attempt {attempt}/{max_attempts})")
                if await self._resolve_captcha(page, expected):
                    result.record(attempt, NavigationOutcome.SUCCESS)
                    result.success = True
                    return result
                result.record(attempt, last_outcome, "CAPTCHA not resolved")
                continue

            last_outcome = NavigationOutcome.BLOCKED_NO_CAPTCHA
            result.record(attempt, last_outcome, "block page")
            logger.warning(f"[Navigation] Blocked without CAPTCHA on {url} (attempt {attempt}/{max_attempts})")

        logger.error(f"[Navigation] Giving up on {url} after {max_attempts} attempt(s)")
        return result

    async def _load(self, page: Page, url: str):
        try:
            await page.goto(url, wait_until=self.config.wait_until, timeout=self.config.timeout_ms)
        except (PlaywrightTimeoutError, PlaywrightError) as e:
            raise TransientNavigationError(url, str(e).splitlines()[0] if str(e) else type(e).__name__) from e

    async def _resolve_captcha(self, page: Page, expected: Optional[List[str]] = None) -> bool:
        """Hand the page to the resolver and re-check the block once."""
        if self.resolver is None:
            return False
        if not await self.resolver.resolve(page, expected=expected):
            return False

        await self._pause(self.config.recheck_delay_seconds)
        try:
            signals = await self.inspector.inspect(page, expected)
        except PlaywrightError as e:
            logger.warning(f"[Navigation] Re-check after CAPTCHA failed: {e}")
            return False
        return not is_blocked(signals, self.inspector.markers)
