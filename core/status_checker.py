"""
Listing status classification.

Loads a listing page and decides whether the listing is active, sold,
removed or unknown. Also runs the periodic sweep that re-checks listings
whose status has not been confirmed recently.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Optional, Callable, Awaitable

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from api.config import CrawlConfig
from api.logging_config import log_job_summary
from browser.detection import (
    DEFAULT_MARKERS,
    DocumentMarkers,
    PageInspector,
    PageSignals,
    is_removed,
    is_sold,
)
from core.models import ListingStatus, StatusChange, StatusCheckResult
from core.run_guard import RunGuard, get_run_guard

logger = logging.getLogger(__name__)

CONTENT_SELECTOR = 'h1, main, [data-marker="item-view"]'
SWEEP_JOB = "status-sweep"


def is_active(signals: PageSignals) -> bool:
    if signals.has("title") and (
        signals.has("price")
        or signals.has("description")
        or signals.has("gallery")
        or signals.has("main_content")
    ):
        return True
    return signals.text_length > 500 and signals.has("main_content")


def classify_signals(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> ListingStatus:
    """
    Apply the status rules in priority order; the first match wins.

    removed > sold > active (content markers) > active (long page with a
    main container) > unknown
    """
    if is_removed(signals, markers):
        return ListingStatus.REMOVED
    if is_sold(signals, markers):
        return ListingStatus.SOLD
    if is_active(signals):
        return ListingStatus.ACTIVE
    return ListingStatus.UNKNOWN


class ListingStatusClassifier:
    """
    Usage:
        classifier = ListingStatusClassifier(session_manager, navigator, store)
        status = await classifier.classify(url)
        result = await classifier.check_stale_listings(days_old=7)
    """

    def __init__(
        self,
        session_manager,
        navigator,
        store=None,
        inspector: Optional[PageInspector] = None,
        config: Optional[CrawlConfig] = None,
        run_guard: Optional[RunGuard] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_manager = session_manager
        self.navigator = navigator
        self.store = store
        self.inspector = inspector or PageInspector()
        self.config = config or CrawlConfig()
        self.run_guard = run_guard or get_run_guard()
        self._sleep = sleep

    async def classify(self, url: str) -> ListingStatus:
        """Load the listing and classify it. Never raises: failures are ``unknown``."""
        try:
            async with self.session_manager.session(headless=True, use_isolated_context=False) as session:
                page = await self.session_manager.acquire_page(session)

                if not await self.navigator.navigate(page, url):
                    logger.warning(f"[StatusChecker] Could not load {url}")
                    return ListingStatus.UNKNOWN

                try:
                    await page.wait_for_selector(CONTENT_SELECTOR, timeout=self.config.content_wait_ms)
                except PlaywrightTimeoutError:
                    logger.debug(f"[StatusChecker] No content container on {url}")

                signals = await self.inspector.inspect(page)
                status = classify_signals(signals, self.inspector.markers)
                logger.info(f"[StatusChecker] {url} -> {status.value}")
                return status
        except Exception as e:
            logger.error(f"[StatusChecker] Error checking {url}: {e}")
            return ListingStatus.UNKNOWN

    async def check_listing(self, url: str) -> StatusChange:
        """Classify a listing and store the result if it is in the catalog."""
        if self.store is None:
            raise RuntimeError("check_listing needs a listing store")

        listing = await self.store.get_listing(url)
        old_status = listing.status if listing else None
        new_status = await self.classify(url)

        if listing:
            await self.store.set_status(listing.url, new_status, datetime.now())
            if old_status != new_status:
                logger.info(f"[StatusChecker] {listing.url}: {old_status.value} -> {new_status.value}")
        else:
            logger.info(f"[StatusChecker] {url} is not in the catalog, status not stored")

        return StatusChange(url=listing.url if listing else url, old_status=old_status, new_status=new_status)

    async def check_stale_listings(
        self,
        days_old: Optional[int] = None,
        check_all: bool = False,
        limit: Optional[int] = None,
    ) -> Optional[StatusCheckResult]:
        """
        Re-check listings not confirmed within ``days_old`` days.

        Returns None if a sweep is already running.
        """
        async with self.run_guard.try_run(SWEEP_JOB) as acquired:
            if not acquired:
                return None
            return await self._sweep(
                days_old if days_old is not None else self.config.stale_after_days,
                check_all,
                limit or self.config.sweep_limit,
            )

    async def _sweep(self, days_old: int, check_all: bool, limit: int) -> StatusCheckResult:
        listings = await self.store.find_due_for_check(
            days_old=days_old,
            unknown_days=self.config.unknown_recheck_days,
            check_all=check_all,
            limit=limit,
        )
        logger.info(f"[StatusChecker] {len(listings)} listing(s) due for a status check")

        result = StatusCheckResult()
        result.stats.total = len(listings)

        for index, listing in enumerate(listings):
            if index > 0:
                delay = random.uniform(self.config.check_delay_min_seconds, self.config.check_delay_max_seconds)
                if delay > 0:
                    await self._sleep(delay)

            try:
                change = await self.check_listing(listing.url)
            except Exception as e:
                result.stats.errors += 1
                logger.error(f"[StatusChecker] Failed to update {listing.url}: {e}")
                continue

            result.stats.count(change.new_status)
            if change.old_status != change.new_status:
                result.stats.status_changed += 1
                result.changes.append(change)

        log_job_summary(SWEEP_JOB, **result.stats.to_dict())
        return result
