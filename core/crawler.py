"""
Source crawl: walk a source's listing index, load each listing, extract it
and upsert it into the catalog. Items are processed strictly one after
another with a jittered delay in between.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import AsyncIterator, Callable, Awaitable, List, Optional, Set

from playwright.async_api import Page

from adapters.base import ListingExtractor, ListingLink
from api.config import CrawlConfig
from core.error_handler import IncompleteCrawlError, SessionLifecycleError
from core.models import CrawlItem, ListingStatus, identity_key

logger = logging.getLogger(__name__)


class SourceCrawler:
    """
    Produces the crawl function for one source.

    Usage:
        crawler = SourceCrawler(extractor, session_manager, navigator, store)
        result = await reconciler.reconcile(extractor.source_tag, crawler.crawl)
    """

    def __init__(
        self,
        extractor: ListingExtractor,
        session_manager,
        navigator,
        store,
        config: Optional[CrawlConfig] = None,
        headless: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.extractor = extractor
        self.session_manager = session_manager
        self.navigator = navigator
        self.store = store
        self.config = config or CrawlConfig()
        self.headless = headless
        self._sleep = sleep

    @property
    def source_tag(self) -> str:
        return self.extractor.source_tag

    async def _pace(self):
        delay = random.uniform(self.config.item_delay_min_seconds, self.config.item_delay_max_seconds)
        if delay > 0:
            await self._sleep(delay)

    async def crawl(self) -> AsyncIterator[CrawlItem]:
        """
        Yield one CrawlItem per listing found in the index.

        Raises:
            SessionLifecycleError: no browser/page could be obtained
            IncompleteCrawlError: an index page could not be loaded
        """
        async with self.session_manager.session(headless=self.headless, use_isolated_context=False) as session:
            page = await self.session_manager.acquire_page(session)

            links = await self.collect_links(page)
            logger.info(f"[Crawler] {self.source_tag}: {len(links)} listing(s) in index")

            for index, link in enumerate(links):
                if index > 0:
                    await self._pace()
                yield await self.process(page, link.url)

    async def collect_links(self, page: Page) -> List[ListingLink]:
        """Walk every entry URL's paginated index and de-duplicate links."""
        seen: Set[str] = set()
        links: List[ListingLink] = []

        for entry_url in self.extractor.entry_urls:
            for page_number in range(1, self.config.max_index_pages + 1):
                url = self.extractor.index_url(entry_url, page_number)
                if page_number > 1:
                    await self._pace()

                if not await self.navigator.navigate(page, url, expected=self.extractor.index_selectors):
                    raise IncompleteCrawlError(f"Index page {url} of {self.source_tag} could not be loaded")

                index_page = await self.extractor.extract_index(page)
                fresh = [link for link in index_page.links if identity_key(link.url) not in seen]
                for link in fresh:
                    seen.add(identity_key(link.url))
                links.extend(fresh)
                logger.debug(f"[Crawler] {url}: {len(fresh)} new link(s)")

                if not index_page.has_more or not fresh:
                    break

        return links

    async def process(self, page: Page, url: str) -> CrawlItem:
        """Load, extract and upsert one listing. Failures become error items."""
        if page.is_closed():
            raise SessionLifecycleError(f"Crawl page for {self.source_tag} was closed")

        try:
            if not await self.navigator.navigate(page, url, expected=self.extractor.listing_selectors):
                return CrawlItem.failed(url, "navigation failed")

            record = await self.extractor.extract_listing(page, url)
            if record is None:
                return CrawlItem.skip(url)

            stored = await self.store.upsert(
                record.url,
                record.fields(),
                status=ListingStatus.ACTIVE,
                last_checked_at=datetime.now(),
                source_tag=self.source_tag,
            )
            logger.info(f"[Crawler] Saved {stored}")
            return CrawlItem.processed(stored)
        except Exception as e:
            logger.error(f"[Crawler] Failed to process {url}: {e}")
            return CrawlItem.failed(url, str(e))
