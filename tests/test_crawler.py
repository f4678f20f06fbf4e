"""
Tests for SourceCrawler: index walk, per-listing processing and failures.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from adapters.base import IndexPage, ListingExtractor, ListingLink, ListingRecord
from core.crawler import SourceCrawler
from core.error_handler import IncompleteCrawlError, SessionLifecycleError
from core.models import ListingStatus


class FakeExtractor(ListingExtractor):
    """Serves a fixed sequence of index pages and builds records from URLs."""

    source_tag = "fake"
    entry_urls = ["https://example.com/cars"]

    def __init__(self, index_pages, skip=()):
        self.index_pages = list(index_pages)
        self.skip = set(skip)

    @property
    def index_selectors(self):
        return ["a.car"]

    async def extract_index(self, page):
        return self.index_pages.pop(0)

    async def extract_listing(self, page, url):
        if url in self.skip:
            return None
        return ListingRecord(url=url, title=f"Car {url.rsplit('/', 1)[-1]}", price=1000)


def links(*numbers):
    return [ListingLink(url=f"https://example.com/cars/{n}") for n in numbers]


@pytest.fixture
def navigator():
    mock = MagicMock()
    mock.navigate = AsyncMock(return_value=True)
    return mock


def make_crawler(extractor, navigator, store, session_manager, crawl_config):
    return SourceCrawler(
        extractor,
        session_manager,
        navigator,
        store,
        config=crawl_config,
        sleep=AsyncMock(),
    )


class TestCollectLinks:

    @pytest.mark.asyncio
    async def test_follows_pagination_and_dedups(
        self, navigator, store, mock_session_manager, fast_crawl_config, mock_page
    ):
        extractor = FakeExtractor([
            IndexPage(links=links(1, 2), has_more=True),
            IndexPage(links=links(2, 3), has_more=False),
        ])
        crawler = make_crawler(extractor, navigator, store, mock_session_manager, fast_crawl_config)

        found = await crawler.collect_links(mock_page())

        assert [link.url for link in found] == [f"https://example.com/cars/{n}" for n in (1, 2, 3)]
        visited = [call.args[1] for call in navigator.navigate.await_args_list]
        assert visited == ["https://example.com/cars", "https://example.com/cars?page=2"]
        assert all(call.kwargs["expected"] == ["a.car"] for call in navigator.navigate.await_args_list)

    @pytest.mark.asyncio
    async def test_stops_when_page_has_nothing_new(
        self, navigator, store, mock_session_manager, fast_crawl_config, mock_page
    ):
        extractor = FakeExtractor([
            IndexPage(links=links(1), has_more=True),
            IndexPage(links=links(1), has_more=True),
        ])
        crawler = make_crawler(extractor, navigator, store, mock_session_manager, fast_crawl_config)

        found = await crawler.collect_links(mock_page())

        assert len(found) == 1
        assert navigator.navigate.await_count == 2

    @pytest.mark.asyncio
    async def test_page_limit(self, navigator, store, mock_session_manager, fast_crawl_config, mock_page):
        extractor = FakeExtractor([IndexPage(links=links(n), has_more=True) for n in range(10)])
        crawler = make_crawler(extractor, navigator, store, mock_session_manager, fast_crawl_config)

        found = await crawler.collect_links(mock_page())

        assert len(found) == fast_crawl_config.max_index_pages

    @pytest.mark.asyncio
    async def test_unreachable_index_is_fatal(
        self, navigator, store, mock_session_manager, fast_crawl_config, mock_page
    ):
        navigator.navigate = AsyncMock(side_effect=[True, False])
        extractor = FakeExtractor([IndexPage(links=links(1), has_more=True)])
        crawler = make_crawler(extractor, navigator, store, mock_session_manager, fast_crawl_config)

        with pytest.raises(IncompleteCrawlError):
            await crawler.collect_links(mock_page())


class TestProcess:

    @pytest.mark.asyncio
    async def test_listing_is_upserted_active(
        self, navigator, store, mock_session_manager, fast_crawl_config, mock_page
    ):
        crawler = make_crawler(FakeExtractor([]), navigator, store, mock_session_manager, fast_crawl_config)

        item = await crawler.process(mock_page(), "https://example.com/cars/7")

        assert item.ok
        listing = await store.get_listing("https://example.com/cars/7")
        assert listing.status == ListingStatus.ACTIVE
        assert listing.source_tag == "fake"
        assert listing.title == "Car 7"
        assert listing.last_checked_at is not None

    @pytest.mark.asyncio
    async def test_navigation_failure_is_an_error_item(
        self, navigator, store, mock_session_manager, fast_crawl_config, mock_page
    ):
        navigator.navigate = AsyncMock(return_value=False)
        crawler = make_crawler(FakeExtractor([]), navigator, store, mock_session_manager, fast_crawl_config)

        item = await crawler.process(mock_page(), "https://example.com/cars/7")

        assert item.error == "navigation failed"
        assert await store.get_listing("https://example.com/cars/7") is None

    @pytest.mark.asyncio
    async def test_extractor_exception_is_an_error_item(
        self, navigator, store, mock_session_manager, fast_crawl_config, mock_page
    ):
        extractor = FakeExtractor([])
        extractor.extract_listing = AsyncMock(side_effect=ValueError("ListingRecord.year out of range: 1200"))
        crawler = make_crawler(extractor, navigator, store, mock_session_manager, fast_crawl_config)

        item = await crawler.process(mock_page(), "https://example.com/cars/7")

        assert "year out of range" in item.error

    @pytest.mark.asyncio
    async def test_closed_page_aborts(self, navigator, store, mock_session_manager, fast_crawl_config, mock_page):
        page = mock_page()
        page.is_closed = MagicMock(return_value=True)
        crawler = make_crawler(FakeExtractor([]), navigator, store, mock_session_manager, fast_crawl_config)

        with pytest.raises(SessionLifecycleError):
            await crawler.process(page, "https://example.com/cars/7")


class TestCrawl:

    @pytest.mark.asyncio
    async def test_yields_one_item_per_link(self, navigator, store, mock_session_manager, fast_crawl_config):
        extractor = FakeExtractor(
            [IndexPage(links=links(1, 2, 3), has_more=False)],
            skip={"https://example.com/cars/2"},
        )
        crawler = make_crawler(extractor, navigator, store, mock_session_manager, fast_crawl_config)

        items = [item async for item in crawler.crawl()]

        assert [item.url for item in items] == [f"https://example.com/cars/{n}" for n in (1, 2, 3)]
        assert [item.ok for item in items] == [True, False, True]
        assert items[1].skipped
        assert await store.find_identifiers("fake") == {
            "https://example.com/cars/1",
            "https://example.com/cars/3",
        }
