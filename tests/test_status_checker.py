"""
Tests for listing status classification and status sweeps.
"""

from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser.detection import DocumentMarkers
from core.models import ListingStatus, StatusChange
from core.status_checker import (
    SWEEP_JOB,
    ListingStatusClassifier,
    classify_signals,
    is_removed,
    is_sold,
)

ACTIVE_HITS = {"title": True, "price": True}


class TestClassificationRules:

    def test_removed_beats_sold(self, signals):
        page = signals(hits={"removed_markup": True, "sold_markup": True, **ACTIVE_HITS})
        assert classify_signals(page) == ListingStatus.REMOVED

    def test_sold_beats_active(self, signals):
        page = signals(hits={"sold_markup": True, **ACTIVE_HITS}, text="x" * 3000)
        assert classify_signals(page) == ListingStatus.SOLD

    def test_removed_beats_active(self, signals):
        page = signals(hits=ACTIVE_HITS, text="объявление снято с публикации")
        assert classify_signals(page) == ListingStatus.REMOVED

    def test_active_from_content_markers(self, signals):
        assert classify_signals(signals(hits={"title": True, "gallery": True})) == ListingStatus.ACTIVE

    def test_active_from_long_page_with_main_container(self, signals):
        page = signals(hits={"main_content": True}, text_length=800)
        assert classify_signals(page) == ListingStatus.ACTIVE

    def test_short_page_without_markers_is_unknown(self, signals):
        page = signals(hits={"main_content": True}, text_length=300)
        assert classify_signals(page) == ListingStatus.UNKNOWN

    def test_404_in_short_title(self, signals):
        assert is_removed(signals(title="404 Not Found", text_length=5000))

    def test_not_found_phrase_only_counts_on_short_page(self, signals):
        assert is_removed(signals(text="не найдено", text_length=1000))
        assert not is_removed(signals(text="ничего не найдено в похожих", text_length=5000))

    def test_sold_phrase_is_not_negated(self, signals):
        assert is_sold(signals(text="товар продан"))
        assert not is_sold(signals(text="товар продан? нет, товар не продан"))

    def test_badge_phrase_needs_badge(self, signals):
        assert not is_sold(signals(text="sold"))
        assert is_sold(signals(text="sold", hits={"sold_badge": True}))

    def test_sold_phrases_come_from_markers(self, signals):
        markers = DocumentMarkers(sold_text_phrases=["verkocht"], sold_negations=["niet verkocht"])

        assert is_sold(signals(text="deze auto is verkocht"), markers)
        assert not is_sold(signals(text="deze auto is niet verkocht"), markers)
        assert not is_sold(signals(text="товар продан"), markers)
        assert classify_signals(signals(text="verkocht", hits=ACTIVE_HITS), markers) == ListingStatus.SOLD


# Each rule in priority order, with signals that satisfy only that rule
STATUS_RULES = [
    ("removed", {"hits": {"removed_markup": True}}, ListingStatus.REMOVED),
    ("sold", {"hits": {"sold_markup": True}}, ListingStatus.SOLD),
    ("content_markers", {"hits": {"title": True, "price": True}}, ListingStatus.ACTIVE),
    ("long_main_page", {"hits": {"main_content": True}, "text_length": 800}, ListingStatus.ACTIVE),
    ("nothing", {}, ListingStatus.UNKNOWN),
]

RULE_PAIRS = [
    (STATUS_RULES[i], STATUS_RULES[j])
    for i in range(len(STATUS_RULES))
    for j in range(i + 1, len(STATUS_RULES))
]


def combine(first, second):
    return {
        "hits": {**first.get("hits", {}), **second.get("hits", {})},
        "text_length": max(first.get("text_length", 0), second.get("text_length", 0)),
    }


class TestStatusPriority:

    @pytest.mark.parametrize("name, page, expected", STATUS_RULES, ids=[rule[0] for rule in STATUS_RULES])
    def test_rule_alone(self, signals, name, page, expected):
        assert classify_signals(signals(**combine(page, {}))) == expected

    @pytest.mark.parametrize(
        "higher, lower",
        RULE_PAIRS,
        ids=[f"{higher[0]}-over-{lower[0]}" for higher, lower in RULE_PAIRS],
    )
    def test_higher_rule_wins(self, signals, higher, lower):
        page = signals(**combine(higher[1], lower[1]))
        assert classify_signals(page) == higher[2]


@pytest.fixture
def navigator():
    mock = MagicMock()
    mock.navigate = AsyncMock(return_value=True)
    return mock


def make_classifier(session_manager, navigator, crawl_config, store=None, guard=None):
    return ListingStatusClassifier(
        session_manager,
        navigator,
        store=store,
        config=crawl_config,
        run_guard=guard,
        sleep=AsyncMock(),
    )


class TestClassify:

    @pytest.mark.asyncio
    async def test_classifies_loaded_page(self, mock_session_manager, navigator, fast_crawl_config, signals_data):
        mock_session_manager.page.evaluate = AsyncMock(return_value=signals_data(hits={"sold_markup": True}))
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config)

        assert await classifier.classify("https://example.com/cars/1") == ListingStatus.SOLD
        navigator.navigate.assert_awaited_once_with(mock_session_manager.page, "https://example.com/cars/1")

    @pytest.mark.asyncio
    async def test_navigation_failure_is_unknown(self, mock_session_manager, navigator, fast_crawl_config):
        navigator.navigate = AsyncMock(return_value=False)
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config)

        assert await classifier.classify("https://example.com/cars/1") == ListingStatus.UNKNOWN
        mock_session_manager.page.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_content_container_still_classifies(
        self, mock_session_manager, navigator, fast_crawl_config, signals_data
    ):
        page = mock_session_manager.page
        page.wait_for_selector = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 10ms exceeded"))
        page.evaluate = AsyncMock(return_value=signals_data(text="объявление удалено"))
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config)

        assert await classifier.classify("https://example.com/cars/1") == ListingStatus.REMOVED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_unknown(self, mock_session_manager, navigator, fast_crawl_config):
        navigator.navigate = AsyncMock(side_effect=RuntimeError("browser crashed"))
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config)

        assert await classifier.classify("https://example.com/cars/1") == ListingStatus.UNKNOWN


class TestCheckListing:

    @pytest.mark.asyncio
    async def test_stores_new_status(self, store, mock_session_manager, navigator, fast_crawl_config, signals_data):
        url = await store.upsert("https://example.com/cars/1", {"title": "BMW"}, source_tag="test")
        mock_session_manager.page.evaluate = AsyncMock(return_value=signals_data(hits={"sold_markup": True}))
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config, store=store)

        change = await classifier.check_listing(url + "?utm_source=tg")

        assert change.old_status == ListingStatus.ACTIVE
        assert change.new_status == ListingStatus.SOLD
        listing = await store.get_listing(url)
        assert listing.status == ListingStatus.SOLD
        assert listing.last_checked_at is not None

    @pytest.mark.asyncio
    async def test_unknown_url_is_not_inserted(self, store, mock_session_manager, navigator, fast_crawl_config):
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config, store=store)

        change = await classifier.check_listing("https://example.com/cars/404")

        assert change.old_status is None
        assert await store.get_listing("https://example.com/cars/404") is None

    @pytest.mark.asyncio
    async def test_requires_store(self, mock_session_manager, navigator, fast_crawl_config):
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config)

        with pytest.raises(RuntimeError):
            await classifier.check_listing("https://example.com/cars/1")


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_counts_statuses_and_changes(
        self, store, mock_session_manager, navigator, fast_crawl_config, run_guard, signals_data
    ):
        old = datetime.now() - timedelta(days=10)
        for n in range(3):
            await store.upsert(f"https://example.com/cars/{n}", {"title": f"Car {n}"}, last_checked_at=old, source_tag="test")
        await store.upsert("https://example.com/cars/fresh", {"title": "Fresh"}, last_checked_at=datetime.now(), source_tag="test")
        mock_session_manager.page.evaluate = AsyncMock(return_value=signals_data(hits={"sold_markup": True}))
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config, store=store, guard=run_guard)

        result = await classifier.check_stale_listings(days_old=7)

        assert result.stats.total == 3
        assert result.stats.sold == 3
        assert result.stats.status_changed == 3
        assert len(result.changes) == 3
        assert (await store.get_listing("https://example.com/cars/fresh")).status == ListingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_per_item_errors_do_not_abort_sweep(
        self, store, mock_session_manager, navigator, fast_crawl_config, run_guard
    ):
        old = datetime.now() - timedelta(days=10)
        for n in range(3):
            await store.upsert(f"https://example.com/cars/{n}", {"title": f"Car {n}"}, last_checked_at=old, source_tag="test")
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config, store=store, guard=run_guard)
        calls = []

        async def flaky_check(url):
            calls.append(url)
            if len(calls) == 2:
                raise RuntimeError("database is locked")
            return StatusChange(url=url, old_status=ListingStatus.ACTIVE, new_status=ListingStatus.ACTIVE)

        classifier.check_listing = flaky_check

        result = await classifier.check_stale_listings(days_old=7)

        assert len(calls) == 3
        assert result.stats.errors == 1
        assert result.stats.active == 2
        assert result.stats.status_changed == 0

    @pytest.mark.asyncio
    async def test_sweep_skipped_while_running(self, store, mock_session_manager, navigator, fast_crawl_config, run_guard):
        classifier = make_classifier(mock_session_manager, navigator, fast_crawl_config, store=store, guard=run_guard)

        async with run_guard.try_run(SWEEP_JOB) as acquired:
            assert acquired
            assert await classifier.check_stale_listings() is None
