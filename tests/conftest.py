"""
Pytest fixtures and configuration for the Listing Sync test suite.
"""

import os
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Must be set before api.config is imported
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_DIR", "/tmp/listing_sync_test_logs")
os.environ.setdefault("DATABASE_PATH", "/tmp/test_listing_sync.db")


# === Page Signals ===

CONTENT_HITS = {"title": True, "price": True, "main_content": True}


def make_signals_dict(
    hits: Optional[Dict[str, bool]] = None,
    text: str = "",
    text_length: Optional[int] = None,
    title: str = "",
    href: str = "https://example.com/cars/1",
    **extra: Any,
) -> Dict[str, Any]:
    """Raw inspection-script output, as page.evaluate would return it."""
    data = {
        "href": href,
        "title": title,
        "text": text,
        "text_length": len(text) if text_length is None else text_length,
        "hits": dict(hits or {}),
        "iframe_srcs": [],
        "script_srcs": [],
        "site_keys": [],
        "callbacks": [],
    }
    data.update(extra)
    return data


@pytest.fixture
def signals_data():
    """Factory for raw inspection results."""
    return make_signals_dict


@pytest.fixture
def signals():
    """Factory for PageSignals records."""
    from browser.detection import PageSignals

    def _make(**kwargs) -> "PageSignals":
        return PageSignals.from_dict(make_signals_dict(**kwargs))

    return _make


@pytest.fixture
def content_page_data():
    return make_signals_dict(hits=CONTENT_HITS, text="bmw 3 series " * 100, title="BMW 3 Series")


@pytest.fixture
def captcha_page_data():
    return make_signals_dict(
        hits={"captcha_markup": True, "recaptcha": True},
        text="please verify you are human",
        site_keys=["site-key-123"],
    )


@pytest.fixture
def block_page_data():
    return make_signals_dict(hits={"block_markup": True}, text="access denied", title="Access denied")


# === Mock Browser Objects ===

def make_mock_page(evaluate_results=None, url: str = "https://example.com/cars/1") -> MagicMock:
    """A Playwright-like page whose inspection results come from ``evaluate_results``."""
    page = MagicMock()
    page.url = url
    page.viewport_size = {"width": 1280, "height": 800}
    page.is_closed = MagicMock(return_value=False)
    page.goto = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.screenshot = AsyncMock(return_value=b"\x89PNG fake")
    page.close = AsyncMock()
    page.mouse = MagicMock()
    page.mouse.click = AsyncMock()
    if isinstance(evaluate_results, list):
        page.evaluate = AsyncMock(side_effect=evaluate_results)
    else:
        page.evaluate = AsyncMock(return_value=evaluate_results)
    return page


@pytest.fixture
def mock_page():
    return make_mock_page


@pytest.fixture
def mock_session_manager():
    """Session manager whose sessions hand out a fixed page."""
    from contextlib import asynccontextmanager

    manager = MagicMock()
    manager.page = make_mock_page()

    @asynccontextmanager
    async def session(headless=None, use_isolated_context=True):
        yield MagicMock(session_id="session_test")

    manager.session = session
    manager.acquire_page = AsyncMock(side_effect=lambda _session: manager.page)
    manager.close_all = AsyncMock()
    return manager


# === Configuration ===

@pytest.fixture
def fast_navigation_config():
    """Navigation config with every delay set to zero."""
    from api.config import NavigationConfig

    return NavigationConfig(
        max_attempts=3,
        retry_delay_seconds=0,
        blocked_backoff_seconds=0,
        jitter_seconds=0,
        settle_min_seconds=0,
        settle_max_seconds=0,
        recheck_delay_seconds=0,
    )


@pytest.fixture
def fast_crawl_config():
    from api.config import CrawlConfig

    return CrawlConfig(
        item_delay_min_seconds=0,
        item_delay_max_seconds=0,
        check_delay_min_seconds=0,
        check_delay_max_seconds=0,
        max_index_pages=5,
        content_wait_ms=10,
    )


# === Persistence ===

@pytest_asyncio.fixture
async def store(tmp_path):
    """Fresh SQLite listing store per test."""
    from api.database import ListingStore

    listing_store = ListingStore(tmp_path / "listings.db")
    await listing_store.init()
    return listing_store


@pytest.fixture
def run_guard():
    from core.run_guard import RunGuard

    return RunGuard()


# === Markers ===

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "integration: Tests that exercise several components together")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
