"""
Tests for the selector-driven extractor and listing record validation.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from adapters.base import ListingLink, ListingRecord
from adapters.selector_extractor import (
    SelectorExtractor,
    detect_currency,
    load_extractors,
    parse_number,
    parse_year,
)

DEFINITION = {
    "source_tag": "oldtimerfarm",
    "cron": "0 0 4 * * *",
    "entry_urls": ["https://www.oldtimerfarm.be/en/collection"],
    "link_selector": "a.car-card",
    "next_selector": "a.next",
    "fields": {"title": "h1", "price": ".price", "year": ".spec-year", "mileage": ".spec-mileage"},
    "currency": "EUR",
}


@pytest.fixture
def extractor():
    return SelectorExtractor(dict(DEFINITION))


class TestParsing:

    def test_parse_number(self):
        assert parse_number("1 250 000 ₽") == 1250000
        assert parse_number("€ 45.900,-") == 45900
        assert parse_number("on request") is None
        assert parse_number(None) is None

    def test_parse_year(self):
        assert parse_year("1967 Jaguar E-Type") == 1967
        assert parse_year("Model 12345") is None

    def test_detect_currency(self):
        assert detect_currency("1 250 000 ₽") == "RUB"
        assert detect_currency("€ 45.900") == "EUR"
        assert detect_currency("CHF 120'000") == "CHF"
        assert detect_currency("45900", default="EUR") == "EUR"


class TestListingRecord:

    def test_record_is_normalized(self):
        record = ListingRecord(url="https://Example.com/cars/1/?utm_source=x", title="  BMW  ", currency=" eur ")

        assert record.url == "https://example.com/cars/1"
        assert record.title == "BMW"
        assert record.currency == "EUR"

    @pytest.mark.parametrize("kwargs", [
        {"url": "/cars/1", "title": "BMW"},
        {"url": "https://example.com/cars/1", "title": " "},
        {"url": "https://example.com/cars/1", "title": "BMW", "year": 1700},
        {"url": "https://example.com/cars/1", "title": "BMW", "price": -1},
        {"url": "https://example.com/cars/1", "title": "BMW", "mileage": -5},
    ])
    def test_invalid_records_are_rejected(self, kwargs):
        with pytest.raises(ValueError):
            ListingRecord(**kwargs)

    def test_empty_link_is_rejected(self):
        with pytest.raises(ValueError):
            ListingLink(url="")


class TestSelectorExtractor:

    def test_definition_defaults(self, extractor):
        assert extractor.cron == "0 0 4 * * *"
        assert extractor.matches("https://www.oldtimerfarm.be/en/car/42")
        assert not extractor.matches("https://example.com/en/car/42")

    def test_index_url_appends_page(self, extractor):
        entry = extractor.entry_urls[0]
        assert extractor.index_url(entry, 1) == entry
        assert extractor.index_url(entry, 3) == entry + "?page=3"
        assert extractor.index_url(entry + "?sort=new", 2) == entry + "?sort=new&page=2"

    def test_confirm_selectors(self, extractor):
        assert extractor.index_selectors == ["a.car-card"]
        assert extractor.listing_selectors == []
        assert SelectorExtractor({**DEFINITION, "require_selector": ".car-detail"}).listing_selectors == [".car-detail"]

    def test_unknown_field_is_rejected(self):
        with pytest.raises(ValueError):
            SelectorExtractor({**DEFINITION, "fields": {"colour": ".colour"}})

    def test_missing_entry_urls_is_rejected(self):
        with pytest.raises(ValueError):
            SelectorExtractor({**DEFINITION, "entry_urls": []})

    def test_load_extractors_keys_by_tag(self):
        extractors = load_extractors([DEFINITION, {**DEFINITION, "source_tag": "rmsothebys"}])
        assert set(extractors) == {"oldtimerfarm", "rmsothebys"}

    @pytest.mark.asyncio
    async def test_extract_index(self, extractor, mock_page):
        page = mock_page()
        page.eval_on_selector_all = AsyncMock(return_value=[
            {"href": "https://www.oldtimerfarm.be/en/car/1", "text": "Jaguar"},
            {"href": "javascript:void(0)", "text": ""},
            {"href": "https://www.oldtimerfarm.be/en/car/2?utm_source=list", "text": ""},
        ])
        page.query_selector = AsyncMock(return_value=None)

        index_page = await extractor.extract_index(page)

        assert [link.url for link in index_page.links] == [
            "https://www.oldtimerfarm.be/en/car/1",
            "https://www.oldtimerfarm.be/en/car/2",
        ]
        assert index_page.links[0].title == "Jaguar"
        assert index_page.has_more is False

    @pytest.mark.asyncio
    async def test_extract_listing(self, extractor, mock_page):
        page = mock_page({
            "values": {"title": "Jaguar E-Type", "price": "€ 145.000,-", "year": "Year: 1967", "mileage": "54 000 km"},
            "images": ["a.jpg", "b.jpg", "a.jpg"],
            "required": True,
        })

        record = await extractor.extract_listing(page, "https://www.oldtimerfarm.be/en/car/1")

        assert record.title == "Jaguar E-Type"
        assert record.price == 145000
        assert record.currency == "EUR"
        assert record.year == 1967
        assert record.mileage == 54000
        assert record.images == ["a.jpg", "b.jpg"]

    @pytest.mark.asyncio
    async def test_page_without_required_marker_is_skipped(self, extractor, mock_page):
        page = mock_page({"values": {"title": "Collection"}, "images": [], "required": False})

        assert await extractor.extract_listing(page, "https://www.oldtimerfarm.be/en/collection") is None

    @pytest.mark.asyncio
    async def test_page_without_title_is_skipped(self, extractor, mock_page):
        page = mock_page({"values": {"title": None}, "images": [], "required": True})

        assert await extractor.extract_listing(page, "https://www.oldtimerfarm.be/en/car/1") is None
