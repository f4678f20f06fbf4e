"""
Base extractor interface for listing sources.
All source-specific extractors inherit from this.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urlsplit

from playwright.async_api import Page

from core.models import canonicalize_url

MIN_YEAR = 1885


@dataclass
class ListingLink:
    """A listing URL found on an index page."""
    url: str
    title: Optional[str] = None

    def __post_init__(self):
        self.url = canonicalize_url(self.url)
        if not self.url:
            raise ValueError("ListingLink.url must not be empty")


@dataclass
class IndexPage:
    """One page of a source's listing index."""
    links: List[ListingLink] = field(default_factory=list)
    has_more: bool = False


@dataclass
class ListingRecord:
    """
    Fixed-schema listing data produced by an extractor.

    Validated on creation so malformed extractor output fails at the
    boundary instead of reaching the catalog.
    """
    url: str
    title: str
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    mileage: Optional[int] = None
    city: Optional[str] = None
    description: Optional[str] = None
    images: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.url = canonicalize_url(self.url)
        if not self.url or not urlsplit(self.url).netloc:
            raise ValueError(f"ListingRecord.url must be an absolute URL, got {self.url!r}")

        self.title = (self.title or "").strip()
        if not self.title:
            raise ValueError(f"ListingRecord.title must not be empty ({self.url})")

        max_year = datetime.now().year + 1
        if self.year is not None and not MIN_YEAR <= self.year <= max_year:
            raise ValueError(f"ListingRecord.year out of range: {self.year}")
        if self.price is not None and self.price < 0:
            raise ValueError(f"ListingRecord.price must not be negative: {self.price}")
        if self.mileage is not None and self.mileage < 0:
            raise ValueError(f"ListingRecord.mileage must not be negative: {self.mileage}")
        if self.currency is not None:
            self.currency = self.currency.strip().upper() or None

    def fields(self) -> Dict[str, Any]:
        """Columns for the catalog upsert."""
        return {
            "title": self.title,
            "brand": self.brand,
            "model": self.model,
            "year": self.year,
            "price": self.price,
            "currency": self.currency,
            "mileage": self.mileage,
            "city": self.city,
            "description": self.description,
            "images": list(self.images),
        }


class ListingExtractor(ABC):
    """
    Abstract base class for source extractors.

    An extractor knows how to page through a source's index and how to turn
    a loaded listing page into a ListingRecord. It never navigates: the
    crawler loads pages and hands them over.
    """

    source_tag: str = ""
    entry_urls: List[str] = []

    def matches(self, url: str) -> bool:
        """Check whether a URL belongs to this source."""
        host = urlsplit(url).netloc.lower()
        return any(urlsplit(entry).netloc.lower() == host for entry in self.entry_urls)

    def index_url(self, entry_url: str, page_number: int) -> str:
        """URL of the given (1-based) index page."""
        if page_number <= 1:
            return entry_url
        separator = "&" if "?" in entry_url else "?"
        return f"{entry_url}{separator}page={page_number}"

    @property
    def index_selectors(self) -> List[str]:
        """Selectors that confirm a loaded index page is the real catalog."""
        return []

    @property
    def listing_selectors(self) -> List[str]:
        """Selectors that confirm a loaded listing page, beyond the built-in markers."""
        return []

    @abstractmethod
    async def extract_index(self, page: Page) -> IndexPage:
        """Collect listing links from a loaded index page."""
        pass

    @abstractmethod
    async def extract_listing(self, page: Page, url: str) -> Optional[ListingRecord]:
        """
        Extract a listing from its loaded page.

        Returns:
            The record, or None when the page is not a listing this source keeps
        """
        pass
