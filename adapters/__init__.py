"""
Listing Source Adapters
Extract listing links and listing details from a source's pages.
"""

from .base import ListingExtractor, ListingLink, ListingRecord, IndexPage
from .selector_extractor import SelectorExtractor, load_extractors

__all__ = [
    "ListingExtractor",
    "ListingLink",
    "ListingRecord",
    "IndexPage",
    "SelectorExtractor",
    "load_extractors",
]
