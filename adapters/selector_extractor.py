"""
Selector-driven extractor for sources described in configuration.

Example source definition (YAML, see SOURCES_FILE):

    sources:
      - source_tag: oldtimerfarm
        cron: "0 0 4 * * *"
        entry_urls: ["https://www.oldtimerfarm.be/en/collection"]
        link_selector: "a.car-card"
        next_selector: "a.next"
        require_selector: ".car-detail"
        fields:
          title: "h1"
          price: ".price"
          year: ".spec-year"
          mileage: ".spec-mileage"
          description: ".description"
        image_selector: ".gallery img"
        currency: "EUR"
"""

import logging
import re
from typing import Optional, Dict, Any, List

from playwright.async_api import Page

from adapters.base import ListingExtractor, ListingRecord, ListingLink, IndexPage

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("title", "brand", "model", "city", "description")
NUMBER_FIELDS = ("price", "year", "mileage")

CURRENCY_MARKERS = [
    ("₽", "RUB"),
    ("руб", "RUB"),
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("chf", "CHF"),
]

LINKS_SCRIPT = """
(elements) => elements.map((el) => ({
    href: el.href || el.getAttribute('href') || '',
    text: (el.textContent || '').trim(),
}))
"""

FIELDS_SCRIPT = """
({ fields, imageSelector, requireSelector }) => {
    const read = (selector) => {
        const el = document.querySelector(selector);
        if (!el) return null;
        const value = el.getAttribute('content') || el.textContent || '';
        return value.replace(/\\s+/g, ' ').trim() || null;
    };
    const values = {};
    for (const [name, selector] of Object.entries(fields)) {
        values[name] = read(selector);
    }
    const images = imageSelector
        ? Array.from(document.querySelectorAll(imageSelector))
            .map((img) => img.currentSrc || img.src || img.getAttribute('data-src'))
            .filter(Boolean)
        : [];
    return {
        values,
        images,
        required: requireSelector ? !!document.querySelector(requireSelector) : true,
    };
}
"""


def parse_number(text: Optional[str]) -> Optional[float]:
    """Pull a number out of text like '1 250 000 ₽' or '€ 45.900,-'."""
    if not text:
        return None
    text = re.sub(r"[.,]-+\s*$", "", text.strip())
    digits = re.sub(r"\D", "", text)
    return float(digits) if digits else None


def parse_year(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = re.search(r"\b(18[89]\d|19\d{2}|20\d{2})\b", text)
    return int(match.group(1)) if match else None


def detect_currency(text: Optional[str], default: Optional[str] = None) -> Optional[str]:
    if text:
        lowered = text.lower()
        for marker, code in CURRENCY_MARKERS:
            if marker in lowered:
                return code
    return default


class SelectorExtractor(ListingExtractor):
    """Extractor whose behavior is entirely defined by CSS selectors."""

    def __init__(self, definition: Dict[str, Any]):
        self.source_tag = definition["source_tag"]
        self.entry_urls = list(definition.get("entry_urls") or [])
        if not self.entry_urls:
            raise ValueError(f"Source {self.source_tag} has no entry_urls")

        self.link_selector = definition["link_selector"]
        self.next_selector: Optional[str] = definition.get("next_selector")
        self.require_selector: Optional[str] = definition.get("require_selector")
        self.image_selector: Optional[str] = definition.get("image_selector")
        self.page_param: str = definition.get("page_param", "page")
        self.currency: Optional[str] = definition.get("currency")
        self.cron: Optional[str] = definition.get("cron")
        self.fields: Dict[str, str] = dict(definition.get("fields") or {})
        if "title" not in self.fields:
            self.fields["title"] = "h1"

        unknown = set(self.fields) - set(TEXT_FIELDS) - set(NUMBER_FIELDS)
        if unknown:
            raise ValueError(f"Source {self.source_tag} defines unknown fields: {sorted(unknown)}")

    def index_url(self, entry_url: str, page_number: int) -> str:
        if page_number <= 1:
            return entry_url
        separator = "&" if "?" in entry_url else "?"
        return f"{entry_url}{separator}{self.page_param}={page_number}"

    @property
    def index_selectors(self) -> List[str]:
        return [self.link_selector]

    @property
    def listing_selectors(self) -> List[str]:
        return [self.require_selector] if self.require_selector else []

    async def extract_index(self, page: Page) -> IndexPage:
        raw = await page.eval_on_selector_all(self.link_selector, LINKS_SCRIPT)
        links: List[ListingLink] = []
        for item in raw or []:
            href = item.get("href") or ""
            if not href.startswith("http"):
                continue
            links.append(ListingLink(url=href, title=item.get("text") or None))

        if self.next_selector:
            has_more = await page.query_selector(self.next_selector) is not None
        else:
            has_more = bool(links)
        return IndexPage(links=links, has_more=has_more)

    async def extract_listing(self, page: Page, url: str) -> Optional[ListingRecord]:
        data = await page.evaluate(FIELDS_SCRIPT, {
            "fields": self.fields,
            "imageSelector": self.image_selector,
            "requireSelector": self.require_selector,
        })
        if not data.get("required", True):
            logger.info(f"[Extractor] {url} is not a {self.source_tag} listing, skipping")
            return None

        values = data.get("values") or {}
        if not values.get("title"):
            logger.warning(f"[Extractor] No title on {url}, skipping")
            return None

        price_text = values.get("price")
        mileage = parse_number(values.get("mileage"))
        return ListingRecord(
            url=url,
            title=values["title"],
            brand=values.get("brand"),
            model=values.get("model"),
            year=parse_year(values.get("year")) or parse_year(values["title"]),
            price=parse_number(price_text),
            currency=detect_currency(price_text, self.currency) if price_text else self.currency,
            mileage=int(mileage) if mileage is not None else None,
            city=values.get("city"),
            description=values.get("description"),
            images=list(dict.fromkeys(data.get("images") or [])),
        )


def load_extractors(definitions: List[Dict[str, Any]]) -> Dict[str, SelectorExtractor]:
    """Build extractors keyed by source tag."""
    extractors = {}
    for definition in definitions:
        extractor = SelectorExtractor(definition)
        extractors[extractor.source_tag] = extractor
    return extractors
