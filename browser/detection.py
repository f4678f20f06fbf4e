"""
Block and CAPTCHA detection.

A single script is evaluated in the page: it receives the marker selectors
and returns a plain ``PageSignals`` record. All decisions (blocked? captcha?
which provider? listing status?) are made in Python on that record, so the
rules are testable without a browser.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Any

from playwright.async_api import Page

logger = logging.getLogger(__name__)


class CaptchaType(Enum):
    RECAPTCHA_CHECKBOX = "recaptcha_v2"
    RECAPTCHA_INVISIBLE = "recaptcha_v3"
    HCAPTCHA = "hcaptcha"
    TURNSTILE = "turnstile"
    SMARTCAPTCHA_REDIRECT = "smartcaptcha"
    IMAGE = "image"


def _default_groups() -> Dict[str, List[str]]:
    return {
        "title": ["h1"],
        "price": [
            '[itemprop="price"]',
            '[data-marker="item-view/item-price"]',
            '[data-marker="item-view/price"]',
            '#sale-data-attributes',
            '.price-value',
            '.js-item-price',
        ],
        "main_content": [
            'main',
            '[data-marker="item-view"]',
            '#sale-data-attributes',
            '.item-view',
        ],
        "description": [
            '[itemprop="description"]',
            '[data-marker="item-view/item-description"]',
            '[data-marker="item-view/text"]',
            '.item-description-text',
        ],
        "gallery": [
            '[data-marker="image-frame"]',
            '[data-marker="image-viewer/image"]',
            'img[itemprop="image"]',
            '.gallery-img',
        ],
        "captcha_markup": [
            '[class*="captcha"][class*="block"]',
            '[id*="captcha"][id*="block"]',
            '[data-marker*="captcha"]',
            'iframe[src*="captcha.yandex.ru"]',
            'iframe[src*="smartcaptcha.yandex.ru"]',
            '[class*="smart-captcha"]',
            '[class*="yandex-captcha"]',
            '[id*="smart-captcha"]',
            '[id*="yandex-captcha"]',
            '[data-captcha="yandex"]',
            'iframe[src*="recaptcha"]',
            '.g-recaptcha',
            'iframe[src*="hcaptcha.com"]',
            '.h-captcha',
            '.cf-turnstile',
            'iframe[src*="challenges.cloudflare.com"]',
        ],
        "block_markup": [
            '[class*="ip-blocked"]',
            '[id*="ip-blocked"]',
            '[class*="access-denied"]',
            '[id*="access-denied"]',
        ],
        "recaptcha": ['iframe[src*="recaptcha"]', '.g-recaptcha'],
        "recaptcha_invisible": [
            'script[src*="recaptcha/api.js?render"]',
            '[data-callback*="recaptcha"]',
            '.grecaptcha-badge',
            '.g-recaptcha[data-size="invisible"]',
        ],
        "hcaptcha": ['iframe[src*="hcaptcha.com"]', '.h-captcha', '[data-hcaptcha-widget-id]'],
        "turnstile": ['.cf-turnstile', 'iframe[src*="challenges.cloudflare.com"]'],
        "smartcaptcha": [
            'iframe[src*="captcha.yandex.ru"]',
            'iframe[src*="smartcaptcha.yandex.ru"]',
            '[class*="smart-captcha"]',
            '[data-captcha="yandex"]',
        ],
        "image_captcha": ['img[src*="captcha"]', '[class*="captcha"] img'],
        "removed_markup": [
            '[data-marker*="not-found"]',
            '[data-marker*="notFound"]',
            '[data-marker*="removed"]',
            '[data-marker*="unpublished"]',
            '.not-found',
            '.NotFoundPage',
        ],
        "sold_markup": [
            '[data-marker="item-view/sold"]',
            '[data-marker*="sold-out"]',
            '[data-marker*="sold"]',
            '[data-ftid="component_sold"]',
            '.item-view-sold',
            '.sold-label',
            '.CardSold',
        ],
        "sold_badge": ['[data-marker="item-view/sold"]', '[data-ftid="component_sold"]'],
        "index_content": [
            '[data-marker="catalog-serp"]',
            '[data-marker="item"]',
            '[itemtype*="ItemList"]',
            '[itemtype*="Product"]',
            '[itemtype*="Vehicle"]',
            '.catalog-item',
            '.listing-item',
        ],
    }


@dataclass
class DocumentMarkers:
    """Selector groups and phrases the detection rules look for."""
    groups: Dict[str, List[str]] = field(default_factory=_default_groups)
    captcha_hosts: List[str] = field(default_factory=lambda: [
        "passport.yandex.ru/showcaptcha",
        "captcha.yandex.ru",
        "smartcaptcha.yandex",
    ])
    captcha_phrases: List[str] = field(default_factory=lambda: [
        "подтвердите, что вы не робот",
        "подтвердите что вы не робот",
        "я не робот",
        "i'm not a robot",
        "verify you are human",
    ])
    block_phrases: List[str] = field(default_factory=lambda: [
        "проблема с ip",
        "проблема с ip-адресом",
        "ваш ip заблокирован",
        "ip blocked",
        "access denied",
    ])
    removed_phrases: List[str] = field(default_factory=lambda: [
        "объявление снято с публикации",
        "снято с публикации",
        "объявление снято",
        "объявление удалено",
        "объявление не найдено",
        "страница не найдена",
        "объявление недоступно",
        "объявление было снято",
        "listing has been removed",
        "listing is no longer available",
        "listing not found",
        "page not found",
    ])
    not_found_phrases: List[str] = field(default_factory=lambda: ["не найдено", "not found"])
    sold_phrases: List[str] = field(default_factory=lambda: [
        "автомобиль продан",
        "this car has been sold",
        "this vehicle has been sold",
    ])
    # Phrases that only mean "sold" next to a sold badge
    sold_badge_phrases: List[str] = field(default_factory=lambda: ["продано", "sold"])
    # Phrases that mean "sold" anywhere unless one of the negations is present
    sold_text_phrases: List[str] = field(default_factory=lambda: ["товар продан"])
    sold_negations: List[str] = field(default_factory=lambda: ["не продан"])
    text_limit: int = 20000

    def payload(self, expected: Optional[List[str]] = None) -> Dict[str, Any]:
        """Script argument; ``expected`` selectors become the expected_content group."""
        groups = dict(self.groups)
        if expected:
            groups["expected_content"] = list(expected)
        return {"groups": groups, "textLimit": self.text_limit}


DEFAULT_MARKERS = DocumentMarkers()


INSPECT_SCRIPT = """
(markers) => {
    const has = (selector) => {
        try { return !!document.querySelector(selector); } catch (e) { return false; }
    };
    const hits = {};
    for (const [group, selectors] of Object.entries(markers.groups)) {
        hits[group] = selectors.some(has);
    }
    const body = document.body ? (document.body.textContent || '') : '';
    const attr = (selector, name) => Array.from(document.querySelectorAll(selector))
        .map((el) => el.getAttribute(name))
        .filter(Boolean);
    return {
        href: window.location.href,
        title: document.title || '',
        text_length: body.length,
        text: body.slice(0, markers.textLimit).toLowerCase(),
        hits: hits,
        iframe_srcs: attr('iframe[src]', 'src').slice(0, 20),
        script_srcs: attr('script[src]', 'src')
            .filter((src) => /captcha|turnstile/i.test(src))
            .slice(0, 20),
        site_keys: attr('[data-sitekey]', 'data-sitekey'),
        callbacks: attr('[data-callback]', 'data-callback'),
    };
}
"""


@dataclass
class PageSignals:
    """What the inspection script saw in the document."""
    href: str = ""
    title: str = ""
    text_length: int = 0
    text: str = ""
    hits: Dict[str, bool] = field(default_factory=dict)
    iframe_srcs: List[str] = field(default_factory=list)
    script_srcs: List[str] = field(default_factory=list)
    site_keys: List[str] = field(default_factory=list)
    callbacks: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PageSignals":
        data = data or {}
        return cls(
            href=str(data.get("href") or ""),
            title=str(data.get("title") or ""),
            text_length=int(data.get("text_length") or 0),
            text=str(data.get("text") or "").lower(),
            hits={k: bool(v) for k, v in (data.get("hits") or {}).items()},
            iframe_srcs=list(data.get("iframe_srcs") or []),
            script_srcs=list(data.get("script_srcs") or []),
            site_keys=list(data.get("site_keys") or []),
            callbacks=list(data.get("callbacks") or []),
        )

    def has(self, group: str) -> bool:
        return self.hits.get(group, False)

    def contains(self, phrases: List[str]) -> bool:
        return any(phrase in self.text for phrase in phrases)


# ============== Rules ==============

def is_captcha_redirect(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    href = signals.href.lower()
    return any(host in href for host in markers.captcha_hosts)


def listing_content(signals: PageSignals) -> bool:
    """Title plus price or main container: a real listing page."""
    return signals.has("title") and (signals.has("price") or signals.has("main_content"))


def is_removed(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    title = signals.title.lower()
    return (
        signals.has("removed_markup")
        or signals.contains(markers.removed_phrases)
        or ("404" in title and len(title) < 50)
        or (signals.contains(markers.not_found_phrases) and signals.text_length < 2000)
    )


def is_sold(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    return (
        signals.has("sold_markup")
        or (signals.contains(markers.sold_text_phrases) and not signals.contains(markers.sold_negations))
        or signals.contains(markers.sold_phrases)
        or (signals.contains(markers.sold_badge_phrases) and signals.has("sold_badge"))
    )


def listing_notice(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    """The site's own removed/sold notice, which is a real document too."""
    return is_removed(signals, markers) or is_sold(signals, markers)


def content_confirmed(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    """
    Positive evidence that the document is the site's content.

    Any of: listing markup, index markup, the caller's expected selectors, or
    a removed/sold notice.
    """
    return (
        listing_content(signals)
        or signals.has("index_content")
        or signals.has("expected_content")
        or listing_notice(signals, markers)
    )


def has_captcha(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    return (
        is_captcha_redirect(signals, markers)
        or signals.has("captcha_markup")
        or signals.contains(markers.captcha_phrases)
    )


def is_blocked(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    """
    Decide whether the document is a block page.

    A CAPTCHA redirect is always a block. Otherwise the page is blocked
    unless its content is confirmed; confirmed content wins over CAPTCHA
    markup and block phrasing. A long page with no recognizable markup is
    a block page, not content.
    """
    if is_captcha_redirect(signals, markers):
        return True

    if content_confirmed(signals, markers):
        return False

    if has_captcha(signals, markers) or signals.has("block_markup"):
        logger.debug(f"[Detection] CAPTCHA or block markup on {signals.href}")
    elif block_phrase(signals, markers):
        logger.debug(f"[Detection] Block phrasing on {signals.href}")
    else:
        logger.debug(f"[Detection] No content confirmed on {signals.href} ({signals.text_length} chars)")
    return True


def block_phrase(signals: PageSignals, markers: DocumentMarkers = DEFAULT_MARKERS) -> bool:
    """Block phrasing on a short page or in a short title."""
    title = signals.title.lower()
    for phrase in markers.block_phrases:
        if phrase in signals.text and signals.text_length < 500:
            return True
        if phrase in title and len(title) < 100:
            return True
    return False


def _render_key(signals: PageSignals) -> Optional[str]:
    for src in signals.script_srcs:
        match = re.search(r"recaptcha.*[?&]render=([^&'\"\s]+)", src)
        if match and match.group(1) not in ("explicit", "onload"):
            return match.group(1)
    return None


def detect_captcha_type(
    signals: PageSignals,
    markers: DocumentMarkers = DEFAULT_MARKERS,
) -> Optional[CaptchaType]:
    """Identify the CAPTCHA provider on the page, None if there is none."""
    if is_captcha_redirect(signals, markers):
        return CaptchaType.SMARTCAPTCHA_REDIRECT
    if signals.has("hcaptcha") or any("hcaptcha.com" in src for src in signals.iframe_srcs):
        return CaptchaType.HCAPTCHA
    if signals.has("turnstile"):
        return CaptchaType.TURNSTILE
    if signals.has("recaptcha_invisible") or _render_key(signals):
        return CaptchaType.RECAPTCHA_INVISIBLE
    if signals.has("recaptcha") or signals.site_keys:
        return CaptchaType.RECAPTCHA_CHECKBOX
    if signals.has("smartcaptcha"):
        return CaptchaType.SMARTCAPTCHA_REDIRECT
    if signals.has("image_captcha") or has_captcha(signals, markers):
        return CaptchaType.IMAGE
    return None


def extract_site_key(signals: PageSignals, captcha_type: Optional[CaptchaType]) -> Optional[str]:
    """Find the provider site key, None when the page does not expose one."""
    if captcha_type in (None, CaptchaType.IMAGE):
        return None

    if captcha_type == CaptchaType.RECAPTCHA_INVISIBLE:
        key = _render_key(signals)
        if key:
            return key

    if signals.site_keys:
        return signals.site_keys[0]

    patterns = {
        CaptchaType.RECAPTCHA_CHECKBOX: r"recaptcha.*[?&]k=([^&]+)",
        CaptchaType.RECAPTCHA_INVISIBLE: r"recaptcha.*[?&]k=([^&]+)",
        CaptchaType.HCAPTCHA: r"hcaptcha.*[?&#]sitekey=([^&]+)",
        CaptchaType.TURNSTILE: r"[?&#]sitekey=([^&]+)",
        CaptchaType.SMARTCAPTCHA_REDIRECT: r"[?&]sitekey=([^&]+)",
    }
    pattern = patterns.get(captcha_type)
    if pattern:
        for src in signals.iframe_srcs + [signals.href]:
            match = re.search(pattern, src)
            if match:
                return match.group(1)
    return None


# ============== Page inspection ==============

class PageInspector:
    """Runs the inspection script against a live page."""

    def __init__(self, markers: Optional[DocumentMarkers] = None):
        self.markers = markers or DEFAULT_MARKERS

    async def inspect(self, page: Page, expected: Optional[List[str]] = None) -> PageSignals:
        raw = await page.evaluate(INSPECT_SCRIPT, self.markers.payload(expected))
        return PageSignals.from_dict(raw)

    async def is_blocked(self, page: Page, expected: Optional[List[str]] = None) -> bool:
        return is_blocked(await self.inspect(page, expected), self.markers)

    async def has_captcha(self, page: Page) -> bool:
        return has_captcha(await self.inspect(page), self.markers)
