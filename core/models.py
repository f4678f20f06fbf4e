#!/usr/bin/env python3
"""
Shared Data Models for the Listing Sync Engine

Listing identity, lifecycle status, navigation bookkeeping and the result
records produced by crawl, reconcile and status-check jobs.
"""

from typing import List, Optional, Dict, Any, Set, Tuple
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode


# ============== Enums ==============

class ListingStatus(str, Enum):
    """Lifecycle status of a catalog listing."""
    ACTIVE = "active"
    SOLD = "sold"
    REMOVED = "removed"
    UNKNOWN = "unknown"


class NavigationOutcome(str, Enum):
    """Result of a single navigation attempt."""
    SUCCESS = "success"
    BLOCKED_NO_CAPTCHA = "blocked-no-captcha"
    BLOCKED_CAPTCHA = "blocked-captcha"
    TRANSPORT_ERROR = "transport-error"


# ============== URL identity ==============

# Query parameters that only carry tracking/referral state
TRACKING_PARAMS = frozenset({
    "context",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "ref",
    "from",
    "src",
    "r",
    "af",
    "gclid",
    "fbclid",
    "yclid",
})


def canonicalize_url(url: str) -> str:
    """
    Normalize a listing URL into its identity form.

    Scheme and host are lower-cased, tracking parameters and the fragment
    are dropped, and a trailing slash on the path is removed. Remaining
    query parameters keep their order.
    """
    url = (url or "").strip()
    if not url:
        return ""

    parts = urlsplit(url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    path = parts.path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")

    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        path,
        urlencode(query),
        "",
    ))


def identity_key(url: str) -> str:
    """Case-insensitive comparison key for a listing identifier."""
    return canonicalize_url(url).lower()


# ============== Catalog ==============

@dataclass
class Listing:
    """A persisted catalog entry identified by its canonical source URL."""
    url: str
    source_tag: str
    status: ListingStatus = ListingStatus.ACTIVE
    last_checked_at: Optional[datetime] = None
    title: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    mileage: Optional[int] = None
    city: Optional[str] = None
    description: Optional[str] = None
    images: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "source_tag": self.source_tag,
            "status": self.status.value,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
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
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ============== Navigation ==============

@dataclass
class NavigationAttempt:
    """Bookkeeping for one navigation attempt."""
    attempt: int
    outcome: NavigationOutcome
    error: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)


@dataclass
class NavigationResult:
    """Outcome of one navigate call with its own attempt log."""
    url: str
    success: bool = False
    attempts: List[NavigationAttempt] = field(default_factory=list)

    def record(self, attempt: int, outcome: NavigationOutcome, error: Optional[str] = None):
        self.attempts.append(NavigationAttempt(attempt=attempt, outcome=outcome, error=error))

    @property
    def outcomes(self) -> List[NavigationOutcome]:
        return [attempt.outcome for attempt in self.attempts]


# ============== Crawl & reconcile ==============

@dataclass
class CrawlItem:
    """One unit yielded by a crawl pass: a processed identifier or a failure."""
    url: str
    ok: bool = True
    skipped: bool = False
    error: Optional[str] = None

    @classmethod
    def processed(cls, url: str) -> "CrawlItem":
        return cls(url=url)

    @classmethod
    def skip(cls, url: str) -> "CrawlItem":
        return cls(url=url, ok=False, skipped=True)

    @classmethod
    def failed(cls, url: str, error: str) -> "CrawlItem":
        return cls(url=url, ok=False, error=error)


@dataclass
class CrawlSnapshot:
    """Identifiers observed during one crawl pass of a source."""
    source_tag: str
    identifiers: Set[str] = field(default_factory=set)
    total: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    error_list: List[Tuple[str, str]] = field(default_factory=list)

    def record(self, item: CrawlItem):
        self.total += 1
        if item.ok:
            self.processed += 1
            self.identifiers.add(identity_key(item.url))
        elif item.skipped:
            self.skipped += 1
        else:
            self.errors += 1
            self.error_list.append((item.url, item.error or "unknown error"))


@dataclass
class ReconcileResult:
    """Summary of one reconcile run."""
    source_tag: str
    total: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    removed: List[str] = field(default_factory=list)
    error_list: List[Tuple[str, str]] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_tag": self.source_tag,
            "total": self.total,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "removed": list(self.removed),
            "errors_list": [{"url": url, "error": err} for url, err in self.error_list],
            "duration_seconds": round(self.duration_seconds, 2),
        }


# ============== Status checks ==============

@dataclass
class StatusCheckStats:
    """Counters for a status sweep."""
    total: int = 0
    active: int = 0
    sold: int = 0
    removed: int = 0
    unknown: int = 0
    status_changed: int = 0
    errors: int = 0

    def count(self, status: ListingStatus):
        setattr(self, status.value, getattr(self, status.value) + 1)

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "active": self.active,
            "sold": self.sold,
            "removed": self.removed,
            "unknown": self.unknown,
            "status_changed": self.status_changed,
            "errors": self.errors,
        }


@dataclass
class StatusChange:
    url: str
    old_status: Optional[ListingStatus]
    new_status: ListingStatus


@dataclass
class StatusCheckResult:
    """Outcome of a status sweep."""
    stats: StatusCheckStats = field(default_factory=StatusCheckStats)
    changes: List[StatusChange] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats.to_dict(),
            "changes": [
                {
                    "url": change.url,
                    "old_status": change.old_status.value if change.old_status else None,
                    "new_status": change.new_status.value,
                }
                for change in self.changes
            ],
        }
