"""
Core components for listing acquisition and reconciliation.

Modules:
- models: Listing, crawl and status-check data types
- error_handler: Error taxonomy and transient browser error detection
- captcha_solver: CapSolver/2Captcha integration
- run_guard: Per-job overlap protection
- crawler: Source index walk and listing upsert
- reconciler: Removed-listing diff after a crawl
- status_checker: Listing status classification and sweeps
- scheduler: Cron triggers for reconcile and sweep jobs
- engine: Ties everything together
"""

from .models import (
    Listing,
    ListingStatus,
    NavigationOutcome,
    CrawlItem,
    CrawlSnapshot,
    ReconcileResult,
    StatusChange,
    StatusCheckResult,
    canonicalize_url,
    identity_key,
)
from .error_handler import (
    ListingSyncError,
    TransientNavigationError,
    SessionLifecycleError,
    CaptchaSessionNotFound,
    IncompleteCrawlError,
)

__all__ = [
    "Listing",
    "ListingStatus",
    "NavigationOutcome",
    "CrawlItem",
    "CrawlSnapshot",
    "ReconcileResult",
    "StatusChange",
    "StatusCheckResult",
    "canonicalize_url",
    "identity_key",
    "ListingSyncError",
    "TransientNavigationError",
    "SessionLifecycleError",
    "CaptchaSessionNotFound",
    "IncompleteCrawlError",
]
