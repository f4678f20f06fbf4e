"""
Crawl reconciliation.

Compares the identifiers stored for a source before a crawl with the ones
the crawl actually observed, and marks the stored listings that vanished
as removed.
"""

import logging
from datetime import datetime
from typing import AsyncIterator, Callable, Optional, Set

from api.logging_config import log_job_summary
from core.models import CrawlItem, CrawlSnapshot, ListingStatus, ReconcileResult, identity_key
from core.run_guard import RunGuard, get_run_guard

logger = logging.getLogger(__name__)

CrawlFn = Callable[[], AsyncIterator[CrawlItem]]


class CrawlReconciler:
    """
    Runs a crawl for a source and applies the removed-listing diff.

    Usage:
        reconciler = CrawlReconciler(store)
        result = await reconciler.reconcile("oldtimerfarm", crawler.crawl)
        if result is None:
            ... the same source was already being reconciled ...
    """

    def __init__(
        self,
        store,
        run_guard: Optional[RunGuard] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.run_guard = run_guard or get_run_guard()
        self.clock = clock

    @staticmethod
    def job_name(source_tag: str) -> str:
        return f"reconcile:{source_tag}"

    async def reconcile(self, source_tag: str, crawl_fn: CrawlFn) -> Optional[ReconcileResult]:
        """
        Crawl a source and mark listings it no longer shows as removed.

        Returns None without doing anything when this source is already
        being reconciled. Errors raised by the crawl itself propagate and
        nothing is marked removed for that run.
        """
        async with self.run_guard.try_run(self.job_name(source_tag)) as acquired:
            if not acquired:
                return None
            return await self._run(source_tag, crawl_fn)

    async def _run(self, source_tag: str, crawl_fn: CrawlFn) -> ReconcileResult:
        result = ReconcileResult(source_tag=source_tag, started_at=self.clock())
        logger.info(f"[Reconciler] Starting reconcile for {source_tag}")

        existing = await self.store.find_identifiers(source_tag)
        snapshot = CrawlSnapshot(source_tag=source_tag)
        # Listings whose page failed to load are not evidence of removal
        unconfirmed: Set[str] = set()

        async for item in crawl_fn():
            snapshot.record(item)
            if item.error:
                unconfirmed.add(identity_key(item.url))
                logger.warning(f"[Reconciler] {source_tag}: {item.url} failed: {item.error}")

        missing = sorted(
            url for url in existing
            if identity_key(url) not in snapshot.identifiers and identity_key(url) not in unconfirmed
        )
        if missing:
            updated = await self.store.bulk_set_status(missing, ListingStatus.REMOVED, self.clock())
            logger.info(f"[Reconciler] {source_tag}: marked {updated} listing(s) as removed")

        result.total = snapshot.total
        result.processed = snapshot.processed
        result.skipped = snapshot.skipped
        result.errors = snapshot.errors
        result.error_list = list(snapshot.error_list)
        result.removed = missing
        result.finished_at = self.clock()

        log_job_summary(
            self.job_name(source_tag),
            total=result.total,
            processed=result.processed,
            skipped=result.skipped,
            errors=result.errors,
            removed=len(result.removed),
            existing=len(existing),
        )
        return result
