"""
Listing Sync Engine - wires the acquisition components together.

Usage:
    engine = ListingSyncEngine.from_config(config)
    await engine.initialize()
    result = await engine.reconcile_source("oldtimerfarm")
    results = await engine.reconcile_all()
    change = await engine.check_status("https://example.com/cars/1")
    await engine.close()
"""

import logging
from typing import Dict, Iterable, Optional

from adapters.base import ListingExtractor
from adapters.selector_extractor import load_extractors
from api.database import ListingStore
from browser.captcha_manager import CaptchaResolver
from browser.detection import PageInspector
from browser.navigation import NavigationController
from browser.remote_assist import RemoteAssistRelay
from browser.session_manager import BrowserSessionManager
from core.captcha_solver import CaptchaSolver
from core.crawler import SourceCrawler
from core.error_handler import ListingSyncError
from core.models import ReconcileResult, StatusChange, StatusCheckResult
from core.reconciler import CrawlReconciler
from core.run_guard import RunGuard, get_run_guard
from core.status_checker import ListingStatusClassifier
from monitoring.notifications import NotificationManager, NotificationConfig

logger = logging.getLogger(__name__)

ALL_SOURCES_JOB = "reconcile:all"


class UnknownSourceError(KeyError):
    """No extractor is registered for a source tag."""


class ListingSyncEngine:
    """
    Owns one instance of every component and exposes the job entry points
    used by the HTTP API, the CLI and the scheduler.
    """

    def __init__(
        self,
        store: ListingStore,
        session_manager: BrowserSessionManager,
        navigator: NavigationController,
        relay: RemoteAssistRelay,
        resolver: CaptchaResolver,
        classifier: ListingStatusClassifier,
        reconciler: CrawlReconciler,
        extractors: Optional[Dict[str, ListingExtractor]] = None,
        app_config=None,
    ):
        self.store = store
        self.session_manager = session_manager
        self.navigator = navigator
        self.relay = relay
        self.resolver = resolver
        self.classifier = classifier
        self.reconciler = reconciler
        self.extractors: Dict[str, ListingExtractor] = dict(extractors or {})
        self.app_config = app_config

    @classmethod
    def from_config(
        cls,
        app_config,
        extractors: Optional[Dict[str, ListingExtractor]] = None,
        relay: Optional[RemoteAssistRelay] = None,
        run_guard: Optional[RunGuard] = None,
    ) -> "ListingSyncEngine":
        inspector = PageInspector()
        run_guard = run_guard or get_run_guard()
        store = ListingStore(app_config.DATABASE_PATH)
        relay = relay or RemoteAssistRelay.from_config(app_config)
        notifier = NotificationManager(NotificationConfig.from_app_config(app_config))
        resolver = CaptchaResolver.from_config(
            app_config,
            solver=CaptchaSolver.from_config(app_config),
            relay=relay,
            notifier=notifier,
        )
        navigator = NavigationController(app_config.navigation, inspector=inspector, resolver=resolver)
        session_manager = BrowserSessionManager.from_config(app_config)
        classifier = ListingStatusClassifier(
            session_manager,
            navigator,
            store=store,
            inspector=inspector,
            config=app_config.crawl,
            run_guard=run_guard,
        )
        if extractors is None:
            extractors = load_extractors(app_config.load_sources())

        return cls(
            store=store,
            session_manager=session_manager,
            navigator=navigator,
            relay=relay,
            resolver=resolver,
            classifier=classifier,
            reconciler=CrawlReconciler(store, run_guard=run_guard),
            extractors=extractors,
            app_config=app_config,
        )

    async def initialize(self):
        await self.store.init()
        logger.info(
            f"[Engine] Ready: {len(self.extractors)} source(s), "
            f"solver={'on' if self.resolver.automated_available else 'off'}, "
            f"manual relay={'on' if self.resolver.manual_available else 'off'}"
        )

    async def close(self):
        await self.session_manager.close_all()

    def crawler_for(self, source_tag: str) -> SourceCrawler:
        extractor = self.extractors.get(source_tag)
        if extractor is None:
            raise UnknownSourceError(source_tag)
        crawl_config = self.app_config.crawl if self.app_config is not None else None
        return SourceCrawler(extractor, self.session_manager, self.navigator, self.store, config=crawl_config)

    async def reconcile_source(self, source_tag: str) -> Optional[ReconcileResult]:
        """Crawl one source and mark listings it no longer shows as removed."""
        crawler = self.crawler_for(source_tag)
        return await self.reconciler.reconcile(source_tag, crawler.crawl)

    async def reconcile_all(
        self,
        source_tags: Optional[Iterable[str]] = None,
    ) -> Optional[Dict[str, Optional[ReconcileResult]]]:
        """
        Reconcile sources one after another, never two at once.

        Returns None when a full cycle is already running. A source whose
        crawl aborts is logged and maps to None; the cycle moves on.
        """
        async with self.reconciler.run_guard.try_run(ALL_SOURCES_JOB) as acquired:
            if not acquired:
                return None

            tags = list(self.extractors if source_tags is None else source_tags)
            logger.info(f"[Engine] Reconcile cycle over {len(tags)} source(s)")
            results: Dict[str, Optional[ReconcileResult]] = {}
            for source_tag in tags:
                try:
                    results[source_tag] = await self.reconcile_source(source_tag)
                except ListingSyncError as e:
                    logger.error(f"[Engine] Reconcile of {source_tag} aborted: {e}")
                    results[source_tag] = None
            return results

    async def check_status(self, url: str) -> StatusChange:
        return await self.classifier.check_listing(url)

    async def sweep_statuses(self, days_old: Optional[int] = None, check_all: bool = False) -> Optional[StatusCheckResult]:
        return await self.classifier.check_stale_listings(days_old=days_old, check_all=check_all)

    def is_running(self, job: str) -> bool:
        return self.reconciler.run_guard.is_running(job)


# Global instance
_engine: Optional[ListingSyncEngine] = None


def get_engine() -> ListingSyncEngine:
    """Get or create the global engine."""
    global _engine
    if _engine is None:
        from api.config import get_config
        from browser.remote_assist import get_relay
        _engine = ListingSyncEngine.from_config(get_config(), relay=get_relay())
    return _engine
