"""
Tests for listing identity and result records.
"""

from datetime import datetime, timedelta

from core.models import (
    CrawlItem,
    CrawlSnapshot,
    ListingStatus,
    ReconcileResult,
    StatusCheckStats,
    canonicalize_url,
    identity_key,
)


class TestCanonicalizeUrl:

    def test_tracking_params_and_fragment_are_dropped(self):
        url = "https://Example.COM/cars/1/?utm_source=tg&color=red&ref=home#gallery"
        assert canonicalize_url(url) == "https://example.com/cars/1?color=red"

    def test_path_case_is_kept(self):
        assert canonicalize_url("https://example.com/Cars/A") == "https://example.com/Cars/A"

    def test_root_path_slash_is_kept(self):
        assert canonicalize_url("https://example.com/") == "https://example.com/"

    def test_blank(self):
        assert canonicalize_url("   ") == ""
        assert canonicalize_url(None) == ""

    def test_identity_key_ignores_case(self):
        assert identity_key("https://example.com/Cars/A") == identity_key("https://EXAMPLE.com/cars/a/")


class TestCrawlSnapshot:

    def test_records_each_kind_of_item(self):
        snapshot = CrawlSnapshot(source_tag="t")
        for item in (
            CrawlItem.processed("https://example.com/cars/A"),
            CrawlItem.skip("https://example.com/cars/b"),
            CrawlItem.failed("https://example.com/cars/c", "timeout"),
        ):
            snapshot.record(item)

        assert snapshot.total == 3
        assert (snapshot.processed, snapshot.skipped, snapshot.errors) == (1, 1, 1)
        assert snapshot.identifiers == {"https://example.com/cars/a"}
        assert snapshot.error_list == [("https://example.com/cars/c", "timeout")]


class TestResults:

    def test_reconcile_duration(self):
        started = datetime(2024, 1, 1, 12, 0, 0)
        result = ReconcileResult(source_tag="t", started_at=started)
        assert result.duration_seconds == 0.0

        result.finished_at = started + timedelta(seconds=90)
        assert result.to_dict()["duration_seconds"] == 90.0

    def test_status_stats_count(self):
        stats = StatusCheckStats()
        stats.count(ListingStatus.SOLD)
        stats.count(ListingStatus.SOLD)
        stats.count(ListingStatus.UNKNOWN)

        assert stats.to_dict()["sold"] == 2
        assert stats.unknown == 1
