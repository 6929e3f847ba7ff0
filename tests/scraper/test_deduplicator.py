"""Tests for intake deduplication over the SQLite-backed store."""

from __future__ import annotations

from unittest.mock import MagicMock

from bulk_scraper.core.models.scraping import TransactionStatus
from bulk_scraper.core.store import ClaimResult, ScrapeStore
from bulk_scraper.scraper.deduplicator import Deduplicator, split_repeats


def _rows(store: ScrapeStore, scrape_id: str) -> list[tuple[str, str]]:
    return sorted((t.url, t.status) for t in store.list_transactions(scrape_id))


class TestSplitRepeats:
    def test_keeps_first_occurrence_order(self) -> None:
        unique, repeats = split_repeats(["b", "a", "b", "c", "a", "b"])

        assert unique == ["b", "a", "c"]
        assert repeats == ["b", "a", "b"]


class TestDeduplicator:
    def test_invalid_urls_are_recorded_and_excluded(self, store: ScrapeStore) -> None:
        urls = ["http://a.test/1", "http://a.test/2", "badurl"]
        scrape_id = store.create_scrape(urls)

        result = Deduplicator(store).process(scrape_id, urls)

        assert result.total == 3
        assert result.invalid == 1
        assert result.duplicates == 0
        assert result.partition.static_urls == ["http://a.test/1", "http://a.test/2"]
        assert ("badurl", TransactionStatus.INVALID.value) in _rows(store, scrape_id)

    def test_known_urls_are_recorded_as_duplicates(self, store: ScrapeStore) -> None:
        first = store.create_scrape(["http://a.test/1"])
        Deduplicator(store).process(first, ["http://a.test/1"])
        second = store.create_scrape(["http://a.test/1", "http://a.test/3"])

        result = Deduplicator(store).process(second, ["http://a.test/1", "http://a.test/3"])

        assert result.duplicates == 1
        assert result.new == 1
        assert _rows(store, second) == [
            ("http://a.test/1", TransactionStatus.DUPLICATED.value),
            ("http://a.test/3", TransactionStatus.PROCESSING.value),
        ]

    def test_repeats_within_one_submission_are_fetched_once(self, store: ScrapeStore) -> None:
        urls = ["http://a.test/1", "http://a.test/1", "http://a.test/2"]
        scrape_id = store.create_scrape(urls)

        result = Deduplicator(store).process(scrape_id, urls)

        assert result.new == 2
        assert result.duplicates == 1
        assert _rows(store, scrape_id) == [
            ("http://a.test/1", TransactionStatus.DUPLICATED.value),
            ("http://a.test/1", TransactionStatus.PROCESSING.value),
            ("http://a.test/2", TransactionStatus.PROCESSING.value),
        ]

    def test_padded_url_is_a_repeat_of_its_stripped_form(self, store: ScrapeStore) -> None:
        urls = ["http://a.test/1", " http://a.test/1"]
        scrape_id = store.create_scrape(urls)

        result = Deduplicator(store).process(scrape_id, urls)

        assert result.new == 1
        assert result.duplicates == 1
        assert result.partition.static_urls == ["http://a.test/1"]
        assert _rows(store, scrape_id) == [
            ("http://a.test/1", TransactionStatus.DUPLICATED.value),
            ("http://a.test/1", TransactionStatus.PROCESSING.value),
        ]

    def test_claim_conflict_counts_as_duplicate(self) -> None:
        # The existence lookup misses the URL (a concurrent request has not
        # committed yet) but the claim loses the unique-index race.
        store = MagicMock(spec=ScrapeStore)
        store.find_existing_urls.return_value = set()
        store.claim_urls.return_value = ClaimResult(
            claimed=["http://a.test/2"], duplicates=["http://a.test/1"]
        )

        result = Deduplicator(store).process("sid", ["http://a.test/1", "http://a.test/2"])

        assert result.duplicates == 1
        assert result.partition.static_urls == ["http://a.test/2"]

    def test_new_urls_are_classified(self, store: ScrapeStore) -> None:
        urls = ["http://a.test/1", "https://www.youtube.com/watch?v=1"]
        scrape_id = store.create_scrape(urls)

        result = Deduplicator(store).process(scrape_id, urls)

        assert result.partition.static_urls == ["http://a.test/1"]
        assert result.partition.rendering_urls == ["https://www.youtube.com/watch?v=1"]
