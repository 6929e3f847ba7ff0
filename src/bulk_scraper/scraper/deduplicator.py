"""Deduplication and strategy classification at intake.

Steps, in order:

1. Syntactic validation.  Invalid URLs are persisted as ``invalid`` and
   never reach the queue.
2. In-request de-duplication, keeping the first occurrence.  Repeats are
   persisted as ``duplicated``.
3. Existence lookup against the store.  URLs seen by any earlier request
   are persisted as ``duplicated``.
4. Claim.  Each remaining URL gets a ``processing`` row; a unique-index
   conflict (a concurrent request claimed it first) turns it into a
   ``duplicated`` row instead.
5. Classification of the claimed URLs into static/rendering.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from bulk_scraper.core.store import ScrapeStore
from bulk_scraper.scraper.classifier import StrategyClassifier, StrategyPartition
from bulk_scraper.scraper.url_validator import validate_urls

logger = structlog.get_logger(__name__)


@dataclass
class DedupResult:
    partition: StrategyPartition
    total: int
    invalid: int
    duplicates: int

    @property
    def new(self) -> int:
        return len(self.partition)


def split_repeats(urls: Sequence[str]) -> tuple[list[str], list[str]]:
    """Return ``(first_occurrences, repeats)`` preserving first-seen order."""
    seen: set[str] = set()
    unique: list[str] = []
    repeats: list[str] = []
    for url in urls:
        if url in seen:
            repeats.append(url)
        else:
            seen.add(url)
            unique.append(url)
    return unique, repeats


class Deduplicator:
    def __init__(self, store: ScrapeStore, classifier: StrategyClassifier | None = None) -> None:
        self._store = store
        self._classifier = classifier or StrategyClassifier()

    def process(
        self, scrape_id: str, urls: Sequence[str], tag: str | None = None
    ) -> DedupResult:
        log = logger.bind(scrape_id=scrape_id)

        valid, invalid = validate_urls(urls)
        self._store.record_invalid(scrape_id, invalid, tag)

        unique, repeats = split_repeats(valid)

        existing = self._store.find_existing_urls(unique)
        candidates = [url for url in unique if url not in existing]
        self._store.record_duplicates(
            scrape_id, repeats + [url for url in unique if url in existing], tag
        )

        claim = self._store.claim_urls(scrape_id, candidates, tag)
        partition = self._classifier.partition(claim.claimed)

        duplicates = len(repeats) + len(existing) + len(claim.duplicates)
        log.info(
            "intake deduplicated",
            total=len(urls),
            invalid=len(invalid),
            duplicates=duplicates,
            new=len(partition),
        )
        return DedupResult(
            partition=partition,
            total=len(urls),
            invalid=len(invalid),
            duplicates=duplicates,
        )
