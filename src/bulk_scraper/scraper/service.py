"""Intake orchestration for bulk scrape submissions.

:meth:`ScrapeService.initiate_scraping` is the only entry point.  It runs
synchronously and returns once every job graph has been handed to the queue
backend.  Outcomes are observed later through the persisted transactions
and logs.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from bulk_scraper.core.exceptions import FlowSubmissionError, InvalidSubmissionError
from bulk_scraper.core.models.scraping import LogType, ScrapeStatus, TransactionStatus
from bulk_scraper.core.schemas.scraping import ScrapeAccepted
from bulk_scraper.core.store import ScrapeStore
from bulk_scraper.scraper.deduplicator import Deduplicator
from bulk_scraper.scraper.flow import FlowScheduler
from bulk_scraper.scraper.planner import BatchPlanner, JobGraph

logger = structlog.get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ScrapeService:
    """Creates the request, deduplicates, plans and submits job graphs.

    Args:
        store: Persistence.
        deduplicator: Validation, dedup and classification.
        planner: Chunks new URLs into job graphs.
        scheduler: Submits job graphs to the queue backend.
        clock: Returns the submission timestamp in epoch milliseconds.
    """

    def __init__(
        self,
        store: ScrapeStore,
        deduplicator: Deduplicator,
        planner: BatchPlanner,
        scheduler: FlowScheduler,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._deduplicator = deduplicator
        self._planner = planner
        self._scheduler = scheduler
        self._clock = clock

    def initiate_scraping(
        self, urls: Sequence[str], tag: str | None = None
    ) -> ScrapeAccepted:
        """Accept a submission.

        Raises:
            InvalidSubmissionError: *urls* is empty.
            FlowSubmissionError: The queue backend rejected a batch.  The
                request's expected batch count is reduced to the batches
                that were accepted, and the URLs claimed for the rejected
                batches are moved to ``error``, before re-raising.
        """
        if not urls:
            raise InvalidSubmissionError("At least one URL is required")

        scrape_id = self._store.create_scrape(urls, tag)
        log = logger.bind(scrape_id=scrape_id)
        log.info("scrape created", total_urls=len(urls), tag=tag)

        self._store.add_log(
            scrape_id,
            log_type=LogType.INIT,
            status=ScrapeStatus.PROCESSING.value,
            message=f"Initiated scraping for {len(urls)} URLs",
            length=len(urls),
            succeed=0,
            failed=0,
            metadata={"urls": list(urls), "tag": tag},
        )

        dedup = self._deduplicator.process(scrape_id, urls, tag)
        graphs = self._planner.plan(scrape_id, dedup.partition, self._clock())
        self._store.set_expected_batches(scrape_id, len(graphs))

        try:
            self._scheduler.submit(scrape_id, graphs)
        except FlowSubmissionError as exc:
            self._store.set_expected_batches(scrape_id, exc.submitted_batches)
            self._fail_unsubmitted(scrape_id, graphs[exc.submitted_batches :], exc)
            log.error(
                "intake aborted",
                planned_batches=len(graphs),
                submitted_batches=exc.submitted_batches,
            )
            raise

        log.info("scraping initiated", batches=len(graphs), new_urls=dedup.new)
        return ScrapeAccepted(
            scrape_id=scrape_id,
            total_urls=dedup.total,
            new_urls=dedup.new,
            invalid_urls=dedup.invalid,
            duplicate_urls=dedup.duplicates,
            batches=len(graphs),
        )

    def _fail_unsubmitted(
        self, scrape_id: str, graphs: Sequence[JobGraph], exc: FlowSubmissionError
    ) -> None:
        """Write a terminal ``error`` row for every URL of *graphs*.

        These URLs were claimed at intake but will never be fetched.  Write
        failures are logged; the submission error is what the caller sees.
        """
        for graph in graphs:
            for child in graph.children:
                metadata = {
                    "errorType": "FlowSubmissionError",
                    "errorMessage": str(exc),
                    "strategy": child.strategy.value,
                    "attempts": 0,
                    "jobId": child.id,
                    "parentJobId": graph.parent.id,
                }
                try:
                    self._store.complete_transaction(
                        scrape_id, child.url, TransactionStatus.ERROR.value, None, metadata
                    )
                except SQLAlchemyError as write_exc:
                    logger.error(
                        "could not release unsubmitted claim",
                        scrape_id=scrape_id,
                        url=child.url,
                        error=str(write_exc),
                    )
