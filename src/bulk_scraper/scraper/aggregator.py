"""Parent aggregation: fan-in of one batch's child results.

The queue backend calls :meth:`ParentAggregator.aggregate` once per batch,
after every child has returned.  It counts the children's ``success`` flags,
appends one batch ``Log`` row keyed by the parent job id and advances the
request's batch counters, which complete the request once the last expected
batch is counted.  A batch whose log row already exists is not counted again.

Aggregation is best-effort.  Failures are logged and never re-raised, and
the request is left in ``processing`` for external reconciliation.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from bulk_scraper.core.store import BatchProgress, ScrapeStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BatchSummary:
    total: int
    succeeded: int
    failed: int
    duration_ms: int
    progress: BatchProgress


def count_results(children_results: Mapping[str, Mapping[str, Any]]) -> tuple[int, int, int]:
    """Return ``(total, succeeded, failed)`` from the children's ``success`` flags."""
    total = len(children_results)
    succeeded = sum(1 for result in children_results.values() if result and result.get("success"))
    return total, succeeded, total - succeeded


class ParentAggregator:
    def __init__(self, store: ScrapeStore) -> None:
        self._store = store

    def aggregate(
        self,
        scrape_id: str,
        parent_id: str,
        children_results: Mapping[str, Mapping[str, Any]] | None,
        *,
        batch_index: int | None = None,
        started_at: float | None = None,
    ) -> BatchSummary | None:
        """Account for one completed batch.

        Args:
            scrape_id: Owning request.
            parent_id: Parent job id; a batch is counted once per id, so a
                redelivered aggregation is a no-op.
            children_results: Child job id -> result payload.
            batch_index: Position of the batch, for the log message.
            started_at: Epoch seconds the batch was planned; used for the
                logged duration.

        Returns:
            The batch summary, or ``None`` if nothing was recorded.
        """
        log = logger.bind(scrape_id=scrape_id, parent_id=parent_id, batch_index=batch_index)
        if not children_results:
            log.warning("no children results; batch left unaccounted")
            return None

        try:
            total, succeeded, failed = count_results(children_results)
            label = f"Batch {batch_index}" if batch_index is not None else "Batch"
            duration_ms = (
                max(int((time.time() - started_at) * 1000), 0) if started_at else 0
            )
            progress = self._store.record_batch(
                scrape_id,
                parent_id,
                message=f"{label} completed: {succeeded}/{total} succeeded, {failed} failed",
                length=total,
                succeed=succeeded,
                failed=failed,
                duration=duration_ms,
                completed_at=datetime.now(tz=timezone.utc),
            )
        except Exception as exc:  # noqa: BLE001
            log.error("batch aggregation failed", error=str(exc), exc_info=True)
            return None

        if progress is None:
            log.info("batch already aggregated")
            return None

        log.info(
            "batch aggregated",
            total=total,
            succeeded=succeeded,
            failed=failed,
            progress=progress.progress,
            request_completed=progress.completed,
        )
        return BatchSummary(
            total=total,
            succeeded=succeeded,
            failed=failed,
            duration_ms=duration_ms,
            progress=progress,
        )
