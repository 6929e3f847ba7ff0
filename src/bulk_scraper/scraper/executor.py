"""Child job execution: one URL, one strategy, one terminal outcome.

An attempt runs through these steps:

1. the resource admission gate, which may refuse the attempt
2. the shared sliding-window limiter, when one is configured
3. the fetch collaborator for the job's strategy, raced against a hard
   deadline
4. status mapping: success -> ``success``, timeout -> ``timeout``,
   anything else -> ``error``

A successful attempt persists the terminal row and returns.  A failed
attempt raises :class:`~bulk_scraper.core.exceptions.RetryableJobError`
unless it is the last one.  The last attempt persists the terminal failure
and *returns* a result, so the parent aggregation still fires.

The returned payload ``{"success": bool, "metadata": {...}}`` is what the
aggregator reads.  It is not the Transaction row.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from bulk_scraper.core.exceptions import (
    FetchFailedError,
    RateLimitTimeoutError,
    ResourceLimitExceededError,
    StoreWriteError,
)
from bulk_scraper.core.models.scraping import TransactionStatus
from bulk_scraper.core.store import ScrapeStore
from bulk_scraper.scraper.fetchers.base import (
    Fetcher,
    FetchOutcome,
    FetchStatus,
    Strategy,
    failure,
)
from bulk_scraper.scraper.planner import RetryPolicy
from bulk_scraper.scraper.resource_gate import AdmissionGate

logger = structlog.get_logger(__name__)

_STATUS_MAP: dict[FetchStatus, TransactionStatus] = {
    FetchStatus.SUCCESS: TransactionStatus.SUCCESS,
    FetchStatus.TIMEOUT: TransactionStatus.TIMEOUT,
    FetchStatus.ERROR: TransactionStatus.ERROR,
}


def map_status(status: FetchStatus | str) -> TransactionStatus:
    try:
        return _STATUS_MAP[FetchStatus(status)]
    except ValueError:
        return TransactionStatus.ERROR


class SlotLimiter(Protocol):
    async def wait_for_slot(
        self, key: str, max_calls: int, window_seconds: int, timeout: float = 60.0
    ) -> None: ...


@dataclass(frozen=True)
class LimiterSettings:
    key: str
    max_calls: int
    window_seconds: int
    timeout: float = 60.0


class ChildJobExecutor:
    """Runs one execution job attempt.

    Args:
        store: Persistence for the terminal Transaction row.
        fetchers: One fetch collaborator per strategy.
        gate: Pre-execution admission check.
        policy: Attempt budget; decides which attempt is final.
        limiter: Optional shared limiter awaited before fetching.
        limiter_settings: Key and window for *limiter*.
        deadline: Hard per-attempt fetch deadline, in seconds.
        store_write_attempts: In-process attempts at the terminal write.
        store_retry_delay: Base delay between terminal-write attempts.
        sleep: Awaitable sleep, injectable for tests.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: ScrapeStore,
        fetchers: Mapping[Strategy, Fetcher],
        gate: AdmissionGate,
        policy: RetryPolicy,
        *,
        limiter: SlotLimiter | None = None,
        limiter_settings: LimiterSettings | None = None,
        deadline: float = 30.0,
        store_write_attempts: int = 3,
        store_retry_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limiter is not None and limiter_settings is None:
            raise ValueError("limiter_settings is required when a limiter is given")
        self._store = store
        self._fetchers = fetchers
        self._gate = gate
        self._policy = policy
        self._limiter = limiter
        self._limiter_settings = limiter_settings
        self._deadline = deadline
        self._store_write_attempts = max(store_write_attempts, 1)
        self._store_retry_delay = store_retry_delay
        self._sleep = sleep
        self._clock = clock

    async def execute(self, job: Mapping[str, Any], attempt: int = 1) -> dict[str, Any]:
        """Run attempt number *attempt* (1-based) of *job*.

        Raises:
            RetryableJobError: The attempt failed and budget remains.
            StoreWriteError: The terminal row could not be written.
        """
        url: str = job["url"]
        scrape_id: str = job["scrape_id"]
        strategy = Strategy(job["strategy"])
        final = self._policy.is_final(attempt)
        log = logger.bind(
            scrape_id=scrape_id, job_id=job.get("id"), url=url, attempt=attempt
        )

        started = self._clock()
        try:
            await self._gate.admit()
        except ResourceLimitExceededError as exc:
            if not final:
                raise
            outcome = failure(
                FetchStatus.ERROR,
                "ResourceLimitExceeded",
                str(exc),
                memoryPercent=exc.memory_percent,
                cpuPercent=exc.cpu_percent,
            )
        else:
            outcome = await self._limited_fetch(strategy, url)
        duration_ms = int((self._clock() - started) * 1000)

        status = map_status(outcome.status)
        if outcome.ok:
            metadata = {
                **outcome.metadata,
                "processingTime": duration_ms,
                "strategy": strategy.value,
                "attempts": attempt,
            }
            await self._persist(scrape_id, url, status, outcome.content, metadata)
            log.info("job succeeded", duration_ms=duration_ms)
            return self._result(job, status, metadata)

        if not final:
            log.warning(
                "attempt failed",
                status=status.value,
                error_type=outcome.metadata.get("errorType"),
                error=outcome.metadata.get("errorMessage"),
            )
            raise FetchFailedError(status.value, outcome.metadata)

        metadata = {
            **outcome.metadata,
            "errorType": outcome.metadata.get("errorType", "UnknownError"),
            "errorMessage": outcome.metadata.get("errorMessage", ""),
            "attempts": attempt,
            "lastAttemptDuration": duration_ms,
            "processingTime": duration_ms,
            "strategy": strategy.value,
        }
        await self._persist(scrape_id, url, status, None, metadata)
        log.warning(
            "job failed after final attempt",
            status=status.value,
            error_type=metadata["errorType"],
        )
        return self._result(job, status, metadata)

    async def _limited_fetch(self, strategy: Strategy, url: str) -> FetchOutcome:
        if self._limiter is not None and self._limiter_settings is not None:
            cfg = self._limiter_settings
            try:
                await self._limiter.wait_for_slot(
                    cfg.key, cfg.max_calls, cfg.window_seconds, timeout=cfg.timeout
                )
            except RateLimitTimeoutError as exc:
                return failure(FetchStatus.ERROR, "RateLimitTimeout", str(exc))
        return await self._fetch(strategy, url)

    async def _fetch(self, strategy: Strategy, url: str) -> FetchOutcome:
        fetcher = self._fetchers[strategy]
        try:
            return await asyncio.wait_for(fetcher.fetch(url), timeout=self._deadline)
        except asyncio.TimeoutError:
            return failure(
                FetchStatus.TIMEOUT,
                "ProcessingTimeout",
                f"Processing timeout after {self._deadline:g}s",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("fetcher raised", url=url, strategy=strategy.value)
            return failure(FetchStatus.ERROR, type(exc).__name__, str(exc))

    async def _persist(
        self,
        scrape_id: str,
        url: str,
        status: TransactionStatus,
        content: str | None,
        metadata: dict[str, Any],
    ) -> None:
        for write_attempt in range(1, self._store_write_attempts + 1):
            try:
                self._store.complete_transaction(
                    scrape_id, url, status.value, content, metadata
                )
                return
            except SQLAlchemyError as exc:
                logger.warning(
                    "terminal write failed",
                    scrape_id=scrape_id,
                    url=url,
                    write_attempt=write_attempt,
                    error=str(exc),
                )
                if write_attempt == self._store_write_attempts:
                    raise StoreWriteError(
                        f"Could not persist terminal status for {url}"
                    ) from exc
                await self._sleep(self._store_retry_delay * 2 ** (write_attempt - 1))

    @staticmethod
    def _result(
        job: Mapping[str, Any], status: TransactionStatus, metadata: Mapping[str, Any]
    ) -> dict[str, Any]:
        summary = {
            "jobId": job.get("id"),
            "url": job["url"],
            "status": status.value,
            "strategy": metadata.get("strategy"),
            "processingTime": metadata.get("processingTime"),
            "attempts": metadata.get("attempts"),
        }
        if status is not TransactionStatus.SUCCESS:
            summary["errorType"] = metadata.get("errorType")
            summary["errorMessage"] = metadata.get("errorMessage")
        return {"success": status is TransactionStatus.SUCCESS, "metadata": summary}
