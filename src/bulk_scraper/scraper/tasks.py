"""Celery tasks for bulk scraping.

``execute_child_task``
    One URL through one strategy (execution queue).  Runs the
    :class:`~bulk_scraper.scraper.executor.ChildJobExecutor` under
    ``asyncio.run()`` and returns the child result payload.

``aggregate_batch_task``
    Chord body for one batch (aggregation queue).  Receives the header
    results in submission order and keys them by child job id for the
    :class:`~bulk_scraper.scraper.aggregator.ParentAggregator`.

Task naming convention::

    bulk_scraper.scraper.tasks.<action>

Retry policy:
    A failed attempt reported by the executor (``RetryableJobError``) is
    redelivered with the per-job backoff ``job_backoff_seconds * 2**n``.
    Infrastructure failures (database unreachable, terminal write failed)
    are redelivered with the queue-level backoff
    ``queue_backoff_seconds * 2**n``.  Both draw on the same attempt budget.
    Neither path raises once the budget is spent: the task returns a failed
    result so the chord body still fires.  An infrastructure failure on the
    last attempt first tries once more to write the terminal ``error`` row.
"""

from __future__ import annotations

import asyncio
import time
from functools import lru_cache
from typing import Any

import structlog
from sqlalchemy.exc import OperationalError

from bulk_scraper.config.settings import Settings, get_settings
from bulk_scraper.core.exceptions import RetryableJobError, StoreWriteError
from bulk_scraper.core.models.scraping import TransactionStatus
from bulk_scraper.core.store import ScrapeStore
from bulk_scraper.scraper.aggregator import ParentAggregator
from bulk_scraper.scraper.config import (
    AGGREGATE_TASK_NAME,
    EXECUTE_TASK_NAME,
    EXECUTION_RATE_LIMIT_KEY,
)
from bulk_scraper.scraper.executor import ChildJobExecutor, LimiterSettings, SlotLimiter
from bulk_scraper.scraper.fetchers import Fetcher, Strategy, build_fetchers
from bulk_scraper.scraper.planner import RetryPolicy
from bulk_scraper.scraper.resource_gate import (
    AdmissionGate,
    PsutilSampler,
    ResourceThresholds,
)
from bulk_scraper.workers.celery_app import celery_app
from bulk_scraper.workers.rate_limiter import RateLimiter, get_redis_client

logger = structlog.get_logger(__name__)

_settings = get_settings()


def worker_rate_limit(max_calls: int, window_seconds: int) -> str:
    """Celery ``rate_limit`` string for *max_calls* per *window_seconds*."""
    return f"{max_calls * 60 / max(window_seconds, 1):g}/m"


def job_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(attempts=settings.job_attempts, base_delay=settings.job_backoff_seconds)


def queue_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(attempts=settings.job_attempts, base_delay=settings.queue_backoff_seconds)


@lru_cache
def _fetchers() -> dict[Strategy, Fetcher]:
    return dict(build_fetchers(get_settings()))


def build_executor(
    settings: Settings,
    *,
    store: ScrapeStore | None = None,
    fetchers: dict[Strategy, Fetcher] | None = None,
    limiter: SlotLimiter | None = None,
) -> ChildJobExecutor:
    gate = AdmissionGate(
        sampler=PsutilSampler(),
        thresholds=ResourceThresholds(
            max_memory_percent=settings.max_memory_percent,
            max_cpu_percent=settings.max_cpu_percent,
        ),
        cooldown=settings.resource_cooldown_seconds,
    )
    return ChildJobExecutor(
        store=store or ScrapeStore(),
        fetchers=fetchers if fetchers is not None else _fetchers(),
        gate=gate,
        policy=job_retry_policy(settings),
        limiter=limiter,
        limiter_settings=LimiterSettings(
            key=EXECUTION_RATE_LIMIT_KEY,
            max_calls=settings.execution_rate_limit_max,
            window_seconds=settings.execution_rate_limit_window_seconds,
        )
        if limiter is not None
        else None,
        deadline=settings.job_deadline_seconds,
        store_write_attempts=settings.store_write_attempts,
    )


async def _run_child_job(job: dict[str, Any], attempt: int) -> dict[str, Any]:
    settings = get_settings()
    redis_client = await get_redis_client()
    try:
        executor = build_executor(settings, limiter=RateLimiter(redis_client))
        return await executor.execute(job, attempt)
    finally:
        await redis_client.aclose()


def _infrastructure_failure(job: dict[str, Any], attempt: int, exc: Exception) -> dict[str, Any]:
    return {
        "success": False,
        "metadata": {
            "jobId": job.get("id"),
            "url": job.get("url"),
            "status": "error",
            "strategy": job.get("strategy"),
            "attempts": attempt,
            "errorType": type(exc).__name__,
            "errorMessage": str(exc),
        },
    }


def _write_infrastructure_failure(job: dict[str, Any], attempt: int, exc: Exception) -> None:
    """Best-effort terminal ``error`` row for a job whose budget is spent.

    The failure being reported is usually the store itself, so this write
    may fail too; that is logged and the row stays ``processing``.
    """
    metadata = {
        "errorType": type(exc).__name__,
        "errorMessage": str(exc),
        "strategy": job.get("strategy"),
        "attempts": attempt,
    }
    try:
        ScrapeStore().complete_transaction(
            job["scrape_id"], job["url"], TransactionStatus.ERROR.value, None, metadata
        )
    except Exception as write_exc:  # noqa: BLE001
        logger.error(
            "execute_child_task: terminal error row not written",
            scrape_id=job.get("scrape_id"),
            url=job.get("url"),
            error=str(write_exc),
        )


@celery_app.task(
    name=EXECUTE_TASK_NAME,
    bind=True,
    acks_late=True,
    max_retries=max(_settings.job_attempts - 1, 0),
    rate_limit=worker_rate_limit(
        _settings.execution_rate_limit_max,
        _settings.execution_rate_limit_window_seconds,
    ),
)
def execute_child_task(self: Any, job: dict[str, Any]) -> dict[str, Any]:
    """Run one attempt of an execution job.

    Args:
        job: :meth:`ChildJob.to_payload` dict.

    Returns:
        ``{"success": bool, "metadata": {...}}`` for the parent aggregation.
    """
    settings = get_settings()
    retries = self.request.retries
    attempt = retries + 1
    log = logger.bind(
        task_id=self.request.id,
        scrape_id=job.get("scrape_id"),
        url=job.get("url"),
        attempt=attempt,
    )

    try:
        return asyncio.run(_run_child_job(job, attempt))
    except RetryableJobError as exc:
        countdown = job_retry_policy(settings).delay_for(retries)
        log.info("execute_child_task: retrying", countdown=countdown, reason=str(exc))
        raise self.retry(exc=exc, countdown=countdown)
    except (StoreWriteError, OperationalError) as exc:
        if retries < self.max_retries:
            countdown = queue_retry_policy(settings).delay_for(retries)
            log.warning(
                "execute_child_task: infrastructure failure, retrying",
                countdown=countdown,
                error=str(exc),
            )
            raise self.retry(exc=exc, countdown=countdown)
        log.error("execute_child_task: infrastructure failure, giving up", error=str(exc))
        _write_infrastructure_failure(job, attempt, exc)
        return _infrastructure_failure(job, attempt, exc)


@celery_app.task(name=AGGREGATE_TASK_NAME, bind=True, acks_late=True, max_retries=0)
def aggregate_batch_task(
    self: Any,
    results: list[dict[str, Any]] | dict[str, Any] | None,
    parent: dict[str, Any],
    child_ids: list[str],
) -> dict[str, Any] | None:
    """Aggregate one batch once every child has returned.

    Args:
        results: Header results in submission order (injected by the chord).
        parent: :meth:`ParentJob.to_payload` dict.
        child_ids: Child job ids, in the same order as *results*.
    """
    if results is None:
        results = []
    elif isinstance(results, dict):
        results = [results]

    missing = sum(1 for result in results if result is None)
    if len(results) != len(child_ids) or missing:
        logger.error(
            "aggregate_batch_task: incomplete children results; batch left unaccounted",
            task_id=self.request.id,
            scrape_id=parent.get("scrape_id"),
            parent_id=parent.get("id"),
            results=len(results),
            missing=missing,
            children=len(child_ids),
        )
        return None
    children_results = dict(zip(child_ids, results))

    started_at = parent["timestamp"] / 1000 if parent.get("timestamp") else time.time()
    summary = ParentAggregator(ScrapeStore()).aggregate(
        parent["scrape_id"],
        parent["id"],
        children_results,
        batch_index=parent.get("batch_index"),
        started_at=started_at,
    )
    if summary is None:
        return None
    return {
        "total": summary.total,
        "succeeded": summary.succeeded,
        "failed": summary.failed,
        "duration_ms": summary.duration_ms,
        "progress": summary.progress.progress,
        "request_completed": summary.progress.completed,
    }
