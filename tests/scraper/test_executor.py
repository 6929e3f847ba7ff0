"""Tests for the child job executor.

The store is SQLite-backed; fetchers, sampler and sleep are fakes.
"""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from bulk_scraper.core.exceptions import (
    FetchFailedError,
    RateLimitTimeoutError,
    ResourceLimitExceededError,
    StoreWriteError,
)
from bulk_scraper.core.models.scraping import TransactionStatus
from bulk_scraper.core.store import ScrapeStore
from bulk_scraper.scraper.executor import ChildJobExecutor, LimiterSettings, map_status
from bulk_scraper.scraper.fetchers.base import FetchOutcome, FetchStatus, Strategy, failure
from bulk_scraper.scraper.planner import RetryPolicy
from bulk_scraper.scraper.resource_gate import AdmissionGate, ResourceThresholds
from tests.factories.fakes import FakeFetcher, FakeSampler, RecordingSleep

URL = "http://a.test/1"
POLICY = RetryPolicy(attempts=3, base_delay=3)


def _job(scrape_id: str, strategy: Strategy = Strategy.STATIC, url: str = URL) -> dict[str, Any]:
    return {
        "id": f"{scrape_id}_{strategy.value}_1_1700000000000",
        "url": url,
        "scrape_id": scrape_id,
        "strategy": strategy.value,
        "ordinal": 1,
        "timestamp": 1_700_000_000_000,
    }


def _executor(
    store: Any,
    fetchers: dict[Strategy, FakeFetcher],
    sampler: FakeSampler,
    sleep: RecordingSleep,
    **kwargs: Any,
) -> ChildJobExecutor:
    gate = AdmissionGate(sampler, ResourceThresholds(), cooldown=10, sleep=sleep)
    return ChildJobExecutor(store, fetchers, gate, POLICY, sleep=sleep, **kwargs)


@pytest.fixture
def scrape_id(store: ScrapeStore) -> str:
    sid = store.create_scrape([URL])
    store.claim_urls(sid, [URL])
    return sid


def _row(store: ScrapeStore, scrape_id: str) -> Any:
    (row,) = store.list_transactions(scrape_id)
    return row


class TestMapStatus:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (FetchStatus.SUCCESS, TransactionStatus.SUCCESS),
            (FetchStatus.TIMEOUT, TransactionStatus.TIMEOUT),
            (FetchStatus.ERROR, TransactionStatus.ERROR),
            ("something-else", TransactionStatus.ERROR),
        ],
    )
    def test_mapping(self, status: Any, expected: TransactionStatus) -> None:
        assert map_status(status) is expected


@pytest.mark.asyncio
class TestSuccess:
    async def test_persists_success_and_returns_payload(
        self, store, scrape_id, fetchers, sampler, recording_sleep
    ) -> None:
        executor = _executor(store, fetchers, sampler, recording_sleep)

        result = await executor.execute(_job(scrape_id), attempt=1)

        assert result["success"] is True
        assert result["metadata"]["status"] == "success"
        assert fetchers[Strategy.STATIC].calls == [URL]
        row = _row(store, scrape_id)
        assert row.status == TransactionStatus.SUCCESS.value
        assert row.content == "page text"
        assert row.metadata_["strategy"] == "static"
        assert row.metadata_["attempts"] == 1
        assert "processingTime" in row.metadata_

    async def test_dispatches_on_strategy(
        self, store, scrape_id, fetchers, sampler, recording_sleep
    ) -> None:
        executor = _executor(store, fetchers, sampler, recording_sleep)

        await executor.execute(_job(scrape_id, Strategy.RENDERING), attempt=1)

        assert fetchers[Strategy.RENDERING].calls == [URL]
        assert fetchers[Strategy.STATIC].calls == []

    async def test_redelivered_job_does_not_rewrite(
        self, store, scrape_id, fetchers, sampler, recording_sleep
    ) -> None:
        executor = _executor(store, fetchers, sampler, recording_sleep)
        await executor.execute(_job(scrape_id), attempt=1)
        fetchers[Strategy.STATIC].outcome = failure(FetchStatus.ERROR, "X", "boom")

        result = await executor.execute(_job(scrape_id), attempt=3)

        assert result["success"] is False
        assert _row(store, scrape_id).status == TransactionStatus.SUCCESS.value


@pytest.mark.asyncio
class TestFailures:
    async def test_non_final_failure_raises_and_keeps_claim(
        self, store, scrape_id, fetchers, sampler, recording_sleep
    ) -> None:
        fetchers[Strategy.STATIC].outcome = failure(FetchStatus.ERROR, "HTTPStatusError", "HTTP 500")
        executor = _executor(store, fetchers, sampler, recording_sleep)

        with pytest.raises(FetchFailedError) as exc_info:
            await executor.execute(_job(scrape_id), attempt=1)

        assert exc_info.value.status == "error"
        assert str(exc_info.value) == "HTTP 500"
        assert _row(store, scrape_id).status == TransactionStatus.PROCESSING.value

    async def test_final_failure_writes_terminal_error(
        self, store, scrape_id, fetchers, sampler, recording_sleep
    ) -> None:
        fetchers[Strategy.STATIC].outcome = failure(FetchStatus.ERROR, "ConnectError", "refused")
        executor = _executor(store, fetchers, sampler, recording_sleep)

        result = await executor.execute(_job(scrape_id), attempt=3)

        assert result["success"] is False
        assert result["metadata"]["errorType"] == "ConnectError"
        row = _row(store, scrape_id)
        assert row.status == TransactionStatus.ERROR.value
        assert row.metadata_["errorType"] == "ConnectError"
        assert row.metadata_["errorMessage"] == "refused"
        assert row.metadata_["attempts"] == 3
        assert "lastAttemptDuration" in row.metadata_

    async def test_fetcher_exception_is_an_error_outcome(
        self, store, scrape_id, sampler, recording_sleep
    ) -> None:
        def explode(_url: str) -> FetchOutcome:
            raise RuntimeError("contract violated")

        fetchers = {s: FakeFetcher(s, explode) for s in Strategy}
        executor = _executor(store, fetchers, sampler, recording_sleep)

        result = await executor.execute(_job(scrape_id), attempt=3)

        assert result["metadata"]["errorType"] == "RuntimeError"
        assert _row(store, scrape_id).status == TransactionStatus.ERROR.value


@pytest.mark.asyncio
class TestDeadline:
    async def test_timeout_releases_resource_and_records_timeout(
        self, store, scrape_id, sampler, recording_sleep
    ) -> None:
        released: list[str] = []

        async def hang(url: str) -> FetchOutcome:
            try:
                await asyncio.sleep(10)
            finally:
                released.append(url)
            raise AssertionError("unreachable")

        fetchers = {s: FakeFetcher(s, hang) for s in Strategy}
        executor = _executor(store, fetchers, sampler, recording_sleep, deadline=0.05)

        result = await executor.execute(_job(scrape_id), attempt=3)

        assert released == [URL]
        assert result["metadata"]["status"] == "timeout"
        row = _row(store, scrape_id)
        assert row.status == TransactionStatus.TIMEOUT.value
        assert row.metadata_["errorType"] == "ProcessingTimeout"

    async def test_non_final_timeout_is_retryable(
        self, store, scrape_id, sampler, recording_sleep
    ) -> None:
        async def hang(_url: str) -> FetchOutcome:
            await asyncio.sleep(10)
            raise AssertionError("unreachable")

        fetchers = {s: FakeFetcher(s, hang) for s in Strategy}
        executor = _executor(store, fetchers, sampler, recording_sleep, deadline=0.05)

        with pytest.raises(FetchFailedError) as exc_info:
            await executor.execute(_job(scrape_id), attempt=1)

        assert exc_info.value.status == "timeout"


@pytest.mark.asyncio
class TestAdmission:
    async def test_refusal_skips_fetch_and_consumes_attempt(
        self, store, scrape_id, fetchers, recording_sleep
    ) -> None:
        executor = _executor(store, fetchers, FakeSampler(memory_percent=95), recording_sleep)

        with pytest.raises(ResourceLimitExceededError):
            await executor.execute(_job(scrape_id), attempt=1)

        assert fetchers[Strategy.STATIC].calls == []
        assert recording_sleep.calls == [10]

    async def test_no_fetch_until_memory_drops(
        self, store, scrape_id, fetchers, recording_sleep
    ) -> None:
        sampler = FakeSampler(memory_percent=95)
        executor = _executor(store, fetchers, sampler, recording_sleep)

        for attempt in (1, 2):
            with pytest.raises(ResourceLimitExceededError):
                await executor.execute(_job(scrape_id), attempt=attempt)
            assert fetchers[Strategy.STATIC].calls == []

        sampler.memory_percent = 40
        result = await executor.execute(_job(scrape_id), attempt=3)

        assert fetchers[Strategy.STATIC].calls == [URL]
        assert result["success"] is True

    async def test_refusal_on_final_attempt_is_terminal_error(
        self, store, scrape_id, fetchers, recording_sleep
    ) -> None:
        executor = _executor(store, fetchers, FakeSampler(cpu_percent=99), recording_sleep)

        result = await executor.execute(_job(scrape_id), attempt=3)

        assert result["success"] is False
        assert fetchers[Strategy.STATIC].calls == []
        row = _row(store, scrape_id)
        assert row.status == TransactionStatus.ERROR.value
        assert row.metadata_["errorType"] == "ResourceLimitExceeded"

    async def test_sampler_failure_does_not_block_the_fetch(
        self, store, scrape_id, fetchers, recording_sleep
    ) -> None:
        sampler = MagicMock()
        sampler.sample.side_effect = PermissionError("/proc not readable")
        executor = _executor(store, fetchers, sampler, recording_sleep)

        result = await executor.execute(_job(scrape_id), attempt=1)

        assert result["success"] is True
        assert fetchers[Strategy.STATIC].calls == [URL]
        assert _row(store, scrape_id).status == TransactionStatus.SUCCESS.value


@pytest.mark.asyncio
class TestLimiter:
    async def test_waits_for_slot_before_fetching(
        self, store, scrape_id, fetchers, sampler, recording_sleep
    ) -> None:
        limiter = AsyncMock()
        settings = LimiterSettings(key="ratelimit:execution", max_calls=50, window_seconds=60)
        executor = _executor(
            store, fetchers, sampler, recording_sleep, limiter=limiter, limiter_settings=settings
        )

        await executor.execute(_job(scrape_id), attempt=1)

        limiter.wait_for_slot.assert_awaited_once_with(
            "ratelimit:execution", 50, 60, timeout=60.0
        )

    async def test_limiter_timeout_counts_as_failed_attempt(
        self, store, scrape_id, fetchers, sampler, recording_sleep
    ) -> None:
        limiter = AsyncMock()
        limiter.wait_for_slot.side_effect = RateLimitTimeoutError("ratelimit:execution", 60)
        settings = LimiterSettings(key="ratelimit:execution", max_calls=50, window_seconds=60)
        executor = _executor(
            store, fetchers, sampler, recording_sleep, limiter=limiter, limiter_settings=settings
        )

        with pytest.raises(FetchFailedError):
            await executor.execute(_job(scrape_id), attempt=1)

        assert fetchers[Strategy.STATIC].calls == []


@pytest.mark.asyncio
class TestStoreWrites:
    async def test_transient_write_failure_is_retried(
        self, fetchers, sampler, recording_sleep
    ) -> None:
        store = MagicMock(spec=ScrapeStore)
        store.complete_transaction.side_effect = [
            OperationalError("UPDATE", {}, Exception("db down")),
            True,
        ]
        executor = _executor(store, fetchers, sampler, recording_sleep)

        result = await executor.execute(_job("sid"), attempt=1)

        assert result["success"] is True
        assert store.complete_transaction.call_count == 2
        assert recording_sleep.calls == [0.5]

    async def test_persistent_write_failure_raises(
        self, fetchers, sampler, recording_sleep
    ) -> None:
        store = MagicMock(spec=ScrapeStore)
        store.complete_transaction.side_effect = OperationalError(
            "UPDATE", {}, Exception("db down")
        )
        executor = _executor(store, fetchers, sampler, recording_sleep, store_write_attempts=3)

        with pytest.raises(StoreWriteError):
            await executor.execute(_job("sid"), attempt=1)

        assert store.complete_transaction.call_count == 3
        assert recording_sleep.calls == [0.5, 1.0]


def test_limiter_requires_settings(store, fetchers, sampler, recording_sleep) -> None:
    with pytest.raises(ValueError):
        _executor(store, fetchers, sampler, recording_sleep, limiter=AsyncMock())
