"""Application-wide exception hierarchy for the bulk scraper.

Hierarchy::

    BulkScraperError
    ├── InvalidSubmissionError
    ├── FlowSubmissionError
    ├── StoreWriteError
    ├── RateLimitTimeoutError
    └── RetryableJobError
        ├── ResourceLimitExceededError   (memory_percent, cpu_percent, cooldown)
        └── FetchFailedError             (status, metadata)

``RetryableJobError`` marks a failed *attempt* of an execution job.  The
Celery task layer turns it into a redelivery with backoff; the executor
itself handles the final exhausted attempt.
"""

from __future__ import annotations

from typing import Any


class BulkScraperError(Exception):
    """Base class for all bulk scraper exceptions."""


class InvalidSubmissionError(BulkScraperError):
    """Raised when a submission cannot be accepted at all (e.g. no URLs)."""


class FlowSubmissionError(BulkScraperError):
    """Raised when the queue backend rejects a job-graph submission.

    Args:
        message: Human-readable description of the failure.
        scrape_id: Owning scrape request.
        submitted_batches: Number of batches accepted before the failure.
    """

    def __init__(self, message: str, scrape_id: str, submitted_batches: int) -> None:
        super().__init__(message)
        self.scrape_id = scrape_id
        self.submitted_batches = submitted_batches


class StoreWriteError(BulkScraperError):
    """Raised when a store write keeps failing after in-process retries."""


class RateLimitTimeoutError(BulkScraperError):
    """Raised when a sliding-window slot is not acquired within the timeout.

    Attributes:
        key: The rate-limit key that timed out.
        timeout: The timeout value (seconds) that was exceeded.
    """

    def __init__(self, key: str, timeout: float) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(
            f"Rate limit slot for '{key}' not acquired within {timeout:.1f}s timeout."
        )


class RetryableJobError(BulkScraperError):
    """A single execution attempt failed and may be retried."""


class ResourceLimitExceededError(RetryableJobError):
    """Raised when the admission gate refuses to start an attempt.

    Args:
        memory_percent: Sampled memory utilisation.
        cpu_percent: Sampled CPU load.
        cooldown: Seconds the worker throttled before reporting the refusal.
    """

    def __init__(self, memory_percent: float, cpu_percent: float, cooldown: float) -> None:
        super().__init__(
            f"Resource limits exceeded (Memory: {memory_percent:.2f}%, CPU: {cpu_percent:.2f}%)"
        )
        self.memory_percent = memory_percent
        self.cpu_percent = cpu_percent
        self.cooldown = cooldown


class FetchFailedError(RetryableJobError):
    """Raised when the fetch collaborator returns a non-success result.

    Args:
        status: Transaction status the result maps to (``error`` or ``timeout``).
        metadata: Metadata returned by the collaborator.
    """

    def __init__(self, status: str, metadata: dict[str, Any]) -> None:
        message = metadata.get("errorMessage") or f"fetch ended with status {status}"
        super().__init__(message)
        self.status = status
        self.metadata = metadata
