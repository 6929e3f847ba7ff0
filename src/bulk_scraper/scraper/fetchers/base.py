"""Fetch collaborator contract shared by every strategy.

A fetcher turns one URL into a :class:`FetchOutcome`.  It never raises for
fetch failures: network errors, HTTP errors and timeouts are all reported
through ``outcome.status``.  It must be safe to call concurrently and must
release any per-call resource (HTTP connection, browser) on every exit path,
including cancellation.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


class Strategy(str, enum.Enum):
    """Execution path assigned to a URL by the classifier."""

    STATIC = "static"
    RENDERING = "rendering"


class FetchStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass
class FetchOutcome:
    """Result of one fetch call.

    Attributes:
        status: ``success``, ``error`` or ``timeout``.
        content: Extracted page text, ``None`` on failure.
        metadata: Strategy-specific metadata; on failure it carries
            ``errorType`` and ``errorMessage``.
    """

    status: FetchStatus
    content: str | None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.SUCCESS


def failure(
    status: FetchStatus, error_type: str, message: str, **extra: Any
) -> FetchOutcome:
    """Build a failed outcome with the standard error metadata keys."""
    return FetchOutcome(
        status=status,
        content=None,
        metadata={"errorType": error_type, "errorMessage": message, **extra},
    )


@runtime_checkable
class Fetcher(Protocol):
    """Capability implemented by every strategy."""

    strategy: Strategy

    async def fetch(self, url: str) -> FetchOutcome: ...
