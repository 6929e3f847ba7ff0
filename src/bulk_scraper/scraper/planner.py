"""Batch planning: turn a strategy partition into job graphs.

Each graph has one parent (aggregation) job and one child (execution) job
per URL.  Identities are deterministic so that re-planning the same
submission yields the same ids:

- parent: ``"{scrape_id}-{timestamp}-{batch_index}"``
- child:  ``"{scrape_id}_{strategy}_{ordinal}_{timestamp}"``

Ordinals are 1-based and unique across the whole request, not per batch.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from bulk_scraper.scraper.classifier import StrategyPartition
from bulk_scraper.scraper.fetchers.base import Strategy


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2 ** retries`` seconds.

    Attributes:
        attempts: Total attempts allowed, first try included.
        base_delay: Delay before the first retry, in seconds.
    """

    attempts: int
    base_delay: float

    @property
    def max_retries(self) -> int:
        return max(self.attempts - 1, 0)

    def delay_for(self, retries: int) -> float:
        return self.base_delay * (2 ** max(retries, 0))

    def is_final(self, attempt: int) -> bool:
        """``attempt`` is 1-based."""
        return attempt >= self.attempts


def child_job_id(scrape_id: str, strategy: Strategy, ordinal: int, timestamp: int) -> str:
    return f"{scrape_id}_{strategy.value}_{ordinal}_{timestamp}"


def parent_job_id(scrape_id: str, timestamp: int, batch_index: int) -> str:
    return f"{scrape_id}-{timestamp}-{batch_index}"


@dataclass(frozen=True)
class ChildJob:
    id: str
    url: str
    scrape_id: str
    strategy: Strategy
    ordinal: int
    timestamp: int

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["strategy"] = self.strategy.value
        return payload


@dataclass(frozen=True)
class ParentJob:
    id: str
    scrape_id: str
    batch_index: int
    total_urls: int
    static_urls: int
    rendering_urls: int
    timestamp: int

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class JobGraph:
    parent: ParentJob
    children: tuple[ChildJob, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.children)


class BatchPlanner:
    """Chunk new URLs into job graphs of at most ``batch_size`` children."""

    def __init__(self, batch_size: int) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size

    def plan(
        self, scrape_id: str, partition: StrategyPartition, timestamp: int
    ) -> list[JobGraph]:
        ordered: list[tuple[str, Strategy]] = [
            (url, Strategy.STATIC) for url in partition.static_urls
        ] + [(url, Strategy.RENDERING) for url in partition.rendering_urls]

        graphs: list[JobGraph] = []
        for start in range(0, len(ordered), self.batch_size):
            chunk = ordered[start : start + self.batch_size]
            if not chunk:
                continue
            batch_index = len(graphs)
            children = tuple(
                ChildJob(
                    id=child_job_id(scrape_id, strategy, start + offset + 1, timestamp),
                    url=url,
                    scrape_id=scrape_id,
                    strategy=strategy,
                    ordinal=start + offset + 1,
                    timestamp=timestamp,
                )
                for offset, (url, strategy) in enumerate(chunk)
            )
            rendering = sum(1 for c in children if c.strategy is Strategy.RENDERING)
            parent = ParentJob(
                id=parent_job_id(scrape_id, timestamp, batch_index),
                scrape_id=scrape_id,
                batch_index=batch_index,
                total_urls=len(children),
                static_urls=len(children) - rendering,
                rendering_urls=rendering,
                timestamp=timestamp,
            )
            graphs.append(JobGraph(parent=parent, children=children))
        return graphs
