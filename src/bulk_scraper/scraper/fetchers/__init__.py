"""Fetch collaborators, one per :class:`~bulk_scraper.scraper.fetchers.base.Strategy`.

:func:`build_fetchers` returns the strategy -> fetcher table the executor
dispatches through; there is no per-strategy branching elsewhere.
"""

from __future__ import annotations

from collections.abc import Mapping

from bulk_scraper.config.settings import Settings
from bulk_scraper.scraper.fetchers.base import (
    Fetcher,
    FetchOutcome,
    FetchStatus,
    Strategy,
    failure,
)


def build_fetchers(settings: Settings) -> Mapping[Strategy, Fetcher]:
    from bulk_scraper.scraper.fetchers.http_fetcher import StaticFetcher  # noqa: PLC0415
    from bulk_scraper.scraper.fetchers.playwright_fetcher import (  # noqa: PLC0415
        RenderingFetcher,
    )

    return {
        Strategy.STATIC: StaticFetcher(timeout=settings.http_timeout_seconds),
        Strategy.RENDERING: RenderingFetcher(timeout=settings.browser_timeout_seconds),
    }


__all__ = [
    "FetchOutcome",
    "FetchStatus",
    "Fetcher",
    "Strategy",
    "build_fetchers",
    "failure",
]
