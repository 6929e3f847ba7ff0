"""Strategy classification for new URLs.

Signatures are checked in a fixed order: rendering patterns first, static
patterns second.  Anything unmatched is fetched with the static strategy.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from re import Pattern

from bulk_scraper.scraper.config import RENDERING_PATTERNS, STATIC_PATTERNS
from bulk_scraper.scraper.fetchers.base import Strategy

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = Strategy.STATIC


@dataclass
class StrategyPartition:
    """New URLs split by strategy.  The two lists are disjoint."""

    static_urls: list[str] = field(default_factory=list)
    rendering_urls: list[str] = field(default_factory=list)

    def urls_for(self, strategy: Strategy) -> list[str]:
        return self.rendering_urls if strategy is Strategy.RENDERING else self.static_urls

    def __len__(self) -> int:
        return len(self.static_urls) + len(self.rendering_urls)


class StrategyClassifier:
    """Assigns each URL exactly one :class:`Strategy`.

    Args:
        signatures: Ordered ``(strategy, patterns)`` pairs.  The first pair
            with a matching pattern wins.
        default: Strategy for URLs no signature matches.
    """

    def __init__(
        self,
        signatures: Sequence[tuple[Strategy, Sequence[Pattern[str]]]] | None = None,
        default: Strategy = DEFAULT_STRATEGY,
    ) -> None:
        self._signatures = signatures or (
            (Strategy.RENDERING, RENDERING_PATTERNS),
            (Strategy.STATIC, STATIC_PATTERNS),
        )
        self._default = default

    def classify(self, url: str) -> Strategy:
        try:
            lowered = url.lower()
            for strategy, patterns in self._signatures:
                if any(p.search(lowered) for p in patterns):
                    return strategy
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "classifier: failed to classify %r (%s); using %s",
                url,
                exc,
                self._default.value,
            )
        return self._default

    def partition(self, urls: Iterable[str]) -> StrategyPartition:
        result = StrategyPartition()
        for url in urls:
            result.urls_for(self.classify(url)).append(url)
        logger.info(
            "classifier: %d static, %d rendering",
            len(result.static_urls),
            len(result.rendering_urls),
        )
        return result
