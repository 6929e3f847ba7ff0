"""Syntactic URL validation.

Only the shape of the URL is checked (optional http/https scheme, host,
optional port, path, query and fragment).  No DNS lookup or network call is
made; unreachable hosts are a fetch-time failure, not a validation failure.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from bulk_scraper.scraper.config import URL_PATTERN

logger = logging.getLogger(__name__)


def is_valid_url(url: str) -> bool:
    """Return ``True`` when *url* has an acceptable scheme and host shape."""
    if not isinstance(url, str):
        return False
    candidate = url.strip()
    if not candidate:
        return False
    return URL_PATTERN.match(candidate) is not None


def validate_urls(urls: Iterable[str]) -> tuple[list[str], list[str]]:
    """Split *urls* into ``(valid, invalid)`` preserving input order.

    Valid URLs are returned stripped of surrounding whitespace, which is the
    form used for de-duplication, claiming and fetching.  Invalid entries are
    returned as submitted.
    """
    valid: list[str] = []
    invalid: list[str] = []
    for url in urls:
        if is_valid_url(url):
            valid.append(url.strip())
        else:
            logger.warning("url_validator: invalid URL format: %r", url)
            invalid.append(url)
    return valid, invalid
