"""Static strategy: plain HTTP GET with httpx, then HTML extraction.

Failure mapping:

- ``httpx.TimeoutException``            -> ``timeout``
- redirects, transport errors, HTTP >= 400,
  binary content types, decode errors   -> ``error``
"""

from __future__ import annotations

import logging

import httpx

from bulk_scraper.scraper.config import MAX_REDIRECTS, REQUEST_HEADERS
from bulk_scraper.scraper.content_extractor import extract_page
from bulk_scraper.scraper.fetchers.base import (
    FetchOutcome,
    FetchStatus,
    Strategy,
    failure,
)

logger = logging.getLogger(__name__)

#: Content-Type prefixes that are never handed to the HTML extractor.
BINARY_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/zip",
        "application/octet-stream",
        "application/vnd.",
        "image/",
        "video/",
        "audio/",
        "font/",
    }
)


def _is_binary_content_type(content_type: str) -> bool:
    ct = content_type.lower().split(";")[0].strip()
    return any(ct.startswith(prefix) for prefix in BINARY_CONTENT_TYPES)


class StaticFetcher:
    """Fetches server-rendered pages without executing JavaScript.

    Args:
        timeout: Request timeout in seconds.
        client: Optional shared :class:`httpx.AsyncClient`.  When omitted a
            client is opened and closed around every call.
    """

    strategy = Strategy.STATIC

    def __init__(self, *, timeout: float, client: httpx.AsyncClient | None = None) -> None:
        self._timeout = timeout
        self._client = client

    async def fetch(self, url: str) -> FetchOutcome:
        if self._client is not None:
            return await self._fetch_with(self._client, url)
        async with httpx.AsyncClient(
            follow_redirects=True, max_redirects=MAX_REDIRECTS
        ) as client:
            return await self._fetch_with(client, url)

    async def _fetch_with(self, client: httpx.AsyncClient, url: str) -> FetchOutcome:
        try:
            response = await client.get(
                url,
                timeout=self._timeout,
                follow_redirects=True,
                headers=REQUEST_HEADERS,
            )
        except httpx.TimeoutException as exc:
            logger.warning("scraper: timeout fetching %s", url)
            return failure(FetchStatus.TIMEOUT, type(exc).__name__, f"timeout after {self._timeout}s")
        except httpx.TooManyRedirects as exc:
            logger.warning("scraper: too many redirects for %s", url)
            return failure(FetchStatus.ERROR, type(exc).__name__, "too many redirects")
        except httpx.HTTPError as exc:
            logger.warning("scraper: request error for %s: %s", url, exc)
            return failure(FetchStatus.ERROR, type(exc).__name__, f"request error: {exc}")

        final_url = str(response.url)

        if response.status_code >= 400:
            logger.info("scraper: HTTP %d for %s", response.status_code, url)
            return failure(
                FetchStatus.ERROR,
                "HTTPStatusError",
                f"HTTP {response.status_code}",
                statusCode=response.status_code,
                finalUrl=final_url,
            )

        content_type = response.headers.get("content-type", "")
        if _is_binary_content_type(content_type):
            logger.info("scraper: binary content-type '%s' for %s", content_type, url)
            return failure(
                FetchStatus.ERROR,
                "UnsupportedContentType",
                f"binary content-type: {content_type}",
                statusCode=response.status_code,
                finalUrl=final_url,
            )

        try:
            html = response.text
        except Exception as exc:  # noqa: BLE001
            logger.warning("scraper: decode error for %s: %s", url, exc)
            return failure(FetchStatus.ERROR, type(exc).__name__, f"decode error: {exc}")

        page = extract_page(html, final_url)
        metadata = {
            **page.metadata,
            "lastModified": response.headers.get("last-modified", ""),
            "contentLength": int(response.headers.get("content-length") or len(response.content)),
            "statusCode": response.status_code,
            "finalUrl": final_url,
        }
        return FetchOutcome(status=FetchStatus.SUCCESS, content=page.text, metadata=metadata)
