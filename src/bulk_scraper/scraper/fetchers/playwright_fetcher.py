"""Rendering strategy: headless Chromium via Playwright.

Before navigation, resource types the page is not expected to need (fonts,
stylesheets, and media or images depending on the URL) are aborted.  After
it, the page is classified as video, image or text and the matching
metadata is added; see :mod:`bulk_scraper.scraper.rendered_content`.

The browser is launched per call and closed in ``finally`` blocks, so it is
released on success, on failure, and when the caller's deadline cancels
the coroutine mid-navigation.

Install the browser binary once per host::

    playwright install chromium
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from bulk_scraper.scraper.config import USER_AGENT
from bulk_scraper.scraper.content_extractor import extract_page
from bulk_scraper.scraper.fetchers.base import (
    FetchOutcome,
    FetchStatus,
    Strategy,
    failure,
)
from bulk_scraper.scraper.rendered_content import (
    describe_rendered_page,
    page_type_from_url,
    read_media,
    resource_blocker,
)

logger = logging.getLogger(__name__)


class RenderingFetcher:
    """Fetches pages that need JavaScript execution to populate content.

    Args:
        timeout: Navigation timeout in seconds.
    """

    strategy = Strategy.RENDERING

    def __init__(self, *, timeout: float) -> None:
        self._timeout_ms = int(timeout * 1000)

    async def fetch(self, url: str) -> FetchOutcome:
        try:
            async with async_playwright() as p:
                browser = await p.chromium.launch(headless=True)
                try:
                    context = await browser.new_context(user_agent=USER_AGENT)
                    page = await context.new_page()
                    page.set_default_timeout(self._timeout_ms)
                    try:
                        await page.route("**/*", resource_blocker(page_type_from_url(url)))
                        response = await page.goto(
                            url,
                            timeout=self._timeout_ms,
                            wait_until="networkidle",
                        )
                        html = await page.content()
                        final_url = page.url
                        media = await read_media(page)
                        status_code = response.status if response else None
                    finally:
                        await page.close()
                        await context.close()
                finally:
                    await browser.close()
        except PlaywrightTimeoutError as exc:
            logger.warning("scraper: playwright timeout for %s: %s", url, exc)
            return failure(FetchStatus.TIMEOUT, "ProcessingTimeout", str(exc))
        except PlaywrightError as exc:
            logger.warning("scraper: playwright fetch failed for %s: %s", url, exc)
            return failure(FetchStatus.ERROR, type(exc).__name__, str(exc))

        if status_code is not None and status_code >= 400:
            return failure(
                FetchStatus.ERROR,
                "HTTPStatusError",
                f"HTTP {status_code}",
                statusCode=status_code,
                finalUrl=final_url,
            )

        page_data = extract_page(html, final_url)
        metadata = {
            **page_data.metadata,
            **describe_rendered_page(html, final_url, media, page_data.text),
            "statusCode": status_code,
            "finalUrl": final_url,
            "renderedAt": datetime.now(tz=timezone.utc).isoformat(),
        }
        return FetchOutcome(status=FetchStatus.SUCCESS, content=page_data.text, metadata=metadata)
