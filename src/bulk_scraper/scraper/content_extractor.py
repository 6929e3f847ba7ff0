"""Main-content and metadata extraction from raw HTML.

Text: ``trafilatura`` boilerplate removal first; when it yields nothing, the
first matching main-content container (``article``, ``main`` ...) after
stripping navigation and script elements, else the whole ``<body>``.

Metadata: title, description, keywords, declared content type and the
OpenGraph title/description/image, read with BeautifulSoup.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import trafilatura
from bs4 import BeautifulSoup

from bulk_scraper.scraper.config import (
    BOILERPLATE_SELECTORS,
    CONTENT_CONTAINERS,
    MAX_CONTENT_BYTES,
)

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ExtractedPage:
    """Extracted page text plus the metadata map stored on the transaction."""

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


def clean_text(text: str) -> str:
    """Collapse whitespace runs and drop NUL / zero-width characters."""
    text = text.replace("\x00", "").replace("\u200b", "").replace("\u00a0", " ")
    return _WHITESPACE.sub(" ", text).strip()


def _cap(text: str, url: str) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_CONTENT_BYTES:
        return text
    logger.debug("scraper: truncated extracted text to %d bytes for %s", MAX_CONTENT_BYTES, url)
    return encoded[:MAX_CONTENT_BYTES].decode("utf-8", errors="ignore")


def _meta(soup: BeautifulSoup, **attrs: str) -> str:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return ""
    return str(tag.get("content") or "").strip()


def _title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.get_text(strip=True):
        return soup.title.get_text(strip=True)
    h1 = soup.find("h1")
    if h1 and h1.get_text(strip=True):
        return h1.get_text(strip=True)
    return _meta(soup, property="og:title")


def _main_text(soup: BeautifulSoup) -> str:
    for selector in BOILERPLATE_SELECTORS:
        for node in soup.select(selector):
            node.decompose()
    for selector in CONTENT_CONTAINERS:
        container = soup.select_one(selector)
        if container is not None:
            text = clean_text(container.get_text(" "))
            if text:
                return text
    body = soup.body or soup
    return clean_text(body.get_text(" "))


def extract_metadata(soup: BeautifulSoup) -> dict[str, Any]:
    return {
        "title": _title(soup),
        "description": _meta(soup, name="description") or _meta(soup, property="og:description"),
        "keywords": _meta(soup, name="keywords"),
        "contentType": _meta(soup, **{"http-equiv": "Content-Type"})
        or _meta(soup, name="content-type")
        or "text/html",
        "ogTitle": _meta(soup, property="og:title"),
        "ogDescription": _meta(soup, property="og:description"),
        "ogImage": _meta(soup, property="og:image"),
    }


def extract_page(html: str, url: str) -> ExtractedPage:
    """Extract main text and metadata from *html*.

    Args:
        html: Raw HTML string (may be partial or malformed).
        url: Page URL, used by trafilatura's heuristics.

    Returns:
        An :class:`ExtractedPage`; ``text`` is empty when nothing readable
        was found.
    """
    soup = BeautifulSoup(html, "html.parser")
    metadata = extract_metadata(soup)

    text = ""
    try:
        text = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=True,
            output_format="txt",
        ) or ""
    except Exception as exc:  # noqa: BLE001
        logger.warning("scraper: trafilatura extraction failed for %s: %s", url, exc)

    text = clean_text(text) if text else _main_text(soup)
    return ExtractedPage(text=_cap(text, url), metadata=metadata)
