"""Page-type detection and media extraction for browser-rendered pages.

A rendered page is classified as ``video``, ``image`` or ``text``, checked
in that order, else ``default``.  Each check looks at the URL first (known
video hosts, gallery paths, article paths) and then at the document: a
``<video>`` element or video OpenGraph/Twitter/JSON-LD markup; a gallery
container, an above-the-fold hero image or enough large images; an
article-shaped body.

Natural image sizes and the ``<video>`` element's state only exist in the
live DOM, so :func:`read_media` reads them from the page before the browser
closes.  Everything else is read from the rendered HTML with BeautifulSoup.
"""

from __future__ import annotations

import enum
import json
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Route

from bulk_scraper.scraper.config import (
    ARTICLE_URL_PATTERNS,
    BLOCKED_RESOURCES,
    GALLERY_URL_PATTERNS,
    MIN_IMAGE_SIZE,
    MIN_SIGNIFICANT_IMAGES,
    MIN_TEXT_LENGTH,
    VIDEO_PLATFORM_PATTERNS,
    VIDEO_SELECTORS,
)
from bulk_scraper.scraper.content_extractor import clean_text

logger = logging.getLogger(__name__)


class PageType(str, enum.Enum):
    VIDEO = "video"
    IMAGE = "image"
    TEXT = "text"
    DEFAULT = "default"


_IMAGES_JS = """
() => Array.from(document.images).map((img) => ({
    src: img.currentSrc || img.src || "",
    alt: img.alt || "",
    title: img.title || "",
    width: img.naturalWidth || img.width || 0,
    height: img.naturalHeight || img.height || 0,
    loading: img.loading || "",
    srcset: img.srcset || "",
    sizes: img.sizes || "",
    aboveFold: img.getBoundingClientRect().top < window.innerHeight,
}))
"""

_VIDEO_JS = """
() => {
    const video = document.querySelector("video");
    if (!video) return null;
    return {
        src: video.currentSrc || video.src || "",
        poster: video.poster || "",
        duration: Number.isFinite(video.duration) ? video.duration : 0,
        width: video.videoWidth || 0,
        height: video.videoHeight || 0,
    };
}
"""

_VIDEO_META: dict[str, tuple[str, str]] = {
    "ogVideo": ('meta[property="og:video"]', "content"),
    "ogVideoUrl": ('meta[property="og:video:url"]', "content"),
    "ogVideoType": ('meta[property="og:video:type"]', "content"),
    "ogVideoWidth": ('meta[property="og:video:width"]', "content"),
    "ogVideoHeight": ('meta[property="og:video:height"]', "content"),
    "twitterPlayer": ('meta[name="twitter:player"]', "content"),
    "uploadDate": ('meta[itemprop="uploadDate"]', "content"),
    "embedUrl": ('link[itemprop="embedUrl"]', "href"),
}

_IMAGE_META: dict[str, str] = {
    "ogImageWidth": 'meta[property="og:image:width"]',
    "ogImageHeight": 'meta[property="og:image:height"]',
    "ogImageType": 'meta[property="og:image:type"]',
    "twitterImage": 'meta[name="twitter:image"]',
    "articleImage": 'meta[property="article:image"]',
}

_IMAGE_FIELDS = ("src", "alt", "title", "width", "height", "loading", "srcset", "sizes")

_GALLERY_SELECTOR = ".gallery, .slideshow, [data-gallery]"

#: Words per minute assumed for ``readingTime``.
_READING_SPEED = 200


@dataclass
class MediaSnapshot:
    """Live-DOM state of a rendered page's images and first ``<video>``."""

    images: list[dict[str, Any]] = field(default_factory=list)
    video: dict[str, Any] | None = None


async def read_media(page: Page) -> MediaSnapshot:
    """Read image sizes and video state from *page*; empty on failure."""
    try:
        images = await page.evaluate(_IMAGES_JS)
        video = await page.evaluate(_VIDEO_JS)
    except PlaywrightError as exc:
        logger.warning("scraper: could not read media from rendered page: %s", exc)
        return MediaSnapshot()
    return MediaSnapshot(images=list(images or []), video=video or None)


def resource_blocker(page_type: PageType) -> Callable[[Route], Awaitable[None]]:
    """Route handler aborting the resource types *page_type* does not need."""
    blocked = BLOCKED_RESOURCES[page_type.value]

    async def handle(route: Route) -> None:
        if route.request.resource_type in blocked:
            await route.abort()
        else:
            await route.continue_()

    return handle


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def detect_platform(url: str) -> str:
    for platform, patterns in VIDEO_PLATFORM_PATTERNS.items():
        if any(pattern.search(url) for pattern in patterns):
            return platform
    return "default"


def page_type_from_url(url: str) -> PageType:
    """Best guess from the URL alone, used before the page is loaded."""
    if detect_platform(url) != "default":
        return PageType.VIDEO
    if any(pattern.search(url) for pattern in GALLERY_URL_PATTERNS):
        return PageType.IMAGE
    if any(pattern.search(url) for pattern in ARTICLE_URL_PATTERNS):
        return PageType.TEXT
    return PageType.DEFAULT


def _attr(soup: BeautifulSoup, selector: str, attribute: str) -> str:
    node = soup.select_one(selector)
    if node is None:
        return ""
    return str(node.get(attribute) or "").strip()


def _json_ld(soup: BeautifulSoup) -> str:
    node = soup.find("script", attrs={"type": "application/ld+json"})
    return node.get_text() if node is not None else ""


def _has_video_markup(soup: BeautifulSoup, video: dict[str, Any] | None) -> bool:
    if video is not None or soup.find("video") is not None:
        return True
    if "video" in _attr(soup, 'meta[property="og:type"]', "content"):
        return True
    if "player" in _attr(soup, 'meta[name="twitter:card"]', "content"):
        return True
    return "VideoObject" in _json_ld(soup)


def _dimension(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def images_from_html(soup: BeautifulSoup) -> list[dict[str, Any]]:
    """Image list from ``<img>`` attributes, for when the live DOM is unavailable."""
    return [
        {
            "src": str(img.get("src") or ""),
            "alt": str(img.get("alt") or ""),
            "title": str(img.get("title") or ""),
            "width": _dimension(img.get("width")),
            "height": _dimension(img.get("height")),
            "loading": str(img.get("loading") or ""),
            "srcset": str(img.get("srcset") or ""),
            "sizes": str(img.get("sizes") or ""),
        }
        for img in soup.find_all("img")
    ]


def _significant(images: list[dict[str, Any]]) -> list[dict[str, Any]]:
    significant = []
    for img in images:
        src = str(img.get("src") or "")
        if not src or "data:image" in src or "favicon" in src:
            continue
        width, height = _dimension(img.get("width")), _dimension(img.get("height"))
        if width > MIN_IMAGE_SIZE and height > MIN_IMAGE_SIZE:
            significant.append(img)
    return significant


def _is_hero(img: dict[str, Any]) -> bool:
    return _dimension(img.get("width")) > 600 and _dimension(img.get("height")) > 400


def _looks_like_article(soup: BeautifulSoup) -> bool:
    body = soup.body or soup
    if len(clean_text(body.get_text(" "))) <= MIN_TEXT_LENGTH:
        return False
    return len(soup.find_all("p")) > 3 and soup.find(["h1", "h2", "h3"]) is not None


def detect_page_type(
    url: str,
    soup: BeautifulSoup,
    images: list[dict[str, Any]],
    video: dict[str, Any] | None = None,
) -> PageType:
    if detect_platform(url) != "default" or _has_video_markup(soup, video):
        return PageType.VIDEO

    significant = _significant(images)
    if (
        any(pattern.search(url) for pattern in GALLERY_URL_PATTERNS)
        or soup.select_one(_GALLERY_SELECTOR) is not None
        or any(_is_hero(img) and img.get("aboveFold", True) for img in significant)
        or len(significant) >= MIN_SIGNIFICANT_IMAGES
    ):
        return PageType.IMAGE

    if any(pattern.search(url) for pattern in ARTICLE_URL_PATTERNS) or _looks_like_article(soup):
        return PageType.TEXT
    return PageType.DEFAULT


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _first_match(soup: BeautifulSoup, selectors: tuple[str, ...]) -> str | None:
    for selector in selectors:
        node = soup.select_one(selector)
        if node is None:
            continue
        raw = node.get("content") if node.name == "meta" else node.get_text(" ")
        return clean_text(str(raw or "")) or None
    return None


def _video_from_html(soup: BeautifulSoup) -> dict[str, Any]:
    node = soup.find("video")
    if node is None:
        return {}
    src = node.get("src")
    if not src:
        source = node.find("source")
        src = source.get("src") if source is not None else ""
    return {
        "src": str(src or ""),
        "poster": str(node.get("poster") or ""),
        "width": _dimension(node.get("width")),
        "height": _dimension(node.get("height")),
    }


def extract_video(
    soup: BeautifulSoup, url: str, video: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Return ``platform``, ``videoInfo`` and any video OpenGraph/Twitter keys."""
    platform = detect_platform(url)
    video = video or _video_from_html(soup)

    info: dict[str, Any] = {
        name: _first_match(soup, selectors)
        for name, selectors in VIDEO_SELECTORS[platform].items()
    }
    info.update(
        videoSrc=video.get("src", ""),
        poster=video.get("poster", ""),
        duration=video.get("duration", 0),
        dimensions={"width": video.get("width", 0), "height": video.get("height", 0)},
    )

    metadata: dict[str, Any] = {"platform": platform, "videoInfo": info}
    for key, (selector, attribute) in _VIDEO_META.items():
        value = _attr(soup, selector, attribute)
        if value:
            metadata[key] = value
    return metadata


def _schema_image(soup: BeautifulSoup) -> Any:
    raw = _json_ld(soup)
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.debug("scraper: unparseable JSON-LD block")
        return None
    return parsed.get("image") if isinstance(parsed, dict) else None


def extract_images(soup: BeautifulSoup, images: list[dict[str, Any]]) -> dict[str, Any]:
    """Return the significant ``images`` list and image OpenGraph keys."""
    listed = []
    for img in _significant(images):
        if str(img["src"]).endswith(".svg"):
            continue
        entry = {name: img.get(name, "") for name in _IMAGE_FIELDS}
        entry["alt"] = clean_text(str(entry["alt"] or ""))
        entry["title"] = clean_text(str(entry["title"] or ""))
        listed.append(entry)

    metadata: dict[str, Any] = {
        "images": listed,
        "imageCount": len(listed),
        "hasHeroImage": any(_is_hero(img) for img in listed),
    }
    for key, selector in _IMAGE_META.items():
        value = _attr(soup, selector, "content")
        if value:
            metadata[key] = value
    schema_image = _schema_image(soup)
    if schema_image:
        metadata["schemaImage"] = schema_image
    return metadata


def _text_stats(soup: BeautifulSoup, text: str) -> dict[str, Any]:
    words = len(text.split())
    return {
        "wordCount": words,
        "characterCount": len(text),
        "paragraphCount": len(soup.find_all("p")),
        "hasHeadings": soup.find(["h1", "h2", "h3"]) is not None,
        "readingTime": math.ceil(words / _READING_SPEED),
    }


def describe_rendered_page(
    html: str, url: str, media: MediaSnapshot, text: str = ""
) -> dict[str, Any]:
    """Metadata added to a rendered page's transaction for its page type.

    Args:
        html: Rendered document.
        url: Final URL after redirects.
        media: Live-DOM state from :func:`read_media`.
        text: Main text already extracted from *html*.
    """
    soup = BeautifulSoup(html, "html.parser")
    images = media.images or images_from_html(soup)
    page_type = detect_page_type(url, soup, images, media.video)

    metadata: dict[str, Any] = {"pageType": page_type.value}
    if page_type is PageType.VIDEO:
        metadata.update(extract_video(soup, url, media.video))
    elif page_type is PageType.IMAGE:
        metadata.update(extract_images(soup, images))
    elif page_type is PageType.TEXT:
        metadata.update(_text_stats(soup, text))
    return metadata
