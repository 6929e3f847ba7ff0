"""Constants and tuning parameters for the scraping pipeline.

Runtime-tunable values (batch size, thresholds, timeouts) live in
:class:`bulk_scraper.config.settings.Settings`; this module holds the
fixed tables the pipeline matches against.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Queue and task names
# ---------------------------------------------------------------------------

#: Queue consumed by the low-concurrency aggregation pool.
AGGREGATION_QUEUE: str = "aggregation"

#: Queue consumed by the high-concurrency execution pool.
EXECUTION_QUEUE: str = "execution"

EXECUTE_TASK_NAME: str = "bulk_scraper.scraper.tasks.execute_child_task"
AGGREGATE_TASK_NAME: str = "bulk_scraper.scraper.tasks.aggregate_batch_task"

#: Sliding-window key shared by every execution worker.
EXECUTION_RATE_LIMIT_KEY: str = "ratelimit:execution"

# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------

#: Optional http(s) scheme, dotted host with an alphabetic TLD or an IPv4
#: address, then optional port, path, query and fragment.
URL_PATTERN: re.Pattern[str] = re.compile(
    r"^(https?://)?"
    r"((([a-z\d]([a-z\d-]*[a-z\d])*)\.)+[a-z]{2,}|"
    r"((\d{1,3}\.){3}\d{1,3}))"
    r"(:\d+)?(/[-a-z\d%_.~+]*)*"
    r"(\?[;&a-z\d%_.~+=-]*)?"
    r"(#[-a-z\d_]*)?$",
    re.IGNORECASE,
)

# ---------------------------------------------------------------------------
# Strategy signatures
# ---------------------------------------------------------------------------

#: Checked first: pages that need a real browser to render their content.
RENDERING_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\.js$",
        r"spa\.",
        r"angular\.",
        r"react\.",
        r"vue\.",
        r"next\.",
        r"nuxt\.",
        r"twitter\.com",
        r"facebook\.com",
        r"instagram\.com",
        r"linkedin\.com",
        r"youtube\.com",
        r"shopee\.",
        r"lazada\.",
        r"tiki\.",
        r"amazon\.",
    )
)

#: Checked second: content known to be served as plain HTML.
STATIC_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\.html$",
        r"blog\.",
        r"news\.",
        r"article\.",
        r"wordpress\.",
        r"wiki\.",
        r"vnexpress\.net",
        r"tuoitre\.vn",
        r"thanhnien\.vn",
        r"dantri\.com\.vn",
    )
)

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

REQUEST_HEADERS: dict[str, str] = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

MAX_REDIRECTS: int = 5

#: Maximum stored content size (bytes).  Keeps rows well below PostgreSQL's
#: practical text limits.
MAX_CONTENT_BYTES: int = 900 * 1024

#: Elements dropped before the main-content text is taken.
BOILERPLATE_SELECTORS: tuple[str, ...] = (
    "script",
    "style",
    "noscript",
    "iframe",
    "nav",
    "header",
    "footer",
    ".advertisement",
    "#sidebar",
    ".sidebar",
    ".menu",
    ".navigation",
)

#: Main-content containers, tried in order.
CONTENT_CONTAINERS: tuple[str, ...] = (
    "article",
    "main",
    '[role="main"]',
    "#main-content",
    ".main-content",
    ".post-content",
    ".article-content",
    ".entry-content",
)

# ---------------------------------------------------------------------------
# Rendered page classification
# ---------------------------------------------------------------------------

#: Video hosts recognised from the URL alone.
VIDEO_PLATFORM_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "youtube": (
        re.compile(r"youtube\.com/watch\?v="),
        re.compile(r"youtube\.com/embed/"),
        re.compile(r"youtu\.be/"),
    ),
    "vimeo": (re.compile(r"vimeo\.com/"),),
    "dailymotion": (re.compile(r"dailymotion\.com/video/"),),
}

#: Per-platform selectors for the video title, view/like counts and channel.
#: ``meta`` selectors are read from their ``content`` attribute.
VIDEO_SELECTORS: dict[str, dict[str, tuple[str, ...]]] = {
    "youtube": {
        "title": (
            "h1.ytd-video-primary-info-renderer",
            "#container h1.ytd-watch-metadata",
            'meta[property="og:title"]',
            'meta[name="twitter:title"]',
        ),
        "views": (
            "span.ytd-video-view-count-renderer",
            "#count .ytd-video-view-count-renderer",
        ),
        "likes": ("#top-level-buttons-computed span.ytd-toggle-button-renderer",),
        "channelName": (
            "ytd-channel-name yt-formatted-string",
            "#channel-name yt-formatted-string",
            "#owner-name a",
        ),
    },
    "vimeo": {
        "title": (".vp-title", 'meta[property="og:title"]', 'meta[name="twitter:title"]'),
        "views": (".vp-stats",),
        "likes": (".vp-likes",),
        "channelName": (".vp-creator",),
    },
    "dailymotion": {
        "title": (".video-title", 'meta[property="og:title"]', 'meta[name="twitter:title"]'),
        "views": (".video-views",),
        "likes": (".video-likes",),
        "channelName": (".video-channel",),
    },
    "default": {
        "title": (
            'meta[property="og:title"]',
            'meta[name="twitter:title"]',
            'meta[itemprop="name"]',
        ),
    },
}

GALLERY_URL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (r"gallery", r"photos?", r"images?", r"slideshow", r"album")
)

ARTICLE_URL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in (r"article", r"blog", r"news", r"post", r"story")
)

#: Images at or below this many pixels on either side are icons or spacers.
MIN_IMAGE_SIZE: int = 100

#: This many significant images make a page an image page.
MIN_SIGNIFICANT_IMAGES: int = 5

#: Characters of visible text a page needs to count as a text page.
MIN_TEXT_LENGTH: int = 1000

#: Playwright resource types aborted during navigation, by expected page type.
BLOCKED_RESOURCES: dict[str, frozenset[str]] = {
    "video": frozenset({"font", "stylesheet", "media", "image"}),
    "image": frozenset({"font", "stylesheet", "media"}),
    "text": frozenset({"font", "stylesheet", "image", "media"}),
    "default": frozenset({"font", "stylesheet", "media"}),
}
