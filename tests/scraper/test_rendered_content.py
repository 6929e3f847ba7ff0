"""Tests for rendered-page classification and media extraction."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError

from bulk_scraper.scraper.rendered_content import (
    MediaSnapshot,
    PageType,
    describe_rendered_page,
    detect_page_type,
    detect_platform,
    extract_images,
    extract_video,
    images_from_html,
    page_type_from_url,
    read_media,
    resource_blocker,
)


def _soup(body: str, head: str = "") -> BeautifulSoup:
    return BeautifulSoup(f"<html><head>{head}</head><body>{body}</body></html>", "html.parser")


def _image(index: int, width: int = 400, height: int = 300, **extra) -> dict:
    return {"src": f"https://cdn.a.test/{index}.jpg", "width": width, "height": height, **extra}


ARTICLE_BODY = "<h1>Headline</h1>" + "".join(f"<p>{'word ' * 60}</p>" for _ in range(5))


class TestUrlRules:
    @pytest.mark.parametrize(
        ("url", "platform"),
        [
            ("https://www.youtube.com/watch?v=abc", "youtube"),
            ("https://youtu.be/abc", "youtube"),
            ("https://vimeo.com/12345", "vimeo"),
            ("https://www.dailymotion.com/video/x7", "dailymotion"),
            ("https://a.test/watch", "default"),
        ],
    )
    def test_detect_platform(self, url: str, platform: str) -> None:
        assert detect_platform(url) == platform

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("https://vimeo.com/1", PageType.VIDEO),
            ("https://a.test/gallery/summer", PageType.IMAGE),
            ("https://a.test/news/2024/item", PageType.TEXT),
            ("https://a.test/app", PageType.DEFAULT),
        ],
    )
    def test_page_type_from_url(self, url: str, expected: PageType) -> None:
        assert page_type_from_url(url) is expected


class TestDetectPageType:
    @pytest.mark.parametrize(
        ("head", "body"),
        [
            ("", "<video src='/clip.mp4'></video>"),
            ('<meta property="og:type" content="video.other">', ""),
            ('<meta name="twitter:card" content="player">', ""),
            ('<script type="application/ld+json">{"@type": "VideoObject"}</script>', ""),
        ],
    )
    def test_video_markup(self, head: str, body: str) -> None:
        assert detect_page_type("https://a.test/x", _soup(body, head), []) is PageType.VIDEO

    def test_video_wins_over_gallery_url(self) -> None:
        soup = _soup("<video></video>")

        assert detect_page_type("https://a.test/gallery/1", soup, []) is PageType.VIDEO

    def test_enough_large_images(self) -> None:
        images = [_image(i) for i in range(5)]

        assert detect_page_type("https://a.test/x", _soup(""), images) is PageType.IMAGE
        assert detect_page_type("https://a.test/x", _soup(""), images[:4]) is PageType.DEFAULT

    def test_small_and_inline_images_do_not_count(self) -> None:
        images = [_image(i, width=90) for i in range(5)] + [
            {"src": "data:image/png;base64,AAAA", "width": 900, "height": 900}
            for _ in range(5)
        ]

        assert detect_page_type("https://a.test/x", _soup(""), images) is PageType.DEFAULT

    def test_hero_image_below_the_fold_is_ignored(self) -> None:
        soup = _soup("")

        hero = [_image(0, width=1200, height=800, aboveFold=True)]
        buried = [_image(0, width=1200, height=800, aboveFold=False)]

        assert detect_page_type("https://a.test/x", soup, hero) is PageType.IMAGE
        assert detect_page_type("https://a.test/x", soup, buried) is PageType.DEFAULT

    def test_gallery_container(self) -> None:
        soup = _soup("<div class='gallery'></div>")

        assert detect_page_type("https://a.test/x", soup, []) is PageType.IMAGE

    def test_article_shaped_body(self) -> None:
        assert detect_page_type("https://a.test/x", _soup(ARTICLE_BODY), []) is PageType.TEXT

    def test_short_page_is_default(self) -> None:
        soup = _soup("<h1>Hi</h1><p>a</p><p>b</p><p>c</p><p>d</p>")

        assert detect_page_type("https://a.test/x", soup, []) is PageType.DEFAULT


class TestExtractVideo:
    def test_platform_selectors_and_meta(self) -> None:
        soup = _soup(
            "<h1 class='vp-title'>  Mountain\n run </h1><span class='vp-creator'>Ana</span>"
            "<video poster='/p.jpg'><source src='/v.mp4'></video>",
            '<meta property="og:video" content="https://vimeo.com/v/1">'
            '<link itemprop="embedUrl" href="https://player.vimeo.com/video/1">',
        )

        metadata = extract_video(soup, "https://vimeo.com/1")

        assert metadata["platform"] == "vimeo"
        info = metadata["videoInfo"]
        assert info["title"] == "Mountain run"
        assert info["channelName"] == "Ana"
        assert info["views"] is None
        assert info["videoSrc"] == "/v.mp4"
        assert info["poster"] == "/p.jpg"
        assert metadata["ogVideo"] == "https://vimeo.com/v/1"
        assert metadata["embedUrl"] == "https://player.vimeo.com/video/1"
        assert "ogVideoType" not in metadata

    def test_live_video_state_takes_precedence(self) -> None:
        soup = _soup("<video src='/static.mp4'></video>")
        live = {"src": "https://cdn.a.test/live.mp4", "poster": "", "duration": 30,
                "width": 640, "height": 360}

        info = extract_video(soup, "https://a.test/x", live)["videoInfo"]

        assert info["videoSrc"] == "https://cdn.a.test/live.mp4"
        assert info["duration"] == 30
        assert info["dimensions"] == {"width": 640, "height": 360}


class TestExtractImages:
    def test_filters_and_reads_meta(self) -> None:
        soup = _soup(
            "",
            '<meta name="twitter:image" content="https://cdn.a.test/t.jpg">'
            '<script type="application/ld+json">{"image": "https://cdn.a.test/s.jpg"}</script>',
        )
        images = [
            _image(1, width=1000, height=700, alt="  Big \n one "),
            _image(2),
            {"src": "https://cdn.a.test/logo.svg", "width": 400, "height": 400},
            {"src": "https://cdn.a.test/favicon.ico", "width": 400, "height": 400},
            _image(3, width=50, height=50),
        ]

        metadata = extract_images(soup, images)

        assert [img["src"] for img in metadata["images"]] == [
            "https://cdn.a.test/1.jpg",
            "https://cdn.a.test/2.jpg",
        ]
        assert metadata["images"][0]["alt"] == "Big one"
        assert metadata["imageCount"] == 2
        assert metadata["hasHeroImage"] is True
        assert metadata["twitterImage"] == "https://cdn.a.test/t.jpg"
        assert metadata["schemaImage"] == "https://cdn.a.test/s.jpg"

    def test_broken_json_ld_is_ignored(self) -> None:
        soup = _soup("", '<script type="application/ld+json">{not json</script>')

        assert "schemaImage" not in extract_images(soup, [])

    def test_images_from_html_attributes(self) -> None:
        soup = _soup("<img src='/a.jpg' width='300' height='200' alt='A'><img src='/b.jpg'>")

        images = images_from_html(soup)

        assert images[0]["width"] == 300
        assert images[0]["alt"] == "A"
        assert images[1]["width"] == 0


class TestDescribeRenderedPage:
    def test_text_page_gets_reading_stats(self) -> None:
        html = f"<html><body>{ARTICLE_BODY}</body></html>"
        text = "word " * 450

        metadata = describe_rendered_page(html, "https://a.test/x", MediaSnapshot(), text)

        assert metadata["pageType"] == "text"
        assert metadata["wordCount"] == 450
        assert metadata["paragraphCount"] == 5
        assert metadata["hasHeadings"] is True
        assert metadata["readingTime"] == 3

    def test_falls_back_to_html_images(self) -> None:
        imgs = "".join(f"<img src='/{i}.jpg' width='500' height='400'>" for i in range(5))
        html = f"<html><body>{imgs}</body></html>"

        metadata = describe_rendered_page(html, "https://a.test/x", MediaSnapshot())

        assert metadata["pageType"] == "image"
        assert metadata["imageCount"] == 5

    def test_default_page_has_only_page_type(self) -> None:
        metadata = describe_rendered_page("<p>hi</p>", "https://a.test/x", MediaSnapshot())

        assert metadata == {"pageType": "default"}


@pytest.mark.asyncio
class TestPageHelpers:
    async def test_read_media(self) -> None:
        page = SimpleNamespace(evaluate=AsyncMock(side_effect=[[_image(1)], None]))

        snapshot = await read_media(page)

        assert snapshot.images == [_image(1)]
        assert snapshot.video is None

    async def test_read_media_failure_is_empty(self) -> None:
        page = SimpleNamespace(evaluate=AsyncMock(side_effect=PlaywrightError("Target closed")))

        snapshot = await read_media(page)

        assert snapshot == MediaSnapshot()

    @pytest.mark.parametrize(
        ("page_type", "resource_type", "aborted"),
        [
            (PageType.TEXT, "image", True),
            (PageType.TEXT, "document", False),
            (PageType.IMAGE, "image", False),
            (PageType.VIDEO, "image", True),
            (PageType.DEFAULT, "font", True),
            (PageType.DEFAULT, "script", False),
        ],
    )
    async def test_resource_blocker(
        self, page_type: PageType, resource_type: str, aborted: bool
    ) -> None:
        route = SimpleNamespace(
            request=SimpleNamespace(resource_type=resource_type),
            abort=AsyncMock(),
            continue_=AsyncMock(),
        )

        await resource_blocker(page_type)(route)

        assert route.abort.await_count == (1 if aborted else 0)
        assert route.continue_.await_count == (0 if aborted else 1)
