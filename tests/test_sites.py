from __future__ import annotations

import datetime as dt
import json

import pytest

from rfa_archive.errors import ParseError
from rfa_archive.models import EntryKind, Site
from rfa_archive.sites import ADAPTERS, adapter_for
from rfa_archive.sites.rfa import (
    BurmeseAdapter,
    MandarinAdapter,
    feed_url,
    is_feed_url,
    month_windows,
    parse_feed_query,
)

ARTICLE_HTML = b"""<!doctype html>
<html><head>
<title>Site title</title>
<meta property="og:image" content="https://www.rfa.org/resizer/lead.jpg">
<meta property="article:published_time" content="2024-03-05T08:00:00Z">
<link rel="canonical" href="https://www.rfa.org/mandarin/news/story-03052024.html">
</head><body>
<nav><a href="/mandarin/news/">News</a></nav>
<h1> Headline here </h1>
<article><div class="b-article-body">
<p>First paragraph.</p>
<img src="/resizer/inline.jpg">
<img data-src="https://cdn.example.net/lazy.png" src="data:image/gif;base64,AAAA">
<script>track()</script>
<p>Related: <a href="/mandarin/news/other-03042024.html">other</a></p>
</div></article>
</body></html>
"""


def test_every_site_has_an_adapter() -> None:
    assert set(ADAPTERS) == set(Site)
    for site, cls in ADAPTERS.items():
        assert cls.site is site


def test_site_parse_accepts_feed_ids() -> None:
    assert Site.parse("rfa-mandarin") is Site.MANDARIN
    assert Site.parse("radio-free-asia") is Site.ENGLISH
    assert Site.parse(" Korean ") is Site.KOREAN
    assert Site.UYGHUR.code == 8
    with pytest.raises(ValueError):
        Site.parse("rfa-klingon")


def test_month_windows_cross_year() -> None:
    windows = month_windows((2024, 11), (2025, 2))
    assert windows[0] == (dt.date(2024, 11, 1), dt.date(2024, 11, 30))
    assert windows[-1] == (dt.date(2025, 2, 1), dt.date(2025, 2, 28))
    assert len(windows) == 4


def test_seed_urls_are_monthly_feed_queries() -> None:
    adapter = adapter_for(Site.MANDARIN, start_month=(2024, 1), end_month=(2024, 3))
    seeds = adapter.list_seed_urls()
    assert len(seeds) == 3
    assert all(is_feed_url(u) for u in seeds)
    query = parse_feed_query(seeds[1])
    assert query["query"] == "display_date:[2024-02-01 TO 2024-02-29]"
    assert query["offset"] == 0
    assert "_website=rfa-mandarin" in seeds[1]
    assert adapter.logical_id(seeds[1], EntryKind.LIST) == "feed/2024-02/0"


def test_feed_page_yields_articles_images_and_next_page() -> None:
    adapter = MandarinAdapter(start_month=(2024, 1), end_month=(2024, 1))
    page_url = feed_url("rfa-mandarin", dt.date(2024, 1, 1), dt.date(2024, 1, 31))
    feed = {
        "count": 150,
        "content_elements": [
            {
                "websites": {"rfa-mandarin": {"website_url": "/mandarin/news/a1.html"}},
                "promo_items": {"basic": {"url": "https://www.rfa.org/resizer/p1.jpg"}},
                "content_elements": [
                    {"type": "text", "content": "hello"},
                    {"type": "image", "url": "imgs/inline1.jpg"},
                ],
            },
            {
                "websites": {"rfa-mandarin": {"website_url": "/mandarin/news/a2.html"}},
                "content_elements": [
                    {"type": "image", "content": "https://www.rfa.org/resizer/p1.jpg"}
                ],
            },
            {"websites": {"rfa-korean": {"website_url": "/korean/x.html"}}},
        ],
    }
    links = adapter.extract_links(
        json.dumps(feed).encode("utf-8"), page_url=page_url, kind=EntryKind.LIST
    )

    articles = [u for u, k in links if k == EntryKind.ARTICLE]
    images = [u for u, k in links if k == EntryKind.IMAGE]
    lists = [u for u, k in links if k == EntryKind.LIST]
    assert articles == [
        "https://www.rfa.org/mandarin/news/a1.html",
        "https://www.rfa.org/mandarin/news/a2.html",
    ]
    assert images == [
        "https://www.rfa.org/resizer/p1.jpg",
        "https://www.rfa.org/imgs/inline1.jpg",
    ]
    assert len(lists) == 1
    assert parse_feed_query(lists[0])["offset"] == 3


def test_last_feed_page_has_no_next() -> None:
    adapter = MandarinAdapter(start_month=(2024, 1), end_month=(2024, 1))
    page_url = feed_url("rfa-mandarin", dt.date(2024, 1, 1), dt.date(2024, 1, 31), 100)
    body = json.dumps(
        {
            "count": 101,
            "content_elements": [
                {"websites": {"rfa-mandarin": {"website_url": "/mandarin/z.html"}}}
            ],
        }
    ).encode("utf-8")
    links = adapter.extract_links(body, page_url=page_url, kind=EntryKind.LIST)
    assert [k for _, k in links] == [EntryKind.ARTICLE]


def test_feed_items_become_story_documents() -> None:
    adapter = MandarinAdapter(start_month=(2024, 1), end_month=(2024, 1))
    page_url = feed_url("rfa-mandarin", dt.date(2024, 1, 1), dt.date(2024, 1, 31))
    first = {
        "_id": "ABC123",
        "display_date": "2024-01-09T10:00:00Z",
        "headlines": {"basic": "Headline one"},
        "websites": {"rfa-mandarin": {"website_url": "/mandarin/news/a1.html"}},
    }
    feed = {
        "count": 3,
        "content_elements": [
            first,
            {"websites": {"rfa-mandarin": {"website_url": "/mandarin/news/a2.html"}}},
            {"websites": {"rfa-korean": {"website_url": "/korean/x.html"}}},
        ],
    }
    body = json.dumps(feed).encode("utf-8")

    docs = adapter.extract_documents(body, page_url=page_url, kind=EntryKind.LIST)

    assert [d.logical_id for d in docs] == [
        "story/mandarin/news/a1.html",
        "story/mandarin/news/a2.html",
    ]
    assert docs[0].article_url == "https://www.rfa.org/mandarin/news/a1.html"
    assert docs[0].document == first
    assert docs[0].title == "Headline one"
    assert docs[0].display_date == "2024-01-09T10:00:00Z"
    assert docs[1].title is None and docs[1].display_date is None

    section = "https://www.rfa.org/mandarin/news/"
    assert adapter.extract_documents(b"<html></html>", page_url=section,
                                     kind=EntryKind.LIST) == []


def test_broken_feed_is_parse_error() -> None:
    adapter = MandarinAdapter()
    page_url = feed_url("rfa-mandarin", dt.date(2024, 1, 1), dt.date(2024, 1, 31))
    with pytest.raises(ParseError):
        adapter.extract_links(b"<html>oops</html>", page_url=page_url, kind=EntryKind.LIST)


def test_section_page_links_stay_in_edition() -> None:
    adapter = adapter_for(Site.ENGLISH)
    body = b"""<html><body>
    <a href="/english/news/china/">China</a>
    <a href="/english/news/china/story-2024-01-01.html">Story</a>
    <a href="/english/news/2024/01/02/dated/">Dated</a>
    <a href="/mandarin/news/x.html">Other edition</a>
    <a href="https://example.com/english/a.html">Offsite</a>
    <a href="mailto:tips@rfa.org">Mail</a>
    <img src="/english/img/banner.jpg">
    </body></html>"""
    links = adapter.extract_links(
        body, page_url="https://www.rfa.org/english/news/", kind=EntryKind.LIST
    )
    assert links == [
        ("https://www.rfa.org/english/news/china/", EntryKind.LIST),
        ("https://www.rfa.org/english/news/china/story-2024-01-01.html", EntryKind.ARTICLE),
        ("https://www.rfa.org/english/news/2024/01/02/dated/", EntryKind.ARTICLE),
        ("https://www.rfa.org/english/img/banner.jpg", EntryKind.IMAGE),
    ]


def test_extract_article() -> None:
    adapter = MandarinAdapter()
    page_url = "https://www.rfa.org/mandarin/news/story-03052024.html?utm_source=x"
    article = adapter.extract_article(ARTICLE_HTML, page_url=page_url)

    assert article.title == "Headline here"
    assert article.canonical_id == "mandarin/news/story-03052024.html"
    assert article.display_date == "2024-03-05T08:00:00Z"
    assert "First paragraph." in article.text
    assert "track()" not in article.body_html
    assert article.image_urls == [
        "https://www.rfa.org/resizer/inline.jpg",
        "https://cdn.example.net/lazy.png",
        "https://www.rfa.org/resizer/lead.jpg",
    ]


def test_article_links_skip_navigation() -> None:
    adapter = MandarinAdapter()
    links = adapter.extract_links(
        ARTICLE_HTML,
        page_url="https://www.rfa.org/mandarin/news/story-03052024.html",
        kind=EntryKind.ARTICLE,
    )
    assert ("https://www.rfa.org/mandarin/news/", EntryKind.LIST) not in links
    assert ("https://www.rfa.org/mandarin/news/other-03042024.html", EntryKind.ARTICLE) in links
    assert ("https://www.rfa.org/resizer/lead.jpg", EntryKind.IMAGE) in links


def test_page_without_body_is_parse_error() -> None:
    adapter = MandarinAdapter()
    with pytest.raises(ParseError):
        adapter.extract_article(
            b"<html><body><h1>Only a headline</h1></body></html>",
            page_url="https://www.rfa.org/mandarin/x.html",
        )


def test_legacy_storytext_body() -> None:
    body = b"""<html><body><h1>Old story</h1>
    <div id="storytext"><p>Legacy body text</p></div>
    <article><p>Sidebar teaser</p></article></body></html>"""
    article = BurmeseAdapter().extract_article(
        body, page_url="https://www.rfa.org/burmese/old/story.html"
    )
    assert "Legacy body text" in article.text
    assert "Sidebar teaser" not in article.text
