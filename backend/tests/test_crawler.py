import sys
from pathlib import Path

import httpx
import pytest
from sqlalchemy import func, select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import seed_market
from models.database import NewsItem, RssFeed
from utils.utcnow import utcnow
from workers.crawler import (
    Crawler,
    DuplicateNewsError,
    compute_content_hash,
    ingest_news_item,
    parse_feed,
)

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Tech</title>
  <item>
    <title>Apple launches iPhone 17</title>
    <link>https://news.test/iphone-17</link>
    <description>&lt;p&gt;Apple said the phone ships in &lt;b&gt;September&lt;/b&gt;.&lt;/p&gt;</description>
    <pubDate>Mon, 15 Sep 2025 17:00:00 +0000</pubDate>
  </item>
  <item>
    <title>Fed holds rates</title>
    <link>https://news.test/fed</link>
    <description>The Federal Reserve kept rates unchanged.</description>
  </item>
  <item>
    <title>Third story</title>
    <link>https://news.test/3</link>
  </item>
  <item>
    <title>Fourth story beyond the cap</title>
    <link>https://news.test/4</link>
  </item>
</channel></rss>
"""

ATOM = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom feed</title>
  <entry>
    <title>SpaceX announces Starship flight</title>
    <link href="https://news.test/starship"/>
    <summary>Launch window opens next week.</summary>
    <updated>2025-09-15T12:00:00Z</updated>
  </entry>
</feed>
"""


def test_content_hash_is_sha256_of_title_and_content():
    digest = compute_content_hash("Title", "Body")
    assert len(digest) == 64
    assert digest == compute_content_hash("Title", "Body")
    assert digest != compute_content_hash("Title", "Body!")


def test_parse_rss_caps_items_and_strips_html():
    entries = parse_feed(RSS, max_items=3)
    assert [e.title for e in entries] == ["Apple launches iPhone 17", "Fed holds rates", "Third story"]
    assert entries[0].content == "Apple said the phone ships in September."
    assert entries[0].published_at.year == 2025
    assert entries[0].published_at.tzinfo is None
    assert entries[1].published_at is None


def test_parse_atom_entries():
    entries = parse_feed(ATOM, max_items=3)
    assert len(entries) == 1
    assert entries[0].link == "https://news.test/starship"
    assert entries[0].content == "Launch window opens next week."
    assert entries[0].published_at.hour == 12


@pytest.mark.asyncio
async def test_duplicate_news_is_rejected_and_not_republished(session_factory, broker):
    first = await ingest_news_item(
        session_factory, broker, source="Reuters", url="https://news.test/a", title="Same title", content="Same body"
    )
    assert first
    with pytest.raises(DuplicateNewsError):
        await ingest_news_item(
            session_factory, broker, source="AP", url="https://news.test/b", title="Same title", content="Same body"
        )

    async with session_factory() as session:
        count = (await session.execute(select(func.count(NewsItem.id)))).scalar_one()
    assert count == 1
    assert await broker.queue_depth("news.raw") == 1


@pytest.mark.asyncio
async def test_poll_feed_publishes_new_items_once(make_context, session_factory, broker):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=RSS, headers={"content-type": "application/rss+xml"})

    ctx = make_context("crawler", http_handler=handler)
    async with session_factory() as session:
        session.add(RssFeed(name="Tech Feed", url="https://feeds.test/tech.xml", category="technology"))
        await session.commit()

    crawler = Crawler(ctx)
    assert await crawler.run_cycle() == 3
    assert await crawler.run_cycle() == 0
    assert requests[0].headers["user-agent"].startswith("PredictX-Crawler")

    delivery = await broker.get("news.raw")
    assert delivery.body["source"] == "Tech Feed"
    assert delivery.body["category_hint"] == "technology"
    assert await broker.queue_depth("news.raw") == 3

    async with session_factory() as session:
        feed = (await session.execute(select(RssFeed))).scalar_one()
    assert feed.last_polled_at is not None


@pytest.mark.asyncio
async def test_failing_feed_does_not_stop_cycle(make_context, session_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        if "broken" in str(request.url):
            return httpx.Response(500)
        return httpx.Response(200, text=ATOM)

    ctx = make_context("crawler", http_handler=handler)
    async with session_factory() as session:
        session.add(RssFeed(name="Broken", url="https://feeds.test/broken.xml"))
        session.add(RssFeed(name="Atom", url="https://feeds.test/atom.xml"))
        await session.commit()

    assert await Crawler(ctx).run_cycle() == 1
    assert ctx.heartbeat.messages_failed == 1


@pytest.mark.asyncio
async def test_cycle_skipped_when_auto_publish_cap_reached(make_context, session_factory, broker):
    for i in range(3):
        await seed_market(session_factory, market_address=f"AUTO{i}", published_at=utcnow())

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no feed should be fetched")

    ctx = make_context("crawler", http_handler=handler)
    async with session_factory() as session:
        session.add(RssFeed(name="Tech Feed", url="https://feeds.test/tech.xml"))
        await session.commit()

    assert await Crawler(ctx).run_cycle() is None
    assert await broker.queue_depth("news.raw") == 0
