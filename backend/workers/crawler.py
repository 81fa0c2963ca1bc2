"""Crawler worker: polls RSS/Atom feeds and feeds new items into ``news.raw``.

Run from backend dir:
  python -m workers.crawler
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from xml.etree import ElementTree

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from models.database import NewsItem, RssFeed
from models.lifecycle import NewsStatus
from models.messages import NewsRawMessage
from services.broker import MessageBroker
from utils.logger import get_logger
from utils.utcnow import parse_iso, to_naive_utc, utcnow
from workers.base import WorkerContext, run_worker

logger = get_logger("crawler")

USER_AGENT = "PredictX-Crawler/1.0"
_ATOM = "{http://www.w3.org/2005/Atom}"


class DuplicateNewsError(Exception):
    def __init__(self, content_hash: str):
        super().__init__(f"News item with hash {content_hash} already exists")
        self.content_hash = content_hash


@dataclass
class FeedEntry:
    title: str
    link: str
    content: str
    published_at: Optional[datetime]


def compute_content_hash(title: str, content: str) -> str:
    return hashlib.sha256(f"{title}{content}".encode("utf-8")).hexdigest()


def _strip_html(text: str) -> str:
    return re.sub(r"<[^>]+>", "", text).strip()


def _parse_feed_date(value: str) -> Optional[datetime]:
    if not value:
        return None
    for fmt in ("%a, %d %b %Y %H:%M:%S %z", "%a, %d %b %Y %H:%M:%S %Z"):
        try:
            return to_naive_utc(datetime.strptime(value.strip(), fmt))
        except ValueError:
            continue
    return parse_iso(value)


def parse_feed(xml_text: str, max_items: int) -> list[FeedEntry]:
    """Top ``max_items`` entries of an RSS or Atom document."""
    root = ElementTree.fromstring(xml_text)
    items = root.findall(".//item") or root.findall(f".//{_ATOM}entry")

    entries: list[FeedEntry] = []
    for item in items[:max_items]:
        title = item.findtext("title", "").strip() or item.findtext(f"{_ATOM}title", "").strip()
        link = item.findtext("link", "").strip()
        if not link:
            atom_link = item.find(f"{_ATOM}link")
            if atom_link is not None:
                link = atom_link.get("href", "")
        content = (
            item.findtext("description", "").strip()
            or item.findtext(f"{_ATOM}summary", "").strip()
            or item.findtext(f"{_ATOM}content", "").strip()
        )
        published = (
            item.findtext("pubDate", "").strip()
            or item.findtext(f"{_ATOM}published", "").strip()
            or item.findtext(f"{_ATOM}updated", "").strip()
        )
        if not title:
            continue
        entries.append(
            FeedEntry(
                title=title,
                link=link,
                content=_strip_html(content),
                published_at=_parse_feed_date(published),
            )
        )
    return entries


async def ingest_news_item(
    session_factory,
    broker: MessageBroker,
    *,
    source: str,
    url: str,
    title: str,
    content: str = "",
    published_at: Optional[datetime] = None,
    category_hint: Optional[str] = None,
) -> str:
    """Store one news item and publish it to ``news.raw``.

    Raises :class:`DuplicateNewsError` when the content hash is already known;
    nothing is written in that case.
    """
    content_hash = compute_content_hash(title, content)
    published_at = published_at or utcnow()

    async with session_factory() as session:
        existing = (
            await session.execute(select(NewsItem.id).where(NewsItem.content_hash == content_hash))
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateNewsError(content_hash)

        item = NewsItem(
            source=source,
            source_url=url,
            title=title,
            content=content,
            published_at=published_at,
            content_hash=content_hash,
            status=NewsStatus.INGESTED.value,
            ingested_at=utcnow(),
        )
        session.add(item)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise DuplicateNewsError(content_hash) from None
        news_id = item.id

    await broker.publish(
        "news.raw",
        NewsRawMessage(
            news_id=news_id,
            source=source,
            url=url,
            title=title,
            content=content,
            published_at=published_at,
            category_hint=category_hint,
        ),
    )
    logger.debug("Published news item", news_id=news_id, title=title[:50])
    return news_id


class Crawler:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.log = ctx.log
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def active_feeds(self) -> list[RssFeed]:
        async with self.ctx.session_factory() as session:
            return list((await session.execute(select(RssFeed).where(RssFeed.is_active.is_(True)))).scalars().all())

    async def poll_feed(self, feed: RssFeed) -> int:
        settings = self.ctx.settings
        self.log.info("Polling RSS feed", feed=feed.name, url=feed.url)
        async with self.ctx.http_client_factory(settings.CRAWLER_FETCH_TIMEOUT_SECONDS) as client:
            response = await client.get(feed.url, headers={"User-Agent": USER_AGENT}, follow_redirects=True)
            response.raise_for_status()
        entries = parse_feed(response.text, settings.CRAWLER_MAX_ITEMS_PER_FEED)

        published = 0
        for entry in entries:
            try:
                await ingest_news_item(
                    self.ctx.session_factory,
                    self.ctx.broker,
                    source=feed.name,
                    url=entry.link or feed.url,
                    title=entry.title,
                    content=entry.content,
                    published_at=entry.published_at,
                    category_hint=feed.category,
                )
            except DuplicateNewsError:
                continue
            published += 1
            self.ctx.heartbeat.record_success()

        async with self.ctx.session_factory() as session:
            await session.execute(update(RssFeed).where(RssFeed.id == feed.id).values(last_polled_at=utcnow()))
            await session.commit()
        return published

    async def run_cycle(self) -> Optional[int]:
        """One polling pass. Returns None when skipped for backpressure."""
        if not await self.ctx.admission.can_auto_publish():
            self.log.info("Auto-publish limit reached, skipping crawl cycle")
            return None

        self.ctx.heartbeat.set_running()
        total = 0
        for feed in await self.active_feeds():
            try:
                total += await self.poll_feed(feed)
            except (httpx.HTTPError, ElementTree.ParseError) as exc:
                self.ctx.heartbeat.record_failure(exc)
                self.log.warning("Feed poll failed", feed=feed.name, error=str(exc))
        if self.ctx.heartbeat.status == "running":
            self.ctx.heartbeat.set_idle()
        self.log.info("Crawl cycle complete", published=total)
        return total

    async def run(self) -> None:
        interval = self.ctx.settings.CRAWLER_POLL_INTERVAL_SECONDS
        while not self._stop.is_set():
            await self.ctx.heartbeat.wait_until_enabled()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.ctx.heartbeat.record_failure(exc)
                self.log.exception("Crawl cycle failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


async def main() -> None:
    await run_worker("crawler", lambda ctx: [Crawler(ctx)], queues=["news.raw"])


if __name__ == "__main__":
    asyncio.run(main())
