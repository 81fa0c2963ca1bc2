"""Extractor worker: turns raw news into market candidates.

Consumes ``news.raw``, produces ``candidates``. Keyword detection first,
LLM extraction only when no keyword matches.

Run from backend dir:
  python -m workers.extractor
"""

from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import dataclass, field
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from sqlalchemy import select

from models.database import Candidate, NewsItem
from models.lifecycle import NewsStatus
from models.messages import CandidateMessage, NewsRawMessage
from services.ai_config import CATEGORIES
from services.prompts import EXTRACTION_SYSTEM_PROMPT, build_extraction_prompt
from services.transitions import transition_news
from utils.utcnow import utcnow
from workers.base import QueueConsumer, WorkerContext, run_worker

RELEVANT_TEXT_CHARS = 500

# Checked in this order; the first type with a matching keyword wins.
EVENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "product_launch": (
        "launch", "release", "announce", "unveil", "introduce", "rollout",
        "debut", "available", "shipping", "pre-order",
    ),
    "finance": (
        "earnings", "quarterly", "revenue", "profit", "financial results",
        "ipo", "stock", "market cap", "valuation", "acquisition", "merger",
    ),
    "politics": (
        "election", "vote", "senate", "congress", "president", "governor",
        "legislation", "bill", "law", "policy", "campaign",
    ),
    "sports": (
        "championship", "finals", "tournament", "match", "game", "playoffs",
        "world cup", "super bowl", "olympics", "mvp", "draft",
    ),
    "entertainment": (
        "movie", "film", "album", "concert", "tour", "award", "grammy",
        "oscar", "emmy", "premiere", "box office",
    ),
    "technology": (
        "ai", "artificial intelligence", "software", "hardware", "chip",
        "processor", "update", "version", "feature", "api", "platform",
    ),
}

FORBIDDEN_TOPICS = (
    "death", "assassination", "suicide", "terrorism", "war crimes",
    "child abuse", "illegal activities", "hate speech",
)


def contains_forbidden_topic(text: str) -> bool:
    lowered = text.lower()
    return any(topic in lowered for topic in FORBIDDEN_TOPICS)


def detect_event_type(text: str) -> Optional[str]:
    lowered = text.lower()
    for event_type, keywords in EVENT_KEYWORDS.items():
        if any(kw in lowered for kw in keywords):
            return event_type
    return None


@dataclass
class Extraction:
    event_type: str
    category: str
    entities: list[str] = field(default_factory=list)
    llm_request_id: Optional[str] = None


class ExtractorHandler:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.log = ctx.log

    async def _extract_with_llm(self, title: str, content: str) -> Optional[Extraction]:
        result = await self.ctx.llm.json_request(
            EXTRACTION_SYSTEM_PROMPT,
            build_extraction_prompt(title, content),
            temperature=0.3,
            max_tokens=1000,
            model=await self.ctx.ai_config.value("llm_model"),
        )
        data = result.content
        if not data.get("is_market_worthy"):
            return None
        category = str(data.get("category") or "misc")
        if category not in CATEGORIES:
            category = "misc"
        entities = [str(e.get("name")) for e in data.get("entities") or [] if isinstance(e, dict) and e.get("name")]
        return Extraction(
            event_type=str(data.get("event_type") or "misc"),
            category=category,
            entities=entities,
            llm_request_id=result.request_id,
        )

    async def _publish_candidate(self, candidate: Candidate) -> None:
        await self.ctx.broker.publish(
            "candidates",
            CandidateMessage(
                candidate_id=candidate.id,
                news_id=candidate.news_id,
                entities=list(candidate.entities or []),
                event_type=candidate.event_type,
                category_hint=candidate.category_hint,
                relevant_text=candidate.relevant_text,
            ),
        )

    async def _mark_processed(self, news_id: str) -> None:
        async with self.ctx.session_factory() as session:
            await transition_news(session, news_id, NewsStatus.EXTRACTED, NewsStatus.PROCESSED, processed_at=utcnow())
            await session.commit()

    async def _skip(self, news_id: str, reason: str) -> None:
        async with self.ctx.session_factory() as session:
            await transition_news(session, news_id, NewsStatus.INGESTED, NewsStatus.SKIPPED, processed_at=utcnow())
            await session.commit()
        self.log.info("News item skipped", news_id=news_id, reason=reason)

    async def __call__(self, message: NewsRawMessage) -> None:
        async with self.ctx.session_factory() as session:
            news = await session.get(NewsItem, message.news_id)
            existing = None
            if news is not None and news.status == NewsStatus.EXTRACTED.value:
                existing = (
                    await session.execute(select(Candidate).where(Candidate.news_id == news.id))
                ).scalars().first()

        if news is None:
            self.log.warning("News item not found", news_id=message.news_id)
            return
        if news.status in (NewsStatus.PROCESSED.value, NewsStatus.SKIPPED.value):
            self.log.debug("News item already handled", news_id=news.id, status=news.status)
            return
        if existing is not None:
            # Crashed between the candidate insert and the publish.
            await self._publish_candidate(existing)
            await self._mark_processed(news.id)
            return

        self.log.info("Processing news item", news_id=news.id, title=news.title[:50])
        full_text = f"{news.title} {news.content}"
        if contains_forbidden_topic(full_text):
            await self._skip(news.id, "forbidden_topic")
            return

        event_type = detect_event_type(full_text)
        if event_type is not None:
            extraction = Extraction(event_type=event_type, category=event_type)
        else:
            extraction = await self._extract_with_llm(news.title, news.content)
            if extraction is None:
                await self._skip(news.id, "not_market_worthy")
                return

        async with self.ctx.session_factory() as session:
            candidate = Candidate(
                news_id=news.id,
                entities=extraction.entities,
                event_type=extraction.event_type,
                category_hint=extraction.category,
                relevant_text=(news.content or "")[:RELEVANT_TEXT_CHARS],
                processed=False,
                created_at=utcnow(),
            )
            session.add(candidate)
            if not await transition_news(session, news.id, NewsStatus.INGESTED, NewsStatus.EXTRACTED):
                await session.rollback()
                self.log.info("News item claimed by another extractor", news_id=news.id)
                return
            await session.commit()

        await self._publish_candidate(candidate)
        await self._mark_processed(news.id)
        self.log.info(
            "Candidate extracted and queued",
            news_id=news.id,
            candidate_id=candidate.id,
            event_type=extraction.event_type,
            category=extraction.category,
        )


def build_consumers(ctx: WorkerContext) -> list[QueueConsumer]:
    async def pace() -> float:
        return float(await ctx.ai_config.value("processing_delay_ms", 0)) / 1000.0

    return [QueueConsumer(ctx, "news.raw", ExtractorHandler(ctx), pace=pace)]


async def main() -> None:
    await run_worker("extractor", build_consumers, queues=["news.raw", "candidates"])


if __name__ == "__main__":
    asyncio.run(main())
