import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import seed_market
from models.database import AuditLog, Candidate, DraftMarket, NewsItem
from services.chain import CreatedMarket
from services.llm import LLMError
from workers.base import QueueConsumer
from workers.crawler import ingest_news_item
from workers.extractor import ExtractorHandler, detect_event_type
from workers.generator import GeneratorHandler
from workers.publisher import PublisherHandler
from workers.validator import APPROVED, NEEDS_HUMAN, REJECTED, ValidatorHandler, decide

GENERATED_MARKET = {
    "title": "Will Acme release the Rocket Phone before 2026-12-31?",
    "description": "Resolves YES if Acme ships the Rocket Phone.",
    "category": "product_launch",
    "resolution": {
        "exact_question": "Will Acme release the Rocket Phone before 2026-12-31?",
        "criteria": {
            "must_meet_all": ["Official Acme press release"],
            "must_not_count": ["Leaks"],
            "allowed_sources": [{"name": "Acme Newsroom", "url": "https://acme.test/news", "method": "html_scrape"}],
            "confidence_threshold": 0.9,
        },
        "expiry": "2026-12-31T23:59:59Z",
    },
    "confidence_score": 0.6,
}

VALID = {
    "has_ambiguity": False,
    "ambiguity_details": [],
    "is_resolvable": True,
    "is_forbidden": False,
    "forbidden_reason": [],
    "overall_valid": True,
    "recommendation": "approve",
}


def test_decide_outcomes():
    assert decide(VALID, 0.9, 0.7) is APPROVED
    assert decide(VALID, 0.69, 0.7) is NEEDS_HUMAN
    assert decide({**VALID, "is_forbidden": True}, 0.99, 0.7) is REJECTED
    assert decide({**VALID, "overall_valid": False, "recommendation": "reject"}, 0.99, 0.7) is REJECTED
    assert decide({**VALID, "overall_valid": False, "recommendation": "needs_human"}, 0.99, 0.7) is NEEDS_HUMAN


def test_keyword_detection_order():
    assert detect_event_type("Acme launches the Rocket Phone") == "product_launch"
    assert detect_event_type("Quarterly earnings beat estimates") == "finance"
    assert detect_event_type("Nothing to see here") is None


@pytest.mark.asyncio
async def test_launch_news_with_low_confidence_waits_for_human(make_context, session_factory, broker, fake_llm):
    news_id = await ingest_news_item(
        session_factory,
        broker,
        source="Tech Wire",
        url="https://news.test/acme",
        title="Acme launches Rocket Phone",
        content="Acme says the Rocket Phone ships this winter.",
    )
    fake_llm.queue(GENERATED_MARKET, VALID)

    extractor_ctx = make_context("extractor")
    extractor = QueueConsumer(extractor_ctx, "news.raw", ExtractorHandler(extractor_ctx))
    generator_ctx = make_context("generator")
    generator = QueueConsumer(generator_ctx, "candidates", GeneratorHandler(generator_ctx))
    validator_ctx = make_context("validator")
    validator = QueueConsumer(validator_ctx, "drafts.validate", ValidatorHandler(validator_ctx))

    assert await extractor.process_next() == "acked"
    assert await generator.process_next() == "acked"
    assert await validator.process_next() == "acked"

    async with session_factory() as session:
        news = await session.get(NewsItem, news_id)
        candidate = (await session.execute(select(Candidate))).scalar_one()
        market = (await session.execute(select(DraftMarket))).scalar_one()
        actions = [a.action for a in (await session.execute(select(AuditLog).order_by(AuditLog.id))).scalars()]

    assert news.status == "processed"
    assert candidate.event_type == "product_launch"
    assert candidate.processed is True
    assert candidate.draft_market_id == market.id
    assert market.status == "pending_review"
    assert market.market_address is None
    assert market.validation_decision["llm_request_id"] == "llm-req-2"
    assert actions == ["draft_generated", "validation_completed"]
    assert await broker.queue_depth("markets.publish") == 0
    # keyword hit: only generation and validation called the LLM
    assert [c["temperature"] for c in fake_llm.calls] == [0.3, 0.2]


@pytest.mark.asyncio
async def test_forbidden_news_is_skipped(make_context, session_factory, broker):
    news_id = await ingest_news_item(
        session_factory, broker, source="Wire", url="https://news.test/x", title="Assassination attempt reported"
    )
    ctx = make_context("extractor")
    assert await QueueConsumer(ctx, "news.raw", ExtractorHandler(ctx)).process_next() == "acked"

    async with session_factory() as session:
        assert (await session.get(NewsItem, news_id)).status == "skipped"
    assert await broker.queue_depth("candidates") == 0


@pytest.mark.asyncio
async def test_llm_unworthy_news_is_skipped(make_context, session_factory, broker, fake_llm):
    news_id = await ingest_news_item(
        session_factory, broker, source="Wire", url="https://news.test/y", title="Local bakery wins"
    )
    fake_llm.queue({"is_market_worthy": False, "reason": "Too local"})
    ctx = make_context("extractor")
    assert await QueueConsumer(ctx, "news.raw", ExtractorHandler(ctx)).process_next() == "acked"

    async with session_factory() as session:
        assert (await session.get(NewsItem, news_id)).status == "skipped"
    assert fake_llm.calls[0]["max_tokens"] == 1000


@pytest.mark.asyncio
async def test_generator_llm_failure_is_retried(make_context, session_factory, broker, fake_llm):
    await ingest_news_item(session_factory, broker, source="Wire", url="https://news.test/z", title="Acme launches Z")
    ctx = make_context("extractor")
    await QueueConsumer(ctx, "news.raw", ExtractorHandler(ctx)).process_next()

    fake_llm.queue(LLMError("rate limited"))
    gen_ctx = make_context("generator")
    assert await QueueConsumer(gen_ctx, "candidates", GeneratorHandler(gen_ctx)).process_next() == "retry"
    async with session_factory() as session:
        assert (await session.execute(select(DraftMarket))).first() is None


@pytest.mark.asyncio
async def test_approved_market_published_once(make_context, session_factory, broker, fake_llm):
    market = await seed_market(session_factory, status="draft", market_address=None)
    fake_llm.queue(VALID)

    ctx = make_context("validator")
    assert await QueueConsumer(ctx, "drafts.validate", ValidatorHandler(ctx)).process_next() is None
    await broker.publish("drafts.validate", {"draft_market_id": market.id, "source_type": "news"})
    assert await QueueConsumer(ctx, "drafts.validate", ValidatorHandler(ctx)).process_next() == "acked"

    pub_ctx = make_context("publisher")
    create = AsyncMock(return_value=CreatedMarket("ADDR123", "YESMINT", "NOMINT", "sig"))
    pub_ctx.chain = SimpleNamespace(create_market=create, dry_run=False)
    delivery = await broker.get("markets.publish")
    await broker.ack(delivery)
    publisher = PublisherHandler(pub_ctx)
    message = SimpleNamespace(**delivery.body)

    await publisher(message)
    await publisher(message)

    create.assert_awaited_once()
    kwargs = create.await_args.kwargs
    assert kwargs["display_name"] == market.title[:64]
    assert kwargs["yes_symbol"] == "WILLAPY"
    assert kwargs["no_symbol"] == "WILLAPN"
    assert kwargs["initial_yes_prob"] == 5000
    async with session_factory() as session:
        row = await session.get(DraftMarket, market.id)
    assert row.status == "active"
    assert row.market_address == "ADDR123"
    assert row.yes_token_mint == "YESMINT"
    assert row.published_at is not None


@pytest.mark.asyncio
async def test_extracted_news_republishes_candidate_after_crash(make_context, session_factory, broker):
    news_id = await ingest_news_item(
        session_factory, broker, source="Wire", url="https://news.test/r", title="Acme launches recovery test"
    )
    async with session_factory() as session:
        session.add(Candidate(news_id=news_id, event_type="product_launch", category_hint="product_launch"))
        news = await session.get(NewsItem, news_id)
        news.status = "extracted"
        await session.commit()

    ctx = make_context("extractor")
    assert await QueueConsumer(ctx, "news.raw", ExtractorHandler(ctx)).process_next() == "acked"
    assert await broker.queue_depth("candidates") == 1
    async with session_factory() as session:
        assert (await session.get(NewsItem, news_id)).status == "processed"
        assert len((await session.execute(select(Candidate))).scalars().all()) == 1
