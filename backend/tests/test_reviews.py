import asyncio
import sys
from pathlib import Path

import pytest
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import seed_market
from models.database import AuditLog, DraftMarket, Proposal
from models.lifecycle import MarketStatus, ProposalStatus
from services.reviews import ReviewNotAllowedError, review_draft_market, review_proposal
from utils.utcnow import utcnow


async def _parked_proposal(session_factory):
    async with session_factory() as session:
        proposal = Proposal(
            proposal_text="Will Apple release the iPhone 17 before 2027?",
            status=ProposalStatus.NEEDS_HUMAN.value,
            created_at=utcnow(),
        )
        session.add(proposal)
        await session.commit()
    market = await seed_market(
        session_factory,
        status=MarketStatus.PENDING_REVIEW.value,
        market_address=None,
        source_proposal_id=proposal.id,
    )
    async with session_factory() as session:
        row = await session.get(Proposal, proposal.id)
        row.draft_market_id = market.id
        await session.commit()
    return proposal, market


async def _review_audits(session_factory, market_id):
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(AuditLog).where(AuditLog.entity_id == market_id, AuditLog.action == "human_review_completed")
            )
        ).scalars()
        return list(rows)


@pytest.mark.asyncio
async def test_approve_applies_edits_and_queues_publish(session_factory, broker):
    proposal, market = await _parked_proposal(session_factory)

    result = await review_proposal(
        session_factory,
        broker,
        proposal.id,
        decision="approve",
        title="Will Apple ship the iPhone 17 before 2027-01-01?",
        resolution={"expiry": "2026-11-30T23:59:59Z"},
        reviewed_by="ops",
    )
    assert result["status"] == "active"

    async with session_factory() as session:
        stored = await session.get(DraftMarket, market.id)
        assert stored.status == MarketStatus.ACTIVE.value
        assert stored.title == "Will Apple ship the iPhone 17 before 2027-01-01?"
        assert stored.resolution["expiry"] == "2026-11-30T23:59:59Z"
        assert stored.resolution["criteria"]["confidence_threshold"] == 0.9
        assert (await session.get(Proposal, proposal.id)).status == ProposalStatus.APPROVED.value

    delivery = await broker.get("markets.publish")
    assert delivery.body["draft_market_id"] == market.id
    audits = await _review_audits(session_factory, market.id)
    assert [a.actor for a in audits] == ["ops"]
    assert audits[0].details["decision"] == "approve"


@pytest.mark.asyncio
async def test_reject_cancels_market_and_proposal(session_factory, broker):
    proposal, market = await _parked_proposal(session_factory)

    result = await review_draft_market(session_factory, broker, market.id, decision="reject", reason="Ambiguous")
    assert result["status"] == "canceled"

    async with session_factory() as session:
        assert (await session.get(DraftMarket, market.id)).status == MarketStatus.CANCELED.value
        stored = await session.get(Proposal, proposal.id)
        assert stored.status == ProposalStatus.REJECTED.value
        assert stored.rejection_reason == "Ambiguous"
    assert await broker.queue_depth("markets.publish") == 0


@pytest.mark.asyncio
async def test_ai_draft_without_proposal_can_be_reviewed(session_factory, broker):
    market = await seed_market(session_factory, status=MarketStatus.PENDING_REVIEW.value, market_address=None)
    result = await review_draft_market(session_factory, broker, market.id, decision="approve")
    assert result["proposal_id"] is None
    assert await broker.queue_depth("markets.publish") == 1


@pytest.mark.asyncio
async def test_concurrent_reviews_have_one_winner(session_factory, broker):
    proposal, market = await _parked_proposal(session_factory)

    results = await asyncio.gather(
        review_draft_market(session_factory, broker, market.id, decision="approve", reviewed_by="ops-a"),
        review_draft_market(session_factory, broker, market.id, decision="reject", reviewed_by="ops-b"),
        return_exceptions=True,
    )
    wins = [r for r in results if isinstance(r, dict)]
    losses = [r for r in results if isinstance(r, ReviewNotAllowedError)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert len(await _review_audits(session_factory, market.id)) == 1

    async with session_factory() as session:
        status = (await session.get(DraftMarket, market.id)).status
        proposal_status = (await session.get(Proposal, proposal.id)).status
    if wins[0]["decision"] == "approve":
        assert (status, proposal_status) == ("active", "approved")
    else:
        assert (status, proposal_status) == ("canceled", "rejected")


@pytest.mark.asyncio
async def test_decided_proposal_cannot_be_reviewed_again(session_factory, broker):
    proposal, market = await _parked_proposal(session_factory)
    await review_proposal(session_factory, broker, proposal.id, decision="reject")

    with pytest.raises(ReviewNotAllowedError):
        await review_proposal(session_factory, broker, proposal.id, decision="approve")
    with pytest.raises(ReviewNotAllowedError):
        await review_draft_market(session_factory, broker, market.id, decision="approve")
