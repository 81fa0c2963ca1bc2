import asyncio
import sys
from pathlib import Path

import pytest
from sqlalchemy import func, select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import seed_market, seed_resolution
from models.database import AuditLog, DraftMarket
from models.lifecycle import MarketStatus, can_transition
from services.transitions import InvalidTransitionError, transition_market, write_audit
from workers.scheduler import finalize_market


def test_lifecycle_tables():
    assert can_transition("market", "draft", "active")
    assert can_transition("market", "draft", "pending_review")
    assert can_transition("market", "failed", "resolving")
    assert not can_transition("market", "canceled", "active")
    assert not can_transition("market", "finalized", "disputed")
    assert can_transition("proposal", "pending", "matched")
    assert not can_transition("proposal", "matched", "processing")
    assert can_transition("news", "ingested", "skipped")
    assert can_transition("dispute", "escalated", "overturned")
    assert not can_transition("dispute", "upheld", "reviewing")
    with pytest.raises(KeyError):
        can_transition("invoice", "a", "b")


@pytest.mark.asyncio
async def test_illegal_transition_raises(session_factory):
    market = await seed_market(session_factory, status=MarketStatus.CANCELED.value, market_address=None)
    async with session_factory() as session:
        with pytest.raises(InvalidTransitionError):
            await transition_market(session, market.id, MarketStatus.CANCELED, MarketStatus.ACTIVE)


@pytest.mark.asyncio
async def test_only_one_racer_wins_and_audits(session_factory):
    market = await seed_market(session_factory, status=MarketStatus.DRAFT.value, market_address=None)

    async def validate(actor: str) -> bool:
        async with session_factory() as session:
            current = await session.get(DraftMarket, market.id)
            assert current is not None
            if not await transition_market(session, market.id, MarketStatus.DRAFT, MarketStatus.ACTIVE):
                await session.rollback()
                return False
            await write_audit(session, "validation_completed", "market", market.id, actor, {})
            await session.commit()
            return True

    results = [await validate("validator-a"), await validate("validator-b")]
    assert results == [True, False]

    async with session_factory() as session:
        audits = (
            await session.execute(
                select(func.count(AuditLog.id)).where(
                    AuditLog.entity_id == market.id, AuditLog.action == "validation_completed"
                )
            )
        ).scalar_one()
        status = (await session.get(DraftMarket, market.id)).status
    assert audits == 1
    assert status == MarketStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_cas_sets_updated_at_and_extra_columns(session_factory):
    market = await seed_market(session_factory, status=MarketStatus.DRAFT.value, market_address=None)
    before = market.updated_at
    async with session_factory() as session:
        assert await transition_market(
            session,
            market.id,
            MarketStatus.DRAFT,
            MarketStatus.PENDING_REVIEW,
            validation_decision={"recommendation": "needs_human"},
        )
        await session.commit()
    async with session_factory() as session:
        row = await session.get(DraftMarket, market.id)
    assert row.status == "pending_review"
    assert row.validation_decision == {"recommendation": "needs_human"}
    assert row.updated_at >= before


@pytest.mark.asyncio
async def test_concurrent_finalize_has_one_winner(session_factory):
    market = await seed_market(session_factory, status=MarketStatus.RESOLVED.value, market_address="RACE1")
    resolution = await seed_resolution(session_factory, market, window_hours=-1)

    async def finalize(actor: str) -> bool:
        async with session_factory() as session:
            if not await finalize_market(session, market, resolution, actor=actor):
                await session.rollback()
                return False
            await session.commit()
            return True

    results = await asyncio.gather(finalize("scheduler-a"), finalize("scheduler-b"))
    assert sorted(results) == [False, True]

    async with session_factory() as session:
        audits = (
            await session.execute(
                select(func.count(AuditLog.id)).where(
                    AuditLog.entity_id == market.id, AuditLog.action == "market_finalized"
                )
            )
        ).scalar_one()
        status = (await session.get(DraftMarket, market.id)).status
    assert audits == 1
    assert status == MarketStatus.FINALIZED.value
