import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import seed_market
from models.database import AIConfigEntry
from services.ai_config import AIConfigService
from services.rate_limiter import AdmissionController


class _Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.asyncio
async def test_fifth_proposal_allowed_sixth_blocked_on_minute(session_factory):
    clock = _Clock(datetime(2026, 10, 17, 12, 0, 0))
    admission = AdmissionController(session_factory, clock=clock)

    for _ in range(4):
        assert (await admission.check("user-1", "propose")).allowed
        await admission.increment("user-1", "propose")

    fifth = await admission.check("user-1", "propose")
    assert fifth.allowed
    await admission.increment("user-1", "propose")

    sixth = await admission.check("user-1", "propose")
    assert not sixth.allowed
    assert sixth.window == "minute"
    assert sixth.limit == 5
    assert 1 <= sixth.retry_after <= 60

    # other identifiers are unaffected
    assert (await admission.check("user-2", "propose")).allowed

    clock.now += timedelta(seconds=61)
    assert (await admission.check("user-1", "propose")).allowed


@pytest.mark.asyncio
async def test_hourly_window_applies_after_minute_window_clears(session_factory):
    clock = _Clock(datetime(2026, 10, 17, 12, 0, 0))
    admission = AdmissionController(session_factory, clock=clock)
    for _ in range(3):
        await admission.increment("0xabc", "dispute")
        clock.now += timedelta(minutes=2)

    blocked = await admission.check("0xabc", "dispute")
    assert not blocked.allowed
    assert blocked.window == "hour"


@pytest.mark.asyncio
async def test_limits_follow_ai_config_overrides(session_factory):
    async with session_factory() as session:
        session.add(AIConfigEntry(key="rate_limits.propose_per_minute", value=1))
        await session.commit()

    admission = AdmissionController(session_factory, AIConfigService(session_factory))
    await admission.increment("ip-1", "propose")
    decision = await admission.check("ip-1", "propose")
    assert not decision.allowed
    assert decision.limit == 1


@pytest.mark.asyncio
async def test_sweep_deletes_only_old_rows(session_factory):
    clock = _Clock(datetime(2026, 10, 17, 12, 0, 0))
    admission = AdmissionController(session_factory, clock=clock)
    await admission.increment("old", "propose")
    clock.now += timedelta(hours=30)
    await admission.increment("new", "propose")

    assert await admission.sweep(timedelta(hours=24)) == 3
    assert (await admission.check("new", "propose")).allowed


@pytest.mark.asyncio
async def test_auto_publish_backpressure_counts_only_ai_markets(session_factory):
    from utils.utcnow import utcnow

    admission = AdmissionController(session_factory)
    for i in range(3):
        await seed_market(session_factory, market_address=f"AI{i}", published_at=utcnow())
    assert await admission.can_auto_publish() is False


@pytest.mark.asyncio
async def test_user_published_markets_do_not_count_toward_auto_cap(session_factory):
    from models.database import Proposal
    from utils.utcnow import utcnow

    async with session_factory() as session:
        proposal = Proposal(proposal_text="Will it rain in Paris tomorrow?", status="published")
        session.add(proposal)
        await session.commit()

    admission = AdmissionController(session_factory)
    for i in range(3):
        await seed_market(
            session_factory,
            market_address=f"USER{i}",
            published_at=utcnow(),
            source_proposal_id=proposal.id,
        )
    assert await admission.can_auto_publish() is True
