"""Scheduler worker: advances lifecycle state by elapsed time.

Each sweep is a plain coroutine returning how many rows it moved, so tests
and operators can call one directly. ``tick`` runs whichever sweeps are due;
``run`` just calls ``tick`` on a fixed cadence.

Run from backend dir:
  python -m workers.scheduler
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from sqlalchemy import select

from models.database import Dispute, DraftMarket, Proposal, Resolution
from models.lifecycle import OPEN_DISPUTE_STATUSES, MarketStatus, ProposalStatus, ResolutionStatus
from models.messages import ConfigRefreshMessage, MarketResolveMessage
from services.transitions import transition_market, transition_proposal, transition_resolution, write_audit
from utils.utcnow import parse_iso, to_iso, utcnow
from workers.base import WorkerContext, run_worker

FINALIZABLE_MARKET_STATUSES = (
    MarketStatus.RESOLVED.value,
    MarketStatus.DISPUTED.value,
    MarketStatus.UPHELD.value,
    MarketStatus.OVERTURNED.value,
)


@dataclass
class ScheduledSweep:
    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[int]]
    last_run: Optional[float] = None

    def due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval_seconds


async def finalize_market(session, market: DraftMarket, resolution: Resolution, *, actor: str = "scheduler") -> bool:
    """Close the dispute window for one market. Caller commits."""
    now = utcnow()
    if not await transition_market(
        session,
        market.id,
        FINALIZABLE_MARKET_STATUSES,
        MarketStatus.FINALIZED,
        finalized_at=now,
    ):
        return False
    await transition_resolution(
        session,
        resolution.id,
        (ResolutionStatus.RESOLVED, ResolutionStatus.DISPUTED),
        ResolutionStatus.FINALIZED,
        finalized_at=now,
    )
    await write_audit(
        session,
        "market_finalized",
        "market",
        market.id,
        actor,
        {"resolution_id": resolution.id, "final_result": resolution.final_result},
    )
    return True


class Scheduler:
    def __init__(
        self,
        ctx: WorkerContext,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ):
        self.ctx = ctx
        self.log = ctx.log
        self._clock = clock
        self._now = wall_clock
        self._stop = asyncio.Event()
        s = ctx.settings
        self.sweeps: list[ScheduledSweep] = [
            ScheduledSweep("expired_markets", s.SCHEDULER_EXPIRY_INTERVAL_SECONDS, self.sweep_expired_markets),
            ScheduledSweep("finalizable", s.SCHEDULER_FINALIZE_INTERVAL_SECONDS, self.sweep_finalizable),
            ScheduledSweep("rate_limits", s.SCHEDULER_RATE_LIMIT_CLEANUP_INTERVAL_SECONDS, self.sweep_rate_limits),
            ScheduledSweep("config_refresh", s.SCHEDULER_CONFIG_REFRESH_INTERVAL_SECONDS, self.broadcast_config_refresh),
            ScheduledSweep("stale", s.SCHEDULER_STALE_SWEEP_INTERVAL_SECONDS, self.sweep_stale),
        ]

    def stop(self) -> None:
        self._stop.set()

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def sweep_expired_markets(self) -> int:
        now = self._now()
        async with self.ctx.session_factory() as session:
            markets = (
                await session.execute(
                    select(DraftMarket).where(
                        DraftMarket.status == MarketStatus.ACTIVE.value,
                        DraftMarket.market_address.is_not(None),
                    )
                )
            ).scalars().all()

        queued = 0
        for market in markets:
            expiry = parse_iso((market.resolution or {}).get("expiry"))
            if expiry is None or expiry >= now:
                continue
            async with self.ctx.session_factory() as session:
                if not await transition_market(session, market.id, MarketStatus.ACTIVE, MarketStatus.RESOLVING):
                    continue
                await session.commit()
            await self.ctx.broker.publish(
                "markets.resolve",
                MarketResolveMessage(market_id=market.id, market_address=market.market_address, expiry=expiry),
            )
            queued += 1
            self.log.info("Queued expired market for resolution", market_id=market.id, expiry=to_iso(expiry))
        return queued

    async def sweep_finalizable(self) -> int:
        now = self._now()
        async with self.ctx.session_factory() as session:
            rows = (
                await session.execute(
                    select(DraftMarket, Resolution)
                    .join(Resolution, Resolution.market_id == DraftMarket.id)
                    .where(
                        DraftMarket.status.in_(FINALIZABLE_MARKET_STATUSES),
                        Resolution.dispute_window_ends.is_not(None),
                        Resolution.dispute_window_ends < now,
                        ~select(Dispute.id)
                        .where(
                            Dispute.resolution_id == Resolution.id,
                            Dispute.status.in_(OPEN_DISPUTE_STATUSES),
                        )
                        .exists(),
                    )
                )
            ).all()

        finalized = 0
        for market, resolution in rows:
            async with self.ctx.session_factory() as session:
                if await finalize_market(session, market, resolution):
                    await session.commit()
                    finalized += 1
                    self.log.info("Market finalized", market_id=market.id, result=resolution.final_result)
        return finalized

    async def sweep_rate_limits(self) -> int:
        deleted = await self.ctx.admission.sweep(timedelta(hours=self.ctx.settings.RATE_LIMIT_RETENTION_HOURS))
        if deleted:
            self.log.info("Cleaned up rate limit rows", deleted=deleted)
        return deleted

    async def broadcast_config_refresh(self) -> int:
        await self.ctx.broker.publish("config.refresh", ConfigRefreshMessage(key="all", timestamp=self._now()))
        return 1

    async def sweep_stale(self) -> int:
        s = self.ctx.settings
        now = self._now()
        proposal_cutoff = now - timedelta(minutes=s.STALE_PROPOSAL_MINUTES)
        resolving_cutoff = now - timedelta(minutes=s.STALE_RESOLVING_MINUTES)
        moved = 0

        async with self.ctx.session_factory() as session:
            proposal_ids = (
                await session.execute(
                    select(Proposal.id).where(
                        Proposal.status == ProposalStatus.PROCESSING.value,
                        Proposal.updated_at < proposal_cutoff,
                    )
                )
            ).scalars().all()
            market_ids = (
                await session.execute(
                    select(DraftMarket.id).where(
                        DraftMarket.status == MarketStatus.RESOLVING.value,
                        DraftMarket.updated_at < resolving_cutoff,
                    )
                )
            ).scalars().all()

        for proposal_id in proposal_ids:
            async with self.ctx.session_factory() as session:
                if await transition_proposal(
                    session,
                    proposal_id,
                    ProposalStatus.PROCESSING,
                    ProposalStatus.FAILED,
                    rejection_reason="Timed out while processing",
                ):
                    await write_audit(session, "proposal_timed_out", "proposal", proposal_id, "scheduler", {})
                    await session.commit()
                    moved += 1

        for market_id in market_ids:
            async with self.ctx.session_factory() as session:
                if await transition_market(session, market_id, MarketStatus.RESOLVING, MarketStatus.FAILED):
                    await write_audit(
                        session,
                        "resolution_failed",
                        "market",
                        market_id,
                        "scheduler",
                        {"reason": "Stuck in resolving"},
                    )
                    await session.commit()
                    moved += 1

        if moved:
            self.log.warning("Reaped stale rows", proposals=len(proposal_ids), markets=len(market_ids), moved=moved)
        return moved

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[float] = None) -> dict[str, int]:
        """Run every sweep whose interval has elapsed. A failing sweep does not stop the rest."""
        now = self._clock() if now is None else now
        results: dict[str, int] = {}
        for sweep in self.sweeps:
            if not sweep.due(now):
                continue
            sweep.last_run = now
            try:
                results[sweep.name] = await sweep.func()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.ctx.heartbeat.record_failure(exc)
                self.log.exception("Sweep failed", sweep=sweep.name)
            else:
                self.ctx.heartbeat.record_success()
        return results

    async def run(self) -> None:
        tick_seconds = self.ctx.settings.SCHEDULER_TICK_SECONDS
        while not self._stop.is_set():
            await self.ctx.heartbeat.wait_until_enabled()
            self.ctx.heartbeat.set_running()
            await self.tick()
            if self.ctx.heartbeat.status == "running":
                self.ctx.heartbeat.set_idle()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=tick_seconds)
            except asyncio.TimeoutError:
                pass


async def main() -> None:
    await run_worker("scheduler", lambda ctx: [Scheduler(ctx)], queues=["markets.resolve"])


if __name__ == "__main__":
    asyncio.run(main())
