"""Resolver worker: fetches evidence for expired markets and records the verdict.

Consumes ``markets.resolve``. A market whose sources all fail goes to
``failed`` and stays there until an operator calls
:func:`retrigger_resolution`.

Run from backend dir:
  python -m workers.resolver
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import timedelta
from typing import Awaitable, Callable

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from models.database import DraftMarket, Resolution
from models.lifecycle import MarketStatus, ResolutionStatus
from models.messages import MarketResolveMessage
from services.broker import MessageBroker
from services.evidence import FETCH_TIMEOUT_SECONDS, EvidenceFetch, combined_evidence_hash, fetch_source
from services.llm import LLMError
from services.prompts import RESOLUTION_SYSTEM_PROMPT, build_resolution_prompt
from services.transitions import transition_market, write_audit
from utils.logger import get_logger
from utils.utcnow import parse_iso, to_iso, utcnow
from workers.base import QueueConsumer, WorkerContext, run_worker

logger = get_logger("resolver")


def combine_evidence(fetches: list[EvidenceFetch]) -> str:
    return "\n\n".join(f"=== Source: {f.source_name} ({f.url}) ===\n{f.content}" for f in fetches)


class ResolverHandler:
    def __init__(self, ctx: WorkerContext, *, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.ctx = ctx
        self.log = ctx.log
        self._sleep = sleep

    async def fetch_sources(self, sources: list[dict]) -> list[EvidenceFetch]:
        fetches: list[EvidenceFetch] = []
        async with self.ctx.http_client_factory(FETCH_TIMEOUT_SECONDS) as client:
            for source in sources:
                url = str(source.get("url") or "")
                if not url:
                    continue
                fetch = await fetch_source(client, url, sleep=self._sleep)
                fetch.source_name = str(source.get("name") or fetch.source_name)
                fetches.append(fetch)
        return fetches

    async def _mark_failed(self, market: DraftMarket, fetches: list[EvidenceFetch]) -> None:
        async with self.ctx.session_factory() as session:
            if not await transition_market(session, market.id, MarketStatus.RESOLVING, MarketStatus.FAILED):
                await session.rollback()
                return
            await write_audit(
                session,
                "resolution_failed",
                "market",
                market.id,
                "resolver",
                {
                    "reason": "All source fetches failed",
                    "sources": [{"url": f.url, "success": f.success, "error": f.error} for f in fetches],
                },
            )
            await session.commit()
        self.log.error("All source fetches failed, market needs manual re-trigger", market_id=market.id)

    async def __call__(self, message: MarketResolveMessage) -> None:
        async with self.ctx.session_factory() as session:
            market = await session.get(DraftMarket, message.market_id)

        if market is None:
            self.log.error("Market not found", market_id=message.market_id)
            return
        if market.status != MarketStatus.RESOLVING.value:
            self.log.warning("Market not in resolving status", market_id=market.id, status=market.status)
            return

        rules = market.resolution or {}
        criteria = rules.get("criteria") or {}
        self.log.info("Processing market resolution", market_id=market.id)

        fetches = await self.fetch_sources(list(criteria.get("allowed_sources") or []))
        successful = [f for f in fetches if f.success]
        if not successful:
            await self._mark_failed(market, fetches)
            return

        config = await self.ctx.ai_config.get()
        result = await self.ctx.llm.json_request(
            RESOLUTION_SYSTEM_PROMPT,
            build_resolution_prompt(
                market_title=market.title,
                resolution=rules,
                source_urls=[f.url for f in successful],
                fetch_time=to_iso(utcnow()),
                content=combine_evidence(successful),
            ),
            temperature=0.1,
            max_tokens=2000,
            model=config["llm_model"],
        )
        verdict = result.content
        final_result = str(verdict.get("final_result") or "").upper()
        if final_result not in ("YES", "NO"):
            raise LLMError(f"Resolution verdict has no usable final_result: {verdict.get('final_result')!r}")

        evidence_hash = combined_evidence_hash(successful)
        now = utcnow()
        window_ends = now + timedelta(hours=float(config["dispute_window_hours"]))

        async with self.ctx.session_factory() as session:
            if not await transition_market(
                session,
                market.id,
                MarketStatus.RESOLVING,
                MarketStatus.RESOLVED,
                resolved_at=now,
                dispute_window_ends=window_ends,
            ):
                await session.rollback()
                self.log.info("Market resolved by another resolver", market_id=market.id)
                return
            resolution = Resolution(
                market_id=market.id,
                market_address=market.market_address,
                final_result=final_result,
                resolution_source=successful[0].url,
                evidence_hash=evidence_hash,
                evidence_raw=[f.metadata() for f in fetches],
                must_meet_all_results=verdict.get("must_meet_all_results") or [],
                must_not_count_results=verdict.get("must_not_count_results") or [],
                reasoning=verdict.get("reasoning"),
                status=ResolutionStatus.RESOLVED.value,
                resolved_by="resolver",
                resolved_at=now,
                dispute_window_ends=window_ends,
            )
            session.add(resolution)
            await session.flush()
            await write_audit(
                session,
                "market_resolved",
                "market",
                market.id,
                "resolver",
                {
                    "resolution_id": resolution.id,
                    "final_result": final_result,
                    "evidence_hash": evidence_hash,
                    "reasoning": verdict.get("reasoning"),
                    "sources_fetched": len(successful),
                    "dispute_window_ends": to_iso(window_ends),
                },
                ai_version=config["ai_version"],
                llm_request_id=result.request_id,
            )
            await session.commit()

        self.log.info(
            "Market resolution completed",
            market_id=market.id,
            resolution_id=resolution.id,
            result=final_result,
            dispute_window_ends=to_iso(window_ends),
        )


async def retrigger_resolution(
    session_factory,
    broker: MessageBroker,
    market_id: str,
    *,
    actor: str = "admin",
) -> bool:
    """Move a ``failed`` market back to ``resolving`` and queue it again."""
    async with session_factory() as session:
        market = await session.get(DraftMarket, market_id)
        if market is None or not market.market_address:
            return False
        if not await transition_market(session, market_id, MarketStatus.FAILED, MarketStatus.RESOLVING):
            return False
        await write_audit(session, "resolution_retriggered", "market", market_id, actor, {})
        await session.commit()
        address = market.market_address
        expiry = parse_iso((market.resolution or {}).get("expiry"))

    await broker.publish(
        "markets.resolve",
        MarketResolveMessage(market_id=market_id, market_address=address, expiry=expiry),
    )
    logger.info("Resolution re-triggered", market_id=market_id, actor=actor)
    return True


def build_consumers(ctx: WorkerContext) -> list[QueueConsumer]:
    return [QueueConsumer(ctx, "markets.resolve", ResolverHandler(ctx))]


async def main() -> None:
    await run_worker("resolver", build_consumers, queues=["markets.resolve"])


if __name__ == "__main__":
    asyncio.run(main())
