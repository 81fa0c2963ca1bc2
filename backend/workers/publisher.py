"""Publisher worker: creates approved markets on chain. Run exactly one instance.

Consumes ``markets.publish``.

Run from backend dir:
  python -m workers.publisher
"""

from __future__ import annotations

import asyncio
import os
import sys

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from sqlalchemy import update

from models.database import DraftMarket
from models.lifecycle import MarketStatus, ProposalStatus
from models.messages import MarketPublishMessage
from services.chain import DISPLAY_NAME_MAX, INITIAL_YES_PROBABILITY_BPS, market_symbol, metadata_uri
from services.transitions import transition_proposal, write_audit
from utils.utcnow import utcnow
from workers.base import QueueConsumer, WorkerContext, run_worker


class PublisherHandler:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.log = ctx.log

    async def __call__(self, message: MarketPublishMessage) -> None:
        async with self.ctx.session_factory() as session:
            market = await session.get(DraftMarket, message.draft_market_id)

        if market is None:
            self.log.error("Draft market not found", draft_market_id=message.draft_market_id)
            return
        if market.market_address:
            self.log.info(
                "Market already published",
                draft_market_id=market.id,
                market_address=market.market_address,
            )
            return
        if market.status != MarketStatus.ACTIVE.value:
            self.log.warning("Market is not approved for publishing", draft_market_id=market.id, status=market.status)
            return

        base_url = self.ctx.settings.METADATA_BASE_URL
        created = await self.ctx.chain.create_market(
            display_name=market.title[:DISPLAY_NAME_MAX],
            yes_symbol=market_symbol(market.title, "YES"),
            yes_uri=metadata_uri(market.title, "YES", base_url),
            no_symbol=market_symbol(market.title, "NO"),
            no_uri=metadata_uri(market.title, "NO", base_url),
            initial_yes_prob=INITIAL_YES_PROBABILITY_BPS,
        )

        ai_version = await self.ctx.ai_config.value("ai_version")
        now = utcnow()
        async with self.ctx.session_factory() as session:
            written = await session.execute(
                update(DraftMarket)
                .where(
                    DraftMarket.id == market.id,
                    DraftMarket.market_address.is_(None),
                    DraftMarket.status == MarketStatus.ACTIVE.value,
                )
                .values(
                    market_address=created.market_address,
                    yes_token_mint=created.yes_token_mint,
                    no_token_mint=created.no_token_mint,
                    published_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not written.rowcount:
                await session.rollback()
                self.log.warning(
                    "Market changed while publishing, on-chain address not recorded",
                    draft_market_id=market.id,
                    market_address=created.market_address,
                )
                return
            if market.source_proposal_id:
                await transition_proposal(
                    session, market.source_proposal_id, ProposalStatus.APPROVED, ProposalStatus.PUBLISHED
                )
            await write_audit(
                session,
                "market_published",
                "market",
                market.id,
                "publisher",
                {
                    "market_address": created.market_address,
                    "yes_token_mint": created.yes_token_mint,
                    "no_token_mint": created.no_token_mint,
                    "tx_signature": created.tx_signature,
                    "validation_id": message.validation_id,
                    "dry_run": self.ctx.chain.dry_run,
                },
                ai_version=ai_version,
            )
            await session.commit()

        self.log.info(
            "Market published",
            draft_market_id=market.id,
            market_address=created.market_address,
            dry_run=self.ctx.chain.dry_run,
        )


def build_consumers(ctx: WorkerContext) -> list[QueueConsumer]:
    return [QueueConsumer(ctx, "markets.publish", PublisherHandler(ctx))]


async def main() -> None:
    await run_worker("publisher", build_consumers, queues=["markets.publish"])


if __name__ == "__main__":
    asyncio.run(main())
