"""Generator worker: candidate -> draft market definition.

Consumes ``candidates``, produces ``drafts.validate``.

Run from backend dir:
  python -m workers.generator
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Any

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from sqlalchemy import update

from models.database import Candidate, DraftMarket
from models.lifecycle import MarketStatus, ProposalStatus
from models.messages import CandidateMessage, DraftValidateMessage
from services.ai_config import CATEGORIES
from services.llm import LLMError
from services.prompts import MARKET_GENERATION_SYSTEM_PROMPT, build_market_generation_prompt
from services.transitions import transition_proposal, write_audit
from utils.utcnow import utcnow
from workers.base import QueueConsumer, WorkerContext, run_worker

TITLE_MAX = 200


def _coerce_market(data: dict[str, Any]) -> dict[str, Any]:
    title = str(data.get("title") or "").strip()
    resolution = data.get("resolution")
    if not title or not isinstance(resolution, dict):
        raise LLMError("Generated market is missing a title or resolution block")
    category = str(data.get("category") or "misc")
    try:
        confidence = float(data.get("confidence_score"))
    except (TypeError, ValueError):
        confidence = 0.0
    return {
        "title": title[:TITLE_MAX],
        "description": str(data.get("description") or ""),
        "category": category if category in CATEGORIES else "misc",
        "resolution": resolution,
        "confidence_score": max(0.0, min(1.0, confidence)),
    }


def _validate_message(draft: DraftMarket) -> DraftValidateMessage:
    if draft.source_news_id:
        return DraftValidateMessage(draft_market_id=draft.id, source_type="news", source_id=draft.source_news_id)
    return DraftValidateMessage(draft_market_id=draft.id, source_type="proposal", source_id=draft.source_proposal_id)


class GeneratorHandler:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.log = ctx.log

    async def __call__(self, message: CandidateMessage) -> None:
        async with self.ctx.session_factory() as session:
            candidate = await session.get(Candidate, message.candidate_id)
            draft = None
            if candidate is not None and candidate.processed and candidate.draft_market_id:
                draft = await session.get(DraftMarket, candidate.draft_market_id)

        if candidate is None:
            self.log.warning("Candidate not found", candidate_id=message.candidate_id)
            return
        if candidate.processed:
            if draft is not None and draft.status == MarketStatus.DRAFT.value:
                # Committed but never handed to the validator.
                await self.ctx.broker.publish("drafts.validate", _validate_message(draft))
            return

        proposal_id = message.proposal_id or candidate.proposal_id
        config = await self.ctx.ai_config.get()
        ai_version = str(config["ai_version"])
        self.log.info("Processing candidate", candidate_id=candidate.id, proposal_id=proposal_id)

        result = await self.ctx.llm.json_request(
            MARKET_GENERATION_SYSTEM_PROMPT,
            build_market_generation_prompt(
                relevant_text=candidate.relevant_text,
                entities=list(candidate.entities or []),
                event_type=candidate.event_type,
                category=candidate.category_hint,
                proposal_text=candidate.relevant_text if proposal_id else None,
            ),
            temperature=0.3,
            max_tokens=2000,
            model=config["llm_model"],
        )
        market = _coerce_market(result.content)

        async with self.ctx.session_factory() as session:
            draft = DraftMarket(
                title=market["title"],
                description=market["description"],
                category=market["category"],
                ai_version=ai_version,
                confidence_score=market["confidence_score"],
                source_news_id=candidate.news_id,
                source_proposal_id=proposal_id,
                resolution=market["resolution"],
                status=MarketStatus.DRAFT.value,
                created_by="generator",
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            session.add(draft)
            await session.flush()

            claimed = await session.execute(
                update(Candidate)
                .where(Candidate.id == candidate.id, Candidate.processed.is_(False))
                .values(processed=True, draft_market_id=draft.id)
                .execution_options(synchronize_session=False)
            )
            if not claimed.rowcount:
                await session.rollback()
                self.log.info("Candidate already taken by another generator", candidate_id=candidate.id)
                return

            await write_audit(
                session,
                "draft_generated",
                "market",
                draft.id,
                "generator",
                {
                    "candidate_id": candidate.id,
                    "confidence_score": market["confidence_score"],
                    "title": market["title"],
                },
                ai_version=ai_version,
                llm_request_id=result.request_id,
            )
            if proposal_id:
                await transition_proposal(
                    session,
                    proposal_id,
                    ProposalStatus.PROCESSING,
                    ProposalStatus.DRAFT_CREATED,
                    draft_market_id=draft.id,
                )
            await session.commit()

        await self.ctx.broker.publish("drafts.validate", _validate_message(draft))
        self.log.info(
            "Draft market created and queued for validation",
            candidate_id=candidate.id,
            draft_market_id=draft.id,
            confidence=market["confidence_score"],
        )


def build_consumers(ctx: WorkerContext) -> list[QueueConsumer]:
    return [QueueConsumer(ctx, "candidates", GeneratorHandler(ctx))]


async def main() -> None:
    await run_worker("generator", build_consumers, queues=["candidates", "drafts.validate"])


if __name__ == "__main__":
    asyncio.run(main())
