"""Validator worker: decides whether a draft goes live, to human review, or nowhere.

Consumes ``drafts.validate``, produces ``markets.publish``.

Run from backend dir:
  python -m workers.validator
"""

from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import dataclass
from typing import Any

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from models.database import DraftMarket
from models.lifecycle import MarketStatus, ProposalStatus
from models.messages import DraftValidateMessage, MarketPublishMessage
from services.prompts import VALIDATION_SYSTEM_PROMPT, build_validation_prompt
from services.transitions import transition_market, transition_proposal, write_audit
from workers.base import QueueConsumer, WorkerContext, run_worker


@dataclass(frozen=True)
class ValidationOutcome:
    decision: str  # approved | rejected | needs_human
    market_status: MarketStatus
    proposal_status: ProposalStatus


APPROVED = ValidationOutcome("approved", MarketStatus.ACTIVE, ProposalStatus.APPROVED)
REJECTED = ValidationOutcome("rejected", MarketStatus.CANCELED, ProposalStatus.REJECTED)
NEEDS_HUMAN = ValidationOutcome("needs_human", MarketStatus.PENDING_REVIEW, ProposalStatus.NEEDS_HUMAN)


def decide(validation: dict[str, Any], confidence_score: float, threshold: float) -> ValidationOutcome:
    if validation.get("is_forbidden"):
        return REJECTED
    if not validation.get("overall_valid"):
        if validation.get("recommendation") == "needs_human":
            return NEEDS_HUMAN
        return REJECTED
    if confidence_score < threshold:
        return NEEDS_HUMAN
    return APPROVED


class ValidatorHandler:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.log = ctx.log

    async def __call__(self, message: DraftValidateMessage) -> None:
        async with self.ctx.session_factory() as session:
            market = await session.get(DraftMarket, message.draft_market_id)

        if market is None:
            self.log.error("Draft market not found", draft_market_id=message.draft_market_id)
            return
        if market.status == MarketStatus.ACTIVE.value and not market.market_address:
            # Approved earlier but the publish message never went out.
            validation_id = (market.validation_decision or {}).get("llm_request_id") or market.id
            await self.ctx.broker.publish(
                "markets.publish",
                MarketPublishMessage(draft_market_id=market.id, validation_id=validation_id),
            )
            return
        if market.status != MarketStatus.DRAFT.value:
            self.log.debug("Draft already validated", draft_market_id=market.id, status=market.status)
            return

        config = await self.ctx.ai_config.get()
        ai_version = str(config["ai_version"])
        threshold = float(config["validation_confidence_threshold"])
        self.log.info("Processing validation", draft_market_id=market.id)

        result = await self.ctx.llm.json_request(
            VALIDATION_SYSTEM_PROMPT,
            build_validation_prompt(
                {
                    "title": market.title,
                    "description": market.description,
                    "category": market.category,
                    "resolution": market.resolution,
                }
            ),
            temperature=0.2,
            max_tokens=1000,
            model=config["llm_model"],
        )
        validation = dict(result.content)
        confidence = float(market.confidence_score or 0.0)
        outcome = decide(validation, confidence, threshold)
        validation["llm_request_id"] = result.request_id

        async with self.ctx.session_factory() as session:
            moved = await transition_market(
                session,
                market.id,
                MarketStatus.DRAFT,
                outcome.market_status,
                validation_decision=validation,
            )
            if not moved:
                await session.rollback()
                self.log.info("Draft moved by another validator", draft_market_id=market.id)
                return
            if market.source_proposal_id:
                await transition_proposal(
                    session,
                    market.source_proposal_id,
                    ProposalStatus.DRAFT_CREATED,
                    outcome.proposal_status,
                    rejection_reason=(
                        "; ".join(str(r) for r in validation.get("forbidden_reason") or validation.get("ambiguity_details") or [])
                        or None
                    )
                    if outcome is REJECTED
                    else None,
                )
            await write_audit(
                session,
                "validation_completed",
                "market",
                market.id,
                "validator",
                {
                    "recommendation": validation.get("recommendation"),
                    "overall_valid": validation.get("overall_valid"),
                    "final_status": outcome.decision,
                    "confidence_score": confidence,
                    "has_ambiguity": validation.get("has_ambiguity"),
                    "is_forbidden": validation.get("is_forbidden"),
                },
                ai_version=ai_version,
                llm_request_id=result.request_id,
            )
            await session.commit()

        if outcome is APPROVED:
            await self.ctx.broker.publish(
                "markets.publish",
                MarketPublishMessage(draft_market_id=market.id, validation_id=result.request_id),
            )
            self.log.info("Market approved and queued for publishing", draft_market_id=market.id)
        elif outcome is REJECTED:
            self.log.info(
                "Market rejected",
                draft_market_id=market.id,
                reasons=[
                    *(validation.get("ambiguity_details") or []),
                    *(validation.get("fairness_issues") or []),
                    *(validation.get("forbidden_reason") or []),
                ],
            )
        else:
            self.log.info("Market queued for human review", draft_market_id=market.id, confidence=confidence)


def build_consumers(ctx: WorkerContext) -> list[QueueConsumer]:
    return [QueueConsumer(ctx, "drafts.validate", ValidatorHandler(ctx))]


async def main() -> None:
    await run_worker("validator", build_consumers, queues=["drafts.validate", "markets.publish"])


if __name__ == "__main__":
    asyncio.run(main())
