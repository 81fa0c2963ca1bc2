"""Dispute agent: first-pass review of disputes against resolutions.

Consumes ``disputes``. Clear-cut cases are upheld or overturned here;
anything below the confidence bar is escalated for an operator.

Run from backend dir:
  python -m workers.dispute_agent
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Any, Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)

from models.database import Dispute, DraftMarket, Resolution
from models.lifecycle import DisputeStatus, MarketStatus
from models.messages import DisputeMessage
from services.evidence import FETCH_TIMEOUT_SECONDS, fetch_source, is_allowed_evidence_url
from services.prompts import DISPUTE_REVIEW_SYSTEM_PROMPT, build_dispute_review_prompt
from services.transitions import transition_dispute, transition_market, write_audit
from utils.retry import RetryConfig
from utils.utcnow import utcnow
from workers.base import QueueConsumer, WorkerContext, run_worker

AUTO_DECISION_CONFIDENCE = 0.85
SINGLE_ATTEMPT = RetryConfig(max_attempts=1)


def final_status_for(review: dict[str, Any]) -> DisputeStatus:
    decision = review.get("decision")
    try:
        confidence = float(review.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    if decision == "escalate" or confidence < AUTO_DECISION_CONFIDENCE:
        return DisputeStatus.ESCALATED
    if decision == "upheld":
        return DisputeStatus.UPHELD
    if decision == "overturned":
        return DisputeStatus.OVERTURNED
    return DisputeStatus.ESCALATED


def _flip(result: Optional[str]) -> str:
    return "NO" if (result or "").upper() == "YES" else "YES"


class DisputeAgentHandler:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx
        self.log = ctx.log

    async def gather_evidence(self, evidence_urls: list[str], allowed_sources: list[dict]) -> str:
        parts: list[str] = []
        rejected: list[str] = []
        refetched: list[str] = []
        async with self.ctx.http_client_factory(FETCH_TIMEOUT_SECONDS) as client:
            for url in evidence_urls:
                if not is_allowed_evidence_url(url, allowed_sources):
                    rejected.append(url)
                    continue
                fetch = await fetch_source(client, url, retry=SINGLE_ATTEMPT)
                if fetch.success:
                    parts.append(f"=== Source: {url} ===\n{fetch.content}")
                else:
                    self.log.warning("Failed to fetch evidence URL", url=url, error=fetch.error)

            for source in allowed_sources:
                url = str(source.get("url") or "")
                if not url:
                    continue
                fetch = await fetch_source(client, url, retry=SINGLE_ATTEMPT)
                if fetch.success:
                    refetched.append(f"=== Re-fetch: {source.get('name')} ({url}) ===\n{fetch.content}")

        if rejected:
            self.log.info("Evidence URLs outside allowed sources ignored", urls=rejected)
        return "\n\n".join([*parts, "--- Re-fetched Original Sources ---", *refetched])

    async def __call__(self, message: DisputeMessage) -> None:
        async with self.ctx.session_factory() as session:
            dispute = await session.get(Dispute, message.dispute_id)
            resolution = await session.get(Resolution, dispute.resolution_id) if dispute else None
            market = await session.get(DraftMarket, resolution.market_id) if resolution else None

        if dispute is None or resolution is None or market is None:
            self.log.error("Dispute or its resolution not found", dispute_id=message.dispute_id)
            return
        if dispute.status not in (DisputeStatus.PENDING.value, DisputeStatus.REVIEWING.value):
            self.log.warning("Dispute not in reviewable status", dispute_id=dispute.id, status=dispute.status)
            return

        if dispute.status == DisputeStatus.PENDING.value:
            async with self.ctx.session_factory() as session:
                if not await transition_dispute(session, dispute.id, DisputeStatus.PENDING, DisputeStatus.REVIEWING):
                    await session.rollback()
                    self.log.info("Dispute picked up by another agent", dispute_id=dispute.id)
                    return
                await session.commit()

        rules = market.resolution or {}
        allowed_sources = list((rules.get("criteria") or {}).get("allowed_sources") or [])
        evidence_urls = list(dispute.evidence_urls or [])
        self.log.info("Processing dispute", dispute_id=dispute.id, market_id=market.id)

        new_evidence = await self.gather_evidence(evidence_urls, allowed_sources)
        config = await self.ctx.ai_config.get()
        result = await self.ctx.llm.json_request(
            DISPUTE_REVIEW_SYSTEM_PROMPT,
            build_dispute_review_prompt(
                market_title=market.title,
                resolution_rules=rules,
                original_result=resolution.final_result,
                evidence_hash=resolution.evidence_hash,
                original_source=resolution.resolution_source or "",
                must_meet_all_results=list(resolution.must_meet_all_results or []),
                must_not_count_results=list(resolution.must_not_count_results or []),
                dispute_reason=dispute.reason or "",
                evidence_urls=evidence_urls,
                user_address=dispute.user_address,
                new_evidence=new_evidence,
            ),
            temperature=0.2,
            max_tokens=2000,
            model=config["llm_model"],
        )
        review = result.content
        status = final_status_for(review)
        new_result = None
        if status is DisputeStatus.OVERTURNED:
            proposed = str(review.get("new_result") or "").upper()
            new_result = proposed if proposed in ("YES", "NO") else _flip(resolution.final_result)

        ai_review = {
            "decision": review.get("decision"),
            "reasoning": review.get("reasoning"),
            "confidence": review.get("confidence"),
            "new_evidence_relevant": review.get("new_evidence_relevant"),
            "new_evidence_analysis": review.get("new_evidence_analysis"),
            "escalation_reason": review.get("escalation_reason"),
            "llm_request_id": result.request_id,
        }

        async with self.ctx.session_factory() as session:
            moved = await transition_dispute(
                session,
                dispute.id,
                DisputeStatus.REVIEWING,
                status,
                ai_review=ai_review,
                new_result=new_result,
                resolved_at=None if status is DisputeStatus.ESCALATED else utcnow(),
            )
            if not moved:
                await session.rollback()
                self.log.info("Dispute already decided", dispute_id=dispute.id)
                return

            if status is DisputeStatus.OVERTURNED:
                row = await session.get(Resolution, resolution.id)
                row.final_result = new_result
                await write_audit(
                    session,
                    "dispute_overturned",
                    "dispute",
                    dispute.id,
                    "dispute_agent",
                    {
                        "original_result": resolution.final_result,
                        "new_result": new_result,
                        "reasoning": review.get("reasoning"),
                    },
                    llm_request_id=result.request_id,
                )
            elif status is DisputeStatus.UPHELD:
                await write_audit(
                    session,
                    "dispute_upheld",
                    "dispute",
                    dispute.id,
                    "dispute_agent",
                    {"reasoning": review.get("reasoning"), "confidence": review.get("confidence")},
                    llm_request_id=result.request_id,
                )
            else:
                await transition_market(session, market.id, MarketStatus.DISPUTED, MarketStatus.ESCALATED)
                await write_audit(
                    session,
                    "dispute_escalated",
                    "dispute",
                    dispute.id,
                    "dispute_agent",
                    {
                        "escalation_reason": review.get("escalation_reason") or "Low confidence",
                        "confidence": review.get("confidence"),
                    },
                    llm_request_id=result.request_id,
                )
            await session.commit()

        self.log.info(
            "Dispute processing completed",
            dispute_id=dispute.id,
            final_status=status.value,
            new_result=new_result,
        )


def build_consumers(ctx: WorkerContext) -> list[QueueConsumer]:
    return [QueueConsumer(ctx, "disputes", DisputeAgentHandler(ctx))]


async def main() -> None:
    await run_worker("dispute_agent", build_consumers, queues=["disputes"])


if __name__ == "__main__":
    asyncio.run(main())
