"""Operator review of drafts the validator parked for a human."""

from __future__ import annotations

import uuid
from typing import Any, Optional

from models.database import DraftMarket, Proposal
from models.lifecycle import MarketStatus, ProposalStatus
from models.messages import MarketPublishMessage
from services.broker import MessageBroker
from services.transitions import transition_market, transition_proposal, write_audit
from utils.logger import get_logger

logger = get_logger("reviews")

REVIEW_DECISIONS = ("approve", "reject")


class ReviewNotFoundError(Exception):
    pass


class ReviewNotAllowedError(Exception):
    """The draft is not waiting for review (already decided, or never parked)."""


async def review_draft_market(
    session_factory,
    broker: MessageBroker,
    market_id: str,
    *,
    decision: str,
    reason: Optional[str] = None,
    title: Optional[str] = None,
    resolution: Optional[dict[str, Any]] = None,
    reviewed_by: str = "admin",
) -> dict[str, Any]:
    """Approve or reject a ``pending_review`` draft.

    Approval applies the optional title / resolution edits in the same CAS
    update that moves the market to ``active``, moves a ``needs_human``
    proposal to ``approved`` and queues the market for publishing. Rejection
    cancels the market and rejects the proposal. A review that loses the race
    to another reviewer raises ``ReviewNotAllowedError`` and changes nothing.
    """
    if decision not in REVIEW_DECISIONS:
        raise ReviewNotAllowedError(f"Unknown decision '{decision}'")

    async with session_factory() as session:
        market = await session.get(DraftMarket, market_id)
        if market is None:
            raise ReviewNotFoundError(market_id)

        values: dict[str, Any] = {}
        if decision == "approve":
            target = MarketStatus.ACTIVE
            proposal_target = ProposalStatus.APPROVED
            if title:
                values["title"] = title
            if resolution:
                values["resolution"] = {**(market.resolution or {}), **resolution}
        else:
            target = MarketStatus.CANCELED
            proposal_target = ProposalStatus.REJECTED

        moved = await transition_market(session, market_id, MarketStatus.PENDING_REVIEW, target, **values)
        if not moved:
            raise ReviewNotAllowedError("Market is not pending review")

        proposal_id = market.source_proposal_id
        if proposal_id:
            await transition_proposal(
                session,
                proposal_id,
                ProposalStatus.NEEDS_HUMAN,
                proposal_target,
                rejection_reason=reason if decision == "reject" else None,
            )
        await write_audit(
            session,
            "human_review_completed",
            "market",
            market_id,
            reviewed_by,
            {
                "decision": decision,
                "reason": reason,
                "proposal_id": proposal_id,
                "modifications": sorted(values),
            },
        )
        await session.commit()

    if decision == "approve":
        await broker.publish(
            "markets.publish",
            MarketPublishMessage(draft_market_id=market_id, validation_id=f"admin_review_{uuid.uuid4().hex}"),
        )
    logger.info("Draft reviewed", draft_market_id=market_id, decision=decision, reviewed_by=reviewed_by)
    return {
        "market_id": market_id,
        "proposal_id": proposal_id,
        "decision": decision,
        "status": target.value,
    }


async def review_proposal(session_factory, broker: MessageBroker, proposal_id: str, **kwargs: Any) -> dict[str, Any]:
    """Review by proposal id; the proposal must be ``needs_human`` with a draft attached."""
    async with session_factory() as session:
        proposal = await session.get(Proposal, proposal_id)
        if proposal is None:
            raise ReviewNotFoundError(proposal_id)
        if proposal.status != ProposalStatus.NEEDS_HUMAN.value or not proposal.draft_market_id:
            raise ReviewNotAllowedError(f"Proposal is in {proposal.status} status and cannot be reviewed")
        market_id = proposal.draft_market_id
    return await review_draft_market(session_factory, broker, market_id, **kwargs)
