"""Dispute submission and operator review of escalated disputes."""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select

from models.database import Dispute, DraftMarket, Resolution
from models.lifecycle import DisputeStatus, MarketStatus, ResolutionStatus
from models.messages import DisputeMessage
from services.broker import MessageBroker
from services.proposals import RateLimitExceeded
from services.rate_limiter import AdmissionController
from services.transitions import (
    transition_dispute,
    transition_market,
    transition_resolution,
    write_audit,
)
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("disputes")

DISPUTE_ENDPOINT = "dispute"


class DisputeNotAllowedError(Exception):
    """The resolution cannot be disputed (unknown, wrong status or window closed)."""


class DisputeNotFoundError(Exception):
    pass


async def submit_dispute(
    session_factory,
    broker: MessageBroker,
    admission: AdmissionController,
    *,
    resolution_id: str,
    user_address: str,
    reason: str,
    evidence_urls: Optional[list[str]] = None,
    user_token_balance: Optional[float] = None,
) -> str:
    """Open a dispute against a resolution inside its window and queue it for review."""
    decision = await admission.check(user_address, DISPUTE_ENDPOINT)
    if not decision.allowed:
        raise RateLimitExceeded(decision)

    now = utcnow()
    async with session_factory() as session:
        resolution = await session.get(Resolution, resolution_id)
        if resolution is None:
            raise DisputeNotAllowedError("Resolution not found")
        if resolution.status not in (ResolutionStatus.RESOLVED.value, ResolutionStatus.DISPUTED.value):
            raise DisputeNotAllowedError(f"Resolution is {resolution.status}")
        if resolution.dispute_window_ends is None or resolution.dispute_window_ends <= now:
            raise DisputeNotAllowedError("Dispute window has closed")

        dispute = Dispute(
            resolution_id=resolution.id,
            market_address=resolution.market_address,
            user_address=user_address,
            user_token_balance=user_token_balance,
            reason=reason,
            evidence_urls=list(evidence_urls or []),
            status=DisputeStatus.PENDING.value,
            created_at=now,
        )
        session.add(dispute)
        await session.flush()

        # Already-disputed rows stay as they are.
        await transition_resolution(session, resolution.id, ResolutionStatus.RESOLVED, ResolutionStatus.DISPUTED)
        await transition_market(session, resolution.market_id, MarketStatus.RESOLVED, MarketStatus.DISPUTED)
        await write_audit(
            session,
            "dispute_submitted",
            "dispute",
            dispute.id,
            user_address,
            {"resolution_id": resolution.id, "evidence_urls": dispute.evidence_urls},
        )
        await session.commit()
        dispute_id, market_address = dispute.id, resolution.market_address

    await admission.increment(user_address, DISPUTE_ENDPOINT)
    await broker.publish(
        "disputes",
        DisputeMessage(dispute_id=dispute_id, resolution_id=resolution_id, market_address=market_address),
    )
    logger.info("Dispute queued for review", dispute_id=dispute_id, resolution_id=resolution_id)
    return dispute_id


async def review_escalated_dispute(
    session_factory,
    dispute_id: str,
    *,
    decision: str,
    reason: str,
    new_result: Optional[str] = None,
    reviewed_by: str = "admin",
) -> dict[str, Any]:
    """Operator decision on an escalated dispute. ``decision`` is ``uphold`` or ``overturn``.

    Returns the updated dispute summary; raises ``DisputeNotFoundError`` or
    ``DisputeNotAllowedError``. Finalization itself is left to the scheduler.
    """
    if decision not in ("uphold", "overturn"):
        raise DisputeNotAllowedError(f"Unknown decision '{decision}'")
    if decision == "overturn" and new_result not in ("YES", "NO"):
        raise DisputeNotAllowedError("new_result is required when overturning a dispute")

    target = DisputeStatus.UPHELD if decision == "uphold" else DisputeStatus.OVERTURNED
    market_target = MarketStatus.UPHELD if decision == "uphold" else MarketStatus.OVERTURNED
    now = utcnow()
    admin_review = {"decision": decision, "reason": reason, "new_result": new_result, "reviewed_by": reviewed_by}

    async with session_factory() as session:
        dispute = await session.get(Dispute, dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(dispute_id)
        resolution = await session.get(Resolution, dispute.resolution_id)

        moved = await transition_dispute(
            session,
            dispute_id,
            DisputeStatus.ESCALATED,
            target,
            admin_review=admin_review,
            new_result=new_result if decision == "overturn" else dispute.new_result,
            resolved_at=now,
        )
        if not moved:
            raise DisputeNotAllowedError(f"Dispute is {dispute.status} and cannot be reviewed")

        await transition_market(session, resolution.market_id, MarketStatus.ESCALATED, market_target)
        if decision == "overturn":
            resolution.final_result = new_result
        await write_audit(
            session,
            "dispute_resolved",
            "dispute",
            dispute_id,
            reviewed_by,
            {"decision": decision, "reason": reason, "new_result": new_result},
        )
        await session.commit()

    logger.info("Escalated dispute reviewed", dispute_id=dispute_id, decision=decision, reviewed_by=reviewed_by)
    return {"dispute_id": dispute_id, "status": target.value, "decision": decision, "new_result": new_result}


async def list_open_disputes(session, limit: int = 20) -> list[dict[str, Any]]:
    rows = (
        await session.execute(
            select(Dispute, DraftMarket.title)
            .join(Resolution, Resolution.id == Dispute.resolution_id)
            .join(DraftMarket, DraftMarket.id == Resolution.market_id)
            .where(Dispute.status.in_((DisputeStatus.PENDING.value, DisputeStatus.ESCALATED.value)))
            .order_by(Dispute.created_at.asc())
            .limit(limit)
        )
    ).all()
    return [
        {
            "id": d.id,
            "resolution_id": d.resolution_id,
            "market_title": title,
            "market_address": d.market_address,
            "user_address": d.user_address,
            "reason": d.reason,
            "status": d.status,
            "ai_review": d.ai_review,
        }
        for d, title in rows
    ]
