"""Submission boundary: user proposals, disputes and the operator review endpoints."""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import get_db_session
from services.disputes import (
    DisputeNotAllowedError,
    DisputeNotFoundError,
    list_open_disputes,
    review_escalated_dispute,
    submit_dispute,
)
from services.proposals import ProposalService, RateLimitExceeded
from services.rate_limiter import RateLimitDecision
from services.reviews import ReviewNotAllowedError, ReviewNotFoundError, review_draft_market, review_proposal

router = APIRouter(tags=["Proposals"])

Category = Literal["politics", "product_launch", "finance", "sports", "entertainment", "technology", "misc"]


class ProposeRequest(BaseModel):
    proposal_text: str = Field(min_length=10, max_length=500)
    category_hint: Optional[Category] = None


class DisputeRequest(BaseModel):
    resolution_id: str
    user_address: str = Field(min_length=1)
    reason: str = Field(min_length=10, max_length=2000)
    evidence_urls: list[str] = Field(default_factory=list, max_length=10)
    user_token_balance: Optional[float] = None


class DisputeReviewRequest(BaseModel):
    decision: Literal["uphold", "overturn"]
    new_result: Optional[Literal["YES", "NO"]] = None
    reason: str = Field(min_length=1)
    reviewed_by: str = "admin"


class DraftReviewRequest(BaseModel):
    decision: Literal["approve", "reject"]
    reason: Optional[str] = Field(default=None, max_length=2000)
    title: Optional[str] = Field(default=None, min_length=10, max_length=200)
    resolution: Optional[dict[str, Any]] = None
    reviewed_by: str = "admin"


def get_pipeline(request: Request):
    """Broker, admission controller and session factory built in the app lifespan."""
    return request.app.state.pipeline


def _rate_limited(decision: RateLimitDecision) -> JSONResponse:
    retry_after = int(decision.retry_after or 1)
    return JSONResponse(
        status_code=429,
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(decision.limit or 0),
            "X-RateLimit-Remaining": "0",
        },
        content={
            "error": "rate_limit_exceeded",
            "message": f"You have exceeded the per-{decision.window} limit",
            "limit": decision.limit,
            "window": decision.window,
            "retry_after": retry_after,
        },
    )


@router.post("/propose")
async def propose_market(body: ProposeRequest, request: Request, pipeline=Depends(get_pipeline)):
    user_id = request.headers.get("x-user-id") or None
    ip_address = request.client.host if request.client else None
    service = ProposalService(pipeline.session_factory, pipeline.broker, pipeline.admission)
    try:
        outcome = await service.submit(
            body.proposal_text,
            category_hint=body.category_hint,
            user_id=user_id,
            ip_address=ip_address,
        )
    except RateLimitExceeded as exc:
        return _rate_limited(exc.decision)
    return outcome.to_dict()


@router.post("/disputes")
async def create_dispute(body: DisputeRequest, pipeline=Depends(get_pipeline)):
    try:
        dispute_id = await submit_dispute(
            pipeline.session_factory,
            pipeline.broker,
            pipeline.admission,
            resolution_id=body.resolution_id,
            user_address=body.user_address,
            reason=body.reason,
            evidence_urls=body.evidence_urls,
            user_token_balance=body.user_token_balance,
        )
    except RateLimitExceeded as exc:
        return _rate_limited(exc.decision)
    except DisputeNotAllowedError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"dispute_id": dispute_id, "status": "pending"}


@router.get("/admin/disputes")
async def get_open_disputes(limit: int = 20, session: AsyncSession = Depends(get_db_session)):
    return {"disputes": await list_open_disputes(session, min(max(limit, 1), 100))}


@router.post("/admin/disputes/{dispute_id}/review")
async def review_dispute(dispute_id: str, body: DisputeReviewRequest, pipeline=Depends(get_pipeline)):
    try:
        return await review_escalated_dispute(
            pipeline.session_factory,
            dispute_id,
            decision=body.decision,
            reason=body.reason,
            new_result=body.new_result,
            reviewed_by=body.reviewed_by,
        )
    except DisputeNotFoundError:
        raise HTTPException(status_code=404, detail="Dispute not found")
    except DisputeNotAllowedError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/admin/markets/{market_id}/retrigger-resolution")
async def retrigger_market_resolution(market_id: str, pipeline=Depends(get_pipeline)):
    from workers.resolver import retrigger_resolution

    if not await retrigger_resolution(pipeline.session_factory, pipeline.broker, market_id):
        raise HTTPException(status_code=409, detail="Market is not in failed status")
    return {"status": "resolving", "market_id": market_id}


async def _review(call):
    try:
        return await call
    except ReviewNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")
    except ReviewNotAllowedError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/admin/markets/{market_id}/review")
async def review_market(market_id: str, body: DraftReviewRequest, pipeline=Depends(get_pipeline)):
    return await _review(
        review_draft_market(pipeline.session_factory, pipeline.broker, market_id, **body.model_dump())
    )


@router.post("/admin/proposals/{proposal_id}/review")
async def review_proposal_draft(proposal_id: str, body: DraftReviewRequest, pipeline=Depends(get_pipeline)):
    return await _review(
        review_proposal(pipeline.session_factory, pipeline.broker, proposal_id, **body.model_dump())
    )


@router.get("/admin/ai-config")
async def get_ai_config(pipeline=Depends(get_pipeline)):
    return {"config": await pipeline.ai_config.get()}
