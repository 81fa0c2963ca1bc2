"""User proposal submission: rate check, similar-market match, hand-off to the generator."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select

from models.database import Candidate, DraftMarket, Proposal
from models.lifecycle import MarketStatus, ProposalStatus
from models.messages import CandidateMessage
from services.broker import MessageBroker
from services.rate_limiter import AdmissionController, RateLimitDecision
from services.transitions import transition_proposal, write_audit
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("proposals")

PROPOSE_ENDPOINT = "propose"
SIMILARITY_THRESHOLD = 0.6
LIVE_MARKET_STATUSES = (
    MarketStatus.ACTIVE.value,
    MarketStatus.RESOLVING.value,
    MarketStatus.RESOLVED.value,
)

_STOP_WORDS = frozenset(
    {
        "will", "the", "a", "an", "be", "by", "in", "on", "of", "to", "at",
        "is", "for", "and", "or", "before", "after", "does", "do", "its",
    }
)


class RateLimitExceeded(Exception):
    def __init__(self, decision: RateLimitDecision):
        super().__init__(f"Rate limit exceeded for {decision.window} window")
        self.decision = decision


def _tokenize(text: str) -> set[str]:
    normalized = re.sub(r"[^\w\s]", " ", (text or "").lower())
    return {w for w in normalized.split() if len(w) > 1 and w not in _STOP_WORDS}


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a, tokens_b = _tokenize(a), _tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


@dataclass
class SimilarMarket:
    id: str
    market_address: str
    title: str
    similarity_score: float


@dataclass
class ProposalOutcome:
    proposal_id: str
    status: str
    existing_market: Optional[SimilarMarket] = None
    candidate_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        existing = None
        if self.existing_market is not None:
            existing = {
                "id": self.existing_market.id,
                "market_address": self.existing_market.market_address,
                "title": self.existing_market.title,
                "similarity_score": round(self.existing_market.similarity_score, 3),
            }
        return {
            "proposal_id": self.proposal_id,
            "status": self.status,
            "existing_market": existing,
        }


async def find_similar_market(session, proposal_text: str) -> Optional[SimilarMarket]:
    """Best live market whose title or exact question overlaps the proposal enough."""
    rows = (
        await session.execute(
            select(DraftMarket).where(
                DraftMarket.status.in_(LIVE_MARKET_STATUSES),
                DraftMarket.market_address.is_not(None),
            )
        )
    ).scalars().all()

    best: Optional[SimilarMarket] = None
    for market in rows:
        question = (market.resolution or {}).get("exact_question") or ""
        score = max(jaccard_similarity(proposal_text, market.title), jaccard_similarity(proposal_text, question))
        if score >= SIMILARITY_THRESHOLD and (best is None or score > best.similarity_score):
            best = SimilarMarket(market.id, market.market_address, market.title, score)
    return best


class ProposalService:
    def __init__(self, session_factory, broker: MessageBroker, admission: AdmissionController):
        self._session_factory = session_factory
        self.broker = broker
        self.admission = admission

    async def submit(
        self,
        proposal_text: str,
        *,
        category_hint: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ProposalOutcome:
        """Admit a proposal. Raises :class:`RateLimitExceeded` before anything is written."""
        identifier = user_id or ip_address or "unknown"
        decision = await self.admission.check(identifier, PROPOSE_ENDPOINT)
        if not decision.allowed:
            raise RateLimitExceeded(decision)

        async with self._session_factory() as session:
            match = await find_similar_market(session, proposal_text)
            if match is not None:
                proposal = Proposal(
                    user_id=user_id,
                    proposal_text=proposal_text,
                    category_hint=category_hint,
                    status=ProposalStatus.MATCHED.value,
                    matched_market_id=match.id,
                    ip_address=ip_address,
                    created_at=utcnow(),
                )
                session.add(proposal)
                await session.flush()
                await write_audit(
                    session,
                    "proposal_matched",
                    "proposal",
                    proposal.id,
                    identifier,
                    {"market_id": match.id, "similarity_score": match.similarity_score},
                )
                await session.commit()
                await self.admission.increment(identifier, PROPOSE_ENDPOINT)
                logger.info("Proposal matched existing market", proposal_id=proposal.id, market_id=match.id)
                return ProposalOutcome(proposal.id, ProposalStatus.MATCHED.value, existing_market=match)

            proposal = Proposal(
                user_id=user_id,
                proposal_text=proposal_text,
                category_hint=category_hint,
                status=ProposalStatus.PENDING.value,
                ip_address=ip_address,
                created_at=utcnow(),
            )
            session.add(proposal)
            await session.flush()

            candidate = Candidate(
                news_id=None,
                proposal_id=proposal.id,
                entities=[],
                event_type="user_proposal",
                category_hint=category_hint or "misc",
                relevant_text=proposal_text,
                processed=False,
                created_at=utcnow(),
            )
            session.add(candidate)
            await session.flush()
            await transition_proposal(session, proposal.id, ProposalStatus.PENDING, ProposalStatus.PROCESSING)
            await session.commit()
            proposal_id, candidate_id = proposal.id, candidate.id

        await self.admission.increment(identifier, PROPOSE_ENDPOINT)
        await self.broker.publish(
            "candidates",
            CandidateMessage(
                candidate_id=candidate_id,
                news_id=None,
                entities=[],
                event_type="user_proposal",
                category_hint=category_hint or "misc",
                relevant_text=proposal_text,
                proposal_id=proposal_id,
            ),
        )
        logger.info("Proposal queued for processing", proposal_id=proposal_id, candidate_id=candidate_id)
        return ProposalOutcome(proposal_id, ProposalStatus.PROCESSING.value, candidate_id=candidate_id)
