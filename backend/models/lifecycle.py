"""Status enums and the legal transitions between them."""

from __future__ import annotations

import enum


class NewsStatus(str, enum.Enum):
    INGESTED = "ingested"
    EXTRACTED = "extracted"
    PROCESSED = "processed"
    SKIPPED = "skipped"


class MarketStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    ACTIVE = "active"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    DISPUTED = "disputed"
    ESCALATED = "escalated"
    UPHELD = "upheld"
    OVERTURNED = "overturned"
    FINALIZED = "finalized"
    CANCELED = "canceled"
    FAILED = "failed"


class ProposalStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    MATCHED = "matched"
    DRAFT_CREATED = "draft_created"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_HUMAN = "needs_human"
    PUBLISHED = "published"
    FAILED = "failed"


class ResolutionStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISPUTED = "disputed"
    FINALIZED = "finalized"


class DisputeStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    UPHELD = "upheld"
    OVERTURNED = "overturned"
    ESCALATED = "escalated"


OPEN_DISPUTE_STATUSES = frozenset({DisputeStatus.PENDING.value, DisputeStatus.REVIEWING.value, DisputeStatus.ESCALATED.value})


def _table(pairs: dict[enum.Enum, tuple[enum.Enum, ...]]) -> dict[str, frozenset[str]]:
    return {src.value: frozenset(dst.value for dst in targets) for src, targets in pairs.items()}


NEWS_TRANSITIONS = _table(
    {
        NewsStatus.INGESTED: (NewsStatus.EXTRACTED, NewsStatus.PROCESSED, NewsStatus.SKIPPED),
        NewsStatus.EXTRACTED: (NewsStatus.PROCESSED,),
    }
)

MARKET_TRANSITIONS = _table(
    {
        MarketStatus.DRAFT: (MarketStatus.PENDING_REVIEW, MarketStatus.ACTIVE, MarketStatus.CANCELED),
        MarketStatus.PENDING_REVIEW: (MarketStatus.ACTIVE, MarketStatus.CANCELED),
        MarketStatus.ACTIVE: (MarketStatus.RESOLVING,),
        MarketStatus.RESOLVING: (MarketStatus.RESOLVED, MarketStatus.FAILED),
        MarketStatus.RESOLVED: (MarketStatus.FINALIZED, MarketStatus.DISPUTED),
        MarketStatus.DISPUTED: (MarketStatus.ESCALATED, MarketStatus.FINALIZED),
        MarketStatus.ESCALATED: (MarketStatus.UPHELD, MarketStatus.OVERTURNED),
        MarketStatus.UPHELD: (MarketStatus.FINALIZED,),
        MarketStatus.OVERTURNED: (MarketStatus.FINALIZED,),
        # operator re-trigger after every evidence source failed
        MarketStatus.FAILED: (MarketStatus.RESOLVING,),
    }
)

PROPOSAL_TRANSITIONS = _table(
    {
        ProposalStatus.PENDING: (ProposalStatus.PROCESSING, ProposalStatus.MATCHED),
        ProposalStatus.PROCESSING: (ProposalStatus.DRAFT_CREATED, ProposalStatus.FAILED),
        ProposalStatus.DRAFT_CREATED: (
            ProposalStatus.APPROVED,
            ProposalStatus.REJECTED,
            ProposalStatus.NEEDS_HUMAN,
        ),
        ProposalStatus.NEEDS_HUMAN: (ProposalStatus.APPROVED, ProposalStatus.REJECTED),
        ProposalStatus.APPROVED: (ProposalStatus.PUBLISHED,),
    }
)

RESOLUTION_TRANSITIONS = _table(
    {
        ResolutionStatus.PENDING: (ResolutionStatus.RESOLVED,),
        ResolutionStatus.RESOLVED: (ResolutionStatus.DISPUTED, ResolutionStatus.FINALIZED),
        ResolutionStatus.DISPUTED: (ResolutionStatus.RESOLVED, ResolutionStatus.FINALIZED),
    }
)

DISPUTE_TRANSITIONS = _table(
    {
        DisputeStatus.PENDING: (DisputeStatus.REVIEWING,),
        DisputeStatus.REVIEWING: (DisputeStatus.UPHELD, DisputeStatus.OVERTURNED, DisputeStatus.ESCALATED),
        DisputeStatus.ESCALATED: (DisputeStatus.UPHELD, DisputeStatus.OVERTURNED),
    }
)

TRANSITIONS: dict[str, dict[str, frozenset[str]]] = {
    "news": NEWS_TRANSITIONS,
    "market": MARKET_TRANSITIONS,
    "proposal": PROPOSAL_TRANSITIONS,
    "resolution": RESOLUTION_TRANSITIONS,
    "dispute": DISPUTE_TRANSITIONS,
}


def _value(status: object) -> str:
    return status.value if isinstance(status, enum.Enum) else str(status)


def can_transition(kind: str, current: object, target: object) -> bool:
    table = TRANSITIONS.get(kind)
    if table is None:
        raise KeyError(f"Unknown entity kind '{kind}'")
    return _value(target) in table.get(_value(current), frozenset())
