"""Compare-and-swap status transitions plus the audit log writer.

Every status change in the pipeline goes through :func:`cas_transition`:

    UPDATE <table> SET status = :target, ... WHERE id = :id AND status IN (:expected)

Zero affected rows means another actor got there first; callers treat that
as a no-op. Nothing here commits: the caller commits the transition and its
audit row together, so a lost race never leaves an audit entry behind.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import AuditLog, Dispute, DraftMarket, NewsItem, Proposal, Resolution
from models.lifecycle import can_transition
from utils.utcnow import utcnow

StatusArg = Union[str, Iterable[str]]

_MODELS = {
    "news": NewsItem,
    "market": DraftMarket,
    "proposal": Proposal,
    "resolution": Resolution,
    "dispute": Dispute,
}


class InvalidTransitionError(Exception):
    """A code path asked for a transition the lifecycle does not allow."""


def _statuses(expected: StatusArg) -> list[str]:
    if isinstance(expected, str) or hasattr(expected, "value"):
        expected = [expected]
    return [getattr(s, "value", s) for s in expected]


async def cas_transition(
    session: AsyncSession,
    kind: str,
    entity_id: str,
    expected: StatusArg,
    target: str,
    **values: Any,
) -> bool:
    """Move one row from any of ``expected`` to ``target``. Returns False on a lost race."""
    model = _MODELS[kind]
    target = getattr(target, "value", target)
    expected_list = _statuses(expected)
    for current in expected_list:
        if not can_transition(kind, current, target):
            raise InvalidTransitionError(f"{kind} {current} -> {target} is not a legal transition")

    if hasattr(model, "updated_at") and "updated_at" not in values:
        values["updated_at"] = utcnow()

    stmt = (
        update(model)
        .where(model.id == entity_id)
        .where(model.status.in_(expected_list))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0


async def transition_news(session: AsyncSession, news_id: str, expected: StatusArg, target: str, **values: Any) -> bool:
    return await cas_transition(session, "news", news_id, expected, target, **values)


async def transition_market(session: AsyncSession, market_id: str, expected: StatusArg, target: str, **values: Any) -> bool:
    return await cas_transition(session, "market", market_id, expected, target, **values)


async def transition_proposal(session: AsyncSession, proposal_id: str, expected: StatusArg, target: str, **values: Any) -> bool:
    return await cas_transition(session, "proposal", proposal_id, expected, target, **values)


async def transition_resolution(session: AsyncSession, resolution_id: str, expected: StatusArg, target: str, **values: Any) -> bool:
    return await cas_transition(session, "resolution", resolution_id, expected, target, **values)


async def transition_dispute(session: AsyncSession, dispute_id: str, expected: StatusArg, target: str, **values: Any) -> bool:
    return await cas_transition(session, "dispute", dispute_id, expected, target, **values)


async def write_audit(
    session: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: str,
    actor: str,
    details: Optional[dict[str, Any]] = None,
    *,
    ai_version: Optional[str] = None,
    llm_request_id: Optional[str] = None,
) -> AuditLog:
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        actor=actor,
        details=details or {},
        ai_version=ai_version,
        llm_request_id=llm_request_id,
        created_at=utcnow(),
    )
    session.add(entry)
    return entry
