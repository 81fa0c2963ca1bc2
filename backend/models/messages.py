"""Per-queue message variants.

Messages carry identifiers plus the minimum context a stage needs; the full
entity is always re-read from the database. Every delivery is validated
against the variant registered for its queue before a handler sees it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class QueueMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class NewsRawMessage(QueueMessage):
    news_id: str
    source: str
    url: str
    title: str
    content: str = ""
    published_at: Optional[datetime] = None
    category_hint: Optional[str] = None


class CandidateMessage(QueueMessage):
    candidate_id: str
    news_id: Optional[str] = None
    entities: list[str] = Field(default_factory=list)
    event_type: str
    category_hint: str = "misc"
    relevant_text: str = ""
    proposal_id: Optional[str] = None


class DraftValidateMessage(QueueMessage):
    draft_market_id: str
    source_type: Literal["news", "proposal"] = "news"
    source_id: Optional[str] = None


class MarketPublishMessage(QueueMessage):
    draft_market_id: str
    validation_id: str


class MarketResolveMessage(QueueMessage):
    market_id: str
    market_address: str
    expiry: Optional[datetime] = None


class DisputeMessage(QueueMessage):
    dispute_id: str
    resolution_id: str
    market_address: Optional[str] = None


class ConfigRefreshMessage(QueueMessage):
    key: str = "all"
    timestamp: datetime


MESSAGE_TYPES: dict[str, type[QueueMessage]] = {
    "news.raw": NewsRawMessage,
    "candidates": CandidateMessage,
    "drafts.validate": DraftValidateMessage,
    "markets.publish": MarketPublishMessage,
    "markets.resolve": MarketResolveMessage,
    "disputes": DisputeMessage,
    "config.refresh": ConfigRefreshMessage,
}


class MessageValidationError(Exception):
    """A delivery does not match the schema of its queue. Never retried."""

    def __init__(self, queue: str, detail: str):
        super().__init__(f"Invalid message on '{queue}': {detail}")
        self.queue = queue
        self.detail = detail


def message_type_for(queue: str) -> type[QueueMessage]:
    try:
        return MESSAGE_TYPES[queue]
    except KeyError:
        raise MessageValidationError(queue, "no message schema registered for queue") from None


def parse_message(queue: str, body: Any) -> QueueMessage:
    model = message_type_for(queue)
    if not isinstance(body, dict):
        raise MessageValidationError(queue, f"expected a JSON object, got {type(body).__name__}")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise MessageValidationError(queue, str(exc)) from exc
