from .lifecycle import (
    DisputeStatus,
    MarketStatus,
    NewsStatus,
    ProposalStatus,
    ResolutionStatus,
)
from .messages import (
    CandidateMessage,
    ConfigRefreshMessage,
    DisputeMessage,
    DraftValidateMessage,
    MarketPublishMessage,
    MarketResolveMessage,
    MessageValidationError,
    NewsRawMessage,
    parse_message,
)

__all__ = [
    "DisputeStatus",
    "MarketStatus",
    "NewsStatus",
    "ProposalStatus",
    "ResolutionStatus",
    "CandidateMessage",
    "ConfigRefreshMessage",
    "DisputeMessage",
    "DraftValidateMessage",
    "MarketPublishMessage",
    "MarketResolveMessage",
    "MessageValidationError",
    "NewsRawMessage",
    "parse_message",
]
