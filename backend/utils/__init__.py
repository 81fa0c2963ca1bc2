from .logger import setup_logging, get_logger
from .retry import RetryConfig, retry_async
from .utcnow import utcnow, parse_iso, to_iso

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",

    # Retry
    "RetryConfig",
    "retry_async",

    # Time
    "utcnow",
    "parse_iso",
    "to_iso",
]
