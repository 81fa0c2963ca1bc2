import asyncio
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx

from utils.logger import get_logger

logger = get_logger("retry")

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.RemoteProtocolError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


# Evidence fetches: 3 attempts, 2s then 4s between them.
EVIDENCE_FETCH_RETRY = RetryConfig(max_attempts=3, base_delay=2.0, max_delay=8.0)

# LLM calls: retry throttling and upstream 5xx.
LLM_RETRY = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=True)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: BaseException, config: RetryConfig) -> bool:
    if isinstance(error, config.retryable_exceptions):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return False


async def retry_async(
    coro_factory: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``coro_factory()`` until it succeeds, a non-retryable error occurs, or attempts run out.

    The last error is re-raised unchanged so callers see the real failure.
    """
    config = config or RetryConfig()
    last_error: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        try:
            return await coro_factory()
        except Exception as e:
            last_error = e
            if not is_retryable_error(e, config):
                raise

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
                    retry_after = e.response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = max(delay, float(retry_after))
                logger.warning(
                    "Retrying after error",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=config.max_attempts,
                    delay=delay,
                    error=str(e),
                )
                await sleep(delay)
            else:
                logger.error(
                    "All retry attempts exhausted",
                    operation=operation,
                    attempts=config.max_attempts,
                    error=str(e),
                )

    assert last_error is not None
    raise last_error
