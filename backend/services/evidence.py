"""Evidence fetching for resolution and dispute review."""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlparse

import httpx

from utils.logger import get_logger
from utils.retry import EVIDENCE_FETCH_RETRY, RetryConfig, retry_async
from utils.utcnow import to_iso, utcnow

logger = get_logger("evidence")

FETCH_TIMEOUT_SECONDS = 30.0
USER_AGENT = "Mozilla/5.0 (compatible; PredictionMarketResolver/1.0)"
ACCEPT = "text/html,application/json,application/xml;q=0.9,*/*;q=0.8"


@dataclass
class EvidenceFetch:
    url: str
    source_name: str
    success: bool
    status_code: int
    content: str
    content_hash: str
    fetched_at: str
    error: Optional[str] = None

    def metadata(self) -> dict[str, Any]:
        """Audit-friendly view without the body."""
        data = asdict(self)
        data.pop("content")
        data["content_length"] = len(self.content)
        return data


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def combined_evidence_hash(fetches: Iterable[EvidenceFetch]) -> str:
    return sha256_hex("".join(f.content_hash for f in fetches if f.success))


def _render_body(response: httpx.Response) -> str:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return json.dumps(response.json(), indent=2)
        except ValueError:
            return response.text
    return response.text


async def fetch_source(
    client: httpx.AsyncClient,
    url: str,
    *,
    retry: RetryConfig = EVIDENCE_FETCH_RETRY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> EvidenceFetch:
    """Fetch one evidence URL. Transport errors are retried; an HTTP error status is a failed fetch."""
    fetched_at = to_iso(utcnow())
    host = urlparse(url).hostname or url

    async def _get() -> httpx.Response:
        return await client.get(
            url,
            headers={"User-Agent": USER_AGENT, "Accept": ACCEPT},
            timeout=FETCH_TIMEOUT_SECONDS,
            follow_redirects=True,
        )

    try:
        response = await retry_async(_get, retry, operation="evidence.fetch", sleep=sleep)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("Evidence fetch failed", url=url, error=str(exc))
        return EvidenceFetch(
            url=url,
            source_name=host,
            success=False,
            status_code=0,
            content="",
            content_hash="",
            fetched_at=fetched_at,
            error=str(exc) or type(exc).__name__,
        )

    content = _render_body(response)
    return EvidenceFetch(
        url=url,
        source_name=host,
        success=response.is_success,
        status_code=response.status_code,
        content=content,
        content_hash=sha256_hex(content),
        fetched_at=fetched_at,
        error=None if response.is_success else f"HTTP {response.status_code}",
    )


def is_allowed_evidence_url(url: str, allowed_sources: Iterable[dict[str, Any]]) -> bool:
    """Only https URLs on the host of one of the market's allowed sources."""
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.hostname:
        return False
    allowed_hosts = {urlparse(str(s.get("url") or "")).hostname for s in allowed_sources}
    allowed_hosts.discard(None)
    return parsed.hostname in allowed_hosts
