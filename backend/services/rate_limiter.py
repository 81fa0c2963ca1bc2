"""Windowed admission control backed by the ``rate_limits`` table.

Each endpoint has independent minute/hour/day windows. A check sums the
rows newer than ``now - duration`` per window; an increment upserts one row
per window type. The same table drives crawler backpressure through
:meth:`AdmissionController.can_auto_publish`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from models.database import DraftMarket, RateLimitWindow
from models.lifecycle import MarketStatus
from services.ai_config import AIConfigService, DEFAULT_AI_CONFIG
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("rate_limiter")

WINDOW_DURATIONS: dict[str, timedelta] = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
}

# endpoint -> window type -> config key under ``rate_limits``
ENDPOINT_WINDOWS: dict[str, dict[str, str]] = {
    "propose": {
        "minute": "propose_per_minute",
        "hour": "propose_per_hour",
        "day": "propose_per_day",
    },
    "dispute": {
        "hour": "dispute_per_hour",
        "day": "dispute_per_day",
    },
    "auto_publish": {
        "hour": "auto_publish_per_hour",
    },
}


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: Optional[int] = None
    window: Optional[str] = None
    retry_after: Optional[int] = None


class AdmissionController:
    def __init__(
        self,
        session_factory,
        ai_config: Optional[AIConfigService] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._ai_config = ai_config
        self._clock = clock

    async def limits_for(self, endpoint: str) -> dict[str, int]:
        windows = ENDPOINT_WINDOWS.get(endpoint)
        if windows is None:
            raise KeyError(f"No rate limits configured for endpoint '{endpoint}'")
        configured = (await self._ai_config.get())["rate_limits"] if self._ai_config else DEFAULT_AI_CONFIG["rate_limits"]
        return {window: int(configured[key]) for window, key in windows.items()}

    async def check(self, identifier: str, endpoint: str) -> RateLimitDecision:
        limits = await self.limits_for(endpoint)
        now = self._clock()
        async with self._session_factory() as session:
            for window_type, limit in limits.items():
                duration = WINDOW_DURATIONS[window_type]
                since = now - duration
                scope = (
                    RateLimitWindow.identifier == identifier,
                    RateLimitWindow.endpoint == endpoint,
                    RateLimitWindow.window_type == window_type,
                    RateLimitWindow.window_start > since,
                )
                total = (
                    await session.execute(select(func.coalesce(func.sum(RateLimitWindow.count), 0)).where(*scope))
                ).scalar_one()
                if int(total) < limit:
                    continue

                oldest = (
                    await session.execute(select(func.min(RateLimitWindow.window_start)).where(*scope))
                ).scalar_one_or_none()
                if oldest is not None:
                    retry_after = math.ceil((oldest + duration - now).total_seconds())
                else:
                    retry_after = math.ceil(duration.total_seconds())
                decision = RateLimitDecision(
                    allowed=False,
                    limit=limit,
                    window=window_type,
                    retry_after=max(1, retry_after),
                )
                logger.info(
                    "Rate limit exceeded",
                    identifier=identifier,
                    endpoint=endpoint,
                    window=window_type,
                    limit=limit,
                    retry_after=decision.retry_after,
                )
                return decision
        return RateLimitDecision(allowed=True)

    async def increment(self, identifier: str, endpoint: str) -> None:
        limits = await self.limits_for(endpoint)
        now = self._clock()
        async with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            for window_type in limits:
                stmt = insert_fn(RateLimitWindow).values(
                    identifier=identifier,
                    endpoint=endpoint,
                    window_start=now,
                    window_type=window_type,
                    count=1,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["identifier", "endpoint", "window_start", "window_type"],
                    set_={"count": RateLimitWindow.count + 1},
                )
                await session.execute(stmt)
            await session.commit()

    async def can_auto_publish(self) -> bool:
        """False when AI-originated publications in the last hour already hit the hourly cap."""
        limit = (await self.limits_for("auto_publish"))["hour"]
        since = self._clock() - WINDOW_DURATIONS["hour"]
        async with self._session_factory() as session:
            published = (
                await session.execute(
                    select(func.count(DraftMarket.id)).where(
                        DraftMarket.source_proposal_id.is_(None),
                        DraftMarket.published_at.is_not(None),
                        DraftMarket.published_at > since,
                        DraftMarket.status == MarketStatus.ACTIVE.value,
                    )
                )
            ).scalar_one()
        if int(published) >= limit:
            logger.info("Auto-publish window saturated", published=int(published), limit=limit)
            return False
        return True

    async def sweep(self, older_than: timedelta = timedelta(hours=24)) -> int:
        cutoff = self._clock() - older_than
        async with self._session_factory() as session:
            result = await session.execute(delete(RateLimitWindow).where(RateLimitWindow.window_start < cutoff))
            await session.commit()
        return int(result.rowcount or 0)
