"""Runtime-tunable pipeline settings from the ``ai_config`` table."""

from __future__ import annotations

import copy
import time
from typing import Any, Callable, Optional

from sqlalchemy import select

from models.database import AIConfigEntry
from utils.logger import get_logger

logger = get_logger("ai_config")

CATEGORIES = ("politics", "product_launch", "finance", "sports", "entertainment", "technology", "misc")

DEFAULT_AI_CONFIG: dict[str, Any] = {
    "ai_version": "v1.0",
    "llm_model": "gpt-4o-mini",
    "validation_confidence_threshold": 0.7,
    "categories": list(CATEGORIES),
    "rate_limits": {
        "propose_per_minute": 5,
        "propose_per_hour": 20,
        "propose_per_day": 50,
        "dispute_per_hour": 3,
        "dispute_per_day": 10,
        "auto_publish_per_hour": 3,
    },
    "dispute_window_hours": 24,
    "max_retries": 3,
    "processing_delay_ms": 60000,
}


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        elif value is not None:
            merged[key] = value
    return merged


class AIConfigService:
    """Cached view over ``ai_config`` rows layered on top of the defaults.

    Rows use either a top-level key (``dispute_window_hours``) or a dotted
    key into a nested section (``rate_limits.propose_per_minute``).
    """

    def __init__(
        self,
        session_factory,
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Optional[dict[str, Any]] = None
        self._loaded_at = 0.0

    def invalidate(self, key: str = "all") -> None:
        self._cache = None
        logger.info("AI config cache cleared", key=key)

    @property
    def cached(self) -> dict[str, Any]:
        """Last loaded config (defaults before the first load); never touches the DB."""
        return self._cache if self._cache is not None else copy.deepcopy(DEFAULT_AI_CONFIG)

    async def get(self) -> dict[str, Any]:
        if self._cache is not None and self._clock() - self._loaded_at < self.ttl_seconds:
            return self._cache

        async with self._session_factory() as session:
            rows = (await session.execute(select(AIConfigEntry))).scalars().all()

        overrides: dict[str, Any] = {}
        for row in rows:
            section, _, leaf = row.key.partition(".")
            if leaf:
                overrides.setdefault(section, {})[leaf] = row.value
            else:
                overrides[section] = row.value

        self._cache = _merge(DEFAULT_AI_CONFIG, overrides)
        self._loaded_at = self._clock()
        return self._cache

    async def value(self, key: str, default: Any = None) -> Any:
        config = await self.get()
        node: Any = config
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node
