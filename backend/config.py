import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent.resolve()
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "market_pipeline.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Storage
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

    # Broker (Redis Streams backing the "prediction.market" topic exchange)
    REDIS_URL: str = "redis://localhost:6379/0"
    BROKER_BLOCK_MS: int = 5000  # how long a consumer blocks waiting for a delivery
    BROKER_CLAIM_IDLE_MS: int = 300000  # unacked deliveries older than this are redelivered
    BROKER_BROADCAST_MAX_LENGTH: int = 1000  # cap for the config.refresh stream; work queues are never trimmed

    # Control plane (heartbeat endpoint lives under CONTROL_API_URL/workers)
    CONTROL_API_URL: str = "http://localhost:8000/api"
    HEARTBEAT_INTERVAL_SECONDS: int = 30
    HEARTBEAT_POLL_SECONDS: int = 5
    HEARTBEAT_TIMEOUT_SECONDS: float = 10.0

    # LLM
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: float = 120.0

    # Publishing
    DRY_RUN: bool = False
    CHAIN_GATEWAY_URL: Optional[str] = None
    CHAIN_SIGNER_KEY: Optional[str] = None
    METADATA_BASE_URL: Optional[str] = None

    # Crawler
    CRAWLER_POLL_INTERVAL_SECONDS: int = 900
    CRAWLER_MAX_ITEMS_PER_FEED: int = 3
    CRAWLER_FETCH_TIMEOUT_SECONDS: float = 10.0

    # Scheduler sweep intervals
    SCHEDULER_TICK_SECONDS: int = 5
    SCHEDULER_EXPIRY_INTERVAL_SECONDS: int = 60
    SCHEDULER_FINALIZE_INTERVAL_SECONDS: int = 300
    SCHEDULER_RATE_LIMIT_CLEANUP_INTERVAL_SECONDS: int = 3600
    SCHEDULER_CONFIG_REFRESH_INTERVAL_SECONDS: int = 900
    SCHEDULER_STALE_SWEEP_INTERVAL_SECONDS: int = 600
    STALE_PROPOSAL_MINUTES: int = 30
    STALE_RESOLVING_MINUTES: int = 60
    RATE_LIMIT_RETENTION_HOURS: int = 24

    # API
    CORS_ORIGINS: list[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    @field_validator(
        "CONTROL_API_URL",
        "OPENAI_BASE_URL",
        "CHAIN_GATEWAY_URL",
        "METADATA_BASE_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace and trailing slashes from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return None
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root so every worker shares one file."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"

        return text

    @property
    def dry_run_enabled(self) -> bool:
        """Publishing runs against the mock chain client when forced or when no signer is configured."""
        if self.DRY_RUN:
            return True
        key = (self.CHAIN_SIGNER_KEY or "").strip()
        return not key or not self.CHAIN_GATEWAY_URL

    class Config:
        # Load project-root .env first, then backend/.env as an override.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
