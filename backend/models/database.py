import logging
import uuid
from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


# ==================== INGESTION ====================


class RssFeed(Base):
    """Configured RSS/Atom source polled by the crawler."""

    __tablename__ = "rss_feeds"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False, unique=True)
    category = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_polled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class NewsItem(Base):
    """Raw news item. ``content_hash`` is the dedup key; rows are never deleted."""

    __tablename__ = "news_items"

    id = Column(String, primary_key=True, default=_uuid)
    source = Column(String, nullable=False)
    source_url = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    published_at = Column(DateTime, nullable=True)
    content_hash = Column(String(64), nullable=False, unique=True)
    status = Column(String, nullable=False, default="ingested")
    ingested_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_news_items_status", "status"),)


class Candidate(Base):
    """Market-worthy event extracted from news or created from a proposal."""

    __tablename__ = "candidates"

    id = Column(String, primary_key=True, default=_uuid)
    news_id = Column(String, ForeignKey("news_items.id"), nullable=True)
    proposal_id = Column(String, ForeignKey("proposals.id"), nullable=True)
    entities = Column(JSON, default=list)
    event_type = Column(String, nullable=False)
    category_hint = Column(String, nullable=False, default="misc")
    relevant_text = Column(Text, nullable=False, default="")
    processed = Column(Boolean, default=False, nullable=False)
    draft_market_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_candidates_news", "news_id"),
        Index("idx_candidates_processed", "processed"),
    )


# ==================== MARKETS ====================


class DraftMarket(Base):
    """AI-generated market. A non-null ``market_address`` means it is already on chain."""

    __tablename__ = "ai_markets"

    id = Column(String, primary_key=True, default=_uuid)
    market_address = Column(String, nullable=True, unique=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="misc")
    ai_version = Column(String, nullable=True)
    confidence_score = Column(Float, nullable=True)
    source_news_id = Column(String, ForeignKey("news_items.id"), nullable=True)
    source_proposal_id = Column(String, ForeignKey("proposals.id"), nullable=True)
    resolution = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default="draft")
    validation_decision = Column(JSON, nullable=True)
    created_by = Column(String, nullable=False, default="generator")
    yes_token_mint = Column(String, nullable=True)
    no_token_mint = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    published_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)
    dispute_window_ends = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_ai_markets_status", "status"),
        Index("idx_ai_markets_published", "published_at"),
    )


class Proposal(Base):
    """User-submitted market idea; runs through its own status machine."""

    __tablename__ = "proposals"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=True)
    proposal_text = Column(Text, nullable=False)
    category_hint = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    matched_market_id = Column(String, nullable=True)
    draft_market_id = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("idx_proposals_status", "status"),)


# ==================== RESOLUTION / DISPUTES ====================


class Resolution(Base):
    """One per resolved market: verdict, evidence fingerprint and dispute window."""

    __tablename__ = "resolutions"

    id = Column(String, primary_key=True, default=_uuid)
    market_id = Column(String, ForeignKey("ai_markets.id"), nullable=False, unique=True)
    market_address = Column(String, nullable=True)
    final_result = Column(String, nullable=False)
    resolution_source = Column(Text, nullable=True)
    evidence_hash = Column(String(64), nullable=False)
    evidence_raw = Column(JSON, nullable=True)
    must_meet_all_results = Column(JSON, nullable=True)
    must_not_count_results = Column(JSON, nullable=True)
    reasoning = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending")
    resolved_by = Column(String, nullable=False, default="resolver")
    resolved_at = Column(DateTime, default=datetime.utcnow)
    tx_signature = Column(String, nullable=True)
    dispute_window_ends = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_resolutions_status", "status"),)


class Dispute(Base):
    __tablename__ = "disputes"

    id = Column(String, primary_key=True, default=_uuid)
    resolution_id = Column(String, ForeignKey("resolutions.id"), nullable=False)
    market_address = Column(String, nullable=True)
    user_address = Column(String, nullable=False)
    user_token_balance = Column(Float, nullable=True)
    reason = Column(Text, nullable=False)
    evidence_urls = Column(JSON, default=list)
    status = Column(String, nullable=False, default="pending")
    ai_review = Column(JSON, nullable=True)
    admin_review = Column(JSON, nullable=True)
    new_result = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_disputes_resolution", "resolution_id"),
        Index("idx_disputes_status", "status"),
    )


# ==================== AUDIT / CONFIG ====================


class AuditLog(Base):
    """Append-only record of business decisions, keyed by entity."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    actor = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    ai_version = Column(String, nullable=True)
    llm_request_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id"),)


class AIConfigEntry(Base):
    """Runtime-tunable pipeline setting (value is JSON)."""

    __tablename__ = "ai_config"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class RateLimitWindow(Base):
    __tablename__ = "rate_limits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identifier = Column(String, nullable=False)
    endpoint = Column(String, nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_type = Column(String, nullable=False)
    count = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint(
            "identifier",
            "endpoint",
            "window_start",
            "window_type",
            name="uq_rate_limits_window",
        ),
        Index("idx_rate_limits_lookup", "identifier", "endpoint", "window_type"),
    )


# ==================== WORKER CONTROL ====================


class WorkerConfig(Base):
    """Operator switch per worker type; ``enabled`` is echoed in heartbeat replies."""

    __tablename__ = "worker_config"

    worker_type = Column(String, primary_key=True)
    enabled = Column(Boolean, default=True, nullable=False)
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WorkerHeartbeat(Base):
    """Latest heartbeat per worker process, with cumulative counters."""

    __tablename__ = "worker_heartbeats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    worker_type = Column(String, nullable=False)
    instance_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="starting")
    hostname = Column(String, nullable=True)
    pid = Column(Integer, nullable=True)
    total_processed = Column(Integer, default=0, nullable=False)
    total_failed = Column(Integer, default=0, nullable=False)
    consecutive_errors = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    last_seen_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("worker_type", "instance_id", name="uq_worker_heartbeats_instance"),
    )


# ==================== DATABASE SETUP ====================


def create_engine_for(database_url: str):
    kw: dict = {"echo": False}
    if "sqlite" in database_url:
        kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked
        path_part = database_url.split(":///", 1)[-1]
        if path_part and path_part != ":memory:":
            Path(path_part).parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(database_url, **kw)
    if "sqlite" in database_url:
        event.listens_for(engine.sync_engine, "connect")(_set_sqlite_pragma)
    return engine


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """WAL + busy timeout so several worker processes can share one SQLite file."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def create_session_factory(engine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async_engine = create_engine_for(settings.DATABASE_URL)
AsyncSessionLocal = create_session_factory(async_engine)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


async def init_database(engine=None):
    """Apply Alembic migrations; infrastructure failures here are fatal to the caller."""
    engine = engine or async_engine
    async with engine.begin() as conn:
        await conn.run_sync(_run_alembic_upgrade)


async def get_db_session() -> AsyncSession:
    """FastAPI dependency yielding a request-scoped session."""
    async with AsyncSessionLocal() as session:
        yield session
