"""Shared fixtures for pipeline tests: in-memory broker backend, temp database, scripted LLM."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import itertools
from datetime import timedelta
from typing import Any, Callable, Optional

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ResponseError

from config import Settings
from models.database import Base, DraftMarket, Resolution, create_engine_for, create_session_factory
from models.lifecycle import MarketStatus, ResolutionStatus
from services.ai_config import AIConfigService
from services.broker import MessageBroker
from services.chain import DryRunChainClient
from services.heartbeat import HeartbeatReporter
from services.llm import LLMResult
from services.rate_limiter import AdmissionController
from services.retry_controller import RetryController, VirtualClock
from utils.logger import get_logger
from utils.utcnow import utcnow
from workers.base import WorkerContext


def _seq(entry_id: str) -> int:
    return int(entry_id.split("-", 1)[0])


class FakeStreamsRedis:
    """Just enough of the Redis Streams command set for :class:`MessageBroker`.

    ``now_ms`` drives idle times reported by XPENDING; tests bump it to make
    deliveries look abandoned.
    """

    def __init__(self):
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.groups: dict[tuple[str, str], dict[str, Any]] = {}
        self.now_ms = 0
        self._ids = itertools.count(1)
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def xgroup_create(self, stream, group, id="$", mkstream=False):
        if stream not in self.streams:
            if not mkstream:
                raise ResponseError("ERR no such key")
            self.streams[stream] = []
        if (stream, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        entries = self.streams[stream]
        last = _seq(entries[-1][0]) if id == "$" and entries else 0
        self.groups[(stream, group)] = {"last": last, "pending": {}}
        return True

    async def xgroup_destroy(self, stream, group):
        return 1 if self.groups.pop((stream, group), None) is not None else 0

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        entry_id = f"{next(self._ids)}-0"
        entries = self.streams.setdefault(stream, [])
        entries.append((entry_id, dict(fields)))
        if maxlen is not None and len(entries) > maxlen:
            del entries[: len(entries) - maxlen]
        return entry_id

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        response = []
        for stream, start in streams.items():
            group = self.groups.get((stream, groupname))
            if group is None:
                raise ResponseError("NOGROUP No such consumer group")
            assert start == ">"
            delivered = []
            for entry_id, fields in self.streams.get(stream, []):
                if _seq(entry_id) <= group["last"]:
                    continue
                delivered.append((entry_id, dict(fields)))
                group["last"] = _seq(entry_id)
                group["pending"][entry_id] = {"consumer": consumername, "delivered_at": self.now_ms, "count": 1}
                if count is not None and len(delivered) >= count:
                    break
            if delivered:
                response.append([stream, delivered])
        return response

    async def xack(self, stream, group, *entry_ids):
        pending = self.groups.get((stream, group), {}).get("pending", {})
        return sum(1 for entry_id in entry_ids if pending.pop(entry_id, None) is not None)

    async def xdel(self, stream, *entry_ids):
        entries = self.streams.get(stream, [])
        before = len(entries)
        self.streams[stream] = [e for e in entries if e[0] not in entry_ids]
        return before - len(self.streams[stream])

    async def xpending_range(self, stream, group, min, max, count, consumername=None):
        pending = self.groups.get((stream, group), {}).get("pending", {})
        rows = []
        for entry_id, info in sorted(pending.items(), key=lambda kv: _seq(kv[0]))[:count]:
            rows.append(
                {
                    "message_id": entry_id,
                    "consumer": info["consumer"],
                    "time_since_delivered": self.now_ms - info["delivered_at"],
                    "times_delivered": info["count"],
                }
            )
        return rows

    async def xclaim(self, stream, group, consumername, min_idle_time, message_ids):
        pending = self.groups.get((stream, group), {}).get("pending", {})
        by_id = dict(self.streams.get(stream, []))
        claimed = []
        for entry_id in message_ids:
            info = pending.get(entry_id)
            if info is None or self.now_ms - info["delivered_at"] < min_idle_time:
                continue
            info.update(consumer=consumername, delivered_at=self.now_ms, count=info["count"] + 1)
            if entry_id in by_id:
                claimed.append((entry_id, dict(by_id[entry_id])))
        return claimed

    async def xlen(self, stream):
        return len(self.streams.get(stream, []))

    async def xrange(self, stream, min="-", max="+", count=None):
        entries = list(self.streams.get(stream, []))
        return entries[:count] if count is not None else entries


class FakeLLM:
    """Returns scripted JSON responses in order; an Exception in the script is raised instead."""

    def __init__(self, responses: Optional[list[Any]] = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []
        self._ids = itertools.count(1)

    def queue(self, *responses: Any) -> "FakeLLM":
        self.responses.extend(responses)
        return self

    async def json_request(self, system_prompt, user_prompt, *, temperature=0.3, max_tokens=2000, model=None):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "model": model,
            }
        )
        if not self.responses:
            raise AssertionError("FakeLLM has no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return LLMResult(content=dict(response), request_id=f"llm-req-{next(self._ids)}", model=model or "fake")


def mock_client_factory(handler: Callable[[httpx.Request], httpx.Response]):
    def _factory(timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=timeout)

    return _factory


def _heartbeat_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"enabled": True})


@pytest.fixture
def test_settings():
    return Settings(
        BROKER_BLOCK_MS=1,
        CONTROL_API_URL="http://control.test/api",
        DRY_RUN=True,
        METADATA_BASE_URL="https://meta.test",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def fake_redis():
    return FakeStreamsRedis()


@pytest_asyncio.fixture
async def broker(fake_redis):
    broker = MessageBroker(consumer_name="test-consumer", redis=fake_redis)
    await broker.connect()
    await broker.declare_topology()
    yield broker
    await broker.close()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def make_context(test_settings, session_factory, broker, fake_llm):
    """Build a WorkerContext wired to the in-memory broker, temp database and scripted LLM."""

    def _make(
        worker_type: str = "test",
        *,
        http_handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        heartbeat_handler: Callable[[httpx.Request], httpx.Response] = _heartbeat_ok,
        clock: Optional[VirtualClock] = None,
        admission_clock=None,
    ) -> WorkerContext:
        ai_config = AIConfigService(session_factory)
        heartbeat = HeartbeatReporter(
            worker_type,
            test_settings.CONTROL_API_URL,
            poll_interval_seconds=0.01,
            client_factory=mock_client_factory(heartbeat_handler),
            instance_id=f"{worker_type}-test",
        )
        ctx = WorkerContext(
            worker_type=worker_type,
            settings=test_settings,
            session_factory=session_factory,
            broker=broker,
            retry=RetryController(
                broker,
                max_retries=lambda: ai_config.cached["max_retries"],
                clock=clock or VirtualClock(),
            ),
            heartbeat=heartbeat,
            ai_config=ai_config,
            llm=fake_llm,
            admission=AdmissionController(session_factory, ai_config, clock=admission_clock or utcnow),
            chain=DryRunChainClient(),
            log=get_logger("test").with_context(worker_type=worker_type),
        )
        if http_handler is not None:
            ctx.http_client_factory = mock_client_factory(http_handler)
        return ctx

    return _make


async def seed_market(
    session_factory,
    *,
    status: str = MarketStatus.ACTIVE.value,
    title: str = "Will Apple release the iPhone 17 before 2027-01-01?",
    market_address: Optional[str] = "MKTADDR1",
    expiry: Optional[str] = None,
    allowed_sources: Optional[list[dict]] = None,
    **overrides: Any,
) -> DraftMarket:
    resolution = {
        "exact_question": title,
        "expiry": expiry or "2026-12-31T23:59:59Z",
        "criteria": {
            "must_meet_all": ["Official announcement"],
            "must_not_count": ["Rumours"],
            "allowed_sources": allowed_sources
            if allowed_sources is not None
            else [{"name": "Apple Newsroom", "url": "https://www.apple.com/newsroom/", "method": "html_scrape"}],
            "confidence_threshold": 0.9,
        },
    }
    async with session_factory() as session:
        market = DraftMarket(
            title=title,
            description="Test market",
            category="product_launch",
            resolution=resolution,
            status=status,
            market_address=market_address,
            confidence_score=0.9,
            created_at=utcnow(),
            updated_at=utcnow(),
            **overrides,
        )
        session.add(market)
        await session.commit()
        return market


async def seed_resolution(
    session_factory,
    market: DraftMarket,
    *,
    status: str = ResolutionStatus.RESOLVED.value,
    final_result: str = "YES",
    window_hours: float = 24,
) -> Resolution:
    now = utcnow()
    async with session_factory() as session:
        resolution = Resolution(
            market_id=market.id,
            market_address=market.market_address,
            final_result=final_result,
            resolution_source="https://www.apple.com/newsroom/",
            evidence_hash="0" * 64,
            evidence_raw=[],
            status=status,
            resolved_at=now,
            dispute_window_ends=now + timedelta(hours=window_hours),
        )
        session.add(resolution)
        await session.commit()
        return resolution
