import sys
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import seed_market, seed_resolution
from main import ControlPlane, app
from models.database import Candidate, Proposal, get_db_session
from services.ai_config import AIConfigService
from services.proposals import jaccard_similarity
from services.rate_limiter import AdmissionController


@pytest_asyncio.fixture
async def client(session_factory, broker):
    ai_config = AIConfigService(session_factory)
    app.state.pipeline = ControlPlane(
        session_factory=session_factory,
        broker=broker,
        ai_config=ai_config,
        admission=AdmissionController(session_factory, ai_config),
    )

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
    app.dependency_overrides.clear()
    del app.state.pipeline


def test_jaccard_similarity_ignores_filler_words():
    assert jaccard_similarity("Will Apple release iPhone 17?", "apple release iphone 17") == 1.0
    assert jaccard_similarity("Will Apple release iPhone 17?", "Will Tesla ship Roadster?") == 0.0
    assert jaccard_similarity("", "anything") == 0.0


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_heartbeat_reply_reflects_pause_and_resume(client):
    beat = {"instance_id": "gen-1", "status": "running", "messages_processed": 4, "messages_failed": 1}

    response = await client.post("/api/workers/generator/heartbeat", json=beat)
    assert response.status_code == 200
    assert response.json() == {"enabled": True}

    paused = await client.post("/api/workers/generator/pause", json={"updated_by": "ops"})
    assert paused.json()["enabled"] is False
    response = await client.post("/api/workers/generator/heartbeat", json={**beat, "messages_processed": 2})
    assert response.json() == {"enabled": False}

    await client.post("/api/workers/generator/resume")
    response = await client.post("/api/workers/generator/heartbeat", json={**beat, "messages_processed": 0})
    assert response.json() == {"enabled": True}

    detail = (await client.get("/api/workers/generator")).json()
    assert detail["enabled"] is True
    assert detail["instances"][0]["total_processed"] == 6
    assert detail["instances"][0]["total_failed"] == 3

    listing = (await client.get("/api/workers")).json()["workers"]
    assert {w["worker_type"] for w in listing} >= {"crawler", "extractor", "generator", "scheduler"}


@pytest.mark.asyncio
async def test_unknown_worker_is_404(client):
    response = await client.post("/api/workers/trader/heartbeat", json={"instance_id": "x"})
    assert response.status_code == 404
    assert (await client.post("/api/workers/trader/pause")).status_code == 404


@pytest.mark.asyncio
async def test_propose_creates_candidate_and_queues_it(client, session_factory, broker):
    response = await client.post(
        "/api/propose",
        json={"proposal_text": "Will the Eiffel Tower close for a week in 2027?", "category_hint": "misc"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processing"
    assert body["existing_market"] is None

    async with session_factory() as session:
        proposal = await session.get(Proposal, body["proposal_id"])
        candidate = (await session.execute(select(Candidate))).scalar_one()
    assert proposal.status == "processing"
    assert proposal.ip_address == "127.0.0.1"
    assert candidate.proposal_id == proposal.id
    assert candidate.event_type == "user_proposal"

    delivery = await broker.get("candidates")
    assert delivery.body["proposal_id"] == proposal.id
    assert delivery.body["relevant_text"] == "Will the Eiffel Tower close for a week in 2027?"


@pytest.mark.asyncio
async def test_propose_matches_live_market(client, session_factory, broker):
    market = await seed_market(session_factory, market_address="LIVE1")
    response = await client.post(
        "/api/propose", json={"proposal_text": "Will Apple release the iPhone 17 before 2027-01-01"}
    )
    body = response.json()
    assert body["status"] == "matched"
    assert body["existing_market"]["id"] == market.id
    assert body["existing_market"]["market_address"] == "LIVE1"
    assert await broker.queue_depth("candidates") == 0


@pytest.mark.asyncio
async def test_propose_validation_and_rate_limit(client):
    short = await client.post("/api/propose", json={"proposal_text": "too short"})
    assert short.status_code == 422
    bad_category = await client.post(
        "/api/propose", json={"proposal_text": "A perfectly fine proposal text", "category_hint": "weather"}
    )
    assert bad_category.status_code == 422

    for i in range(5):
        ok = await client.post(
            "/api/propose", json={"proposal_text": f"Unique proposal number {i} about rivers"}, headers={"x-user-id": "u1"}
        )
        assert ok.status_code == 200

    limited = await client.post(
        "/api/propose", json={"proposal_text": "Sixth proposal about mountains"}, headers={"x-user-id": "u1"}
    )
    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.json()["window"] == "minute"


@pytest.mark.asyncio
async def test_dispute_routes(client, session_factory, broker):
    market = await seed_market(session_factory, status="resolved")
    closed = await seed_resolution(session_factory, market, window_hours=-1)
    refused = await client.post(
        "/api/disputes",
        json={"resolution_id": closed.id, "user_address": "0xabc", "reason": "This resolution is wrong."},
    )
    assert refused.status_code == 409

    other = await seed_market(session_factory, status="resolved", market_address="OTHER")
    open_res = await seed_resolution(session_factory, other)
    accepted = await client.post(
        "/api/disputes",
        json={"resolution_id": open_res.id, "user_address": "0xabc", "reason": "This resolution is wrong."},
    )
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "pending"
    assert await broker.queue_depth("disputes") == 1

    listing = (await client.get("/api/admin/disputes")).json()["disputes"]
    assert [d["id"] for d in listing] == [accepted.json()["dispute_id"]]

    missing = await client.post(
        "/api/admin/disputes/nope/review", json={"decision": "uphold", "reason": "checked"}
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_review_approves_once_then_conflicts(client, session_factory, broker):
    market = await seed_market(session_factory, status="pending_review", market_address=None)

    response = await client.post(
        f"/api/admin/markets/{market.id}/review",
        json={"decision": "approve", "reviewed_by": "ops"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert await broker.queue_depth("markets.publish") == 1

    again = await client.post(f"/api/admin/markets/{market.id}/review", json={"decision": "reject"})
    assert again.status_code == 409

    missing = await client.post("/api/admin/proposals/nope/review", json={"decision": "approve"})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_ai_config_returns_defaults(client):
    response = await client.get("/api/admin/ai-config")
    assert response.status_code == 200
    config = response.json()["config"]
    assert config["max_retries"] == 3
    assert config["validation_confidence_threshold"] == 0.7
