import json
import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import mock_client_factory
from services.heartbeat import HeartbeatReporter


def _reporter(handler):
    return HeartbeatReporter(
        "extractor",
        "http://control.test/api/",
        client_factory=mock_client_factory(handler),
        instance_id="extractor-1",
    )


@pytest.mark.asyncio
async def test_counters_reset_only_after_accepted_report():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"enabled": True})

    reporter = _reporter(handler)
    reporter.record_success()
    reporter.record_success()
    reporter.record_failure(RuntimeError("llm timeout"))

    assert await reporter.send() is True
    assert seen[0]["messages_processed"] == 2
    assert seen[0]["messages_failed"] == 1
    assert seen[0]["last_error"] == "llm timeout"
    assert seen[0]["instance_id"] == "extractor-1"
    assert reporter.messages_processed == 0
    assert reporter.messages_failed == 0
    assert str(reporter.url) == "http://control.test/api/workers/extractor/heartbeat"


@pytest.mark.asyncio
async def test_failed_report_carries_counts_forward():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "down"})

    reporter = _reporter(handler)
    reporter.record_success()
    assert await reporter.send() is False
    reporter.record_success()
    assert reporter.messages_processed == 2


@pytest.mark.asyncio
async def test_disable_flag_follows_control_plane_reply():
    replies = iter([{"enabled": False}, {"enabled": True}])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=next(replies))

    reporter = _reporter(handler)
    await reporter.send()
    assert reporter.enabled is False
    await reporter.send()
    assert reporter.enabled is True


@pytest.mark.asyncio
async def test_stop_sends_stopped_status():
    statuses = []

    def handler(request: httpx.Request) -> httpx.Response:
        statuses.append(json.loads(request.content)["status"])
        return httpx.Response(200, json={"enabled": True})

    reporter = _reporter(handler)
    reporter.interval_seconds = 3600
    await reporter.start()
    await reporter.stop()
    assert statuses == ["starting", "stopped"]
    assert reporter.status == "stopped"
