"""Worker heartbeat reporter and remote pause flag."""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from typing import Any, Callable, Optional

import httpx

from utils.logger import get_logger

logger = get_logger("heartbeat")

WORKER_STATUSES = ("starting", "running", "idle", "error", "stopped")


def _default_client_factory(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


class HeartbeatReporter:
    """Holds per-process counters and reports them to the control plane.

    Counters are deltas: they reset only after a report is accepted, so a
    failed POST carries its counts into the next one. A reply of
    ``{"enabled": false}`` flips the local disabled flag that consumers check
    before handling a delivery.
    """

    def __init__(
        self,
        worker_type: str,
        api_base_url: str,
        *,
        interval_seconds: float = 30.0,
        poll_interval_seconds: float = 5.0,
        timeout_seconds: float = 10.0,
        client_factory: Callable[[float], httpx.AsyncClient] = _default_client_factory,
        instance_id: Optional[str] = None,
    ):
        self.worker_type = worker_type
        self.api_base_url = api_base_url.rstrip("/")
        self.interval_seconds = interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._client_factory = client_factory
        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self.instance_id = instance_id or f"{worker_type}-{self.hostname}-{self.pid}-{uuid.uuid4().hex[:6]}"

        self.status = "starting"
        self.messages_processed = 0
        self.messages_failed = 0
        self.last_error: Optional[str] = None
        self.enabled = True
        self._task: Optional[asyncio.Task] = None
        self._enabled_event = asyncio.Event()
        self._enabled_event.set()
        self.log = logger.with_context(worker_type=worker_type, instance_id=self.instance_id)

    @property
    def url(self) -> str:
        return f"{self.api_base_url}/workers/{self.worker_type}/heartbeat"

    # ------------------------------------------------------------------
    # Status updates from the consumer loop
    # ------------------------------------------------------------------

    def set_running(self) -> None:
        self.status = "running"

    def set_idle(self) -> None:
        self.status = "idle"

    def record_success(self) -> None:
        self.messages_processed += 1
        self.status = "idle"

    def record_failure(self, error: BaseException | str) -> None:
        self.messages_failed += 1
        self.last_error = str(error)[:1000]
        self.status = "error"

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self.enabled:
            return
        self.enabled = enabled
        if enabled:
            self._enabled_event.set()
            self.log.info("Worker re-enabled by control plane")
        else:
            self._enabled_event.clear()
            self.log.warning("Worker disabled by control plane")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def payload(self, status: Optional[str] = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "instance_id": self.instance_id,
            "status": status or self.status,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        if self.last_error:
            body["last_error"] = self.last_error
        return body

    async def send(self, status: Optional[str] = None) -> bool:
        """POST one heartbeat. Returns True when the control plane accepted it."""
        body = self.payload(status)
        try:
            async with self._client_factory(self.timeout_seconds) as client:
                response = await client.post(self.url, json=body)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self.log.warning("Heartbeat failed", error=str(exc))
            return False

        # Only the reported amounts are subtracted; anything counted during
        # the request carries into the next report.
        self.messages_processed = max(0, self.messages_processed - body["messages_processed"])
        self.messages_failed = max(0, self.messages_failed - body["messages_failed"])

        if isinstance(data, dict) and "enabled" in data:
            self.set_enabled(bool(data["enabled"]))
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.send()

    async def start(self) -> None:
        await self.send()
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name=f"heartbeat:{self.worker_type}")
        self.log.info("Heartbeat started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.status = "stopped"
        await self.send("stopped")
        self.log.info("Heartbeat stopped")

    async def wait_until_enabled(self) -> None:
        """Block (without consuming) until a heartbeat reply re-enables the worker."""
        while not self.enabled:
            try:
                await asyncio.wait_for(self._enabled_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue
