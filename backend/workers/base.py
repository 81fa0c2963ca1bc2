"""Shared worker runtime: dependency container, consumer loop and process entry point.

Run a stage from the backend dir, e.g.:
  python -m workers.extractor
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

from config import Settings, settings as default_settings
from models.messages import MessageValidationError, QueueMessage, parse_message
from services.ai_config import AIConfigService
from services.broker import BrokerUnavailableError, MessageBroker
from services.chain import MarketChainClient, build_chain_client
from services.heartbeat import HeartbeatReporter
from services.llm import LLMClient
from services.rate_limiter import AdmissionController
from services.retry_controller import RetryController
from utils.logger import ContextLogger, get_logger, setup_logging

logger = get_logger("worker")

Handler = Callable[[Any], Awaitable[None]]


def _default_http_client_factory(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


@dataclass
class WorkerContext:
    """Everything a stage needs, constructed once per process and passed in explicitly."""

    worker_type: str
    settings: Settings
    session_factory: Any
    broker: MessageBroker
    retry: RetryController
    heartbeat: HeartbeatReporter
    ai_config: AIConfigService
    llm: LLMClient
    admission: AdmissionController
    chain: MarketChainClient
    http_client_factory: Callable[[float], httpx.AsyncClient] = _default_http_client_factory
    log: ContextLogger = field(default_factory=lambda: get_logger("worker"))


def build_context(
    worker_type: str,
    *,
    settings: Optional[Settings] = None,
    session_factory=None,
) -> WorkerContext:
    settings = settings or default_settings
    if session_factory is None:
        from models.database import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    heartbeat = HeartbeatReporter(
        worker_type,
        settings.CONTROL_API_URL,
        interval_seconds=settings.HEARTBEAT_INTERVAL_SECONDS,
        poll_interval_seconds=settings.HEARTBEAT_POLL_SECONDS,
        timeout_seconds=settings.HEARTBEAT_TIMEOUT_SECONDS,
    )
    broker = MessageBroker(
        settings.REDIS_URL,
        consumer_name=heartbeat.instance_id,
        broadcast_max_length=settings.BROKER_BROADCAST_MAX_LENGTH,
    )
    ai_config = AIConfigService(session_factory)
    return WorkerContext(
        worker_type=worker_type,
        settings=settings,
        session_factory=session_factory,
        broker=broker,
        retry=RetryController(broker, max_retries=lambda: ai_config.cached["max_retries"]),
        heartbeat=heartbeat,
        ai_config=ai_config,
        llm=LLMClient(
            settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            default_model=settings.OPENAI_MODEL,
            timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
        ),
        admission=AdmissionController(session_factory, ai_config),
        chain=build_chain_client(
            dry_run=settings.dry_run_enabled,
            gateway_url=settings.CHAIN_GATEWAY_URL,
            signer_key=settings.CHAIN_SIGNER_KEY,
        ),
        log=logger.with_context(worker_type=worker_type, instance_id=heartbeat.instance_id),
    )


class Runnable(Protocol):
    async def run(self) -> None: ...

    def stop(self) -> None: ...


class QueueConsumer:
    """Consume one queue with prefetch 1: validate, handle, then ack / retry / dead-letter.

    ``control=True`` marks a control-plane listener (config refresh): it keeps
    running while the worker is paused and does not touch heartbeat counters.
    """

    def __init__(
        self,
        ctx: WorkerContext,
        queue: str,
        handler: Handler,
        *,
        pace: Optional[Callable[[], Awaitable[float]]] = None,
        block_ms: Optional[int] = None,
        claim_interval_seconds: float = 60.0,
        control: bool = False,
    ):
        self.ctx = ctx
        self.queue = queue
        self.handler = handler
        self.pace = pace
        self.block_ms = ctx.settings.BROKER_BLOCK_MS if block_ms is None else block_ms
        self.claim_interval_seconds = claim_interval_seconds
        self.control = control
        self.log = ctx.log.with_context(queue=queue)
        self._stop = asyncio.Event()
        self._last_claim = 0.0

    def stop(self) -> None:
        self._stop.set()

    async def process_next(self) -> Optional[str]:
        """Handle at most one delivery and report what happened to it.

        Returns None when nothing was consumed, otherwise one of
        ``acked``, ``requeued``, ``invalid``, ``retry``, ``dead_letter``.
        """
        heartbeat = self.ctx.heartbeat
        broker = self.ctx.broker

        if not self.control and not heartbeat.enabled:
            await heartbeat.wait_until_enabled()

        delivery = await broker.get(self.queue, block_ms=self.block_ms)
        if delivery is None:
            if not self.control and heartbeat.status == "running":
                heartbeat.set_idle()
            return None

        if not self.control and not heartbeat.enabled:
            await broker.nack(delivery, requeue=True)
            self.log.info("Worker disabled, delivery requeued", message_id=delivery.message_id)
            return "requeued"

        try:
            message = parse_message(self.queue, delivery.body)
        except MessageValidationError as exc:
            if not self.control:
                heartbeat.record_failure(exc)
            self.log.error("Rejecting invalid message", error=exc.detail, message_id=delivery.message_id)
            await broker.reject(delivery, reason="invalid_message")
            return "invalid"

        if not self.control:
            heartbeat.set_running()
        try:
            await self.handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self.control:
                heartbeat.record_failure(exc)
            self.log.exception(
                "Message processing failed",
                retry_count=delivery.retry_count,
                message_id=delivery.message_id,
            )
            return await self.ctx.retry.handle_failure(delivery, exc)

        await broker.ack(delivery)
        if not self.control:
            heartbeat.record_success()

        if self.pace is not None:
            delay = await self.pace()
            if delay > 0:
                await asyncio.sleep(delay)
        return "acked"

    async def _maybe_claim_stale(self) -> None:
        now = time.monotonic()
        if now - self._last_claim < self.claim_interval_seconds:
            return
        self._last_claim = now
        await self.ctx.broker.claim_stale(self.queue, self.ctx.settings.BROKER_CLAIM_IDLE_MS)

    async def run(self) -> None:
        self.log.info("Consumer started")
        while not self._stop.is_set():
            try:
                await self._maybe_claim_stale()
                await self.process_next()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Broker or database hiccup outside a handler.
                self.log.error("Consumer loop error", error=str(exc))
                await asyncio.sleep(1)
        self.log.info("Consumer stopped")


def config_refresh_consumer(ctx: WorkerContext) -> QueueConsumer:
    async def _on_refresh(message: QueueMessage) -> None:
        ctx.ai_config.invalidate(getattr(message, "key", "all"))

    return QueueConsumer(ctx, "config.refresh", _on_refresh, control=True)


class _RetryTimer:
    def __init__(self, ctx: WorkerContext):
        self.ctx = ctx

    async def run(self) -> None:
        await self.ctx.retry.run()

    def stop(self) -> None:
        self.ctx.retry.stop()


async def run_worker(
    worker_type: str,
    build_runnables: Callable[[WorkerContext], list[Runnable]],
    *,
    queues: Optional[list[str]] = None,
) -> None:
    """Process entry point shared by every stage.

    Broker or database failures during startup propagate: the process exits
    and the supervisor restarts it.
    """
    from models.database import init_database

    settings = default_settings
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON, settings.LOG_FILE)
    await init_database()

    ctx = build_context(worker_type, settings=settings)
    try:
        await ctx.broker.connect()
    except BrokerUnavailableError:
        ctx.log.error("Broker unavailable at startup, exiting")
        raise
    await ctx.broker.declare_topology(None if queues is None else [*queues, "config.refresh"])
    await ctx.ai_config.get()

    runnables: list[Runnable] = [
        _RetryTimer(ctx),
        config_refresh_consumer(ctx),
        *build_runnables(ctx),
    ]

    main_task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, main_task.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # Windows

    await ctx.heartbeat.start()
    ctx.log.info("Worker started", dry_run=ctx.chain.dry_run)
    tasks = [asyncio.create_task(r.run()) for r in runnables]
    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        ctx.log.info("Worker shutting down")
    finally:
        for runnable in runnables:
            runnable.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await ctx.retry.drain()
        await ctx.heartbeat.stop()
        await ctx.broker.close()
