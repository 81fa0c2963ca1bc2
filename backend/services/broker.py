"""Broker topology and producer/consumer client.

The pipeline talks to one topic exchange, ``prediction.market``. Each stage
owns a queue bound under its own routing key; queues that take part in
retry handling have a ``<queue>.dlq`` dead-letter queue bound under the
``<queue>.dlq`` key. Queues are backed by Redis Streams:

* one stream per queue, one consumer group per queue (broadcast queues get a
  group per consumer so every process sees every message)
* ``XREADGROUP COUNT 1`` gives prefetch 1
* ack = ``XACK`` + ``XDEL``; requeue = re-append + ack; reject = append to the
  dead-letter stream + ack
* unacked deliveries idle longer than the claim timeout are re-appended,
  which is how a killed consumer's message comes back
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from models.messages import QueueMessage
from utils.logger import get_logger
from utils.utcnow import to_iso, utcnow

logger = get_logger("broker")

EXCHANGE = "prediction.market"
CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class QueueSpec:
    name: str
    routing_key: str
    durable: bool = True
    dead_letter: bool = True
    broadcast: bool = False

    @property
    def dlq_name(self) -> Optional[str]:
        return f"{self.name}.dlq" if self.dead_letter else None


QUEUES: dict[str, QueueSpec] = {
    spec.name: spec
    for spec in (
        QueueSpec("news.raw", "news.raw"),
        QueueSpec("candidates", "candidates"),
        QueueSpec("drafts.validate", "drafts.validate"),
        QueueSpec("markets.publish", "markets.publish"),
        QueueSpec("markets.resolve", "markets.resolve"),
        QueueSpec("disputes", "disputes"),
        QueueSpec("config.refresh", "config.refresh", durable=False, dead_letter=False, broadcast=True),
    )
}


def bindings() -> list[tuple[str, str]]:
    """(binding key, queue name) pairs on the exchange, dead-letter queues included."""
    pairs: list[tuple[str, str]] = []
    for spec in QUEUES.values():
        pairs.append((spec.routing_key, spec.name))
        if spec.dlq_name:
            pairs.append((f"{spec.routing_key}.dlq", spec.dlq_name))
    return pairs


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: ``*`` is exactly one word, ``#`` is zero or more."""
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


def route(routing_key: str) -> list[str]:
    return [queue for key, queue in bindings() if topic_matches(key, routing_key)]


def stream_key(queue: str) -> str:
    return f"{EXCHANGE}:{queue}"


class BrokerUnavailableError(Exception):
    """The broker could not be reached; workers treat this as fatal at startup."""


@dataclass
class Delivery:
    """One message handed to a consumer, with its transport envelope."""

    queue: str
    entry_id: str
    body: Any
    headers: dict[str, Any] = field(default_factory=dict)
    fields: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def retry_count(self) -> int:
        try:
            return max(0, int(self.headers.get("retry_count", 0)))
        except (TypeError, ValueError):
            return 0

    @property
    def routing_key(self) -> str:
        return str(self.headers.get("routing_key") or self.queue)

    @property
    def message_id(self) -> Optional[str]:
        return self.headers.get("message_id")


def _decode_body(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return raw


class MessageBroker:
    """Publish/consume client for the pipeline exchange."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        consumer_name: Optional[str] = None,
        redis: Optional[Redis] = None,
        broadcast_max_length: int = 1000,
    ):
        self.redis_url = redis_url
        self.consumer_name = consumer_name or f"consumer-{uuid.uuid4().hex[:8]}"
        self.broadcast_max_length = broadcast_max_length
        self._redis: Optional[Redis] = redis
        self._owns_connection = redis is None
        self._declared_broadcast: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        try:
            await self._redis.ping()
        except (RedisConnectionError, OSError) as exc:
            raise BrokerUnavailableError(f"Cannot reach broker at {self.redis_url}: {exc}") from exc
        logger.info("Broker connected", consumer=self.consumer_name)

    async def close(self) -> None:
        if self._redis is None:
            return
        for queue in list(self._declared_broadcast):
            try:
                await self._redis.xgroup_destroy(stream_key(queue), self._group(QUEUES[queue]))
            except ResponseError:
                pass
        self._declared_broadcast.clear()
        if self._owns_connection:
            await self._redis.aclose()
            self._redis = None

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Broker not connected. Call connect() first.")
        return self._redis

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def _spec(self, queue: str) -> QueueSpec:
        spec = QUEUES.get(queue)
        if spec is None:
            raise KeyError(f"Unknown queue '{queue}'")
        return spec

    def _group(self, spec: QueueSpec) -> str:
        if spec.broadcast:
            return f"{spec.name}.{self.consumer_name}"
        return f"{spec.name}.consumers"

    async def _ensure_group(self, stream: str, group: str, start_id: str) -> None:
        try:
            await self.redis.xgroup_create(stream, group, id=start_id, mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def declare_topology(self, queues: Optional[list[str]] = None) -> None:
        """Create streams and consumer groups for the given queues (default: all). Idempotent."""
        for name in queues or list(QUEUES):
            spec = self._spec(name)
            if spec.broadcast:
                # Only messages published after this process joined.
                await self._ensure_group(stream_key(spec.name), self._group(spec), "$")
                self._declared_broadcast.add(spec.name)
            else:
                await self._ensure_group(stream_key(spec.name), self._group(spec), "0")
            if spec.dlq_name:
                await self._ensure_group(stream_key(spec.dlq_name), f"{spec.dlq_name}.inspect", "0")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _envelope(
        self,
        routing_key: str,
        body: dict[str, Any],
        retry_count: int,
        message_id: Optional[str],
    ) -> dict[str, str]:
        return {
            "body": json.dumps(body, default=str),
            "content_type": CONTENT_TYPE,
            "delivery_mode": "persistent",
            "timestamp": to_iso(utcnow()),
            "routing_key": routing_key,
            "retry_count": str(int(retry_count)),
            "message_id": message_id or uuid.uuid4().hex,
        }

    async def _append(self, queue: str, fields: dict[str, str]) -> str:
        # Work queues and DLQs are never trimmed; only the refresh broadcast is capped.
        spec = QUEUES.get(queue)
        if spec is not None and spec.broadcast:
            return await self.redis.xadd(stream_key(queue), fields, maxlen=self.broadcast_max_length, approximate=True)
        return await self.redis.xadd(stream_key(queue), fields)

    async def publish(
        self,
        routing_key: str,
        message: Union[QueueMessage, dict[str, Any]],
        *,
        retry_count: int = 0,
        message_id: Optional[str] = None,
    ) -> list[str]:
        """Publish to every queue bound to ``routing_key``. Returns the new entry ids."""
        body = message.to_payload() if isinstance(message, QueueMessage) else dict(message)
        targets = route(routing_key)
        if not targets:
            logger.warning("Unroutable message dropped", routing_key=routing_key)
            return []
        fields = self._envelope(routing_key, body, retry_count, message_id)
        entry_ids = [await self._append(queue, fields) for queue in targets]
        logger.debug(
            "Published message",
            routing_key=routing_key,
            queues=targets,
            retry_count=retry_count,
            message_id=fields["message_id"],
        )
        return entry_ids

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def _to_delivery(self, queue: str, entry_id: str, fields: dict[str, str]) -> Delivery:
        headers = {k: v for k, v in fields.items() if k != "body"}
        return Delivery(
            queue=queue,
            entry_id=entry_id,
            body=_decode_body(fields.get("body")),
            headers=headers,
            fields=dict(fields),
        )

    async def get(self, queue: str, block_ms: Optional[int] = None) -> Optional[Delivery]:
        """Fetch at most one delivery (prefetch 1). Returns None when the queue stays empty."""
        spec = self._spec(queue)
        response = await self.redis.xreadgroup(
            groupname=self._group(spec),
            consumername=self.consumer_name,
            streams={stream_key(queue): ">"},
            count=1,
            block=block_ms,
        )
        if not response:
            return None
        for _stream, entries in response:
            for entry_id, fields in entries:
                return self._to_delivery(queue, entry_id, fields)
        return None

    async def _settle(self, delivery: Delivery) -> None:
        spec = self._spec(delivery.queue)
        stream = stream_key(delivery.queue)
        await self.redis.xack(stream, self._group(spec), delivery.entry_id)
        if not spec.broadcast:
            await self.redis.xdel(stream, delivery.entry_id)

    async def ack(self, delivery: Delivery) -> None:
        await self._settle(delivery)

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        if not requeue:
            await self.reject(delivery)
            return
        if not self._spec(delivery.queue).broadcast:
            await self._append(delivery.queue, delivery.fields)
        await self._settle(delivery)
        logger.debug("Delivery requeued", queue=delivery.queue, message_id=delivery.message_id)

    async def reject(self, delivery: Delivery, reason: str = "rejected") -> None:
        """Reject without requeue: dead-letter if the queue has a DLQ, otherwise drop."""
        spec = self._spec(delivery.queue)
        if spec.dlq_name:
            dead = dict(delivery.fields)
            dead.update(
                {
                    "x_death_queue": delivery.queue,
                    "x_death_reason": reason,
                    "x_death_at": to_iso(utcnow()),
                }
            )
            await self._append(spec.dlq_name, dead)
            logger.warning(
                "Message dead-lettered",
                queue=delivery.queue,
                dlq=spec.dlq_name,
                reason=reason,
                retry_count=delivery.retry_count,
            )
        await self._settle(delivery)

    async def claim_stale(self, queue: str, min_idle_ms: int, count: int = 10) -> int:
        """Hand deliveries left unacked by a dead consumer back to the queue."""
        spec = self._spec(queue)
        if spec.broadcast:
            return 0
        stream = stream_key(queue)
        group = self._group(spec)
        pending = await self.redis.xpending_range(stream, group, min="-", max="+", count=count)
        stale_ids = [p["message_id"] for p in pending if int(p["time_since_delivered"]) >= min_idle_ms]
        if not stale_ids:
            return 0
        claimed = await self.redis.xclaim(stream, group, self.consumer_name, min_idle_ms, stale_ids)
        for entry_id, fields in claimed:
            if not fields:
                continue
            await self._append(queue, fields)
            await self.redis.xack(stream, group, entry_id)
            await self.redis.xdel(stream, entry_id)
        if claimed:
            logger.info("Reclaimed stale deliveries", queue=queue, count=len(claimed))
        return len(claimed)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def queue_depth(self, queue: str) -> int:
        return int(await self.redis.xlen(stream_key(queue)))

    async def dead_letters(self, queue: str, count: int = 100) -> list[Delivery]:
        dlq = self._spec(queue).dlq_name
        if dlq is None:
            return []
        entries = await self.redis.xrange(stream_key(dlq), min="-", max="+", count=count)
        return [self._to_delivery(dlq, entry_id, fields) for entry_id, fields in entries]
