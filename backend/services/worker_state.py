"""DB-backed worker control switches and heartbeat bookkeeping (control-plane side)."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import WorkerConfig, WorkerHeartbeat
from utils.utcnow import to_iso, utcnow

WORKER_TYPES: tuple[str, ...] = (
    "crawler",
    "extractor",
    "generator",
    "validator",
    "publisher",
    "resolver",
    "dispute_agent",
    "scheduler",
)

# An instance that has not reported for this long is shown as offline.
STALE_AFTER = timedelta(seconds=90)


def _now() -> datetime:
    return utcnow()


async def ensure_worker_config(session: AsyncSession, worker_type: str) -> WorkerConfig:
    result = await session.execute(select(WorkerConfig).where(WorkerConfig.worker_type == worker_type))
    row = result.scalar_one_or_none()
    if row is None:
        row = WorkerConfig(worker_type=worker_type, enabled=True, updated_at=_now())
        session.add(row)
        await session.flush()
    return row


async def read_worker_config(session: AsyncSession, worker_type: str) -> dict[str, Any]:
    result = await session.execute(select(WorkerConfig).where(WorkerConfig.worker_type == worker_type))
    row = result.scalar_one_or_none()
    if row is None:
        return {"worker_type": worker_type, "enabled": True, "updated_by": None, "updated_at": None}
    return {
        "worker_type": row.worker_type,
        "enabled": bool(row.enabled),
        "updated_by": row.updated_by,
        "updated_at": to_iso(row.updated_at),
    }


async def set_worker_enabled(
    session: AsyncSession,
    worker_type: str,
    enabled: bool,
    *,
    updated_by: Optional[str] = None,
) -> None:
    row = await ensure_worker_config(session, worker_type)
    row.enabled = bool(enabled)
    row.updated_by = updated_by
    row.updated_at = _now()
    await session.commit()


async def record_heartbeat(session: AsyncSession, worker_type: str, payload: dict[str, Any]) -> bool:
    """Upsert the instance's heartbeat row and return whether the worker type is enabled."""
    instance_id = str(payload["instance_id"])
    status = str(payload.get("status") or "idle")
    now = _now()

    result = await session.execute(
        select(WorkerHeartbeat).where(
            WorkerHeartbeat.worker_type == worker_type,
            WorkerHeartbeat.instance_id == instance_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = WorkerHeartbeat(
            worker_type=worker_type,
            instance_id=instance_id,
            started_at=now,
            total_processed=0,
            total_failed=0,
            consecutive_errors=0,
        )
        session.add(row)

    row.status = status
    row.hostname = payload.get("hostname")
    row.pid = payload.get("pid")
    row.total_processed = int(row.total_processed or 0) + max(0, int(payload.get("messages_processed") or 0))
    row.total_failed = int(row.total_failed or 0) + max(0, int(payload.get("messages_failed") or 0))
    row.consecutive_errors = int(row.consecutive_errors or 0) + 1 if status == "error" else 0
    if payload.get("last_error"):
        row.last_error = str(payload["last_error"])
    row.last_seen_at = now

    config = await read_worker_config(session, worker_type)
    await session.commit()
    return bool(config["enabled"])


def _heartbeat_to_dict(row: WorkerHeartbeat, now: datetime) -> dict[str, Any]:
    online = row.last_seen_at is not None and now - row.last_seen_at <= STALE_AFTER
    return {
        "instance_id": row.instance_id,
        "status": row.status if online or row.status == "stopped" else "offline",
        "hostname": row.hostname,
        "pid": row.pid,
        "total_processed": int(row.total_processed or 0),
        "total_failed": int(row.total_failed or 0),
        "consecutive_errors": int(row.consecutive_errors or 0),
        "last_error": row.last_error,
        "started_at": to_iso(row.started_at),
        "last_seen_at": to_iso(row.last_seen_at),
    }


async def list_worker_heartbeats(session: AsyncSession, worker_type: Optional[str] = None) -> list[dict[str, Any]]:
    query = select(WorkerHeartbeat).order_by(WorkerHeartbeat.worker_type, WorkerHeartbeat.instance_id)
    if worker_type:
        query = query.where(WorkerHeartbeat.worker_type == worker_type)
    rows = (await session.execute(query)).scalars().all()
    now = _now()
    return [{"worker_type": row.worker_type, **_heartbeat_to_dict(row, now)} for row in rows]
