"""Worker heartbeat and pause/resume routes for the pipeline workers."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import get_db_session
from services.worker_state import (
    WORKER_TYPES,
    list_worker_heartbeats,
    read_worker_config,
    record_heartbeat,
    set_worker_enabled,
)

router = APIRouter(prefix="/workers", tags=["Workers"])


class HeartbeatRequest(BaseModel):
    instance_id: str = Field(min_length=1)
    status: str = "idle"
    messages_processed: int = Field(default=0, ge=0)
    messages_failed: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    hostname: Optional[str] = None
    pid: Optional[int] = None


class WorkerControlRequest(BaseModel):
    updated_by: Optional[str] = None


def _normalize_worker_type(raw: str) -> str:
    name = (raw or "").strip().lower().replace("-", "_")
    if name.endswith("_worker"):
        name = name[:-7]
    return name


def _assert_supported_worker(name: str) -> None:
    if name not in WORKER_TYPES:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown worker '{name}'. Supported workers: {sorted(WORKER_TYPES)}",
        )


@router.post("/{worker_type}/heartbeat")
async def post_heartbeat(
    worker_type: str,
    request: HeartbeatRequest,
    session: AsyncSession = Depends(get_db_session),
):
    name = _normalize_worker_type(worker_type)
    _assert_supported_worker(name)
    enabled = await record_heartbeat(session, name, request.model_dump())
    return {"enabled": enabled}


@router.get("")
async def list_workers(session: AsyncSession = Depends(get_db_session)):
    instances = await list_worker_heartbeats(session)
    workers = []
    for name in WORKER_TYPES:
        config = await read_worker_config(session, name)
        workers.append(
            {
                **config,
                "instances": [i for i in instances if i["worker_type"] == name],
            }
        )
    return {"workers": workers}


@router.get("/{worker_type}")
async def get_worker(worker_type: str, session: AsyncSession = Depends(get_db_session)):
    name = _normalize_worker_type(worker_type)
    _assert_supported_worker(name)
    config = await read_worker_config(session, name)
    return {**config, "instances": await list_worker_heartbeats(session, name)}


@router.post("/{worker_type}/pause")
async def pause_worker(
    worker_type: str,
    request: Optional[WorkerControlRequest] = None,
    session: AsyncSession = Depends(get_db_session),
):
    name = _normalize_worker_type(worker_type)
    _assert_supported_worker(name)
    await set_worker_enabled(session, name, False, updated_by=request.updated_by if request else None)
    return {"status": "paused", "worker": name, "enabled": False}


@router.post("/{worker_type}/resume")
async def resume_worker(
    worker_type: str,
    request: Optional[WorkerControlRequest] = None,
    session: AsyncSession = Depends(get_db_session),
):
    name = _normalize_worker_type(worker_type)
    _assert_supported_worker(name)
    await set_worker_enabled(session, name, True, updated_by=request.updated_by if request else None)
    return {"status": "resumed", "worker": name, "enabled": True}
