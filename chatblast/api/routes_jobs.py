from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from chatblast.api.deps import get_job_store, get_lifecycle, get_owner_id, require_api_key
from chatblast.core.errors import NotFoundError
from chatblast.core.lifecycle import LifecycleController
from chatblast.storage.jobs import JobStore

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_api_key)])


class JobCreateIn(BaseModel):
    device_id: str
    type: str = "send-text"
    recipients: list[str]
    data: dict[str, Any] = Field(default_factory=dict)
    user_id: int | None = None  # иначе берём X-User-Id


class ProgressOut(BaseModel):
    total: int
    sent: int
    failed: int


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: int
    device_id: str
    type: str
    status: str
    progress: ProgressOut
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    recipient: str
    status: str
    message_id: str | None = None
    error: str | None = None
    processed_at: datetime | None = None


class ActionOut(BaseModel):
    id: str
    ok: bool
    status: str | None = None


def _wake_worker(request: Request) -> None:
    runtime = getattr(request.app.state, "worker_runtime", None)
    if runtime is not None:
        runtime.poller.wake()


async def _get_owned_job(store: JobStore, job_id: str, owner_id: int | None):
    job = await store.get_job(job_id)
    if not job or (owner_id is not None and job.user_id != owner_id):
        raise NotFoundError(job_id)
    return job


@router.post("", response_model=JobOut, status_code=201)
async def create_job(
    inp: JobCreateIn,
    request: Request,
    owner_id: int | None = Depends(get_owner_id),
    store: JobStore = Depends(get_job_store),
):
    user_id = inp.user_id if inp.user_id is not None else owner_id
    if user_id is None:
        raise HTTPException(status_code=400, detail="user_id or X-User-Id required")

    job = await store.create_job(
        user_id=user_id,
        device_id=inp.device_id,
        type=inp.type,
        data=inp.data,
        recipients=inp.recipients,
    )
    _wake_worker(request)
    return job


@router.get("", response_model=list[JobOut])
async def list_jobs(
    status: str | None = Query(default=None),
    type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    owner_id: int | None = Depends(get_owner_id),
    store: JobStore = Depends(get_job_store),
):
    return await store.list_jobs(status=status, type=type, user_id=owner_id, limit=limit)


@router.get("/stats")
async def job_stats(store: JobStore = Depends(get_job_store)):
    return await store.count_by_status()


@router.get("/{job_id}", response_model=JobOut)
async def get_job(
    job_id: str,
    owner_id: int | None = Depends(get_owner_id),
    store: JobStore = Depends(get_job_store),
):
    return await _get_owned_job(store, job_id, owner_id)


@router.get("/{job_id}/items", response_model=list[JobItemOut])
async def list_job_items(
    job_id: str,
    status: str | None = Query(default=None),
    owner_id: int | None = Depends(get_owner_id),
    store: JobStore = Depends(get_job_store),
):
    await _get_owned_job(store, job_id, owner_id)
    return await store.list_items(job_id, status=status)


async def _action_result(store: JobStore, job_id: str, ok: bool) -> ActionOut:
    return ActionOut(id=job_id, ok=ok, status=await store.get_job_status(job_id))


@router.post("/{job_id}/pause", response_model=ActionOut)
async def pause_job(
    job_id: str,
    owner_id: int | None = Depends(get_owner_id),
    store: JobStore = Depends(get_job_store),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    ok = await lifecycle.pause(job_id, owner_id=owner_id)
    return await _action_result(store, job_id, ok)


@router.post("/{job_id}/resume", response_model=ActionOut)
async def resume_job(
    job_id: str,
    owner_id: int | None = Depends(get_owner_id),
    store: JobStore = Depends(get_job_store),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    ok = await lifecycle.resume(job_id, owner_id=owner_id)
    return await _action_result(store, job_id, ok)


@router.post("/{job_id}/cancel", response_model=ActionOut)
async def cancel_job(
    job_id: str,
    owner_id: int | None = Depends(get_owner_id),
    store: JobStore = Depends(get_job_store),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    ok = await lifecycle.cancel(job_id, owner_id=owner_id)
    return await _action_result(store, job_id, ok)


@router.post("/{job_id}/retry", response_model=JobOut, status_code=201)
async def retry_job(
    job_id: str,
    owner_id: int | None = Depends(get_owner_id),
    lifecycle: LifecycleController = Depends(get_lifecycle),
):
    return await lifecycle.retry(job_id, owner_id=owner_id)
