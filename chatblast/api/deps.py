from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request

from chatblast.config import get_settings
from chatblast.core.lifecycle import LifecycleController
from chatblast.storage.db import get_sessionmaker
from chatblast.storage.jobs import JobStore


def require_api_key(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    settings = get_settings()
    if not x_api_key or x_api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_owner_id(
    x_user_id: int | None = Header(default=None, alias="X-User-Id"),
) -> int | None:
    return x_user_id


def get_job_store(request: Request) -> JobStore:
    # embedded worker: тот же стор, что и у поллера
    runtime = getattr(request.app.state, "worker_runtime", None)
    if runtime is not None:
        return runtime.store

    settings = get_settings()
    return JobStore(
        get_sessionmaker(),
        max_recipients=settings.JOB_MAX_RECIPIENTS,
        max_delay=settings.JOB_MAX_DELAY_SEC,
    )


def get_lifecycle(request: Request, store: JobStore = Depends(get_job_store)) -> LifecycleController:
    runtime = getattr(request.app.state, "worker_runtime", None)
    if runtime is not None:
        return runtime.lifecycle
    # воркер в другом процессе: resume подхватит ближайший tick
    return LifecycleController(store)
