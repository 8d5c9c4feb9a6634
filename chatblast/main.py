from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatblast.api.routes_health import router as health_router
from chatblast.api.routes_jobs import router as jobs_router
from chatblast.config import get_settings
from chatblast.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    WORKER_EMBEDDED=1: recovery + поллер внутри API-процесса.
    Иначе API только пишет в БД, а рассылает отдельный chatblast-worker.
    """
    settings = get_settings()
    app.state.worker_runtime = None
    if not settings.WORKER_EMBEDDED:
        yield
        return

    from chatblast.worker import build_runtime, connect_devices, run_worker

    rt = build_runtime(settings)
    await connect_devices(rt.channel, settings)
    stop = asyncio.Event()
    task = asyncio.create_task(run_worker(rt, stop))
    app.state.worker_runtime = rt
    try:
        yield
    finally:
        stop.set()
        rt.poller.wake()
        try:
            await task
        except Exception as e:
            logger.error("embedded worker stopped with error: %s: %s", e.__class__.__name__, e)
        await rt.channel.disconnect_all()


app = FastAPI(title="Chatblast", lifespan=lifespan)


@app.exception_handler(ValidationError)
async def validation_exc_handler(request: Request, exc: ValidationError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(NotFoundError)
async def not_found_exc_handler(request: Request, exc: NotFoundError):
    return JSONResponse({"detail": str(exc)}, status_code=404)


app.include_router(health_router)
app.include_router(jobs_router)


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "chatblast.main:app",
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
