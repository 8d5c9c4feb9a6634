from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass

from chatblast.channels.telegram import TelegramChannel
from chatblast.config import Settings, get_settings
from chatblast.core.dispatcher import ItemDispatcher
from chatblast.core.lifecycle import LifecycleController
from chatblast.core.poller import QueuePoller
from chatblast.core.recovery import recover_interrupted_jobs
from chatblast.storage.db import dispose_engine, get_sessionmaker
from chatblast.storage.jobs import JobStore

logger = logging.getLogger("chatblast.worker")


@dataclass
class WorkerRuntime:
    store: JobStore
    channel: TelegramChannel
    dispatcher: ItemDispatcher
    poller: QueuePoller
    lifecycle: LifecycleController


def build_runtime(settings: Settings, *, store: JobStore | None = None, channel=None) -> WorkerRuntime:
    store = store or JobStore(
        get_sessionmaker(),
        max_recipients=settings.JOB_MAX_RECIPIENTS,
        max_delay=settings.JOB_MAX_DELAY_SEC,
    )
    channel = channel or TelegramChannel(api_id=settings.TG_API_ID, api_hash=settings.TG_API_HASH)
    dispatcher = ItemDispatcher(
        store,
        channel,
        default_delay=settings.JOB_DEFAULT_DELAY_SEC,
        max_delay=settings.JOB_MAX_DELAY_SEC,
    )
    poller = QueuePoller(store, dispatcher, interval=settings.JOB_POLL_INTERVAL_SEC)
    lifecycle = LifecycleController(store, wake=poller.wake)
    return WorkerRuntime(store=store, channel=channel, dispatcher=dispatcher, poller=poller, lifecycle=lifecycle)


async def connect_devices(channel: TelegramChannel, settings: Settings) -> int:
    connected = 0
    for device_id, session_string in (settings.TG_SESSIONS or {}).items():
        if await channel.connect_device(device_id, session_string):
            connected += 1
    logger.info("[worker] devices connected: %d/%d", connected, len(settings.TG_SESSIONS or {}))
    return connected


async def run_worker(rt: WorkerRuntime, stop: asyncio.Event) -> None:
    # recovery строго до первого tick
    recovered = await recover_interrupted_jobs(rt.store)
    if recovered:
        logger.info("[worker] recovered %d job(s): %s", len(recovered), ", ".join(recovered))
    await rt.poller.run(stop)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # windows: остаётся KeyboardInterrupt
            pass


async def main_async() -> None:
    settings = get_settings()
    rt = build_runtime(settings)
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    await connect_devices(rt.channel, settings)
    try:
        await run_worker(rt, stop)
    finally:
        await rt.channel.disconnect_all()
        await dispose_engine()
        logger.info("[worker] stopped")


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        # нормальная остановка по Ctrl+C
        pass


if __name__ == "__main__":
    main()
