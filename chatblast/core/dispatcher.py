from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from chatblast.channels.base import Channel
from chatblast.core.errors import ChannelUnavailableError
from chatblast.core.payloads import resolve_payload
from chatblast.core.rate_limit import effective_delay
from chatblast.models.job import (
    ITEM_FAILED,
    ITEM_SENT,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PAUSED,
    JOB_PROCESSING,
    JOB_QUEUED,
    JOB_TYPES,
    JobItem,
)
from chatblast.storage.jobs import JobStore

logger = logging.getLogger(__name__)

StatusReader = Callable[[str], Awaitable["str | None"]]
Sleeper = Callable[[float], Awaitable[None]]

ERROR_MAX_LEN = 500


def _error_text(e: BaseException) -> str:
    msg = (str(e) or e.__class__.__name__).strip()
    return msg[:ERROR_MAX_LEN]


class ItemDispatcher:
    """
    Доводит pending-items одного job до sent/failed.

    Идемпотентность: берём только pending на старте прогона, item переходит
    в терминальный статус ровно один раз, поэтому рестарт или pause/resume
    не отправляют повторно.
    """

    def __init__(
        self,
        store: JobStore,
        channel: Channel,
        *,
        default_delay: float = 3.0,
        max_delay: float | None = None,
        status_reader: StatusReader | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.default_delay = default_delay
        self.max_delay = max_delay
        # статус читаем из стора на каждой итерации, так видны внешние pause/cancel
        self._read_status = status_reader or store.get_job_status
        self._sleep = sleep or asyncio.sleep

    async def _wait(self, delay: float, stop: asyncio.Event | None) -> None:
        """Пауза перед отправкой; stop прерывает её досрочно."""
        if stop is None:
            await self._sleep(delay)
            return
        if stop.is_set():
            return

        sleep_task = asyncio.ensure_future(self._sleep(delay))
        stop_task = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sleep_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleep_task, stop_task):
                t.cancel()
            await asyncio.gather(sleep_task, stop_task, return_exceptions=True)

    async def run(self, job_id: str, *, stop: asyncio.Event | None = None) -> str | None:
        """
        stop: остановка воркера. Job возвращается в queued (как после recovery),
        оставшиеся items остаются pending.
        """
        job = await self.store.get_job(job_id)
        if not job:
            logger.warning("job %s disappeared before dispatch", job_id)
            return None
        if job.status != JOB_PROCESSING:
            logger.info("job %s is %s, nothing to dispatch", job_id, job.status)
            return job.status

        if job.type not in JOB_TYPES:
            await self.store.update_job_status(
                job.id, JOB_FAILED, error=f"Unknown job type: {job.type}", expected=(JOB_PROCESSING,)
            )
            return JOB_FAILED

        if not await self.channel.is_available(job.device_id):
            err = str(ChannelUnavailableError(job.device_id, "session is not connected"))
            logger.warning("job %s paused before start: %s", job.id, err)
            await self.store.update_job_status(job.id, JOB_PAUSED, error=err, expected=(JOB_PROCESSING,))
            return JOB_PAUSED

        items = await self.store.list_pending_items(job.id)
        delay = effective_delay(job.data, default=self.default_delay, maximum=self.max_delay)
        total = job.progress_total
        logger.info("job %s: dispatching %d pending of %d, delay=%.1fs", job.id, len(items), total, delay)

        for item in items:
            # backpressure на канал
            await self._wait(delay, stop)

            status = await self._read_status(job.id)
            if status != JOB_PROCESSING:
                logger.info("job %s is %s, stop before item %s", job.id, status, item.id)
                return status

            if stop is not None and stop.is_set():
                logger.info("job %s: worker stopping, requeue before item %s", job.id, item.id)
                if await self.store.update_job_status(job.id, JOB_QUEUED, expected=(JOB_PROCESSING,)):
                    return JOB_QUEUED
                return await self.store.get_job_status(job.id)

            try:
                payload = await resolve_payload(job.type, job.data, item.recipient)
                message_id = await self.channel.send(job.device_id, item.recipient, payload)
            except ChannelUnavailableError as e:
                # канал пропал посреди рассылки: item остаётся pending
                logger.warning("job %s paused mid-run: %s", job.id, e)
                await self.store.update_job_status(
                    job.id, JOB_PAUSED, error=_error_text(e), expected=(JOB_PROCESSING,)
                )
                return JOB_PAUSED
            except Exception as e:
                # skip-and-log: ItemDispatchError или любая ошибка транспорта = failed item, без ретраев
                await self._record_failed(job.id, item, e)
                continue

            await self.store.record_item_outcome(item, ITEM_SENT, message_id=message_id or None)
            logger.info("job %s: sent to %s (message_id=%s)", job.id, item.recipient, message_id)

        # compare-and-set: внешний pause/cancel на последнем item не перетираем
        if await self.store.update_job_status(job.id, JOB_COMPLETED, error=None, expected=(JOB_PROCESSING,)):
            logger.info("job %s completed", job.id)
            return JOB_COMPLETED
        return await self.store.get_job_status(job.id)

    async def _record_failed(self, job_id: str, item: JobItem, e: BaseException) -> None:
        err = _error_text(e)
        logger.warning("job %s: failed to send to %s: %s: %s", job_id, item.recipient, e.__class__.__name__, err)
        await self.store.record_item_outcome(item, ITEM_FAILED, error=err)
