from __future__ import annotations

import asyncio
import logging

from chatblast.core.dispatcher import ItemDispatcher
from chatblast.models.job import JOB_FAILED, JOB_PROCESSING
from chatblast.storage.jobs import JobStore

logger = logging.getLogger(__name__)


class WorkerLease:
    """Аренда единственного воркера: пока занята, новый tick ничего не делает."""

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        # без await между проверкой и записью: атомарно в пределах event loop
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


class QueuePoller:
    def __init__(
        self,
        store: JobStore,
        dispatcher: ItemDispatcher,
        *,
        interval: float = 5.0,
        lease: WorkerLease | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.interval = interval
        self.lease = lease or WorkerLease()
        self._wake = asyncio.Event()

    def wake(self) -> None:
        """Не ждать конца интервала (после create/resume)."""
        self._wake.set()

    async def tick(self, stop: asyncio.Event | None = None) -> str | None:
        """
        Один проход: взять следующий queued job и прогнать его. Возвращает id job или None.
        stop пробрасывается в диспетчер: по нему job возвращается в queued посреди прогона.
        """
        if not self.lease.try_acquire():
            logger.debug("tick skipped: previous job still running")
            return None

        job_id = None
        try:
            job = await self.store.claim_next_queued()
            if not job:
                return None
            job_id = job.id

            status = await self.dispatcher.run(job.id, stop=stop)
            logger.info("job %s dispatch finished with status=%s", job.id, status)
            return job.id

        except Exception as e:
            logger.exception("tick error (job=%s): %s", job_id, e)
            if job_id:
                await self._fail_job(job_id, e)
            return job_id

        finally:
            self.lease.release()

    async def _fail_job(self, job_id: str, e: Exception) -> None:
        err = f"Internal error: {e.__class__.__name__}: {e}"[:500]
        try:
            await self.store.update_job_status(job_id, JOB_FAILED, error=err, expected=(JOB_PROCESSING,))
        except Exception as e2:
            logger.error("job %s: could not mark failed: %s: %s", job_id, e2.__class__.__name__, e2)

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("poller started, interval=%.1fs", self.interval)
        while not stop.is_set():
            processed = await self.tick(stop)
            if processed and not stop.is_set():
                # очередь могла накопиться, сразу следующий tick
                continue

            wake_task = asyncio.create_task(self._wake.wait())
            stop_task = asyncio.create_task(stop.wait())
            try:
                await asyncio.wait(
                    {wake_task, stop_task},
                    timeout=self.interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for t in (wake_task, stop_task):
                    t.cancel()
                await asyncio.gather(wake_task, stop_task, return_exceptions=True)
                # wake(), пришедший во время tick, уже отработал выше
                self._wake.clear()
        logger.info("poller stopped")
