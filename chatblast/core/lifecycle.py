from __future__ import annotations

import logging
from typing import Callable

from chatblast.core.errors import NotFoundError, ValidationError
from chatblast.models.job import (
    ITEM_FAILED,
    ITEM_PENDING,
    JOB_CANCELLED,
    JOB_PAUSED,
    JOB_PROCESSING,
    JOB_QUEUED,
    JOB_TERMINAL,
    Job,
)
from chatblast.storage.jobs import JobStore

logger = logging.getLogger(__name__)


class LifecycleController:
    """
    pause/resume/cancel/retry. Пишем статус напрямую в стор;
    диспетчер увидит его на следующей итерации.
    """

    def __init__(self, store: JobStore, *, wake: Callable[[], None] | None = None) -> None:
        self.store = store
        self._wake = wake

    async def _get_owned(self, job_id: str, owner_id: int | None) -> Job:
        job = await self.store.get_job(job_id)
        # чужой job не отличаем от несуществующего
        if not job or (owner_id is not None and int(job.user_id) != int(owner_id)):
            raise NotFoundError(job_id)
        return job

    async def cancel(self, job_id: str, *, owner_id: int | None = None) -> bool:
        job = await self._get_owned(job_id, owner_id)
        if job.status in JOB_TERMINAL:
            return False
        ok = await self.store.update_job_status(
            job.id, JOB_CANCELLED, expected=(JOB_QUEUED, JOB_PROCESSING, JOB_PAUSED)
        )
        if ok:
            logger.info("job %s cancelled (was %s)", job.id, job.status)
        return ok

    async def pause(self, job_id: str, *, owner_id: int | None = None) -> bool:
        job = await self._get_owned(job_id, owner_id)
        if job.status not in (JOB_QUEUED, JOB_PROCESSING):
            return False
        ok = await self.store.update_job_status(job.id, JOB_PAUSED, expected=(JOB_QUEUED, JOB_PROCESSING))
        if ok:
            logger.info("job %s paused (was %s)", job.id, job.status)
        return ok

    async def resume(self, job_id: str, *, owner_id: int | None = None) -> bool:
        job = await self._get_owned(job_id, owner_id)
        if job.status != JOB_PAUSED:
            return False
        ok = await self.store.update_job_status(job.id, JOB_QUEUED, error=None, expected=(JOB_PAUSED,))
        if ok:
            logger.info("job %s resumed -> queued", job.id)
            if self._wake:
                self._wake()
        return ok

    async def retry(self, job_id: str, *, owner_id: int | None = None) -> Job:
        """
        Новый job из failed + недоотправленных (pending) получателей завершённого job.
        Исходный job не меняется.
        """
        job = await self._get_owned(job_id, owner_id)
        if job.status not in JOB_TERMINAL:
            raise ValidationError(f"Job {job.id} is not in a terminal state ({job.status})")

        items = await self.store.list_items(job.id)
        recipients = [i.recipient for i in items if i.status in (ITEM_FAILED, ITEM_PENDING)]
        if not recipients:
            raise ValidationError(f"No failed or unprocessed items to retry for job {job.id}")

        data = dict(job.data or {})
        data["retry_of"] = job.id
        new_job = await self.store.create_job(
            user_id=job.user_id,
            device_id=job.device_id,
            type=job.type,
            data=data,
            recipients=recipients,
        )
        logger.info("job %s retried as %s with %d recipients", job.id, new_job.id, len(recipients))
        if self._wake:
            self._wake()
        return new_job
