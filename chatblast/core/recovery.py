from __future__ import annotations

import logging

from chatblast.models.job import JOB_PROCESSING, JOB_QUEUED
from chatblast.storage.jobs import JobStore

logger = logging.getLogger(__name__)


async def recover_interrupted_jobs(store: JobStore) -> list[str]:
    """
    Запускать один раз до первого tick поллера.
    processing на старте = след прошлого падения (держать его мог только этот воркер),
    возвращаем такие job в queued. Items не трогаем: продолжим с оставшихся pending.
    """
    recovered: list[str] = []
    for job in await store.find_jobs_by_status(JOB_PROCESSING):
        if not await store.update_job_status(job.id, JOB_QUEUED, expected=(JOB_PROCESSING,)):
            continue
        progress = await store.reconcile_progress(job.id)
        logger.info(
            "recovered job %s -> queued (sent=%d failed=%d total=%d)",
            job.id, progress["sent"], progress["failed"], progress["total"],
        )
        recovered.append(job.id)

    if not recovered:
        logger.info("recovery: no interrupted jobs")
    return recovered
