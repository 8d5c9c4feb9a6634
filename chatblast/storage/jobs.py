from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatblast.core.errors import ValidationError
from chatblast.core.payloads import validate_job_data
from chatblast.core.recipients import normalize_recipients
from chatblast.models._mixins import utcnow
from chatblast.models.job import (
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_SENT,
    ITEM_STATUSES,
    JOB_PROCESSING,
    JOB_QUEUED,
    JOB_STATUSES,
    JOB_TERMINAL,
    Job,
    JobItem,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class JobStore:
    """
    Хранилище Job/JobItem: единственный источник правды по статусам.
    Каждая операция: своя короткая транзакция.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_recipients: int = 500,
        max_delay: float = 300.0,
    ) -> None:
        self._sessions = session_factory
        self.max_recipients = max_recipients
        self.max_delay = max_delay

    # ---------- create ----------

    async def create_job(
        self,
        *,
        user_id: int,
        device_id: str,
        type: str,
        data: dict | None,
        recipients: Iterable[object],
    ) -> Job:
        device_id = (device_id or "").strip()
        if not device_id:
            raise ValidationError("device_id is required")

        normalized = normalize_recipients(recipients or [])
        if not normalized:
            raise ValidationError("recipients must not be empty")
        if len(normalized) > self.max_recipients:
            raise ValidationError(f"too many recipients: {len(normalized)} > {self.max_recipients}")

        clean_data = validate_job_data(type, data, max_delay=self.max_delay)

        job = Job(
            user_id=int(user_id),
            device_id=device_id,
            type=type,
            status=JOB_QUEUED,
            data=clean_data,
            progress_total=len(normalized),
            progress_sent=0,
            progress_failed=0,
        )
        async with self._sessions() as db:
            db.add(job)
            await db.flush()  # получить job.id
            db.add_all([JobItem(job_id=job.id, recipient=r, status=ITEM_PENDING) for r in normalized])
            await db.commit()

        logger.info("job %s created: type=%s device=%s recipients=%d", job.id, type, device_id, len(normalized))
        return job

    # ---------- read ----------

    async def get_job(self, job_id: str) -> Job | None:
        async with self._sessions() as db:
            return (await db.execute(select(Job).where(Job.id == job_id))).scalar_one_or_none()

    async def get_job_status(self, job_id: str) -> str | None:
        async with self._sessions() as db:
            return (await db.execute(select(Job.status).where(Job.id == job_id))).scalar_one_or_none()

    async def find_next_queued(self) -> Job | None:
        stmt = (
            select(Job)
            .where(Job.status == JOB_QUEUED)
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(1)
        )
        async with self._sessions() as db:
            return (await db.execute(stmt)).scalar_one_or_none()

    async def find_jobs_by_status(self, status: str) -> list[Job]:
        stmt = select(Job).where(Job.status == status).order_by(Job.created_at.asc())
        async with self._sessions() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        type: str | None = None,
        user_id: int | None = None,
        limit: int = 100,
    ) -> list[Job]:
        stmt = select(Job)
        if status:
            stmt = stmt.where(Job.status == status)
        if type:
            stmt = stmt.where(Job.type == type)
        if user_id is not None:
            stmt = stmt.where(Job.user_id == int(user_id))
        stmt = stmt.order_by(Job.created_at.desc()).limit(max(1, int(limit)))
        async with self._sessions() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def list_pending_items(self, job_id: str) -> list[JobItem]:
        return await self.list_items(job_id, status=ITEM_PENDING)

    async def list_items(self, job_id: str, *, status: str | None = None) -> list[JobItem]:
        stmt = select(JobItem).where(JobItem.job_id == job_id)
        if status:
            stmt = stmt.where(JobItem.status == status)
        stmt = stmt.order_by(JobItem.id.asc())
        async with self._sessions() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(Job.status, func.count(Job.id)).group_by(Job.status)
        async with self._sessions() as db:
            rows = (await db.execute(stmt)).all()
        out = {s: 0 for s in JOB_STATUSES}
        for status, n in rows:
            out[status] = int(n)
        out["total"] = sum(out[s] for s in JOB_STATUSES)
        return out

    # ---------- job status ----------

    async def update_job_status(
        self,
        job_id: str,
        status: str,
        *,
        error: str | None = _UNSET,
        expected: Sequence[str] | None = None,
    ) -> bool:
        """
        Однострочная запись статуса. expected задаёт compare-and-set:
        запись применится только если текущий статус входит в expected.
        """
        if status not in JOB_STATUSES:
            raise ValueError(f"unknown job status: {status!r}")

        values: dict[str, Any] = {"status": status}
        if error is not _UNSET:
            values["error"] = error
        if status in JOB_TERMINAL:
            values["completed_at"] = utcnow()

        stmt = update(Job).where(Job.id == job_id)
        if expected is not None:
            stmt = stmt.where(Job.status.in_(list(expected)))
        stmt = stmt.values(**values)

        async with self._sessions() as db:
            res = await db.execute(stmt)
            await db.commit()
        changed = res.rowcount == 1
        if changed:
            logger.info("job %s -> %s", job_id, status)
        return changed

    async def claim_next_queued(self) -> Job | None:
        """queued -> processing для самого старого job. None если очередь пуста или job увели."""
        job = await self.find_next_queued()
        if not job:
            return None

        stmt = (
            update(Job)
            .where(Job.id == job.id, Job.status == JOB_QUEUED)
            .values(
                status=JOB_PROCESSING,
                error=None,
                started_at=job.started_at or utcnow(),
            )
        )
        async with self._sessions() as db:
            res = await db.execute(stmt)
            await db.commit()
        if res.rowcount != 1:
            logger.info("job %s changed status before claim, skip", job.id)
            return None

        logger.info("job %s claimed (queued -> processing)", job.id)
        return await self.get_job(job.id)

    # ---------- items / progress ----------

    def _item_update(self, item_id: int, status: str, message_id: str | None, error: str | None):
        if status not in ITEM_STATUSES or status == ITEM_PENDING:
            raise ValueError(f"item can only move to sent/failed, got {status!r}")
        return (
            update(JobItem)
            .where(JobItem.id == item_id, JobItem.status == ITEM_PENDING)
            .values(status=status, message_id=message_id, error=error, processed_at=utcnow())
        )

    async def update_item_status(
        self,
        item_id: int,
        status: str,
        *,
        message_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """pending -> sent/failed ровно один раз. False если item уже терминальный."""
        async with self._sessions() as db:
            res = await db.execute(self._item_update(item_id, status, message_id, error))
            await db.commit()
        return res.rowcount == 1

    async def record_item_outcome(
        self,
        item: JobItem,
        status: str,
        *,
        message_id: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Статус item + инкремент счётчика job одной транзакцией."""
        counter = Job.progress_sent if status == ITEM_SENT else Job.progress_failed
        async with self._sessions() as db:
            res = await db.execute(self._item_update(item.id, status, message_id, error))
            if res.rowcount != 1:
                await db.rollback()
                logger.warning("job %s: item %s already processed, skip", item.job_id, item.id)
                return False
            await db.execute(
                update(Job).where(Job.id == item.job_id).values({counter.key: counter + 1})
            )
            await db.commit()
        return True

    async def update_progress(self, job_id: str, *, sent: int, failed: int) -> None:
        async with self._sessions() as db:
            await db.execute(
                update(Job).where(Job.id == job_id).values(progress_sent=int(sent), progress_failed=int(failed))
            )
            await db.commit()

    async def reconcile_progress(self, job_id: str) -> dict[str, int]:
        """Пересчитать кэш прогресса из job_items и записать обратно."""
        stmt = select(
            func.count(JobItem.id),
            func.coalesce(func.sum(case((JobItem.status == ITEM_SENT, 1), else_=0)), 0),
            func.coalesce(func.sum(case((JobItem.status == ITEM_FAILED, 1), else_=0)), 0),
        ).where(JobItem.job_id == job_id)
        async with self._sessions() as db:
            total, sent, failed = (await db.execute(stmt)).one()

        job = await self.get_job(job_id)
        if job and (job.progress_sent != sent or job.progress_failed != failed):
            logger.warning(
                "job %s progress drift: cached sent=%s failed=%s, items sent=%s failed=%s",
                job_id, job.progress_sent, job.progress_failed, sent, failed,
            )
            await self.update_progress(job_id, sent=sent, failed=failed)
        return {"total": int(total), "sent": int(sent), "failed": int(failed)}
