from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from chatblast.storage.db import Base
from ._mixins import TimestampMixin

# типы рассылок
JOB_TYPE_TEXT = "send-text"
JOB_TYPE_MEDIA = "send-media"
JOB_TYPES = (JOB_TYPE_TEXT, JOB_TYPE_MEDIA)

# статусы job
JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_PAUSED = "paused"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"
JOB_STATUSES = (JOB_QUEUED, JOB_PROCESSING, JOB_PAUSED, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)
JOB_TERMINAL = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

# статусы job_item
ITEM_PENDING = "pending"
ITEM_SENT = "sent"
ITEM_FAILED = "failed"
ITEM_STATUSES = (ITEM_PENDING, ITEM_SENT, ITEM_FAILED)

# ширина job_items.recipient
RECIPIENT_MAX_LEN = 64

JsonType = JSON().with_variant(JSONB, "postgresql")


def _new_job_id() -> str:
    return str(uuid.uuid4())


class Job(Base, TimestampMixin):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_job_id)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    # какой сессией/устройством отправляем
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)  # send-text/send-media
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JOB_QUEUED, server_default=JOB_QUEUED)

    data: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    # кэш прогресса поверх job_items (восстанавливается через reconcile_progress)
    progress_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    progress_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    progress_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def progress(self) -> dict[str, int]:
        return {
            "total": int(self.progress_total or 0),
            "sent": int(self.progress_sent or 0),
            "failed": int(self.progress_failed or 0),
        }

    @property
    def is_terminal(self) -> bool:
        return self.status in JOB_TERMINAL

    def __repr__(self) -> str:
        return f"<Job(id={self.id!r}, type={self.type!r}, status={self.status!r})>"


class JobItem(Base, TimestampMixin):
    __tablename__ = "job_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    recipient: Mapped[str] = mapped_column(String(RECIPIENT_MAX_LEN), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ITEM_PENDING, server_default=ITEM_PENDING)

    message_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<JobItem(id={self.id}, job_id={self.job_id!r}, recipient={self.recipient!r}, status={self.status!r})>"


Index("ix_jobs_status_created", Job.status, Job.created_at)
Index("ix_job_items_job_status", JobItem.job_id, JobItem.status)
