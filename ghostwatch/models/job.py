"""
Durable download job model.

A job row is created on enqueue and moves pending -> processing -> done|error.
``epoch`` is bumped on every claim; a worker only finalizes a row whose
epoch still matches the one it claimed.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Enum, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class JobSource(str, enum.Enum):
    """Provenance of a job: which lane submitted it."""

    INTERACTIVE = "interactive"
    DEFERRED = "deferred"
    MONITOR = "monitor"


class Job(Base):
    __tablename__ = "download_jobs"
    __table_args__ = (
        # At most one live job per (owner, target)
        Index(
            "uq_download_jobs_active",
            "owner_id",
            "target",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_download_jobs_status_enqueued", "status", "enqueued_at", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    source: Mapped[JobSource] = mapped_column(
        Enum(JobSource, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobSource.DEFERRED,
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    epoch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Job(id={self.id}, owner_id={self.owner_id}, target={self.target}, "
            f"status={self.status}, epoch={self.epoch})>"
        )
