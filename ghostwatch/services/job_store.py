"""
Durable job store with atomic claim semantics.

Every mutation is a single conditional statement so concurrent workers
can never both win the same row:

- ``claim_next`` flips pending -> processing with
  ``UPDATE ... WHERE id = :id AND status = 'pending'`` and bumps ``epoch``.
- ``mark_done`` / ``mark_error`` only apply while the row is still
  processing under the epoch the caller claimed, so a late completion of
  an abandoned claim is a no-op.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncContextManager, AsyncIterator, Callable, List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db_session
from ..domain.errors import PersistenceError
from ..models.base import utcnow
from ..models.job import Job, JobSource, JobStatus

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.DONE, JobStatus.ERROR)


@dataclass(frozen=True)
class JobClaim:
    """A worker's claim on one job, valid only while ``epoch`` matches the row."""

    job_id: int
    owner_id: int
    target: str
    payload: Optional[Any]
    source: JobSource
    epoch: int


class JobStore:
    """Persistence for ``download_jobs``.

    When *session_factory* is provided (e.g. in tests), every operation
    opens its session through it. Otherwise ``get_db_session()`` is used.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self._session_factory = session_factory or get_db_session

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(f"Job store operation failed: {e}") from e

    # -- enqueue / claim ------------------------------------------------

    async def enqueue(
        self,
        owner_id: int,
        target: str,
        payload: Optional[Any] = None,
        source: JobSource = JobSource.DEFERRED,
    ) -> Optional[Job]:
        """Insert a pending job.

        Returns:
            The new ``Job``, or ``None`` if a pending/processing job for
            ``(owner_id, target)`` already exists.
        """
        async with self._session() as session:
            existing = await session.execute(
                select(Job.id).where(
                    Job.owner_id == owner_id,
                    Job.target == target,
                    Job.status.in_(ACTIVE_STATUSES),
                )
            )
            if existing.first() is not None:
                logger.debug("Duplicate enqueue ignored: owner=%s target=%s", owner_id, target)
                return None

            job = Job(
                owner_id=owner_id,
                target=target,
                payload=payload,
                source=source,
                status=JobStatus.PENDING,
                epoch=0,
                enqueued_at=utcnow(),
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                # Lost the race against a concurrent enqueue; the index held
                await session.rollback()
                logger.debug("Duplicate enqueue rejected by index: owner=%s target=%s", owner_id, target)
                return None

            await session.refresh(job)
            logger.info("Enqueued job %s for owner %s (%s, source=%s)", job.id, owner_id, target, source.value)
            return job

    async def claim_next(self) -> Optional[JobClaim]:
        """Claim the oldest pending job, or return ``None`` if there is none."""
        async with self._session() as session:
            while True:
                candidate = await session.execute(
                    select(Job.id)
                    .where(Job.status == JobStatus.PENDING)
                    .order_by(Job.enqueued_at, Job.id)
                    .limit(1)
                )
                job_id = candidate.scalar_one_or_none()
                if job_id is None:
                    await session.rollback()
                    return None

                result = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.PENDING)
                    .values(
                        status=JobStatus.PROCESSING,
                        epoch=Job.epoch + 1,
                        claimed_at=utcnow(),
                        processed_at=None,
                        error_message=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another worker claimed it first
                    await session.rollback()
                    continue

                row = (
                    await session.execute(
                        select(
                            Job.id, Job.owner_id, Job.target, Job.payload, Job.source, Job.epoch
                        ).where(Job.id == job_id)
                    )
                ).one()
                await session.commit()

                logger.info("Claimed job %s (epoch %s)", row.id, row.epoch)
                return JobClaim(
                    job_id=row.id,
                    owner_id=row.owner_id,
                    target=row.target,
                    payload=row.payload,
                    source=row.source,
                    epoch=row.epoch,
                )

    # -- completion -------------------------------------------------------

    async def _finish(self, claim: JobClaim, status: JobStatus, message: Optional[str]) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == claim.job_id,
                    Job.status == JobStatus.PROCESSING,
                    Job.epoch == claim.epoch,
                )
                .values(status=status, processed_at=utcnow(), error_message=message)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        applied = result.rowcount == 1
        if not applied:
            logger.info(
                "Stale completion ignored for job %s (epoch %s -> %s)",
                claim.job_id,
                claim.epoch,
                status.value,
            )
        return applied

    async def mark_done(self, claim: JobClaim) -> bool:
        return await self._finish(claim, JobStatus.DONE, None)

    async def mark_error(self, claim: JobClaim, message: str) -> bool:
        return await self._finish(claim, JobStatus.ERROR, message)

    async def is_current(self, claim: JobClaim) -> bool:
        """True while the job is still processing under this claim's epoch."""
        async with self._session() as session:
            result = await session.execute(
                select(Job.id).where(
                    Job.id == claim.job_id,
                    Job.status == JobStatus.PROCESSING,
                    Job.epoch == claim.epoch,
                )
            )
            return result.first() is not None

    # -- recovery ---------------------------------------------------------

    async def reset_stuck_jobs(self, stale_after: Optional[timedelta] = None) -> int:
        """Return processing jobs to pending.

        Args:
            stale_after: Only reset claims older than this. ``None`` resets
                every processing row (startup, when no worker can be live).

        Returns:
            Number of rows reset
        """
        conditions = [Job.status == JobStatus.PROCESSING]
        if stale_after is not None:
            cutoff = utcnow() - stale_after
            conditions.append(or_(Job.claimed_at.is_(None), Job.claimed_at <= cutoff))

        async with self._session() as session:
            result = await session.execute(
                update(Job)
                .where(and_(*conditions))
                .values(
                    status=JobStatus.PENDING,
                    # Invalidate any claim still held in memory
                    epoch=Job.epoch + 1,
                    claimed_at=None,
                    processed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount:
            logger.warning("Reset %d stuck job(s) to pending", result.rowcount)
        return result.rowcount

    async def purge_expired(
        self,
        retention: timedelta = timedelta(hours=24),
        now: Optional[datetime] = None,
    ) -> int:
        """Delete finished jobs processed longer than *retention* ago."""
        cutoff = (now or utcnow()) - retention
        async with self._session() as session:
            result = await session.execute(
                delete(Job)
                .where(
                    Job.status.in_(TERMINAL_STATUSES),
                    Job.processed_at.is_not(None),
                    Job.processed_at <= cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount:
            logger.info("Purged %d finished job(s) older than %s", result.rowcount, retention)
        return result.rowcount

    # -- queries ----------------------------------------------------------

    async def get_job(self, job_id: int) -> Optional[Job]:
        async with self._session() as session:
            return await session.get(Job, job_id)

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        async with self._session() as session:
            stmt = select(Job).order_by(Job.enqueued_at, Job.id)
            if status is not None:
                stmt = stmt.where(Job.status == status)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def queue_position(self, job_id: int) -> Optional[int]:
        """1-based position of a pending job in FIFO order, ``None`` if not pending."""
        async with self._session() as session:
            job = await session.get(Job, job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            result = await session.execute(
                select(func.count(Job.id)).where(
                    Job.status == JobStatus.PENDING,
                    or_(
                        Job.enqueued_at < job.enqueued_at,
                        and_(Job.enqueued_at == job.enqueued_at, Job.id <= job.id),
                    ),
                )
            )
            return int(result.scalar_one())

    async def pending_count(self) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count(Job.id)).where(Job.status == JobStatus.PENDING)
            )
            return int(result.scalar_one())
