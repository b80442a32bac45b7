"""
Tests for stuck job recovery.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import update

from ghostwatch.models.base import utcnow
from ghostwatch.models.job import Job, JobStatus
from ghostwatch.services.job_store import JobStore
from ghostwatch.services.stuck_job_recovery import RecoveryReport, StuckJobRecovery


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.mark.asyncio
async def test_startup_resets_every_processing_job(store):
    await store.enqueue(1, "a")
    await store.enqueue(1, "b")
    await store.claim_next()
    await store.claim_next()

    recovery = StuckJobRecovery(store, stale_after=timedelta(minutes=10))
    report = await recovery.run_once(startup=True)

    assert report == RecoveryReport(reset=2, purged=0)
    assert await store.pending_count() == 2


@pytest.mark.asyncio
async def test_periodic_sweep_leaves_live_claims(store):
    await store.enqueue(1, "a")
    claim = await store.claim_next()

    recovery = StuckJobRecovery(store, stale_after=timedelta(minutes=10))
    report = await recovery.run_once()

    assert report.reset == 0
    assert await store.is_current(claim) is True


@pytest.mark.asyncio
async def test_sweep_purges_old_finished_jobs(store, session_factory):
    job = await store.enqueue(1, "a")
    claim = await store.claim_next()
    await store.mark_done(claim)
    async with session_factory() as session:
        await session.execute(
            update(Job).where(Job.id == job.id).values(processed_at=utcnow() - timedelta(hours=25))
        )
        await session.commit()

    report = await StuckJobRecovery(store).run_once()

    assert report.purged == 1
    assert await store.list_jobs(JobStatus.DONE) == []


@pytest.mark.asyncio
async def test_startup_sweep_resets_and_applies_retention(store, session_factory):
    old_error = await store.enqueue(1, "old_error")
    recent_error = await store.enqueue(1, "recent_error")
    stuck = await store.enqueue(1, "stuck")
    await store.mark_error(await store.claim_next(), "boom")
    await store.mark_error(await store.claim_next(), "boom")
    await store.claim_next()

    now = utcnow()
    async with session_factory() as session:
        await session.execute(
            update(Job).where(Job.id == old_error.id).values(processed_at=now - timedelta(seconds=90000))
        )
        await session.execute(
            update(Job).where(Job.id == recent_error.id).values(processed_at=now - timedelta(seconds=3600))
        )
        await session.commit()

    report = await StuckJobRecovery(store).run_once(startup=True)

    assert report == RecoveryReport(reset=1, purged=1)
    assert await store.get_job(old_error.id) is None
    assert (await store.get_job(recent_error.id)).status == JobStatus.ERROR
    assert (await store.get_job(stuck.id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_periodic_loop_survives_failures():
    store = MagicMock()
    store.reset_stuck_jobs = AsyncMock(side_effect=[RuntimeError("db gone"), 0, 0, 0, 0, 0])
    store.purge_expired = AsyncMock(return_value=0)
    recovery = StuckJobRecovery(store)

    task = asyncio.create_task(recovery.run_periodic(0.01))
    for _ in range(100):
        if store.reset_stuck_jobs.await_count >= 2:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    await task

    assert store.reset_stuck_jobs.await_count >= 2
    assert task.done()
