"""
Stuck job recovery.

Reconciles the job table after a crash or an abandoned claim: rows left
in ``processing`` go back to ``pending``, and finished rows older than
the retention window are deleted. Runs once on startup and then on a
fixed interval.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .job_store import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryReport:
    reset: int
    purged: int


class StuckJobRecovery:
    def __init__(
        self,
        store: JobStore,
        retention: timedelta = timedelta(hours=24),
        stale_after: Optional[timedelta] = None,
    ) -> None:
        """
        Args:
            store: Job store to sweep
            retention: Age after which finished rows are deleted
            stale_after: Minimum claim age reset by periodic sweeps, so a
                job the live worker is still running is left alone
        """
        self.store = store
        self.retention = retention
        self.stale_after = stale_after

    async def run_once(self, startup: bool = False) -> RecoveryReport:
        """One sweep. On *startup* every processing row is reset."""
        reset = await self.store.reset_stuck_jobs(
            stale_after=None if startup else self.stale_after
        )
        purged = await self.store.purge_expired(self.retention)
        if reset or purged:
            logger.info("Job recovery: reset=%d purged=%d", reset, purged)
        return RecoveryReport(reset=reset, purged=purged)

    async def run_periodic(self, interval_seconds: float = 3600.0) -> None:
        """Run sweeps forever; one failed cycle never stops the loop."""
        logger.info("Starting periodic job recovery (every %ss)", interval_seconds)
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("Periodic job recovery task cancelled")
                break
            except Exception as e:
                logger.error("Job recovery cycle error: %s", e, exc_info=True)
