"""
Single worker draining the durable job queue.

Each claimed job runs its fetch-and-deliver pipeline in its own task,
raced against the processing timeout. On timeout the job is marked
failed right away but the pipeline is left running (there is no hard
cancellation at the network layer); whatever it produces later is
discarded because its claim epoch no longer matches the row.
"""

import asyncio
import logging
from typing import Optional, Set

from ..domain.errors import (
    DeliveryFailure,
    PersistenceError,
    ProcessingTimeout,
    ProviderDataError,
    ProviderError,
)
from ..domain.interfaces import ContentDeliverer, ContentFetcher, Notifier
from ..utils.logging import get_job_logger
from .job_store import JobClaim, JobStore

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Processing timeout"


class QueueProcessor:
    """Claims jobs one at a time and runs them to a terminal state."""

    def __init__(
        self,
        store: JobStore,
        fetcher: ContentFetcher,
        deliverer: ContentDeliverer,
        notifier: Notifier,
        processing_timeout: float = 300.0,
        poll_interval: float = 5.0,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.deliverer = deliverer
        self.notifier = notifier
        self.processing_timeout = processing_timeout
        self.poll_interval = poll_interval

        self._wake = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None
        self._pipelines: Set[asyncio.Task] = set()

    # -- lifecycle --------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def in_flight(self) -> int:
        """Pipelines still running, including ones abandoned after a timeout."""
        return len(self._pipelines)

    async def drain(self) -> None:
        """Wait for every in-flight pipeline to settle."""
        while self._pipelines:
            await asyncio.gather(*list(self._pipelines), return_exceptions=True)

    def start(self) -> None:
        if self.is_running:
            return
        self._worker = asyncio.create_task(self._run(), name="queue-processor")
        logger.info("Queue processor started (timeout=%ss)", self.processing_timeout)

    async def stop(self) -> None:
        """Stop the worker and cancel any pipelines still in flight."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        pending = list(self._pipelines)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Queue processor stopped")

    def notify(self) -> None:
        """Wake the worker (a job was just enqueued)."""
        self._wake.set()

    async def _run(self) -> None:
        while True:
            self._wake.clear()
            try:
                processed = await self.process_next()
            except asyncio.CancelledError:
                raise
            except PersistenceError as e:
                logger.error("Queue store unavailable: %s", e)
                processed = False
            except Exception as e:
                logger.error("Unexpected error in queue worker: %s", e, exc_info=True)
                processed = False

            if processed:
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # -- processing -------------------------------------------------------

    async def process_next(self) -> bool:
        """Claim and run one job.

        Returns:
            True if a job was claimed (whatever its outcome), False if the
            queue was empty.
        """
        claim = await self.store.claim_next()
        if claim is None:
            return False

        log = get_job_logger(
            job_id=claim.job_id,
            owner_id=claim.owner_id,
            source=claim.source.value,
            epoch=claim.epoch,
        )
        log.info("job_started", target=claim.target)

        pipeline = asyncio.create_task(
            self._pipeline(claim, log), name=f"job-pipeline:{claim.job_id}"
        )
        self._pipelines.add(pipeline)
        pipeline.add_done_callback(self._on_pipeline_done)

        try:
            await self._await_pipeline(claim, pipeline)
        except ProcessingTimeout as e:
            log.warning("job_timeout", error=str(e), timeout=e.timeout)
            if await self.store.mark_error(claim, TIMEOUT_MESSAGE):
                await self._notify_owner(
                    claim.owner_id,
                    f"Request for {claim.target} took too long and was cancelled. Please try again later.",
                )
        return True

    async def _await_pipeline(self, claim: JobClaim, pipeline: asyncio.Task) -> None:
        """Wait for *pipeline* without cancelling it when the timeout hits.

        Raises:
            ProcessingTimeout: the pipeline outlived the processing timeout
        """
        try:
            await asyncio.wait_for(asyncio.shield(pipeline), timeout=self.processing_timeout)
        except asyncio.TimeoutError:
            raise ProcessingTimeout(claim.job_id, self.processing_timeout) from None

    def _on_pipeline_done(self, task: asyncio.Task) -> None:
        self._pipelines.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Job pipeline failed: %s",
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def _pipeline(self, claim: JobClaim, log) -> None:
        try:
            result = await self.fetcher.fetch(claim.target, claim.payload)
        except ProviderDataError as e:
            await self._fail(claim, str(e), log)
            return
        except ProviderError as e:
            log.warning("job_provider_error", error=str(e))
            await self._fail(claim, "The service is temporarily unavailable. Please try again later.", log)
            return
        except Exception as e:
            log.error("job_fetch_crashed", error=str(e), exc_info=True)
            await self._fail(claim, "Something went wrong while fetching. Please try again later.", log)
            return

        if isinstance(result, str):
            await self._fail(claim, result, log)
            return

        items = list(result)
        if not await self.store.is_current(claim):
            log.info("job_result_discarded", items=len(items))
            return

        if not items:
            if await self.store.mark_done(claim):
                log.info("job_done", items=0)
                await self._notify_owner(claim.owner_id, f"No active stories found for {claim.target}.")
            return

        try:
            delivered = await self.deliverer.deliver(items, claim.owner_id)
        except DeliveryFailure as e:
            await self._fail(claim, str(e), log)
            return
        except Exception as e:
            log.error("job_delivery_crashed", error=str(e), exc_info=True)
            await self._fail(claim, f"Delivery failed: {e}", log)
            return

        if await self.store.mark_done(claim):
            log.info("job_done", items=len(delivered), requested=len(items))
            missing = len(items) - len(delivered)
            if missing:
                await self._notify_owner(
                    claim.owner_id, f"{missing} of {len(items)} stories from {claim.target} could not be downloaded."
                )

    async def _fail(self, claim: JobClaim, message: str, log) -> None:
        if await self.store.mark_error(claim, message):
            log.info("job_failed", error=message)
            await self._notify_owner(claim.owner_id, message)

    async def _notify_owner(self, owner_id: int, text: str) -> None:
        try:
            await self.notifier.notify_owner(owner_id, text)
        except Exception as e:
            logger.warning("Failed to notify owner %s: %s", owner_id, e)
