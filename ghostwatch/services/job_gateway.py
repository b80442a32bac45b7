"""
One "submit job" entry point over the two execution lanes.

Interactive requests go to the in-memory ``AdmissionController``; deferred
and monitor-triggered work goes to the durable ``JobStore`` and wakes the
``QueueProcessor``. Every submission carries its provenance so logs and
job rows show which lane it came from.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..domain.errors import DeliveryFailure, ProviderError
from ..domain.interfaces import ContentDeliverer, ContentFetcher, Notifier
from ..models.job import JobSource
from ..utils.logging import get_job_logger
from .admission_controller import AdmissionController, AdmissionOutcome, AdmissionTask
from .job_store import JobStore
from .queue_processor import QueueProcessor

logger = logging.getLogger(__name__)

MSG_ALREADY_QUEUED = "This request is already queued."


@dataclass(frozen=True)
class SubmissionReceipt:
    provenance: JobSource
    accepted: bool
    message: Optional[str] = None
    position: Optional[int] = None
    job_id: Optional[int] = None


class JobGateway:
    def __init__(
        self,
        admission: AdmissionController,
        store: JobStore,
        processor: Optional[QueueProcessor] = None,
    ) -> None:
        self.admission = admission
        self.store = store
        self.processor = processor

    async def submit(
        self,
        owner_id: int,
        target: str,
        payload: Optional[dict] = None,
        provenance: JobSource = JobSource.INTERACTIVE,
    ) -> SubmissionReceipt:
        log = get_job_logger(owner_id=owner_id, source=provenance.value)

        if provenance is JobSource.INTERACTIVE:
            result = await self.admission.submit(owner_id, target, payload)
            log.info("job_submitted", target=target, outcome=result.outcome.value)
            return SubmissionReceipt(
                provenance=provenance,
                accepted=result.outcome is not AdmissionOutcome.DUPLICATE,
                message=result.message,
                position=result.position,
            )

        job = await self.store.enqueue(owner_id, target, payload=payload, source=provenance)
        if job is None:
            log.info("job_duplicate", target=target)
            return SubmissionReceipt(provenance=provenance, accepted=False, message=MSG_ALREADY_QUEUED)

        log.info("job_submitted", target=target, job_id=job.id)
        if self.processor is not None:
            self.processor.notify()
        position = await self.store.queue_position(job.id)
        return SubmissionReceipt(
            provenance=provenance,
            accepted=True,
            position=position,
            job_id=job.id,
        )


class InteractiveRunner:
    """Runs one admitted interactive task: fetch, then deliver or explain."""

    def __init__(
        self,
        fetcher: ContentFetcher,
        deliverer: ContentDeliverer,
        notifier: Notifier,
    ) -> None:
        self.fetcher = fetcher
        self.deliverer = deliverer
        self.notifier = notifier

    async def __call__(self, task: AdmissionTask) -> None:
        try:
            result = await self.fetcher.fetch(task.target, task.payload)
        except ProviderError as e:
            logger.warning("Interactive fetch for %s failed: %s", task.target, e)
            await self.notifier.notify_owner(
                task.owner_id, "The service is temporarily unavailable. Please try again later."
            )
            return

        if isinstance(result, str):
            await self.notifier.notify_owner(task.owner_id, result)
            return
        if not result:
            await self.notifier.notify_owner(task.owner_id, f"No active stories found for @{task.target}.")
            return

        try:
            delivered = await self.deliverer.deliver(result, task.owner_id)
        except DeliveryFailure as e:
            await self.notifier.notify_owner(task.owner_id, str(e))
            return

        missing = len(result) - len(delivered)
        if missing:
            await self.notifier.notify_owner(
                task.owner_id, f"{missing} of {len(result)} stories from @{task.target} could not be downloaded."
            )
