"""Bulk job progress: counts and status are always re-derived from the linked requests."""

from __future__ import annotations

import logging
from typing import Optional

from .models import BulkJob, BulkStatus, RequestStatus, WebhookEvent
from .store import SQLiteStore
from .webhooks import WebhookDispatcher, bulk_payload

logger = logging.getLogger(__name__)


def derive_bulk_status(statuses: list[RequestStatus]) -> BulkStatus:
    """completed iff all verified, failed iff all failed, partial once all terminal."""
    if not statuses or not all(s.is_terminal for s in statuses):
        return BulkStatus.PROCESSING
    if all(s == RequestStatus.VERIFIED for s in statuses):
        return BulkStatus.COMPLETED
    if all(s == RequestStatus.FAILED for s in statuses):
        return BulkStatus.FAILED
    return BulkStatus.PARTIAL


class BulkAggregator:
    def __init__(self, store: SQLiteStore, dispatcher: WebhookDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def recompute(self, bulk_job_id: int) -> Optional[BulkJob]:
        """Refresh the snapshot and notify if the job has reached a terminal status.

        Re-running after completion is safe but notifies again.
        """
        statuses = await self.store.bulk_item_statuses(bulk_job_id)
        status = derive_bulk_status(statuses)

        await self.store.update_bulk_progress(
            bulk_job_id,
            completed=sum(1 for s in statuses if s.is_terminal),
            verified=statuses.count(RequestStatus.VERIFIED),
            rejected=statuses.count(RequestStatus.REJECTED),
            failed=statuses.count(RequestStatus.FAILED),
            status=status,
        )
        job = await self.store.get_bulk_job(bulk_job_id)
        if job is None:
            return None

        if status != BulkStatus.PROCESSING:
            logger.info("Bulk job %s finished: %s", job.bulk_id, status.value)
            self.dispatcher.fire(job.owner, WebhookEvent.BULK_COMPLETED, bulk_payload(job))
        return job

    async def recompute_for_request(self, request_id: int) -> Optional[BulkJob]:
        job = await self.store.bulk_job_for_request(request_id)
        if job is None:
            return None
        return await self.recompute(job.id)
