"""
Composition root: builds every component once and wires them together.

Nothing in the package reaches for a global. The API lifespan and the CLI
each construct one VerificationService and hand it around.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx
from openai import OpenAI

from .bulk import BulkAggregator
from .config import Settings
from .document_types import load_document_types
from .exceptions import InvalidStateTransition, InvalidSubmissionError, RequestNotFoundError
from .extractor_llm import DocumentExtractor, Extractor
from .job_queue import JobQueue, JobType, Sleep
from .models import (
    AuditAction,
    AuditRecord,
    BulkJob,
    DocumentTypeConfig,
    VerificationRequest,
    Webhook,
    WebhookEvent,
)
from .pipeline import VerificationPipeline
from .store import SQLiteStore
from .webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

MAX_BULK_DOCUMENTS = 50


class VerificationService:
    """Submit, reprocess and track verification requests.

    Usage:
        service = VerificationService.from_settings(load_settings())
        await service.start()
        request = await service.submit("acme", "pan", "https://host/pan.jpg")
        ...
        await service.stop()
    """

    def __init__(
        self,
        store: SQLiteStore,
        extractor: Extractor,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        *,
        sleep: Sleep = asyncio.sleep,
        owns_http_client: bool = False,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.http_client = http_client
        self._owns_http_client = owns_http_client

        self.dispatcher = WebhookDispatcher(
            store,
            http_client,
            failure_limit=self.settings.webhook_failure_limit,
            timeout=self.settings.webhook_timeout_s,
        )
        self.aggregator = BulkAggregator(store, self.dispatcher)
        self.pipeline = VerificationPipeline(store, extractor, self.dispatcher, self.aggregator)
        self.queue = JobQueue(
            store,
            {JobType.VERIFY_DOCUMENT: self.pipeline.handle_job},
            concurrency=self.settings.queue_concurrency,
            max_attempts=self.settings.max_attempts,
            base_delay_ms=self.settings.retry_base_ms,
            poll_interval_ms=self.settings.queue_poll_ms,
            sleep=sleep,
            on_permanent_failure=self.pipeline.handle_exhausted,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> VerificationService:
        http_client = httpx.AsyncClient()
        openai_client = OpenAI(api_key=settings.openai_api_key) if settings.openai_api_key else None
        if openai_client is None:
            logger.warning("No OPENAI_API_KEY set; every extraction will fail")
        extractor = DocumentExtractor(
            http_client,
            openai_client,
            model=settings.openai_model,
            max_download_bytes=settings.max_download_bytes,
            download_timeout=settings.download_timeout_s,
        )
        return cls(
            SQLiteStore(settings.db_path),
            extractor,
            http_client,
            settings,
            owns_http_client=True,
        )

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def start(self, *, seed: bool = True, poll: bool = True) -> None:
        if seed:
            count = await self.store.seed_document_types(load_document_types())
            logger.info("Seeded %d global document types", count)
        if poll:
            await self.queue.start_polling()

    async def stop(self) -> None:
        await self.queue.close()
        await self.dispatcher.join()
        if self._owns_http_client:
            await self.http_client.aclose()
        self.store.close()

    async def drain(self) -> None:
        """Wait for queued work and the notifications it fires."""
        await self.queue.join()
        await self.dispatcher.join()

    # ─── Submission ──────────────────────────────────────────────────

    async def submit(
        self,
        owner: str,
        document_type: str,
        file_url: str,
        metadata: Optional[dict[str, Any]] = None,
        client_reference_id: Optional[str] = None,
    ) -> VerificationRequest:
        await self._check_submission(owner, document_type, file_url)
        request = await self.store.create_request(
            owner, document_type, file_url, metadata, client_reference_id
        )
        await self.store.log_audit(
            AuditRecord(
                owner=owner,
                action=AuditAction.SUBMITTED,
                resource_id=request.system_reference_id,
                details={"document_type": document_type, "reference_id": client_reference_id},
            )
        )
        self.queue.enqueue(JobType.VERIFY_DOCUMENT, {"request_id": request.id})
        return request

    async def submit_bulk(
        self,
        owner: str,
        documents: list[dict[str, Any]],
        callback_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> BulkJob:
        """Validate every document first; then create the job and queue them all."""
        if not documents:
            raise InvalidSubmissionError("documents must be a non-empty list")
        if len(documents) > MAX_BULK_DOCUMENTS:
            raise InvalidSubmissionError(f"Maximum {MAX_BULK_DOCUMENTS} documents per bulk request")

        errors = []
        for i, doc in enumerate(documents):
            try:
                await self._check_submission(owner, doc.get("document_type"), doc.get("file_url"))
            except InvalidSubmissionError as e:
                errors.append({"index": i, "message": str(e)})
        if errors:
            raise InvalidSubmissionError("Validation failed for some documents", {"errors": errors})

        job = await self.store.create_bulk_job(owner, len(documents), callback_url, metadata)
        for doc in documents:
            request = await self.store.create_request(
                owner,
                doc["document_type"],
                doc["file_url"],
                doc.get("metadata"),
                doc.get("reference_id"),
            )
            await self.store.add_bulk_item(job.id, request.id)
            self.queue.enqueue(JobType.VERIFY_DOCUMENT, {"request_id": request.id})
        logger.info("Bulk job %s queued with %d documents", job.bulk_id, len(documents))
        return job

    async def reprocess(self, owner: str, system_reference_id: str) -> VerificationRequest:
        """Re-arm a finished request and queue it again."""
        request = await self.get_request(owner, system_reference_id)
        if not request.status.is_terminal:
            raise InvalidStateTransition(
                f"Request {system_reference_id} is still {request.status.value}",
                {"status": request.status.value},
            )
        if not await self.store.reset_for_reprocess(request.id):
            raise InvalidStateTransition(f"Request {system_reference_id} changed state concurrently")

        await self.store.log_audit(
            AuditRecord(
                owner=owner,
                action=AuditAction.REPROCESSED,
                resource_id=system_reference_id,
                details={"previous_status": request.status.value},
            )
        )
        await self.aggregator.recompute_for_request(request.id)
        rearmed = await self.get_request(owner, system_reference_id)
        self.queue.enqueue(JobType.VERIFY_DOCUMENT, {"request_id": request.id})
        return rearmed

    # ─── Lookups ─────────────────────────────────────────────────────

    async def get_request(self, owner: str, system_reference_id: str) -> VerificationRequest:
        request = await self.store.find_by_reference(system_reference_id, owner)
        if request is None:
            raise RequestNotFoundError(f"Verification request {system_reference_id} not found")
        return request

    async def get_bulk_job(self, owner: str, bulk_id: str) -> BulkJob:
        job = await self.store.find_bulk_job(bulk_id, owner)
        if job is None:
            raise RequestNotFoundError(f"Bulk job {bulk_id} not found")
        return job

    async def register_webhook(
        self, owner: str, url: str, events: Optional[list[WebhookEvent]] = None
    ) -> Webhook:
        return await self.store.create_webhook(owner, url, events)

    # ─── Helpers ─────────────────────────────────────────────────────

    async def _check_submission(
        self, owner: str, document_type: Optional[str], file_url: Optional[str]
    ) -> DocumentTypeConfig:
        if not document_type or not file_url:
            raise InvalidSubmissionError("document_type and file_url are required")

        config = await self.store.find_document_type(document_type, owner)
        if config is None:
            raise InvalidSubmissionError(
                f"Unknown document_type: '{document_type}'", {"document_type": document_type}
            )

        extension = file_url.rsplit(".", 1)[-1].split("?", 1)[0].lower()
        if "*" not in config.allowed_formats and extension not in config.allowed_formats:
            raise InvalidSubmissionError(
                f"File format '{extension}' not allowed for {document_type}. "
                f"Allowed: {', '.join(config.allowed_formats)}"
            )
        return config
