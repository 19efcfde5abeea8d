"""
Verification pipeline: drives one request to a terminal verdict.

Flow:
  ┌──────────┐
  │ accepted │  ← anything else is a no-op (duplicate scheduling)
  └────┬─────┘
       │ claim
  ┌────▼───────┐
  │ processing │
  └────┬───────┘
       │
  ┌────▼──────┐     ┌────────────┐     ┌─────────────┐
  │ Extractor │ ──► │ Validators │ ──► │ Rule engine │   ← AI reads, code decides
  └───────────┘     └────────────┘     └──────┬──────┘
                                              │
                               ┌──────────────▼─────────────┐
                               │ verified / rejected / failed│
                               └──────────────┬─────────────┘
                                              │
                          audit log · webhook (fire-and-forget) · bulk recompute

Design principles:
  - The store's compare-and-set claim is the only guard against double runs.
  - A transient collaborator failure puts the request back to 'accepted'
    and re-raises, so the job queue can retry it.
  - Every other error is caught once, here, and becomes a 'failed' verdict
    with the message as the sole issue. Nothing escapes to the caller.
  - Post-failure actions (webhook, audit, bulk) are isolated from each other.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .bulk import BulkAggregator
from .exceptions import TransientExtractionError
from .extractor_llm import Extractor
from .job_queue import Job
from .models import (
    AuditAction,
    AuditRecord,
    DataConsistency,
    ExtractionResult,
    RequestStatus,
    RuleResult,
    ValidationOutcome,
    VerificationRequest,
    WebhookEvent,
)
from .rules import score_document
from .store import SQLiteStore
from .validators import validate_all
from .webhooks import WebhookDispatcher, document_payload

logger = logging.getLogger(__name__)


class VerificationPipeline:
    """Orchestrates download → extract → validate → score → persist → notify.

    Usage:
        pipeline = VerificationPipeline(store, extractor, dispatcher, aggregator)
        await pipeline.process(request_id)
    """

    def __init__(
        self,
        store: SQLiteStore,
        extractor: Extractor,
        dispatcher: WebhookDispatcher,
        aggregator: BulkAggregator,
    ):
        self.store = store
        self.extractor = extractor
        self.dispatcher = dispatcher
        self.aggregator = aggregator

    async def handle_job(self, payload: dict[str, Any]) -> None:
        """Job-queue entry point for JobType.VERIFY_DOCUMENT."""
        await self.process(int(payload["request_id"]))

    async def process(self, request_id: int) -> Optional[VerificationRequest]:
        """Run one request to a terminal state.

        Returns:
            The request as stored afterwards, or None if it does not exist.

        Raises:
            TransientExtractionError: the collaborator was unreachable; the
                request is back in 'accepted' and may be retried.
        """
        request = await self.store.get_request(request_id)
        if request is None:
            logger.error("Request %s not found", request_id)
            return None
        if request.status != RequestStatus.ACCEPTED:
            logger.info("Request %s is already %s, skipping", request_id, request.status.value)
            return request
        if not await self.store.claim_request(request_id):
            logger.info("Request %s was claimed by another worker", request_id)
            return await self.store.get_request(request_id)
        logger.info("Request %s: accepted → processing", request.system_reference_id)

        try:
            await self._run(request)
        except TransientExtractionError:
            raise
        except Exception as e:
            logger.error("Error processing request %s: %s", request.system_reference_id, e)
            await self._fail(request, e)

        await self._recompute_bulk(request_id)
        return await self.store.get_request(request_id)

    async def handle_exhausted(self, job: Job, error: BaseException) -> None:
        """Called by the job queue once retries are used up and the request is 'failed'."""
        if job.request_id is None:
            return
        request = await self.store.get_request(job.request_id)
        if request is None:
            return
        await self._notify_failed(request)
        await self._audit_failed(request, error, attempts=job.attempts)
        await self._recompute_bulk(request.id)

    # ─── Steps ───────────────────────────────────────────────────────

    async def _run(self, request: VerificationRequest) -> None:
        # ── Step 3: Resolve document-type configuration ─────────────
        config = await self.store.find_document_type(request.document_type, request.owner)
        required_fields = config.required_fields if config else []
        validation_rules = config.validation_rules if config else {}

        # ── Step 4: Extraction collaborator ─────────────────────────
        try:
            result = await self.extractor.extract(
                request.file_url,
                request.document_type,
                required_fields,
                validation_rules,
                dict(request.metadata),
            )
        except TransientExtractionError as e:
            logger.warning("Transient extraction failure for %s: %s", request.system_reference_id, e)
            await self.store.update_status(request.id, RequestStatus.ACCEPTED)
            raise

        # ── Step 5: Deterministic validation ────────────────────────
        outcome = validate_all(request.document_type, result.extracted_data, request.metadata)
        merged = merge_validation(result, outcome)

        # ── Step 6: Rule engine ─────────────────────────────────────
        verdict = score_document(request.document_type, merged.extracted_data, merged, config)
        final = (
            RequestStatus.VERIFIED
            if verdict.status == RequestStatus.VERIFIED
            else RequestStatus.REJECTED
        )

        # ── Step 7: Persist ─────────────────────────────────────────
        raw_response = merged.model_dump(mode="json")
        raw_response["wrong_document"] = verdict.wrong_document
        if verdict.wrong_document:
            raw_response["detected_document_type"] = verdict.detected_document_type
            raw_response["expected_document_type"] = verdict.expected_document_type
        await self.store.update_status(
            request.id,
            final,
            confidence=verdict.confidence,
            risk_score=verdict.risk_score,
            extracted_data={} if verdict.wrong_document else merged.extracted_data,
            issues=verdict.issues,
            raw_response=raw_response,
            processed_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Request %s completed: %s (confidence: %s%%, risk: %s)",
            request.system_reference_id,
            final.value,
            verdict.confidence,
            verdict.risk_score,
        )

        # ── Step 8: Audit ───────────────────────────────────────────
        action = classify_outcome(verdict, merged, outcome)
        details: dict[str, Any] = {
            "status": final.value,
            "confidence": verdict.confidence,
            "risk_score": verdict.risk_score,
            "issues_count": len(verdict.issues),
        }
        if verdict.wrong_document:
            details.update(
                wrong_document=True,
                detected_type=verdict.detected_document_type,
                expected_type=verdict.expected_document_type,
            )
        await self.store.log_audit(
            AuditRecord(
                owner=request.owner,
                action=action,
                resource_id=request.system_reference_id,
                details=details,
            )
        )

        # ── Step 9: Webhook (fire-and-forget) ───────────────────────
        updated = await self.store.get_request(request.id)
        if updated is not None:
            event = (
                WebhookEvent.DOCUMENT_VERIFIED
                if final == RequestStatus.VERIFIED
                else WebhookEvent.DOCUMENT_REJECTED
            )
            self.dispatcher.fire(
                request.owner,
                event,
                document_payload(
                    event,
                    updated,
                    wrong_document=verdict.wrong_document,
                    detected_document_type=verdict.detected_document_type,
                ),
                request_id=request.id,
            )

    # ─── Failure Handling ────────────────────────────────────────────

    async def _fail(self, request: VerificationRequest, error: Exception) -> None:
        try:
            await self.store.update_status(
                request.id,
                RequestStatus.FAILED,
                confidence=None,
                risk_score=None,
                extracted_data={},
                issues=[str(error) or type(error).__name__],
                processed_at=datetime.now(timezone.utc),
            )
        except Exception as e:
            logger.error("Failed to record failure for %s: %s", request.system_reference_id, e)
        await self._notify_failed(request)
        await self._audit_failed(request, error)

    async def _notify_failed(self, request: VerificationRequest) -> None:
        try:
            failed = await self.store.get_request(request.id) or request
            self.dispatcher.fire(
                request.owner,
                WebhookEvent.DOCUMENT_FAILED,
                document_payload(WebhookEvent.DOCUMENT_FAILED, failed),
                request_id=request.id,
            )
        except Exception as e:
            logger.error("Failure webhook for %s not sent: %s", request.system_reference_id, e)

    async def _audit_failed(
        self, request: VerificationRequest, error: BaseException, attempts: Optional[int] = None
    ) -> None:
        details: dict[str, Any] = {"error": str(error)}
        if attempts is not None:
            details["attempts"] = attempts
        try:
            await self.store.log_audit(
                AuditRecord(
                    owner=request.owner,
                    action=AuditAction.FAILED,
                    resource_id=request.system_reference_id,
                    details=details,
                )
            )
        except Exception as e:
            logger.error("Failure audit for %s not written: %s", request.system_reference_id, e)

    async def _recompute_bulk(self, request_id: int) -> None:
        try:
            await self.aggregator.recompute_for_request(request_id)
        except Exception as e:
            logger.error("Bulk progress update for request %s failed: %s", request_id, e)


# ─── Pure Helpers ────────────────────────────────────────────────────


def merge_validation(result: ExtractionResult, outcome: ValidationOutcome) -> ExtractionResult:
    """Fold validator flags and issues into the collaborator's result.

    A check counts as failed if either side says so. Validator issues are
    appended after the collaborator's, without duplicates.
    """
    issues = list(result.issues)
    issues.extend(i for i in outcome.issues if i not in issues)

    summary = outcome.summary
    if summary is None:
        return result.model_copy(update={"issues": issues})

    dc = result.data_consistency
    logical = outcome.results.get("logical_checks")
    if logical is not None and not logical.valid:
        details = "; ".join(logical.issues)
    else:
        details = dc.details or summary.details

    consistency = DataConsistency(
        dates_valid=_both(dc.dates_valid, summary.dates_valid),
        id_format_valid=_both(dc.id_format_valid, summary.id_format_valid),
        logical_checks_passed=_both(dc.logical_checks_passed, summary.logical_checks_passed),
        data_consistent=_both(dc.data_consistent, summary.data_consistent),
        details=details,
    )
    return result.model_copy(update={"issues": issues, "data_consistency": consistency})


def _both(reported: Optional[bool], checked: bool) -> bool:
    return reported is not False and checked


def classify_outcome(
    verdict: RuleResult, result: ExtractionResult, outcome: ValidationOutcome
) -> AuditAction:
    """Pick the audit category for a scored document, most severe first."""
    if verdict.wrong_document:
        return AuditAction.WRONG_TYPE
    if result.authenticity_checks.tampering_detected is True:
        return AuditAction.TAMPERING_SUSPECTED
    if result.is_genuine is False or result.fraud_indicators:
        return AuditAction.FRAUD_SUSPECTED
    if not outcome.passed:
        return AuditAction.VALIDATION_FAILED
    return AuditAction.PROCESSED
