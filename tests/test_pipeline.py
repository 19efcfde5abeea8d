"""
Verification pipeline tests: one request from 'accepted' to a terminal verdict.

The extraction collaborator is a scripted fake; the store is in-memory
SQLite seeded with the global document types; webhooks hit a MockTransport.
"""

from __future__ import annotations

import json
import sqlite3

import pytest
import pytest_asyncio

from doc_verifier.bulk import BulkAggregator
from doc_verifier.document_types import HSC_LABEL
from doc_verifier.exceptions import MalformedResponseError, TransientExtractionError
from doc_verifier.job_queue import Job, JobType
from doc_verifier.models import (
    AuditAction,
    AuthenticityChecks,
    BulkStatus,
    CheckResult,
    DataConsistency,
    ExtractionResult,
    RequestStatus,
    RuleResult,
    ValidationOutcome,
    ValidationSummary,
)
from doc_verifier.pipeline import VerificationPipeline, classify_outcome, merge_validation
from doc_verifier.webhooks import WebhookDispatcher

PAN_DATA = {
    "name": "Rahul Sharma",
    "father_name": "Suresh Sharma",
    "dob": "1990-05-14",
    "pan_number": "ABCDE1234F",
}


def _make_result(**overrides) -> ExtractionResult:
    defaults = dict(
        document_type_match=True,
        detected_document_type="PAN Card",
        status=RequestStatus.VERIFIED,
        confidence=92,
        risk_score=0.05,
        extracted_data=dict(PAN_DATA),
        is_genuine=True,
    )
    defaults.update(overrides)
    return ExtractionResult(**defaults)


@pytest_asyncio.fixture
async def harness(seeded_store, webhook_receiver):
    async with webhook_receiver.client() as client:
        dispatcher = WebhookDispatcher(seeded_store, client)
        await seeded_store.create_webhook("acme", "https://hooks.example.com/verify")
        yield seeded_store, dispatcher, BulkAggregator(seeded_store, dispatcher)
        await dispatcher.join()


def _pipeline(harness, extractor) -> VerificationPipeline:
    store, dispatcher, aggregator = harness
    return VerificationPipeline(store, extractor, dispatcher, aggregator)


async def _submit(store, document_type="pan", metadata=None):
    return await store.create_request(
        "acme",
        document_type,
        f"https://files.example.com/{document_type}.jpg",
        metadata if metadata is not None else {"name": "Rahul Sharma"},
    )


async def _actions(store, request) -> list[AuditAction]:
    return [r.action for r in await store.list_audit(request.system_reference_id)]


def _events(receiver) -> list[str]:
    return [json.loads(r.content)["event"] for r in receiver.requests]


# ═══════════════════════════════════════════════════════════════════════
# HAPPY PATH
# ═══════════════════════════════════════════════════════════════════════


class TestVerified:
    @pytest.mark.asyncio
    async def test_clean_pan_is_verified(self, harness, fake_extractor, webhook_receiver):
        store, dispatcher, _ = harness
        extractor = fake_extractor(_make_result())
        request = await _submit(store)

        done = await _pipeline(harness, extractor).process(request.id)
        await dispatcher.join()

        assert done.status == RequestStatus.VERIFIED
        assert done.confidence == 92
        assert done.risk_score == 0.05
        assert done.extracted_data == PAN_DATA
        assert done.issues == []
        assert done.processed_at is not None
        assert done.raw_response["wrong_document"] is False
        assert done.raw_response["data_consistency"]["id_format_valid"] is True
        assert await _actions(store, request) == [AuditAction.PROCESSED]
        assert _events(webhook_receiver) == ["document.verified"]

    @pytest.mark.asyncio
    async def test_collaborator_gets_document_type_config(self, harness, fake_extractor):
        store, _, _ = harness
        extractor = fake_extractor(_make_result())
        request = await _submit(store)
        await _pipeline(harness, extractor).process(request.id)

        [call] = extractor.calls
        assert call["file_url"] == "https://files.example.com/pan.jpg"
        assert call["required_fields"] == ["name", "pan_number", "dob"]
        assert "pan_number" in call["validation_rules"]
        assert call["metadata"] == {"name": "Rahul Sharma"}

    @pytest.mark.asyncio
    async def test_handle_job_reads_request_id(self, harness, fake_extractor):
        store, _, _ = harness
        request = await _submit(store)
        await _pipeline(harness, fake_extractor(_make_result())).handle_job(
            {"request_id": request.id}
        )
        assert (await store.get_request(request.id)).status == RequestStatus.VERIFIED


# ═══════════════════════════════════════════════════════════════════════
# REJECTIONS
# ═══════════════════════════════════════════════════════════════════════


class TestRejected:
    @pytest.mark.asyncio
    async def test_malformed_pan_number(self, harness, fake_extractor, webhook_receiver):
        store, dispatcher, _ = harness
        result = _make_result(confidence=55, extracted_data=dict(PAN_DATA, pan_number="1234ABCDEF"))
        request = await _submit(store)

        done = await _pipeline(harness, fake_extractor(result)).process(request.id)
        await dispatcher.join()

        assert done.status == RequestStatus.REJECTED
        assert done.confidence == 45
        assert done.risk_score == pytest.approx(0.15)
        assert any("1234ABCDEF" in i for i in done.issues)
        assert await _actions(store, request) == [AuditAction.VALIDATION_FAILED]
        assert _events(webhook_receiver) == ["document.rejected"]

    @pytest.mark.asyncio
    async def test_wrong_marksheet_clears_extracted_data(self, harness, fake_extractor):
        store, _, _ = harness
        result = _make_result(
            detected_document_type="Marksheet",
            extracted_data={"name": "Asha", "board": "Higher Secondary Certificate"},
            confidence=95,
        )
        request = await _submit(store, "marksheet_10", metadata={})

        done = await _pipeline(harness, fake_extractor(result)).process(request.id)

        assert done.status == RequestStatus.REJECTED
        assert done.confidence == 0
        assert done.risk_score == 1.0
        assert done.extracted_data == {}
        assert done.raw_response["wrong_document"] is True
        assert done.raw_response["detected_document_type"] == HSC_LABEL
        [record] = await store.list_audit(request.system_reference_id)
        assert record.action == AuditAction.WRONG_TYPE
        assert record.details["detected_type"] == HSC_LABEL

    @pytest.mark.asyncio
    async def test_not_genuine_is_fraud(self, harness, fake_extractor):
        store, _, _ = harness
        request = await _submit(store)
        done = await _pipeline(harness, fake_extractor(_make_result(is_genuine=False))).process(
            request.id
        )
        assert done.status == RequestStatus.REJECTED
        assert await _actions(store, request) == [AuditAction.FRAUD_SUSPECTED]

    @pytest.mark.asyncio
    async def test_tampering(self, harness, fake_extractor):
        store, _, _ = harness
        result = _make_result(authenticity_checks=AuthenticityChecks(tampering_detected=True))
        request = await _submit(store)
        done = await _pipeline(harness, fake_extractor(result)).process(request.id)
        assert done.status == RequestStatus.REJECTED
        assert await _actions(store, request) == [AuditAction.TAMPERING_SUSPECTED]

    @pytest.mark.asyncio
    async def test_unknown_document_type_is_scored_without_config(self, harness, fake_extractor):
        store, _, _ = harness
        extractor = fake_extractor(_make_result(extracted_data={"name": "Rahul Sharma"}))
        request = await _submit(store, "library_card")

        done = await _pipeline(harness, extractor).process(request.id)

        assert extractor.calls[0]["required_fields"] == []
        assert extractor.calls[0]["validation_rules"] == {}
        assert "Unknown document type: library_card" in done.issues


# ═══════════════════════════════════════════════════════════════════════
# FAILURES
# ═══════════════════════════════════════════════════════════════════════


class TestFailures:
    @pytest.mark.asyncio
    async def test_malformed_response_fails_immediately(
        self, harness, fake_extractor, webhook_receiver
    ):
        store, dispatcher, _ = harness
        extractor = fake_extractor(MalformedResponseError("Failed to parse AI response as JSON"))
        request = await _submit(store)

        done = await _pipeline(harness, extractor).process(request.id)
        await dispatcher.join()

        assert done.status == RequestStatus.FAILED
        assert done.issues == ["Failed to parse AI response as JSON"]
        assert done.confidence is None
        assert done.risk_score is None
        assert await _actions(store, request) == [AuditAction.FAILED]
        assert _events(webhook_receiver) == ["document.failed"]

    @pytest.mark.asyncio
    async def test_transient_error_returns_request_to_accepted(self, harness, fake_extractor):
        store, _, _ = harness
        extractor = fake_extractor(TransientExtractionError("AI service unavailable"))
        request = await _submit(store)

        with pytest.raises(TransientExtractionError):
            await _pipeline(harness, extractor).process(request.id)

        stored = await store.get_request(request.id)
        assert stored.status == RequestStatus.ACCEPTED
        assert await _actions(store, request) == []

    @pytest.mark.asyncio
    async def test_retry_after_transient_error_succeeds(self, harness, fake_extractor):
        store, _, _ = harness
        extractor = fake_extractor(TransientExtractionError("timeout"), _make_result())
        pipeline = _pipeline(harness, extractor)
        request = await _submit(store)

        with pytest.raises(TransientExtractionError):
            await pipeline.process(request.id)
        done = await pipeline.process(request.id)

        assert done.status == RequestStatus.VERIFIED
        assert len(extractor.calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted_job_notifies_and_audits(
        self, harness, fake_extractor, webhook_receiver
    ):
        store, dispatcher, _ = harness
        request = await _submit(store)
        await store.update_status(
            request.id,
            RequestStatus.FAILED,
            issues=["Processing failed after maximum retry attempts: timeout"],
        )
        job = Job(type=JobType.VERIFY_DOCUMENT, payload={"request_id": request.id}, attempts=3)

        await _pipeline(harness, fake_extractor(_make_result())).handle_exhausted(
            job, TransientExtractionError("timeout")
        )
        await dispatcher.join()

        [record] = await store.list_audit(request.system_reference_id)
        assert record.action == AuditAction.FAILED
        assert record.details == {"error": "timeout", "attempts": 3}
        assert _events(webhook_receiver) == ["document.failed"]

    @pytest.mark.asyncio
    async def test_error_after_persist_still_fails_and_recomputes_bulk(
        self, harness, fake_extractor, webhook_receiver, monkeypatch
    ):
        store, dispatcher, _ = harness
        job = await store.create_bulk_job("acme", 1)
        request = await _submit(store)
        await store.add_bulk_item(job.id, request.id)

        async def broken_audit(record):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "log_audit", broken_audit)

        done = await _pipeline(harness, fake_extractor(_make_result())).process(request.id)
        await dispatcher.join()

        assert done.status == RequestStatus.FAILED
        assert done.issues == ["disk I/O error"]
        assert done.confidence is None
        assert _events(webhook_receiver) == ["document.failed"]
        snapshot = await store.get_bulk_job(job.id)
        assert snapshot.status == BulkStatus.FAILED
        assert (snapshot.completed, snapshot.failed, snapshot.verified) == (1, 1, 0)

    @pytest.mark.asyncio
    async def test_failed_notification_does_not_block_audit_or_bulk(
        self, harness, fake_extractor, monkeypatch
    ):
        store, dispatcher, _ = harness
        job = await store.create_bulk_job("acme", 1)
        request = await _submit(store)
        await store.add_bulk_item(job.id, request.id)

        def broken_fire(*args, **kwargs):
            raise RuntimeError("event loop closing")

        monkeypatch.setattr(dispatcher, "fire", broken_fire)
        extractor = fake_extractor(MalformedResponseError("Failed to parse AI response as JSON"))

        done = await _pipeline(harness, extractor).process(request.id)

        assert done.status == RequestStatus.FAILED
        assert await _actions(store, request) == [AuditAction.FAILED]
        snapshot = await store.get_bulk_job(job.id)
        assert snapshot.status == BulkStatus.FAILED
        assert snapshot.failed == 1

    @pytest.mark.asyncio
    async def test_failed_status_write_does_not_block_notify_or_audit(
        self, harness, fake_extractor, webhook_receiver, monkeypatch
    ):
        store, dispatcher, _ = harness
        request = await _submit(store)
        original_update = store.update_status

        async def refuse_failed(request_id, status, **fields):
            if status == RequestStatus.FAILED:
                raise sqlite3.OperationalError("database is locked")
            return await original_update(request_id, status, **fields)

        monkeypatch.setattr(store, "update_status", refuse_failed)
        extractor = fake_extractor(MalformedResponseError("Failed to parse AI response as JSON"))

        await _pipeline(harness, extractor).process(request.id)
        await dispatcher.join()

        assert await _actions(store, request) == [AuditAction.FAILED]
        assert _events(webhook_receiver) == ["document.failed"]


# ═══════════════════════════════════════════════════════════════════════
# IDEMPOTENCE & BULK
# ═══════════════════════════════════════════════════════════════════════


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_terminal_request_is_not_reprocessed(self, harness, fake_extractor):
        store, _, _ = harness
        extractor = fake_extractor(_make_result())
        request = await _submit(store)
        await store.update_status(request.id, RequestStatus.REJECTED)

        done = await _pipeline(harness, extractor).process(request.id)

        assert done.status == RequestStatus.REJECTED
        assert extractor.calls == []

    @pytest.mark.asyncio
    async def test_processing_request_is_not_claimed_twice(self, harness, fake_extractor):
        store, _, _ = harness
        extractor = fake_extractor(_make_result())
        request = await _submit(store)
        assert await store.claim_request(request.id)

        done = await _pipeline(harness, extractor).process(request.id)

        assert done.status == RequestStatus.PROCESSING
        assert extractor.calls == []

    @pytest.mark.asyncio
    async def test_missing_request(self, harness, fake_extractor):
        assert await _pipeline(harness, fake_extractor(_make_result())).process(9999) is None

    @pytest.mark.asyncio
    async def test_bulk_job_recomputed_after_verdict(self, harness, fake_extractor):
        store, _, _ = harness
        job = await store.create_bulk_job("acme", 1)
        request = await _submit(store)
        await store.add_bulk_item(job.id, request.id)

        await _pipeline(harness, fake_extractor(_make_result())).process(request.id)

        updated = await store.get_bulk_job(job.id)
        assert updated.status == BulkStatus.COMPLETED
        assert updated.verified == 1


# ═══════════════════════════════════════════════════════════════════════
# PURE HELPERS
# ═══════════════════════════════════════════════════════════════════════


def _outcome(passed: bool = True, **flags) -> ValidationOutcome:
    values = dict(dates_valid=True, id_format_valid=True, logical_checks_passed=True, data_consistent=True)
    values.update(flags)
    issues = [] if passed else ["validator issue"]
    logical_ok = values["logical_checks_passed"]
    return ValidationOutcome(
        passed=passed,
        issues=issues,
        results={
            "logical_checks": CheckResult(
                valid=logical_ok, issues=[] if logical_ok else ["Name inconsistency"]
            )
        },
        summary=ValidationSummary(
            checks_passed=sum(values.values()),
            details="; ".join(issues) or "All validation checks passed",
            **values,
        ),
    )


class TestMergeValidation:
    def test_either_side_failing_fails_the_flag(self):
        result = _make_result(data_consistency=DataConsistency(dates_valid=False))
        merged = merge_validation(result, _outcome(passed=False, id_format_valid=False))
        dc = merged.data_consistency
        assert dc.dates_valid is False
        assert dc.id_format_valid is False
        assert dc.logical_checks_passed is True

    def test_unassessed_flag_takes_validator_value(self):
        merged = merge_validation(_make_result(), _outcome())
        assert merged.data_consistency.data_consistent is True
        assert merged.data_consistency.details == "All validation checks passed"

    def test_logical_failure_details_win(self):
        result = _make_result(data_consistency=DataConsistency(details="looks fine"))
        merged = merge_validation(result, _outcome(passed=False, logical_checks_passed=False))
        assert merged.data_consistency.details == "Name inconsistency"

    def test_collaborator_details_kept_otherwise(self):
        result = _make_result(data_consistency=DataConsistency(details="looks fine"))
        assert merge_validation(result, _outcome()).data_consistency.details == "looks fine"

    def test_issues_appended_without_duplicates(self):
        result = _make_result(issues=["validator issue", "glare"])
        merged = merge_validation(result, _outcome(passed=False))
        assert merged.issues == ["validator issue", "glare"]

    def test_empty_data_outcome_only_adds_issue(self):
        empty = ValidationOutcome(passed=False, issues=["No extracted data to validate"])
        merged = merge_validation(_make_result(), empty)
        assert merged.issues == ["No extracted data to validate"]
        assert merged.data_consistency == DataConsistency()

    def test_input_is_not_mutated(self):
        result = _make_result()
        merge_validation(result, _outcome(passed=False))
        assert result.issues == []


class TestClassifyOutcome:
    def _verdict(self, **overrides) -> RuleResult:
        defaults = dict(status=RequestStatus.REJECTED, confidence=0, risk_score=1.0)
        defaults.update(overrides)
        return RuleResult(**defaults)

    def test_wrong_document_beats_everything(self):
        result = _make_result(is_genuine=False)
        action = classify_outcome(self._verdict(wrong_document=True), result, _outcome(passed=False))
        assert action == AuditAction.WRONG_TYPE

    def test_tampering_beats_fraud(self):
        result = _make_result(
            is_genuine=False, authenticity_checks=AuthenticityChecks(tampering_detected=True)
        )
        assert classify_outcome(self._verdict(), result, _outcome()) == AuditAction.TAMPERING_SUSPECTED

    def test_fraud_indicators(self):
        result = _make_result(fraud_indicators=["edited photo"])
        assert classify_outcome(self._verdict(), result, _outcome()) == AuditAction.FRAUD_SUSPECTED

    def test_validation_failure(self):
        action = classify_outcome(self._verdict(), _make_result(), _outcome(passed=False))
        assert action == AuditAction.VALIDATION_FAILED

    def test_clean(self):
        verdict = self._verdict(status=RequestStatus.VERIFIED, confidence=92, risk_score=0.05)
        assert classify_outcome(verdict, _make_result(), _outcome()) == AuditAction.PROCESSED
